from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Iterator

from fastapi import HTTPException, Request, status

from privacy.engine import PrivacyComplianceEngine
from privacy.errors import (
    AlreadyExtendedError,
    AuthorityRejectedError,
    DuplicateIdError,
    InvalidTransitionError,
    NoActiveConsentError,
    ParentalConsentAlreadyVerifiedError,
    ParentalConsentRequiredError,
    PrivacyEngineError,
    PrivacyValidationError,
    RemoteAuthorityError,
    UnknownRequestError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first matching class wins.
_STATUS_BY_ERROR = (
    (ParentalConsentRequiredError, status.HTTP_403_FORBIDDEN),
    (UnknownRequestError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (AlreadyExtendedError, status.HTTP_409_CONFLICT),
    (ParentalConsentAlreadyVerifiedError, status.HTTP_409_CONFLICT),
    (NoActiveConsentError, status.HTTP_409_CONFLICT),
    (DuplicateIdError, status.HTTP_409_CONFLICT),
    (AuthorityRejectedError, status.HTTP_502_BAD_GATEWAY),
    (RemoteAuthorityError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PrivacyValidationError, status.HTTP_400_BAD_REQUEST),
)


def status_for(error: PrivacyEngineError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _raise_engine_error(error: PrivacyEngineError) -> None:
    status_code = status_for(error)
    if status_code >= 500:
        logger.warning(f"Privacy engine error ({error.code}): {error.message}")
    raise HTTPException(status_code=status_code, detail=error.to_dict()) from error


@contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise engine errors as HTTPException with a ``{code, message, retryable}`` detail."""
    try:
        yield
    except PrivacyEngineError as exc:
        _raise_engine_error(exc)


def get_engine(request: Request) -> PrivacyComplianceEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "configuration_error", "message": "Privacy engine not initialised", "retryable": False},
        )
    return engine
