"""Error taxonomy for the privacy compliance engine.

Three families:
  - validation errors: a caller or business-rule mismatch, never retried.
  - transient errors: the remote authority could not be reached; safe to retry.
  - configuration errors: the region table is inconsistent; fatal at startup.
"""

from __future__ import annotations

from typing import Optional


class PrivacyEngineError(Exception):
    """Base class for every error raised by the engine."""

    code = "privacy_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ConfigurationError(PrivacyEngineError):
    # Raised when the region configuration is missing entries or malformed.
    code = "configuration_error"


class PrivacyValidationError(PrivacyEngineError):
    # Raised when an operation breaks a business rule. Never retried.
    code = "validation_error"


class UnknownRegionError(PrivacyValidationError):
    code = "unknown_region"


class InvalidPurposeError(PrivacyValidationError):
    code = "invalid_purpose"


class InvalidLegalBasisError(PrivacyValidationError):
    code = "invalid_legal_basis"


class NoActiveConsentError(PrivacyValidationError):
    code = "no_active_consent"


class FutureBirthDateError(PrivacyValidationError):
    code = "future_birth_date"


class InvalidTransitionError(PrivacyValidationError):
    code = "invalid_transition"


class AlreadyExtendedError(PrivacyValidationError):
    code = "already_extended"


class ParentalConsentRequiredError(PrivacyValidationError):
    code = "parental_consent_required"


class ParentalConsentAlreadyVerifiedError(PrivacyValidationError):
    code = "parental_consent_already_verified"


class UnknownRequestError(PrivacyValidationError):
    code = "unknown_request"


class DuplicateIdError(PrivacyValidationError):
    # A caller-supplied id already belongs to a different user or mutation.
    code = "duplicate_id"


class AuthorityRejectedError(PrivacyValidationError):
    # The remote authority answered but refused the mutation.
    code = "authority_rejected"


class RemoteAuthorityError(PrivacyEngineError):
    """The remote authority was unreachable or failed; local state is unchanged."""

    code = "authority_unavailable"
    retryable = True
