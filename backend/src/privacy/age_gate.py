# Age gate
#
# Decides whether a user is below the regional minimum age and tracks the
# parental-consent workflow for those who are:
#
#   pending -> sent -> {verified | rejected}
#   pending -> {verified | rejected}
#
# verified and rejected are terminal. Until a request is verified the consent
# ledger refuses every non-essential grant for the user.

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime
import logging
import re
from typing import Callable, Dict, Iterable, List, Optional

from .errors import (
    DuplicateIdError,
    FutureBirthDateError,
    InvalidTransitionError,
    ParentalConsentAlreadyVerifiedError,
    PrivacyValidationError,
    UnknownRegionError,
    UnknownRequestError,
)
from .models import (
    AgeVerificationMethod,
    AgeVerificationResult,
    ParentalConsentRequest,
    ParentalConsentStatus,
    RegionCode,
    coerce_enum,
    new_id,
    parse_date,
    utc_now,
)
from .regions import RegionLike, RegionPolicyResolver

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_PARENTAL_TRANSITIONS = {
    ParentalConsentStatus.PENDING: {
        ParentalConsentStatus.SENT,
        ParentalConsentStatus.VERIFIED,
        ParentalConsentStatus.REJECTED,
    },
    ParentalConsentStatus.SENT: {ParentalConsentStatus.VERIFIED, ParentalConsentStatus.REJECTED},
    ParentalConsentStatus.VERIFIED: set(),
    ParentalConsentStatus.REJECTED: set(),
}

_OPEN_STATUSES = (ParentalConsentStatus.PENDING, ParentalConsentStatus.SENT)


def age_on(birth_date: date, today: date) -> int:
    """Whole years between ``birth_date`` and ``today``."""
    had_birthday = (today.month, today.day) >= (birth_date.month, birth_date.day)
    return today.year - birth_date.year - (0 if had_birthday else 1)


class AgeGate:
    def __init__(self, resolver: RegionPolicyResolver, clock: Callable[[], datetime] = utc_now) -> None:
        self._resolver = resolver
        self._clock = clock
        self._verifications: Dict[str, AgeVerificationResult] = {}
        self._requests: Dict[str, ParentalConsentRequest] = {}
        self._requests_by_user: Dict[str, List[str]] = defaultdict(list)

    # Age verification

    def build_verification(
        self,
        user_id: str,
        birth_date,
        method=AgeVerificationMethod.SELF_DECLARATION,
        region: RegionLike = RegionCode.EU,
    ) -> AgeVerificationResult:
        """Validate and compute a verification result without storing it."""
        requirement = self._resolver.requirements_for(region)
        method = coerce_enum(AgeVerificationMethod, method)
        try:
            birth = parse_date(birth_date)
        except ValueError:
            raise PrivacyValidationError(f"Invalid birth date '{birth_date}'") from None

        now = self._clock()
        today = now.date()
        if birth > today:
            raise FutureBirthDateError(f"Birth date {birth.isoformat()} is in the future")

        age = age_on(birth, today)
        requires_parental = requirement.parental_consent_required and age < requirement.minimum_age
        return AgeVerificationResult(
            user_id=user_id,
            birth_date=birth,
            age=age,
            region=requirement.region,
            method=method,
            verified=method is not AgeVerificationMethod.SELF_DECLARATION,
            requires_parental_consent=requires_parental,
            verified_at=now,
        )

    def store_verification(self, result: AgeVerificationResult) -> AgeVerificationResult:
        self._verifications[result.user_id] = result
        if result.requires_parental_consent:
            logger.info(
                f"User {result.user_id} is {result.age} in {result.region.value} "
                f"(minimum {self._resolver.minimum_age(result.region)}); parental consent required"
            )
        return result

    def verify_age(
        self,
        user_id: str,
        birth_date,
        method=AgeVerificationMethod.SELF_DECLARATION,
        region: RegionLike = RegionCode.EU,
    ) -> AgeVerificationResult:
        return self.store_verification(self.build_verification(user_id, birth_date, method, region))

    def verification_for(self, user_id: str) -> Optional[AgeVerificationResult]:
        return self._verifications.get(user_id)

    # Parental consent workflow

    def get_request(self, request_id: str) -> ParentalConsentRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise UnknownRequestError(f"Parental consent request '{request_id}' not found")
        return request

    def find_request(self, request_id: str) -> Optional[ParentalConsentRequest]:
        return self._requests.get(request_id)

    def replay_request(self, request_id: Optional[str], user_id: str) -> Optional[ParentalConsentRequest]:
        existing = self._requests.get(request_id) if request_id else None
        if existing is not None and existing.user_id != user_id:
            raise DuplicateIdError(f"Parental consent request id '{request_id}' is already in use")
        return existing

    def requests_for(self, user_id: str) -> List[ParentalConsentRequest]:
        return [self._requests[request_id] for request_id in self._requests_by_user.get(user_id, [])]

    def has_verified_parental_consent(self, user_id: str) -> bool:
        return any(
            request.status is ParentalConsentStatus.VERIFIED for request in self.requests_for(user_id)
        )

    def requires_parental_consent(self, user_id: str) -> bool:
        """True while the user is a verified minor without verified parental consent."""
        verification = self._verifications.get(user_id)
        if verification is None or not verification.requires_parental_consent:
            return False
        return not self.has_verified_parental_consent(user_id)

    def build_parental_request(
        self,
        user_id: str,
        parent_email: str,
        request_id: Optional[str] = None,
    ) -> ParentalConsentRequest:
        if self.has_verified_parental_consent(user_id):
            raise ParentalConsentAlreadyVerifiedError(
                f"Parental consent already verified for user {user_id}"
            )
        email = (parent_email or "").strip()
        if not _EMAIL_PATTERN.match(email):
            raise PrivacyValidationError(f"Invalid parent email '{parent_email}'")

        verification = self._verifications.get(user_id)
        region = verification.region if verification else None
        now = self._clock()
        return ParentalConsentRequest(
            id=request_id or new_id(),
            user_id=user_id,
            parent_email=email,
            status=ParentalConsentStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + self._resolver.parental_consent_timeout(region),
            region=region,
        )

    def plan_transition(self, request_id: str, new_status) -> ParentalConsentRequest:
        """Return the request as it would look after the move; nothing is stored."""
        request = self.get_request(request_id)
        new_status = coerce_enum(ParentalConsentStatus, new_status, InvalidTransitionError)
        if new_status not in _PARENTAL_TRANSITIONS[request.status]:
            raise InvalidTransitionError(
                f"Parental consent request {request_id} cannot move from "
                f"{request.status.value} to {new_status.value}"
            )
        now = self._clock()
        if new_status is ParentalConsentStatus.VERIFIED and now > request.expires_at:
            raise InvalidTransitionError(
                f"Parental consent request {request_id} expired at {request.expires_at.isoformat()}"
            )
        if new_status is ParentalConsentStatus.VERIFIED and self.has_verified_parental_consent(request.user_id):
            raise ParentalConsentAlreadyVerifiedError(
                f"Parental consent already verified for user {request.user_id}"
            )
        return replace(request, status=new_status, updated_at=now)

    def store_request(self, request: ParentalConsentRequest) -> ParentalConsentRequest:
        previous = self._requests.get(request.id)
        if previous is not None and previous.user_id != request.user_id:
            raise DuplicateIdError(f"Parental consent request id '{request.id}' is already in use")
        if request.id not in self._requests:
            self._requests_by_user[request.user_id].append(request.id)
        self._requests[request.id] = request
        logger.info(
            f"Parental consent request {request.id} for user {request.user_id} is {request.status.value}"
        )
        return request

    def request_parental_consent(
        self, user_id: str, parent_email: str, request_id: Optional[str] = None
    ) -> ParentalConsentRequest:
        existing = self.replay_request(request_id, user_id)
        if existing is not None:
            return existing
        return self.store_request(self.build_parental_request(user_id, parent_email, request_id))

    def mark_sent(self, request_id: str) -> ParentalConsentRequest:
        return self.store_request(self.plan_transition(request_id, ParentalConsentStatus.SENT))

    def confirm_parental_consent(self, request_id: str) -> ParentalConsentRequest:
        return self.store_request(self.plan_transition(request_id, ParentalConsentStatus.VERIFIED))

    def reject_parental_consent(self, request_id: str) -> ParentalConsentRequest:
        return self.store_request(self.plan_transition(request_id, ParentalConsentStatus.REJECTED))

    def plan_expirations(self, now: Optional[datetime] = None) -> List[ParentalConsentRequest]:
        """Rejected copies of every open request whose response window has elapsed."""
        now = now or self._clock()
        return [
            replace(request, status=ParentalConsentStatus.REJECTED, updated_at=now)
            for request in self._requests.values()
            if request.status in _OPEN_STATUSES and now > request.expires_at
        ]

    def expire_stale(self, now: Optional[datetime] = None) -> List[ParentalConsentRequest]:
        expired = [self.store_request(request) for request in self.plan_expirations(now)]
        if expired:
            logger.warning(f"Expired {len(expired)} unanswered parental consent request(s)")
        return expired

    def load(
        self,
        verification: Optional[AgeVerificationResult],
        requests: Iterable[ParentalConsentRequest],
    ) -> None:
        """Merge authoritative state fetched from the remote authority."""
        if verification is not None:
            try:
                self._resolver.requirements_for(verification.region)
            except UnknownRegionError:
                logger.warning(
                    f"Ignoring age verification for user {verification.user_id}: "
                    f"region {verification.region.value} is not configured"
                )
            else:
                self._verifications[verification.user_id] = verification
        for request in requests:
            if request.id not in self._requests:
                self._requests_by_user[request.user_id].append(request.id)
            self._requests[request.id] = request
