"""Append-only consent ledger.

Every grant and every withdrawal is a new ``ConsentRecord``; nothing is ever
edited or removed. The current state of a purpose is the record with the latest
timestamp (ties go to the record appended last), so withdrawn purposes need no
special handling when the ledger is reduced to ``PrivacyPreferences``.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .age_gate import AgeGate
from .errors import (
    DuplicateIdError,
    InvalidLegalBasisError,
    InvalidPurposeError,
    NoActiveConsentError,
    ParentalConsentRequiredError,
    PrivacyValidationError,
    UnknownRegionError,
)
from .models import (
    BatchFailure,
    BatchUpdateResult,
    ConsentMethod,
    ConsentRecord,
    ConsentUpdate,
    DataProcessingPurpose,
    LegalBasis,
    PrivacyPreferences,
    PurposeConsent,
    RenewalCheck,
    coerce_enum,
    new_id,
    utc_now,
)
from .regions import PurposeLike, RegionLike, RegionPolicyResolver

logger = logging.getLogger(__name__)


def parse_version(value: str) -> Tuple[int, ...]:
    """Turn ``"v2.1"`` into ``(2, 1)``. Trailing zeros are dropped so "2" == "2.0"."""
    parts = []
    for chunk in str(value).strip().lstrip("vV").split("."):
        digits = re.match(r"\d+", chunk)
        parts.append(int(digits.group()) if digits else 0)
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


class ConsentLedger:
    def __init__(
        self,
        resolver: RegionPolicyResolver,
        age_gate: Optional[AgeGate] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._resolver = resolver
        self._age_gate = age_gate
        self._clock = clock
        self._entries: Dict[str, List[ConsentRecord]] = defaultdict(list)
        self._by_id: Dict[str, ConsentRecord] = {}

    # Building records (validation only, nothing is stored)

    def build_grant(
        self,
        user_id: str,
        purpose: PurposeLike,
        legal_basis: Union[LegalBasis, str],
        region: RegionLike,
        method: Union[ConsentMethod, str] = ConsentMethod.WEB,
        version: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> ConsentRecord:
        purpose = coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)
        basis = coerce_enum(LegalBasis, legal_basis, InvalidLegalBasisError)
        method = coerce_enum(ConsentMethod, method)
        requirement = self._resolver.requirements_for(region)

        allowed = self._resolver.legal_bases_allowed(requirement.region, purpose)
        if basis not in allowed:
            permitted = ", ".join(sorted(item.value for item in allowed))
            raise InvalidLegalBasisError(
                f"Legal basis '{basis.value}' is not permitted for '{purpose.value}' "
                f"in {requirement.region.value} (allowed: {permitted})"
            )

        if (
            purpose is not DataProcessingPurpose.ESSENTIAL
            and self._age_gate is not None
            and self._age_gate.requires_parental_consent(user_id)
        ):
            raise ParentalConsentRequiredError(
                f"User {user_id} needs verified parental consent before granting '{purpose.value}'"
            )

        if version is None:
            version = self._resolver.required_consent_version(requirement.region, purpose)
        if not str(version).strip():
            raise PrivacyValidationError("Consent version is required")

        return ConsentRecord(
            id=record_id or new_id(),
            user_id=user_id,
            purpose=purpose,
            legal_basis=basis,
            region=requirement.region,
            granted=True,
            consent_method=method,
            consent_version=str(version).strip(),
            timestamp=self._clock(),
        )

    def build_withdrawal(
        self, user_id: str, purpose: PurposeLike, record_id: Optional[str] = None
    ) -> ConsentRecord:
        purpose = coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)
        latest = self.latest(user_id, purpose)
        if latest is None or not latest.granted:
            raise NoActiveConsentError(f"User {user_id} has no active consent for '{purpose.value}'")
        now = self._clock()
        return ConsentRecord(
            id=record_id or new_id(),
            user_id=user_id,
            purpose=purpose,
            legal_basis=latest.legal_basis,
            region=latest.region,
            granted=False,
            consent_method=latest.consent_method,
            consent_version=latest.consent_version,
            timestamp=now,
            withdrawn_at=now,
        )

    def build_update(
        self,
        user_id: str,
        update: ConsentUpdate,
        region: Optional[RegionLike] = None,
        method: Union[ConsentMethod, str] = ConsentMethod.WEB,
    ) -> ConsentRecord:
        """Build the record for one batch entry, filling gaps from the purpose's history."""
        if not update.granted:
            return self.build_withdrawal(user_id, update.purpose, update.record_id)

        purpose = coerce_enum(DataProcessingPurpose, update.purpose, InvalidPurposeError)
        latest = self.latest(user_id, purpose)
        target_region = update.region or (latest.region if latest else None) or region
        if target_region is None:
            raise UnknownRegionError(f"No region given for '{purpose.value}'")
        legal_basis = update.legal_basis or (latest.legal_basis if latest else LegalBasis.CONSENT)
        version = update.version or self._resolver.required_consent_version(target_region, purpose)
        return self.build_grant(
            user_id,
            purpose,
            legal_basis,
            target_region,
            update.method or method,
            version,
            update.record_id,
        )

    # Mutations

    def append(self, record: ConsentRecord) -> ConsentRecord:
        """Add ``record`` to the ledger. Re-appending a known id returns the stored record."""
        existing = self.replay(record.id, record.user_id, record.purpose, record.granted)
        if existing is not None:
            return existing
        self._entries[record.user_id].append(record)
        self._by_id[record.id] = record
        action = "granted" if record.granted else "withdrew"
        logger.info(
            f"User {record.user_id} {action} consent for {record.purpose.value} "
            f"({record.region.value}, v{record.consent_version})"
        )
        return record

    def record_consent(
        self,
        user_id: str,
        purpose: PurposeLike,
        legal_basis: Union[LegalBasis, str],
        region: RegionLike,
        method: Union[ConsentMethod, str] = ConsentMethod.WEB,
        version: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> ConsentRecord:
        return self.append(
            self.build_grant(user_id, purpose, legal_basis, region, method, version, record_id)
        )

    def withdraw_consent(
        self, user_id: str, purpose: PurposeLike, record_id: Optional[str] = None
    ) -> ConsentRecord:
        existing = self.replay(record_id, user_id, purpose, False)
        if existing is not None:
            return existing
        return self.append(self.build_withdrawal(user_id, purpose, record_id))

    def batch_update_consent(
        self,
        user_id: str,
        updates: Iterable[Union[ConsentUpdate, dict]],
        region: Optional[RegionLike] = None,
        method: Union[ConsentMethod, str] = ConsentMethod.WEB,
    ) -> BatchUpdateResult:
        """Apply each update on its own; a failing purpose never blocks the others."""
        result = BatchUpdateResult()
        for raw in updates:
            try:
                update = ConsentUpdate.coerce(raw)
                record = self.replay(update.record_id, user_id, update.purpose, update.granted)
                if record is None:
                    record = self.append(self.build_update(user_id, update, region, method))
            except PrivacyValidationError as exc:
                result.failed.append(
                    BatchFailure(purpose=ConsentUpdate.purpose_of(raw), reason=exc.message, code=exc.code)
                )
                continue
            result.updated += 1
            result.records.append(record)
        if result.failed:
            logger.warning(
                f"Batch consent update for user {user_id}: {result.updated} applied, "
                f"{len(result.failed)} failed"
            )
        return result

    def load(self, records: Iterable[ConsentRecord]) -> int:
        """Merge records from the remote authority; returns how many were new."""
        added = 0
        for record in records:
            if record.id in self._by_id:
                continue
            self._entries[record.user_id].append(record)
            self._by_id[record.id] = record
            added += 1
        return added

    # Reads

    def get(self, record_id: str) -> Optional[ConsentRecord]:
        return self._by_id.get(record_id)

    def replay(
        self, record_id: Optional[str], user_id: str, purpose: PurposeLike, granted: bool
    ) -> Optional[ConsentRecord]:
        """Return the stored record for a retried id, or None if the id is unused.

        Raises ``DuplicateIdError`` when the id already names a record for another
        user, another purpose or the opposite decision.
        """
        existing = self._by_id.get(record_id) if record_id else None
        if existing is None:
            return None
        purpose = coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)
        if existing.user_id != user_id or existing.purpose is not purpose or existing.granted != granted:
            raise DuplicateIdError(f"Consent record id '{record_id}' is already in use")
        return existing

    def history(self, user_id: str, purpose: Optional[PurposeLike] = None) -> List[ConsentRecord]:
        records = list(self._entries.get(user_id, []))
        if purpose is not None:
            wanted = coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)
            records = [record for record in records if record.purpose is wanted]
        # sorted() is stable, so records sharing a timestamp keep append order
        return sorted(records, key=lambda record: record.timestamp)

    def latest(self, user_id: str, purpose: PurposeLike) -> Optional[ConsentRecord]:
        purpose = coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)
        current = None
        for record in self._entries.get(user_id, []):
            if record.purpose is purpose and (current is None or record.timestamp >= current.timestamp):
                current = record
        return current

    def current_state(self, user_id: str) -> PrivacyPreferences:
        latest: Dict[DataProcessingPurpose, ConsentRecord] = {}
        for record in self._entries.get(user_id, []):
            current = latest.get(record.purpose)
            if current is None or record.timestamp >= current.timestamp:
                latest[record.purpose] = record
        updated_at = max((record.timestamp for record in latest.values()), default=None)
        return PrivacyPreferences(
            user_id=user_id,
            purposes={purpose: PurposeConsent.from_record(record) for purpose, record in latest.items()},
            updated_at=updated_at,
        )

    def needs_renewal(self, user_id: str, now: Optional[datetime] = None) -> RenewalCheck:
        now = now or self._clock()
        expired: List[DataProcessingPurpose] = []
        reasons: List[str] = []
        renew_by: List[datetime] = []
        upcoming: List[datetime] = []

        for purpose, state in self.current_state(user_id).purposes.items():
            if not state.granted:
                continue
            try:
                required = self._resolver.required_consent_version(state.region, purpose)
                validity = self._resolver.consent_validity(state.region)
                grace = self._resolver.renewal_grace(state.region)
            except UnknownRegionError:
                expired.append(purpose)
                reasons.append(f"{purpose.value}: region {state.region.value} is no longer configured")
                continue

            outdated = parse_version(state.consent_version) < parse_version(required)
            lapsed = now - state.updated_at > validity
            if outdated:
                reasons.append(
                    f"{purpose.value}: consent version {state.consent_version} is older than "
                    f"required version {required}"
                )
            if lapsed:
                reasons.append(
                    f"{purpose.value}: consent from {state.updated_at.date().isoformat()} exceeded "
                    f"the {validity.days}-day validity period"
                )
            if outdated or lapsed:
                expired.append(purpose)
                renew_by.append(now + grace)
            else:
                upcoming.append(state.updated_at + validity)

        if expired:
            deadline = min(renew_by) if renew_by else now
        else:
            deadline = min(upcoming) if upcoming else None
        return RenewalCheck(
            user_id=user_id,
            needs_renewal=bool(expired),
            expired_purposes=expired,
            reasons=reasons,
            deadline=deadline,
        )
