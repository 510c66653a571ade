"""Async facade that wires the components to the remote authority and local cache.

Writes are write-through: the component validates and builds the new entity,
the change is pushed to the remote authority, and only after the authority
acknowledges it is the entity committed locally. A failed or cancelled push
leaves local state untouched.

Mutations for one user are serialised with a per-user ``asyncio.Lock``. Reads
never take the lock; they see the last committed state and report ``stale``
when the user's last successful sync is older than the staleness window.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Union

from .age_gate import AgeGate
from .errors import PrivacyEngineError
from .evaluator import DEFAULT_COMPLIANCE_THRESHOLD, ComplianceEvaluator
from .ledger import ConsentLedger
from .models import (
    AgeVerificationMethod,
    AgeVerificationResult,
    BatchFailure,
    BatchUpdateResult,
    ComplianceReport,
    ConsentMethod,
    ConsentRecord,
    ConsentUpdate,
    DataRightsRequest,
    MutationKind,
    ParentalConsentRequest,
    ParentalConsentStatus,
    PrivacyDashboard,
    PrivacyPreferences,
    RenewalCheck,
    RequestPriority,
    SyncMutation,
    utc_now,
)
from .regions import PurposeLike, RegionLike, RegionPolicyResolver
from .rights import RightsRequestTracker

if TYPE_CHECKING:
    from services.authority import ComplianceAuthority
    from services.cache_store import CacheStore

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_WINDOW = timedelta(minutes=5)


@dataclass
class PreferencesView:
    preferences: PrivacyPreferences
    stale: bool
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.preferences.to_dict()
        data["stale"] = self.stale
        data["last_synced_at"] = self.last_synced_at.isoformat() if self.last_synced_at else None
        return data


class PrivacyComplianceEngine:
    def __init__(
        self,
        resolver: RegionPolicyResolver,
        authority: "ComplianceAuthority",
        cache: "CacheStore",
        *,
        staleness_window: timedelta = DEFAULT_STALENESS_WINDOW,
        compliance_threshold: int = DEFAULT_COMPLIANCE_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.resolver = resolver
        self.age_gate = AgeGate(resolver, clock)
        self.ledger = ConsentLedger(resolver, self.age_gate, clock)
        self.rights = RightsRequestTracker(resolver, clock)
        self.evaluator = ComplianceEvaluator(
            self.ledger, self.rights, self.age_gate, compliance_threshold, clock
        )
        self._authority = authority
        self._cache = cache
        self._staleness_window = staleness_window
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_synced: Dict[str, datetime] = {}

    # Sync bookkeeping

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def last_synced_at(self, user_id: str) -> Optional[datetime]:
        return self._last_synced.get(user_id)

    def is_stale(self, user_id: str) -> bool:
        last = self._last_synced.get(user_id)
        return last is None or self._clock() - last > self._staleness_window

    def pending_mutations(self, user_id: str) -> List[SyncMutation]:
        return self._cache.list_pending(user_id)

    async def _write_through(self, kind: MutationKind, entity: Any, commit: Callable[[Any], Any]) -> Any:
        user_id = entity.user_id
        mutation = SyncMutation.for_entity(kind, user_id, entity, now=self._clock())
        try:
            # Cache backends may touch disk; keep that work off the event loop.
            await asyncio.to_thread(self._cache.add_pending, user_id, mutation)
            await self._authority.push(mutation)
        except asyncio.CancelledError:
            logger.warning(
                f"Sync of {kind.value} {mutation.entity_id} for user {user_id} was cancelled; "
                "nothing applied locally"
            )
            raise
        except PrivacyEngineError as exc:
            logger.warning(
                f"Authority did not accept {kind.value} {mutation.entity_id} for user {user_id}: {exc.message}"
            )
            raise
        finally:
            await asyncio.to_thread(self._cache.remove_pending, user_id, mutation.id)

        committed = commit(entity)
        self._last_synced[user_id] = self._clock()
        return committed

    def _commit_consent(self, record: ConsentRecord) -> ConsentRecord:
        stored = self.ledger.append(record)
        self._cache.put_preferences(record.user_id, self.ledger.current_state(record.user_id))
        return stored

    # Consent

    async def record_consent(
        self,
        user_id: str,
        purpose: PurposeLike,
        legal_basis,
        region: RegionLike,
        method=ConsentMethod.WEB,
        version: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> ConsentRecord:
        async with self._lock_for(user_id):
            existing = self.ledger.replay(record_id, user_id, purpose, True)
            if existing is not None:
                return existing
            record = self.ledger.build_grant(user_id, purpose, legal_basis, region, method, version, record_id)
            return await self._write_through(MutationKind.CONSENT_RECORD, record, self._commit_consent)

    async def withdraw_consent(
        self, user_id: str, purpose: PurposeLike, record_id: Optional[str] = None
    ) -> ConsentRecord:
        async with self._lock_for(user_id):
            existing = self.ledger.replay(record_id, user_id, purpose, False)
            if existing is not None:
                return existing
            record = self.ledger.build_withdrawal(user_id, purpose, record_id)
            return await self._write_through(MutationKind.CONSENT_RECORD, record, self._commit_consent)

    async def batch_update_consent(
        self,
        user_id: str,
        updates: Iterable[Union[ConsentUpdate, dict]],
        region: Optional[RegionLike] = None,
        method=ConsentMethod.WEB,
    ) -> BatchUpdateResult:
        """Apply each update independently; failures are collected, not raised."""
        result = BatchUpdateResult()
        async with self._lock_for(user_id):
            for raw in updates:
                try:
                    update = ConsentUpdate.coerce(raw)
                    record = self.ledger.replay(update.record_id, user_id, update.purpose, update.granted)
                    if record is None:
                        planned = self.ledger.build_update(user_id, update, region, method)
                        record = await self._write_through(
                            MutationKind.CONSENT_RECORD, planned, self._commit_consent
                        )
                except PrivacyEngineError as exc:
                    result.failed.append(
                        BatchFailure(purpose=ConsentUpdate.purpose_of(raw), reason=exc.message, code=exc.code)
                    )
                    continue
                result.updated += 1
                result.records.append(record)
        if result.failed:
            logger.warning(
                f"Batch consent update for user {user_id}: {result.updated} applied, {len(result.failed)} failed"
            )
        return result

    def current_state(self, user_id: str) -> PreferencesView:
        preferences = self._cache.get_preferences(user_id)
        if preferences is None:
            preferences = self.ledger.current_state(user_id)
            self._cache.put_preferences(user_id, preferences)
        return PreferencesView(
            preferences=preferences,
            stale=self.is_stale(user_id),
            last_synced_at=self._last_synced.get(user_id),
        )

    def consent_history(self, user_id: str, purpose: Optional[PurposeLike] = None) -> List[ConsentRecord]:
        return self.ledger.history(user_id, purpose)

    def needs_renewal(self, user_id: str, now: Optional[datetime] = None) -> RenewalCheck:
        check = self.ledger.needs_renewal(user_id, now)
        check.stale = self.is_stale(user_id)
        return check

    # Age gate

    async def verify_age(
        self,
        user_id: str,
        birth_date,
        method=AgeVerificationMethod.SELF_DECLARATION,
        region: RegionLike = "EU",
    ) -> AgeVerificationResult:
        async with self._lock_for(user_id):
            result = self.age_gate.build_verification(user_id, birth_date, method, region)
            return await self._write_through(
                MutationKind.AGE_VERIFICATION, result, self.age_gate.store_verification
            )

    async def request_parental_consent(
        self, user_id: str, parent_email: str, request_id: Optional[str] = None
    ) -> ParentalConsentRequest:
        async with self._lock_for(user_id):
            existing = self.age_gate.replay_request(request_id, user_id)
            if existing is not None:
                return existing
            request = self.age_gate.build_parental_request(user_id, parent_email, request_id)
            return await self._write_through(MutationKind.PARENTAL_CONSENT, request, self.age_gate.store_request)

    async def _move_parental_request(self, request_id: str, status: ParentalConsentStatus) -> ParentalConsentRequest:
        user_id = self.age_gate.get_request(request_id).user_id
        async with self._lock_for(user_id):
            planned = self.age_gate.plan_transition(request_id, status)
            return await self._write_through(MutationKind.PARENTAL_CONSENT, planned, self.age_gate.store_request)

    async def mark_parental_consent_sent(self, request_id: str) -> ParentalConsentRequest:
        return await self._move_parental_request(request_id, ParentalConsentStatus.SENT)

    async def confirm_parental_consent(self, request_id: str) -> ParentalConsentRequest:
        return await self._move_parental_request(request_id, ParentalConsentStatus.VERIFIED)

    async def reject_parental_consent(self, request_id: str) -> ParentalConsentRequest:
        return await self._move_parental_request(request_id, ParentalConsentStatus.REJECTED)

    async def expire_parental_requests(self, now: Optional[datetime] = None) -> List[ParentalConsentRequest]:
        expired = []
        for planned in self.age_gate.plan_expirations(now):
            async with self._lock_for(planned.user_id):
                expired.append(
                    await self._write_through(MutationKind.PARENTAL_CONSENT, planned, self.age_gate.store_request)
                )
        if expired:
            logger.warning(f"Expired {len(expired)} unanswered parental consent request(s)")
        return expired

    def age_verification(self, user_id: str) -> Optional[AgeVerificationResult]:
        return self.age_gate.verification_for(user_id)

    def parental_requests(self, user_id: str) -> List[ParentalConsentRequest]:
        return self.age_gate.requests_for(user_id)

    # Rights requests

    async def submit_rights_request(
        self,
        user_id: str,
        request_type,
        description: str = "",
        priority=RequestPriority.MEDIUM,
        region: RegionLike = "EU",
        request_id: Optional[str] = None,
    ) -> DataRightsRequest:
        async with self._lock_for(user_id):
            existing = self.rights.replay(request_id, user_id, request_type)
            if existing is not None:
                return existing
            request = self.rights.build_request(user_id, request_type, description, priority, region, request_id)
            return await self._write_through(MutationKind.RIGHTS_REQUEST, request, self.rights.store)

    async def extend_rights_request(self, request_id: str, reason: str) -> DataRightsRequest:
        user_id = self.rights.get(request_id).user_id
        async with self._lock_for(user_id):
            planned = self.rights.plan_extension(request_id, reason)
            return await self._write_through(MutationKind.RIGHTS_REQUEST, planned, self.rights.store)

    async def transition_rights_request(
        self, request_id: str, new_status, note: Optional[str] = None
    ) -> DataRightsRequest:
        user_id = self.rights.get(request_id).user_id
        async with self._lock_for(user_id):
            planned = self.rights.plan_transition(request_id, new_status, note)
            return await self._write_through(MutationKind.RIGHTS_REQUEST, planned, self.rights.store)

    def get_rights_request(self, request_id: str) -> DataRightsRequest:
        return self.rights.get(request_id)

    def rights_requests(self, user_id: str) -> List[DataRightsRequest]:
        return self.rights.requests_for(user_id)

    def overdue_requests(
        self, now: Optional[datetime] = None, user_id: Optional[str] = None
    ) -> List[DataRightsRequest]:
        return self.rights.overdue(now, user_id=user_id)

    # Reporting

    def evaluate(self, user_id: str, now: Optional[datetime] = None) -> ComplianceReport:
        report = self.evaluator.evaluate(user_id, now)
        report.stale = self.is_stale(user_id)
        return report

    def dashboard(self, user_id: str, now: Optional[datetime] = None) -> PrivacyDashboard:
        dashboard = self.evaluator.dashboard(user_id, now)
        dashboard.stale = self.is_stale(user_id)
        return dashboard

    # Synchronisation with the authority

    async def refresh(self, user_id: str) -> PreferencesView:
        """Pull the authority's copy of the user's state and merge it locally."""
        async with self._lock_for(user_id):
            snapshot = await self._authority.fetch_snapshot(user_id)
            added = self.ledger.load(snapshot.consents)
            self.rights.load(snapshot.rights_requests)
            self.age_gate.load(snapshot.age_verification, snapshot.parental_requests)
            self._cache.put_preferences(user_id, self.ledger.current_state(user_id))
            self._last_synced[user_id] = self._clock()
        logger.info(
            f"Refreshed user {user_id} from authority: {added} new consent record(s), "
            f"{len(snapshot.rights_requests)} rights request(s)"
        )
        return self.current_state(user_id)

    async def aclose(self) -> None:
        await self._authority.aclose()
