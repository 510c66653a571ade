"""Data-subject rights request lifecycle and deadline tracking."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
import logging
from typing import Callable, Dict, Iterable, List, Optional, Union

from .errors import (
    AlreadyExtendedError,
    DuplicateIdError,
    InvalidTransitionError,
    PrivacyValidationError,
    UnknownRequestError,
)
from .models import (
    PRIORITY_RANK,
    DataRightsRequest,
    RequestPriority,
    RequestStatus,
    RightsRequestType,
    coerce_enum,
    new_id,
    utc_now,
)
from .regions import RegionLike, RegionPolicyResolver

logger = logging.getLogger(__name__)

# submitted -> identity_verification_pending -> in_progress -> {fulfilled | rejected}
# in_progress -> extended -> {fulfilled | rejected}
# any non-terminal state -> withdrawn
ALLOWED_TRANSITIONS: Dict[RequestStatus, frozenset] = {
    RequestStatus.SUBMITTED: frozenset(
        {RequestStatus.IDENTITY_VERIFICATION_PENDING, RequestStatus.WITHDRAWN}
    ),
    RequestStatus.IDENTITY_VERIFICATION_PENDING: frozenset(
        {RequestStatus.IN_PROGRESS, RequestStatus.WITHDRAWN}
    ),
    RequestStatus.IN_PROGRESS: frozenset(
        {
            RequestStatus.EXTENDED,
            RequestStatus.FULFILLED,
            RequestStatus.REJECTED,
            RequestStatus.WITHDRAWN,
        }
    ),
    RequestStatus.EXTENDED: frozenset(
        {RequestStatus.FULFILLED, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
    ),
    RequestStatus.FULFILLED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.WITHDRAWN: frozenset(),
}


def check_transition_table(table: Dict[RequestStatus, frozenset]) -> None:
    missing = [status.value for status in RequestStatus if status not in table]
    if missing:
        raise RuntimeError(f"Request status(es) without a transition entry: {', '.join(missing)}")


check_transition_table(ALLOWED_TRANSITIONS)


class RightsRequestTracker:
    """Owns every ``DataRightsRequest``.

    ``deadline`` is fixed at submission. The only other deadline ever written is
    ``extended_deadline``, and only once, through ``extend``.
    """

    def __init__(self, resolver: RegionPolicyResolver, clock: Callable[[], datetime] = utc_now) -> None:
        self._resolver = resolver
        self._clock = clock
        self._requests: Dict[str, DataRightsRequest] = {}

    # Planning (validation only)

    def build_request(
        self,
        user_id: str,
        request_type: Union[RightsRequestType, str],
        description: str = "",
        priority: Union[RequestPriority, str] = RequestPriority.MEDIUM,
        region: RegionLike = "EU",
        request_id: Optional[str] = None,
    ) -> DataRightsRequest:
        request_type = coerce_enum(RightsRequestType, request_type)
        priority = coerce_enum(RequestPriority, priority)
        requirement = self._resolver.requirements_for(region)
        if not user_id:
            raise PrivacyValidationError("A user id is required to submit a rights request")

        now = self._clock()
        days = self._resolver.deadline_days(requirement.region, request_type)
        return DataRightsRequest(
            id=request_id or new_id(),
            user_id=user_id,
            region=requirement.region,
            type=request_type,
            description=description or "",
            priority=priority,
            status=RequestStatus.SUBMITTED,
            submitted_at=now,
            deadline=now + timedelta(days=days),
            updated_at=now,
        )

    def plan_extension(self, request_id: str, reason: str) -> DataRightsRequest:
        request = self.get(request_id)
        if request.extended_deadline is not None:
            raise AlreadyExtendedError(
                f"Request {request_id} was already extended to {request.extended_deadline.isoformat()}"
            )
        if RequestStatus.EXTENDED not in ALLOWED_TRANSITIONS[request.status]:
            raise InvalidTransitionError(
                f"Request {request_id} cannot be extended while {request.status.value}"
            )
        days = self._resolver.extension_days(request.region, request.type)
        return replace(
            request,
            status=RequestStatus.EXTENDED,
            extended_deadline=request.deadline + timedelta(days=days),
            extension_reason=reason,
            updated_at=self._clock(),
        )

    def plan_transition(
        self,
        request_id: str,
        new_status: Union[RequestStatus, str],
        note: Optional[str] = None,
    ) -> DataRightsRequest:
        request = self.get(request_id)
        new_status = coerce_enum(RequestStatus, new_status, InvalidTransitionError)
        if new_status is RequestStatus.EXTENDED:
            return self.plan_extension(request_id, note or "")
        if new_status not in ALLOWED_TRANSITIONS[request.status]:
            raise InvalidTransitionError(
                f"Request {request_id} cannot move from {request.status.value} to {new_status.value}"
            )
        now = self._clock()
        terminal = not ALLOWED_TRANSITIONS[new_status]
        return replace(
            request,
            status=new_status,
            updated_at=now,
            resolved_at=now if terminal else None,
            resolution_note=note if note is not None else request.resolution_note,
        )

    # Mutations

    def store(self, request: DataRightsRequest) -> DataRightsRequest:
        previous = self._requests.get(request.id)
        if previous is not None and previous.user_id != request.user_id:
            raise DuplicateIdError(f"Rights request id '{request.id}' is already in use")
        self._requests[request.id] = request
        if previous is None:
            logger.info(
                f"Rights request {request.id} ({request.type.value}) submitted by user {request.user_id}, "
                f"due {request.deadline.isoformat()}"
            )
        elif previous.status is not request.status:
            logger.info(
                f"Rights request {request.id}: {previous.status.value} -> {request.status.value}"
            )
        return request

    def submit(
        self,
        user_id: str,
        request_type: Union[RightsRequestType, str],
        description: str = "",
        priority: Union[RequestPriority, str] = RequestPriority.MEDIUM,
        region: RegionLike = "EU",
        request_id: Optional[str] = None,
    ) -> DataRightsRequest:
        existing = self.replay(request_id, user_id, request_type)
        if existing is not None:
            return existing
        return self.store(
            self.build_request(user_id, request_type, description, priority, region, request_id)
        )

    def extend(self, request_id: str, reason: str) -> DataRightsRequest:
        return self.store(self.plan_extension(request_id, reason))

    def transition(
        self,
        request_id: str,
        new_status: Union[RequestStatus, str],
        note: Optional[str] = None,
    ) -> DataRightsRequest:
        return self.store(self.plan_transition(request_id, new_status, note))

    def load(self, requests: Iterable[DataRightsRequest]) -> None:
        """Adopt the authority's copy of each request."""
        for request in requests:
            self._requests[request.id] = request

    # Reads

    def get(self, request_id: str) -> DataRightsRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise UnknownRequestError(f"Rights request '{request_id}' not found")
        return request

    def find(self, request_id: str) -> Optional[DataRightsRequest]:
        return self._requests.get(request_id)

    def replay(
        self, request_id: Optional[str], user_id: str, request_type: Union[RightsRequestType, str]
    ) -> Optional[DataRightsRequest]:
        """Return the stored request for a retried submission, or None if the id is unused."""
        existing = self._requests.get(request_id) if request_id else None
        if existing is None:
            return None
        if existing.user_id != user_id or existing.type is not coerce_enum(RightsRequestType, request_type):
            raise DuplicateIdError(f"Rights request id '{request_id}' is already in use")
        return existing

    def requests_for(self, user_id: str) -> List[DataRightsRequest]:
        return sorted(
            (request for request in self._requests.values() if request.user_id == user_id),
            key=lambda request: request.submitted_at,
        )

    def overdue(self, now: Optional[datetime] = None, user_id: Optional[str] = None) -> List[DataRightsRequest]:
        now = now or self._clock()
        late = [
            request
            for request in self._requests.values()
            if not request.is_terminal
            and request.effective_deadline < now
            and (user_id is None or request.user_id == user_id)
        ]
        return sorted(late, key=lambda request: (request.effective_deadline, PRIORITY_RANK[request.priority]))
