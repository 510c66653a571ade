"""
Tests for the data-subject rights request tracker.
"""

from datetime import timedelta

import pytest

from privacy.errors import (
    AlreadyExtendedError,
    DuplicateIdError,
    InvalidTransitionError,
    PrivacyValidationError,
    UnknownRegionError,
    UnknownRequestError,
)
from privacy.models import RequestPriority, RequestStatus, RightsRequestType
from privacy.rights import ALLOWED_TRANSITIONS, check_transition_table


USER = "user-123"


def _in_progress(tracker, region="EU", request_type="access", **kwargs):
    request = tracker.submit(USER, request_type, region=region, **kwargs)
    tracker.transition(request.id, RequestStatus.IDENTITY_VERIFICATION_PENDING)
    return tracker.transition(request.id, RequestStatus.IN_PROGRESS)


class TestSubmit:
    def test_deadline_comes_from_region(self, tracker, clock):
        request = tracker.submit(USER, "erasure", "Delete my account", region="US")

        assert request.status is RequestStatus.SUBMITTED
        assert request.type is RightsRequestType.ERASURE
        assert request.deadline == clock.now + timedelta(days=45)
        assert request.extended_deadline is None

    def test_priority_does_not_change_deadline(self, tracker):
        low = tracker.submit(USER, "access", priority="low", region="EU")
        urgent = tracker.submit(USER, "access", priority="urgent", region="EU")
        assert low.deadline == urgent.deadline

    def test_invalid_type_and_region(self, tracker):
        with pytest.raises(PrivacyValidationError):
            tracker.submit(USER, "forget_me")
        with pytest.raises(UnknownRegionError):
            tracker.submit(USER, "access", region="BR")

    def test_unknown_request(self, tracker):
        with pytest.raises(UnknownRequestError):
            tracker.get("missing")

    def test_repeated_request_id_returns_original(self, tracker):
        first = tracker.submit(USER, "access", request_id="req-1")
        assert tracker.submit(USER, "access", request_id="req-1") is first

    def test_request_id_of_another_user_is_refused(self, tracker):
        tracker.submit("alice", "erasure", "delete me", request_id="req-1")

        with pytest.raises(DuplicateIdError):
            tracker.submit("bob", "erasure", request_id="req-1")

        assert tracker.requests_for("bob") == []
        assert tracker.get("req-1").user_id == "alice"


class TestTransitions:
    def test_full_lifecycle(self, tracker, clock):
        request = _in_progress(tracker)
        clock.advance(days=3)

        fulfilled = tracker.transition(request.id, "fulfilled", note="Export sent")

        assert fulfilled.status is RequestStatus.FULFILLED
        assert fulfilled.resolved_at == clock.now
        assert fulfilled.resolution_note == "Export sent"
        assert fulfilled.deadline == request.deadline

    def test_cannot_skip_identity_verification(self, tracker):
        request = tracker.submit(USER, "access")
        with pytest.raises(InvalidTransitionError):
            tracker.transition(request.id, RequestStatus.IN_PROGRESS)

    def test_terminal_states_are_final(self, tracker):
        request = _in_progress(tracker)
        tracker.transition(request.id, RequestStatus.REJECTED)

        with pytest.raises(InvalidTransitionError):
            tracker.transition(request.id, RequestStatus.IN_PROGRESS)
        with pytest.raises(InvalidTransitionError):
            tracker.transition(request.id, RequestStatus.WITHDRAWN)

    def test_withdraw_from_any_open_state(self, tracker):
        request = tracker.submit(USER, "objection")
        assert tracker.transition(request.id, "withdrawn").status is RequestStatus.WITHDRAWN

    def test_unknown_status(self, tracker):
        request = tracker.submit(USER, "access")
        with pytest.raises(InvalidTransitionError):
            tracker.transition(request.id, "archived")

    def test_every_status_has_rules(self):
        assert set(ALLOWED_TRANSITIONS) == set(RequestStatus)

    def test_incomplete_table_is_rejected(self):
        table = dict(ALLOWED_TRANSITIONS)
        del table[RequestStatus.EXTENDED]

        with pytest.raises(RuntimeError, match="extended"):
            check_transition_table(table)


class TestExtend:
    def test_extend_sets_extended_deadline_once(self, tracker):
        request = _in_progress(tracker, region="EU")

        extended = tracker.extend(request.id, "Large dataset")

        assert extended.status is RequestStatus.EXTENDED
        assert extended.deadline == request.deadline
        assert extended.extended_deadline == request.deadline + timedelta(days=60)
        assert extended.effective_deadline == extended.extended_deadline
        assert extended.extension_reason == "Large dataset"

    def test_second_extend_fails_and_keeps_first(self, tracker, clock):
        request = _in_progress(tracker)
        first = tracker.extend(request.id, "first")
        clock.advance(days=1)

        with pytest.raises(AlreadyExtendedError):
            tracker.extend(request.id, "second")

        stored = tracker.get(request.id)
        assert stored.extended_deadline == first.extended_deadline
        assert stored.extension_reason == "first"

    def test_extend_requires_in_progress(self, tracker):
        request = tracker.submit(USER, "access")
        with pytest.raises(InvalidTransitionError):
            tracker.extend(request.id, "too early")

    def test_transition_to_extended_goes_through_extend(self, tracker):
        request = _in_progress(tracker)

        extended = tracker.transition(request.id, RequestStatus.EXTENDED, note="Complex request")

        assert extended.extended_deadline is not None
        assert extended.extension_reason == "Complex request"
        with pytest.raises(AlreadyExtendedError):
            tracker.transition(request.id, RequestStatus.EXTENDED)

    def test_extended_can_be_fulfilled(self, tracker):
        request = _in_progress(tracker)
        tracker.extend(request.id, "more time")
        assert tracker.transition(request.id, "fulfilled").status is RequestStatus.FULFILLED


class TestOverdue:
    def test_us_erasure_overdue_after_45_days(self, tracker, clock):
        request = tracker.submit(USER, "erasure", region="US")

        assert tracker.overdue(clock.now + timedelta(days=44)) == []
        assert [item.id for item in tracker.overdue(clock.now + timedelta(days=46))] == [request.id]

    def test_terminal_requests_are_never_overdue(self, tracker, clock):
        request = _in_progress(tracker, region="US", request_type="erasure")
        tracker.transition(request.id, "fulfilled")

        assert tracker.overdue(clock.now + timedelta(days=100)) == []

    def test_extension_postpones_overdue(self, tracker, clock):
        request = _in_progress(tracker, region="EU")
        tracker.extend(request.id, "volume")

        assert tracker.overdue(clock.now + timedelta(days=31)) == []
        assert len(tracker.overdue(clock.now + timedelta(days=91))) == 1

    def test_ordered_by_deadline_then_priority(self, tracker, clock):
        low = tracker.submit(USER, "access", priority=RequestPriority.LOW, region="EU")
        urgent = tracker.submit(USER, "access", priority=RequestPriority.URGENT, region="EU")
        earlier = tracker.submit(USER, "access", priority=RequestPriority.LOW, region="KR")

        overdue = tracker.overdue(clock.now + timedelta(days=60))

        assert [item.id for item in overdue] == [earlier.id, urgent.id, low.id]

    def test_filter_by_user(self, tracker, clock):
        tracker.submit(USER, "access", region="KR")
        tracker.submit("someone-else", "access", region="KR")

        assert len(tracker.overdue(clock.now + timedelta(days=11), user_id=USER)) == 1
