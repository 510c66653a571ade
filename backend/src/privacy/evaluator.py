"""Read-only compliance scoring over the ledger, tracker and age gate."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, List, Optional

from .age_gate import AgeGate
from .ledger import ConsentLedger
from .models import (
    ComplianceFinding,
    ComplianceReport,
    ConsentSummary,
    DataProcessingPurpose,
    IssueKind,
    PrivacyDashboard,
    RequestStatus,
    RightsSummary,
    utc_now,
)
from .rights import RightsRequestTracker

logger = logging.getLogger(__name__)

DEFAULT_COMPLIANCE_THRESHOLD = 80

PENALTIES = {
    IssueKind.CONSENT_RENEWAL: 5,
    IssueKind.OVERDUE_REQUEST: 15,
    IssueKind.MISSING_PARENTAL_CONSENT: 25,
}

RECOMMENDATIONS = {
    IssueKind.CONSENT_RENEWAL: "Renew consent for purpose {subject}",
    IssueKind.OVERDUE_REQUEST: "Resolve or extend overdue rights request {subject}",
    IssueKind.MISSING_PARENTAL_CONSENT: (
        "Obtain verified parental consent or withdraw non-essential consents for user {subject}"
    ),
}

for _kind in IssueKind:
    if _kind not in PENALTIES or _kind not in RECOMMENDATIONS:
        raise RuntimeError(f"Issue kind {_kind.value} has no penalty or recommendation")


class ComplianceEvaluator:
    def __init__(
        self,
        ledger: ConsentLedger,
        tracker: RightsRequestTracker,
        age_gate: AgeGate,
        threshold: int = DEFAULT_COMPLIANCE_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._tracker = tracker
        self._age_gate = age_gate
        self.threshold = threshold
        self._clock = clock

    def findings(self, user_id: str, now: Optional[datetime] = None) -> List[ComplianceFinding]:
        now = now or self._clock()
        findings: List[ComplianceFinding] = []

        renewal = self._ledger.needs_renewal(user_id, now)
        for purpose in renewal.expired_purposes:
            findings.append(
                ComplianceFinding(
                    kind=IssueKind.CONSENT_RENEWAL,
                    subject=purpose.value,
                    message=f"Consent for {purpose.value} needs renewal",
                )
            )

        for request in self._tracker.overdue(now, user_id=user_id):
            findings.append(
                ComplianceFinding(
                    kind=IssueKind.OVERDUE_REQUEST,
                    subject=request.id,
                    message=(
                        f"{request.type.value} request {request.id} passed its deadline "
                        f"{request.effective_deadline.isoformat()}"
                    ),
                )
            )

        if self._age_gate.requires_parental_consent(user_id):
            preferences = self._ledger.current_state(user_id)
            non_essential = [
                purpose.value
                for purpose in preferences.granted_purposes()
                if purpose is not DataProcessingPurpose.ESSENTIAL
            ]
            if non_essential:
                findings.append(
                    ComplianceFinding(
                        kind=IssueKind.MISSING_PARENTAL_CONSENT,
                        subject=user_id,
                        message=(
                            "Minor without verified parental consent holds non-essential consent for "
                            + ", ".join(sorted(non_essential))
                        ),
                    )
                )
        return findings

    def evaluate(self, user_id: str, now: Optional[datetime] = None) -> ComplianceReport:
        """Score a user's state: 100 minus a fixed penalty per finding, clamped to [0, 100]."""
        now = now or self._clock()
        findings = self.findings(user_id, now)
        score = 100 - sum(PENALTIES[finding.kind] for finding in findings)
        score = max(0, min(100, score))
        report = ComplianceReport(
            user_id=user_id,
            compliant=score >= self.threshold,
            score=score,
            issues=[finding.message for finding in findings],
            recommendations=[RECOMMENDATIONS[finding.kind].format(subject=finding.subject) for finding in findings],
            findings=findings,
            evaluated_at=now,
        )
        logger.debug(f"Compliance score for user {user_id}: {score} ({len(findings)} issue(s))")
        return report

    def dashboard(self, user_id: str, now: Optional[datetime] = None) -> PrivacyDashboard:
        now = now or self._clock()
        renewal = self._ledger.needs_renewal(user_id, now)
        preferences = self._ledger.current_state(user_id)

        consents = ConsentSummary(total=len(self._ledger.history(user_id)))
        for purpose, state in preferences.purposes.items():
            if not state.granted:
                consents.withdrawn += 1
            elif purpose in renewal.expired_purposes:
                consents.expired += 1
            else:
                consents.active += 1

        rights = RightsSummary()
        requests = self._tracker.requests_for(user_id)
        for request in requests:
            if request.status is RequestStatus.FULFILLED:
                rights.completed += 1
            elif request.status is RequestStatus.REJECTED:
                rights.rejected += 1
            elif request.status is RequestStatus.WITHDRAWN:
                rights.withdrawn += 1
            else:
                rights.pending += 1
        rights.overdue = len(self._tracker.overdue(now, user_id=user_id))

        timestamps = [request.updated_at for request in requests]
        if preferences.updated_at:
            timestamps.append(preferences.updated_at)

        return PrivacyDashboard(
            user_id=user_id,
            consent_summary=consents,
            rights_summary=rights,
            compliance_score=self.evaluate(user_id, now).score,
            last_updated=max(timestamps) if timestamps else None,
        )
