"""Domain types shared by the privacy compliance components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar
import uuid

from .errors import PrivacyValidationError


E = TypeVar("E", bound=Enum)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (``Z`` suffix allowed). Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def coerce_enum(
    enum_cls: Type[E],
    value: Any,
    error_cls: Type[PrivacyValidationError] = PrivacyValidationError,
) -> E:
    """Turn a raw value into a member of ``enum_cls`` or raise ``error_cls``."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise error_cls(
            f"Unknown {enum_cls.__name__} '{value}' (expected one of: {allowed})"
        ) from None


# Closed sets


class RegionCode(str, Enum):
    CN = "CN"
    HK = "HK"
    MO = "MO"
    TW = "TW"
    JP = "JP"
    KR = "KR"
    US = "US"
    EU = "EU"


class PrivacyLaw(str, Enum):
    PIPL = "PIPL"
    PDPO = "PDPO"
    PDPA = "PDPA"
    PDPA_TW = "PDPA_TW"
    APPI = "APPI"
    PIPA = "PIPA"
    CCPA = "CCPA"
    CPRA = "CPRA"
    GDPR = "GDPR"


class DataProcessingPurpose(str, Enum):
    ESSENTIAL = "essential"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    PERSONALIZATION = "personalization"
    THIRD_PARTY_SHARING = "third_party_sharing"


class LegalBasis(str, Enum):
    CONSENT = "consent"
    LEGITIMATE_INTEREST = "legitimate_interest"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTEREST = "vital_interest"
    PUBLIC_TASK = "public_task"


class ConsentMethod(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    EMAIL = "email"
    PHONE = "phone"
    IN_PERSON = "in_person"


class RightsRequestType(str, Enum):
    ACCESS = "access"
    RECTIFICATION = "rectification"
    ERASURE = "erasure"
    PORTABILITY = "portability"
    RESTRICTION = "restriction"
    OBJECTION = "objection"


class RequestPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    RequestPriority.URGENT: 0,
    RequestPriority.HIGH: 1,
    RequestPriority.MEDIUM: 2,
    RequestPriority.LOW: 3,
}


class RequestStatus(str, Enum):
    SUBMITTED = "submitted"
    IDENTITY_VERIFICATION_PENDING = "identity_verification_pending"
    IN_PROGRESS = "in_progress"
    EXTENDED = "extended"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


TERMINAL_REQUEST_STATUSES = frozenset(
    {RequestStatus.FULFILLED, RequestStatus.REJECTED, RequestStatus.WITHDRAWN}
)


class ParentalConsentStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AgeVerificationMethod(str, Enum):
    SELF_DECLARATION = "self_declaration"
    DOCUMENT = "document"
    PAYMENT_CARD = "payment_card"
    PARENTAL_ATTESTATION = "parental_attestation"


class IssueKind(str, Enum):
    CONSENT_RENEWAL = "consent_renewal"
    OVERDUE_REQUEST = "overdue_request"
    MISSING_PARENTAL_CONSENT = "missing_parental_consent"


class MutationKind(str, Enum):
    CONSENT_RECORD = "consent_record"
    RIGHTS_REQUEST = "rights_request"
    AGE_VERIFICATION = "age_verification"
    PARENTAL_CONSENT = "parental_consent"


# Consent


@dataclass(frozen=True)
class ConsentRecord:
    # One immutable ledger entry. Withdrawals are new entries with granted=False.
    id: str
    user_id: str
    purpose: DataProcessingPurpose
    legal_basis: LegalBasis
    region: RegionCode
    granted: bool
    consent_method: ConsentMethod
    consent_version: str
    timestamp: datetime
    withdrawn_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "purpose": self.purpose.value,
            "legal_basis": self.legal_basis.value,
            "region": self.region.value,
            "granted": self.granted,
            "consent_method": self.consent_method.value,
            "consent_version": self.consent_version,
            "timestamp": _iso(self.timestamp),
            "withdrawn_at": _iso(self.withdrawn_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsentRecord":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            purpose=DataProcessingPurpose(data["purpose"]),
            legal_basis=LegalBasis(data["legal_basis"]),
            region=RegionCode(data["region"]),
            granted=bool(data["granted"]),
            consent_method=ConsentMethod(data.get("consent_method", ConsentMethod.WEB.value)),
            consent_version=str(data["consent_version"]),
            timestamp=parse_timestamp(data["timestamp"]),
            withdrawn_at=parse_timestamp(data.get("withdrawn_at")),
        )


@dataclass(frozen=True)
class PurposeConsent:
    purpose: DataProcessingPurpose
    granted: bool
    legal_basis: LegalBasis
    region: RegionCode
    consent_version: str
    updated_at: datetime
    record_id: str
    withdrawn_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ConsentRecord) -> "PurposeConsent":
        return cls(
            purpose=record.purpose,
            granted=record.granted,
            legal_basis=record.legal_basis,
            region=record.region,
            consent_version=record.consent_version,
            updated_at=record.timestamp,
            record_id=record.id,
            withdrawn_at=record.withdrawn_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purpose": self.purpose.value,
            "granted": self.granted,
            "legal_basis": self.legal_basis.value,
            "region": self.region.value,
            "consent_version": self.consent_version,
            "updated_at": _iso(self.updated_at),
            "record_id": self.record_id,
            "withdrawn_at": _iso(self.withdrawn_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PurposeConsent":
        return cls(
            purpose=DataProcessingPurpose(data["purpose"]),
            granted=bool(data["granted"]),
            legal_basis=LegalBasis(data["legal_basis"]),
            region=RegionCode(data["region"]),
            consent_version=str(data["consent_version"]),
            updated_at=parse_timestamp(data["updated_at"]),
            record_id=str(data["record_id"]),
            withdrawn_at=parse_timestamp(data.get("withdrawn_at")),
        )


@dataclass
class PrivacyPreferences:
    """Snapshot of a user's current consent per purpose.

    Derived from the ledger and safe to discard; the ledger is the source of truth.
    """

    user_id: str
    purposes: Dict[DataProcessingPurpose, PurposeConsent] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def is_granted(self, purpose: DataProcessingPurpose) -> bool:
        state = self.purposes.get(purpose)
        return bool(state and state.granted)

    def granted_purposes(self) -> List[DataProcessingPurpose]:
        return [purpose for purpose, state in self.purposes.items() if state.granted]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "purposes": {purpose.value: state.to_dict() for purpose, state in self.purposes.items()},
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivacyPreferences":
        purposes = {
            DataProcessingPurpose(key): PurposeConsent.from_dict(value)
            for key, value in (data.get("purposes") or {}).items()
        }
        return cls(
            user_id=str(data["user_id"]),
            purposes=purposes,
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass(frozen=True)
class ConsentUpdate:
    """One entry of a batch consent update."""

    purpose: str
    granted: bool
    legal_basis: Optional[str] = None
    region: Optional[str] = None
    method: Optional[str] = None
    version: Optional[str] = None
    record_id: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ConsentUpdate":
        if isinstance(value, cls):
            return value
        if not isinstance(value, Mapping):
            raise PrivacyValidationError(f"Batch entry must be an object, got {type(value).__name__}")
        return cls.from_dict(value)

    @staticmethod
    def purpose_of(value: Any) -> str:
        # Best-effort purpose for reporting a batch entry that could not be parsed.
        if isinstance(value, ConsentUpdate):
            return value.purpose
        if isinstance(value, Mapping):
            return str(value.get("purpose", ""))
        return ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsentUpdate":
        granted = data.get("granted", data.get("consented", False))
        return cls(
            purpose=str(data.get("purpose", "")),
            granted=bool(granted),
            legal_basis=data.get("legal_basis"),
            region=data.get("region"),
            method=data.get("method"),
            version=data.get("version"),
            record_id=data.get("record_id"),
        )


@dataclass(frozen=True)
class BatchFailure:
    purpose: str
    reason: str
    code: str


@dataclass
class BatchUpdateResult:
    updated: int = 0
    failed: List[BatchFailure] = field(default_factory=list)
    records: List[ConsentRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.updated,
            "failed": [asdict(failure) for failure in self.failed],
            "records": [record.to_dict() for record in self.records],
        }


@dataclass
class RenewalCheck:
    user_id: str
    needs_renewal: bool
    expired_purposes: List[DataProcessingPurpose] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    deadline: Optional[datetime] = None
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "needs_renewal": self.needs_renewal,
            "expired_purposes": [purpose.value for purpose in self.expired_purposes],
            "reasons": list(self.reasons),
            "deadline": _iso(self.deadline),
            "stale": self.stale,
        }


# Rights requests


@dataclass(frozen=True)
class DataRightsRequest:
    id: str
    user_id: str
    region: RegionCode
    type: RightsRequestType
    description: str
    priority: RequestPriority
    status: RequestStatus
    submitted_at: datetime
    deadline: datetime
    updated_at: datetime
    extended_deadline: Optional[datetime] = None
    extension_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None

    @property
    def effective_deadline(self) -> datetime:
        return self.extended_deadline or self.deadline

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "region": self.region.value,
            "type": self.type.value,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "submitted_at": _iso(self.submitted_at),
            "deadline": _iso(self.deadline),
            "updated_at": _iso(self.updated_at),
            "extended_deadline": _iso(self.extended_deadline),
            "extension_reason": self.extension_reason,
            "resolved_at": _iso(self.resolved_at),
            "resolution_note": self.resolution_note,
            "effective_deadline": _iso(self.effective_deadline),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataRightsRequest":
        submitted_at = parse_timestamp(data["submitted_at"])
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            region=RegionCode(data["region"]),
            type=RightsRequestType(data["type"]),
            description=data.get("description", ""),
            priority=RequestPriority(data.get("priority", RequestPriority.MEDIUM.value)),
            status=RequestStatus(data["status"]),
            submitted_at=submitted_at,
            deadline=parse_timestamp(data["deadline"]),
            updated_at=parse_timestamp(data.get("updated_at")) or submitted_at,
            extended_deadline=parse_timestamp(data.get("extended_deadline")),
            extension_reason=data.get("extension_reason"),
            resolved_at=parse_timestamp(data.get("resolved_at")),
            resolution_note=data.get("resolution_note"),
        )


# Age gate


@dataclass(frozen=True)
class AgeVerificationResult:
    user_id: str
    birth_date: date
    age: int
    region: RegionCode
    method: AgeVerificationMethod
    verified: bool
    requires_parental_consent: bool
    verified_at: datetime

    @property
    def is_minor(self) -> bool:
        return self.requires_parental_consent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "birth_date": self.birth_date.isoformat(),
            "age": self.age,
            "region": self.region.value,
            "method": self.method.value,
            "verified": self.verified,
            "requires_parental_consent": self.requires_parental_consent,
            "verified_at": _iso(self.verified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgeVerificationResult":
        return cls(
            user_id=str(data["user_id"]),
            birth_date=parse_date(data["birth_date"]),
            age=int(data["age"]),
            region=RegionCode(data["region"]),
            method=AgeVerificationMethod(data["method"]),
            verified=bool(data["verified"]),
            requires_parental_consent=bool(data["requires_parental_consent"]),
            verified_at=parse_timestamp(data["verified_at"]),
        )


@dataclass(frozen=True)
class ParentalConsentRequest:
    id: str
    user_id: str
    parent_email: str
    status: ParentalConsentStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    region: Optional[RegionCode] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "parent_email": self.parent_email,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
            "region": self.region.value if self.region else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParentalConsentRequest":
        region = data.get("region")
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            parent_email=str(data["parent_email"]),
            status=ParentalConsentStatus(data["status"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            region=RegionCode(region) if region else None,
        )


# Reporting


@dataclass(frozen=True)
class ComplianceFinding:
    kind: IssueKind
    subject: str
    message: str


@dataclass
class ComplianceReport:
    user_id: str
    compliant: bool
    score: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    findings: List[ComplianceFinding] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "compliant": self.compliant,
            "score": self.score,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "findings": [
                {"kind": finding.kind.value, "subject": finding.subject, "message": finding.message}
                for finding in self.findings
            ],
            "evaluated_at": _iso(self.evaluated_at),
            "stale": self.stale,
        }


@dataclass
class ConsentSummary:
    total: int = 0
    active: int = 0
    expired: int = 0
    withdrawn: int = 0


@dataclass
class RightsSummary:
    pending: int = 0
    completed: int = 0
    rejected: int = 0
    withdrawn: int = 0
    overdue: int = 0


@dataclass
class PrivacyDashboard:
    user_id: str
    consent_summary: ConsentSummary
    rights_summary: RightsSummary
    compliance_score: int
    last_updated: Optional[datetime] = None
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "consent_summary": asdict(self.consent_summary),
            "rights_summary": asdict(self.rights_summary),
            "compliance_score": self.compliance_score,
            "last_updated": _iso(self.last_updated),
            "stale": self.stale,
        }


# Synchronisation


@dataclass(frozen=True)
class SyncMutation:
    """A change sent to the remote authority before it is applied locally."""

    id: str
    kind: MutationKind
    user_id: str
    entity_id: str
    payload: Dict[str, Any]
    created_at: datetime

    @classmethod
    def for_entity(cls, kind: MutationKind, user_id: str, entity: Any, *, now: datetime) -> "SyncMutation":
        payload = entity.to_dict()
        return cls(
            id=new_id(),
            kind=kind,
            user_id=user_id,
            entity_id=str(payload.get("id") or payload.get("user_id")),
            payload=payload,
            created_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMutation":
        return cls(
            id=str(data["id"]),
            kind=MutationKind(data["kind"]),
            user_id=str(data["user_id"]),
            entity_id=str(data["entity_id"]),
            payload=dict(data.get("payload") or {}),
            created_at=parse_timestamp(data["created_at"]),
        )


@dataclass
class AuthoritySnapshot:
    user_id: str
    consents: List[ConsentRecord] = field(default_factory=list)
    rights_requests: List[DataRightsRequest] = field(default_factory=list)
    age_verification: Optional[AgeVerificationResult] = None
    parental_requests: List[ParentalConsentRequest] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthoritySnapshot":
        verification = data.get("age_verification")
        return cls(
            user_id=str(data["user_id"]),
            consents=[ConsentRecord.from_dict(item) for item in data.get("consents") or []],
            rights_requests=[DataRightsRequest.from_dict(item) for item in data.get("rights_requests") or []],
            age_verification=AgeVerificationResult.from_dict(verification) if verification else None,
            parental_requests=[
                ParentalConsentRequest.from_dict(item) for item in data.get("parental_requests") or []
            ],
        )
