"""Privacy compliance API routes for host applications.

Identity is the caller's concern: routes take the user id in the path or body.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import get_engine, translate_errors
from privacy.engine import PrivacyComplianceEngine
from privacy.models import ConsentUpdate


router = APIRouter(prefix="/api/privacy", tags=["Privacy"])


class ConsentRecordRequest(BaseModel):
    user_id: str
    purpose: str
    legal_basis: str = "consent"
    region: str
    method: str = "web"
    version: Optional[str] = Field(default=None, description="Defaults to the version the region requires")
    record_id: Optional[str] = Field(default=None, description="Client-supplied id for idempotent retries")


class ConsentWithdrawRequest(BaseModel):
    user_id: str
    purpose: str
    record_id: Optional[str] = None


class ConsentUpdateItem(BaseModel):
    purpose: str
    granted: bool
    legal_basis: Optional[str] = None
    region: Optional[str] = None
    method: Optional[str] = None
    version: Optional[str] = None
    record_id: Optional[str] = None


class BatchConsentRequest(BaseModel):
    user_id: str
    updates: List[ConsentUpdateItem] = Field(default_factory=list)
    region: Optional[str] = Field(default=None, description="Region for grants with no region and no history")
    method: str = "web"


class AgeVerificationRequest(BaseModel):
    user_id: str
    birth_date: date
    method: str = "self_declaration"
    region: str = "EU"


class ParentalConsentCreate(BaseModel):
    user_id: str
    parent_email: str
    request_id: Optional[str] = None


class RightsRequestCreate(BaseModel):
    user_id: str
    type: str
    description: str = ""
    priority: str = "medium"
    region: str = "EU"
    request_id: Optional[str] = None


class RightsRequestExtend(BaseModel):
    reason: str = Field(..., min_length=1)


class RightsRequestTransition(BaseModel):
    status: str
    note: Optional[str] = None


class ConsentRecordResponse(BaseModel):
    id: str
    user_id: str
    purpose: str
    legal_basis: str
    region: str
    granted: bool
    consent_method: str
    consent_version: str
    timestamp: datetime
    withdrawn_at: Optional[datetime] = None


class ConsentHistoryResponse(BaseModel):
    user_id: str
    records: List[ConsentRecordResponse] = Field(default_factory=list)
    count: int


class BatchFailureResponse(BaseModel):
    purpose: str
    reason: str
    code: str


class BatchUpdateResponse(BaseModel):
    updated: int
    failed: List[BatchFailureResponse] = Field(default_factory=list)
    records: List[ConsentRecordResponse] = Field(default_factory=list)


class RightsRequestResponse(BaseModel):
    id: str
    user_id: str
    region: str
    type: str
    description: str
    priority: str
    status: str
    submitted_at: datetime
    deadline: datetime
    updated_at: datetime
    extended_deadline: Optional[datetime] = None
    extension_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    effective_deadline: datetime


class RightsRequestList(BaseModel):
    user_id: Optional[str] = None
    requests: List[RightsRequestResponse] = Field(default_factory=list)
    count: int


class ComplianceFindingResponse(BaseModel):
    kind: str
    subject: str
    message: str


class ComplianceReportResponse(BaseModel):
    user_id: str
    compliant: bool
    score: int = Field(..., ge=0, le=100)
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    findings: List[ComplianceFindingResponse] = Field(default_factory=list)
    evaluated_at: Optional[datetime] = None
    stale: bool = False


# Regions


@router.get("/regions")
def list_regions(engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    regions = engine.resolver.regions()
    return {
        "regions": [engine.resolver.requirements_for(region).to_dict() for region in regions],
        "count": len(regions),
    }


@router.get("/regions/{region}")
def get_region(region: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    with translate_errors():
        return engine.resolver.requirements_for(region.upper()).to_dict()


# Consent


@router.post("/consent", response_model=ConsentRecordResponse)
async def record_consent(
    payload: ConsentRecordRequest,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> ConsentRecordResponse:
    with translate_errors():
        record = await engine.record_consent(
            payload.user_id,
            payload.purpose,
            payload.legal_basis,
            payload.region,
            payload.method,
            payload.version,
            payload.record_id,
        )
    return ConsentRecordResponse.model_validate(record.to_dict())


@router.post("/consent/withdraw", response_model=ConsentRecordResponse)
async def withdraw_consent(
    payload: ConsentWithdrawRequest,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> ConsentRecordResponse:
    with translate_errors():
        record = await engine.withdraw_consent(payload.user_id, payload.purpose, payload.record_id)
    return ConsentRecordResponse.model_validate(record.to_dict())


@router.post("/consent/batch", response_model=BatchUpdateResponse)
async def batch_update_consent(
    payload: BatchConsentRequest,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> BatchUpdateResponse:
    updates = [ConsentUpdate(**item.model_dump()) for item in payload.updates]
    with translate_errors():
        result = await engine.batch_update_consent(payload.user_id, updates, payload.region, payload.method)
    return BatchUpdateResponse.model_validate(result.to_dict())


@router.get("/consent/{user_id}/history", response_model=ConsentHistoryResponse)
def consent_history(
    user_id: str,
    purpose: Optional[str] = Query(default=None),
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> ConsentHistoryResponse:
    with translate_errors():
        records = engine.consent_history(user_id, purpose)
    return ConsentHistoryResponse(
        user_id=user_id,
        records=[ConsentRecordResponse.model_validate(record.to_dict()) for record in records],
        count=len(records),
    )


@router.get("/consent/{user_id}/renewal")
def renewal_check(user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    with translate_errors():
        return engine.needs_renewal(user_id).to_dict()


@router.get("/preferences/{user_id}")
def get_preferences(user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.current_state(user_id).to_dict()


# Age gate


@router.post("/age-verification")
async def verify_age(
    payload: AgeVerificationRequest,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> Dict[str, Any]:
    with translate_errors():
        result = await engine.verify_age(payload.user_id, payload.birth_date, payload.method, payload.region)
    return result.to_dict()


@router.get("/age-verification/{user_id}")
def get_age_verification(user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    result = engine.age_verification(user_id)
    return {"user_id": user_id, "verification": result.to_dict() if result else None}


@router.post("/parental-consent")
async def request_parental_consent(
    payload: ParentalConsentCreate,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> Dict[str, Any]:
    with translate_errors():
        request = await engine.request_parental_consent(payload.user_id, payload.parent_email, payload.request_id)
    return request.to_dict()


@router.get("/parental-consent")
def list_parental_requests(
    user_id: str = Query(...),
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> Dict[str, Any]:
    requests = engine.parental_requests(user_id)
    return {"user_id": user_id, "requests": [request.to_dict() for request in requests]}


@router.post("/parental-consent/expire")
async def expire_parental_requests(engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    with translate_errors():
        expired = await engine.expire_parental_requests()
    return {"expired": [request.to_dict() for request in expired], "count": len(expired)}


@router.post("/parental-consent/{request_id}/sent")
async def mark_parental_consent_sent(
    request_id: str,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> Dict[str, Any]:
    with translate_errors():
        return (await engine.mark_parental_consent_sent(request_id)).to_dict()


@router.post("/parental-consent/{request_id}/confirm")
async def confirm_parental_consent(
    request_id: str,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> Dict[str, Any]:
    with translate_errors():
        return (await engine.confirm_parental_consent(request_id)).to_dict()


@router.post("/parental-consent/{request_id}/reject")
async def reject_parental_consent(
    request_id: str,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> Dict[str, Any]:
    with translate_errors():
        return (await engine.reject_parental_consent(request_id)).to_dict()
# Rights requests


def _rights_response(request) -> RightsRequestResponse:
    return RightsRequestResponse.model_validate(request.to_dict())


@router.post("/rights-requests", response_model=RightsRequestResponse)
async def submit_rights_request(
    payload: RightsRequestCreate,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> RightsRequestResponse:
    with translate_errors():
        request = await engine.submit_rights_request(
            payload.user_id,
            payload.type,
            payload.description,
            payload.priority,
            payload.region,
            payload.request_id,
        )
    return _rights_response(request)


@router.get("/rights-requests", response_model=RightsRequestList)
def list_rights_requests(
    user_id: str = Query(...),
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> RightsRequestList:
    requests = engine.rights_requests(user_id)
    return RightsRequestList(
        user_id=user_id,
        requests=[_rights_response(request) for request in requests],
        count=len(requests),
    )


@router.get("/rights-requests/overdue", response_model=RightsRequestList)
def overdue_rights_requests(
    user_id: Optional[str] = Query(default=None),
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> RightsRequestList:
    requests = engine.overdue_requests(user_id=user_id)
    return RightsRequestList(
        user_id=user_id,
        requests=[_rights_response(request) for request in requests],
        count=len(requests),
    )


@router.get("/rights-requests/{request_id}", response_model=RightsRequestResponse)
def get_rights_request(
    request_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)
) -> RightsRequestResponse:
    with translate_errors():
        return _rights_response(engine.get_rights_request(request_id))


@router.post("/rights-requests/{request_id}/extend", response_model=RightsRequestResponse)
async def extend_rights_request(
    request_id: str,
    payload: RightsRequestExtend,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> RightsRequestResponse:
    with translate_errors():
        return _rights_response(await engine.extend_rights_request(request_id, payload.reason))


@router.post("/rights-requests/{request_id}/transition", response_model=RightsRequestResponse)
async def transition_rights_request(
    request_id: str,
    payload: RightsRequestTransition,
    engine: PrivacyComplianceEngine = Depends(get_engine),
) -> RightsRequestResponse:
    with translate_errors():
        request = await engine.transition_rights_request(request_id, payload.status, payload.note)
    return _rights_response(request)


# Reporting and sync


@router.get("/compliance/{user_id}", response_model=ComplianceReportResponse)
def evaluate_compliance(
    user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)
) -> ComplianceReportResponse:
    with translate_errors():
        return ComplianceReportResponse.model_validate(engine.evaluate(user_id).to_dict())


@router.get("/dashboard/{user_id}")
def privacy_dashboard(user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    with translate_errors():
        return engine.dashboard(user_id).to_dict()


@router.post("/sync/{user_id}")
async def sync_user(user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    with translate_errors():
        view = await engine.refresh(user_id)
    return view.to_dict()


@router.get("/sync/{user_id}/pending")
def pending_mutations(user_id: str, engine: PrivacyComplianceEngine = Depends(get_engine)) -> Dict[str, Any]:
    pending = engine.pending_mutations(user_id)
    return {"user_id": user_id, "pending": [mutation.to_dict() for mutation in pending], "count": len(pending)}
