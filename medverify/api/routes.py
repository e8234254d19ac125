"""
API Routes for the record verification workflow

Query endpoints (read model):
- GET  /api/records                    - Dashboard for a viewer
- GET  /api/records/{token_id}         - One record, freshest view
- GET  /api/registry/providers         - Directory: doctors
- GET  /api/registry/insurers          - Directory: insurers

Command endpoints (ledger intents):
- POST /api/records                    - Patient uploads a record
- POST /api/records/{token_id}/requests - Doctor requests insurer review
- POST /api/records/{token_id}/approve - Insurer approves the request
- POST /api/records/{token_id}/verify  - Doctor verifies the record
- POST /api/records/{token_id}/check   - Dry-run guard decision

Support:
- POST /api/registry/refresh           - Reload the directory
- POST /api/content                    - Store document bytes, get a hash

Error mapping:
- Registry miss / unknown record    -> 404
- Guard denial                      -> 409 {"reason", "detail"}
- Ledger rejection                  -> 422 {"reason", "detail"}
- Ledger/directory/storage outage   -> 503
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ..core.errors import (
    ContentUnavailable,
    DirectoryUnavailable,
    LookupFailed,
    MedverifyError,
    Rejected,
    RecordNotFound,
    RegistryMiss,
    SourceUnavailable,
    WorkflowDenied,
)
from ..core.guard import Transition
from ..core.registry import RegistryCache
from ..core.workflow import VerificationWorkflow
from ..db.projections import Projector
from ..observability import get_logger
from ..schemas import Actor, Participant, Receipt, RecordView, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


# ============================================================
# Dependency Injection
# ============================================================

def get_workflow(request: Request) -> VerificationWorkflow:
    """Get workflow service from app state."""
    return request.app.state.workflow


def get_projector(request: Request) -> Projector:
    """Get projector from app state."""
    return request.app.state.projector


def get_registry(request: Request) -> RegistryCache:
    """Get registry cache from app state."""
    return request.app.state.registry


def _http_error(e: MedverifyError) -> HTTPException:
    """Map a domain error to its HTTP response."""
    if isinstance(e, RegistryMiss):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"reason": e.reason.value, "detail": str(e)},
        )
    if isinstance(e, WorkflowDenied):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": e.reason.value, "detail": str(e)},
        )
    if isinstance(e, RecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, Rejected):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"reason": e.reason, "detail": str(e)},
        )
    if isinstance(e, (SourceUnavailable, DirectoryUnavailable, ContentUnavailable, LookupFailed)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    logger.error("Unmapped domain error", error_type=type(e).__name__, error=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# ============================================================
# Request/Response Models
# ============================================================

class ActorFields(BaseModel):
    """Who is acting. `name` is the provider name for doctors."""
    address: str = Field(..., min_length=1)
    role: Role
    name: Optional[str] = None


class CreateRecordRequest(ActorFields):
    patient_name: str = Field(..., min_length=1)
    content_hash: str = Field(..., min_length=1)
    provider_name: str = Field(..., min_length=1)


class IssueRequestRequest(ActorFields):
    insurer_name: str = Field(..., min_length=1)


class CheckRequest(ActorFields):
    transition: Transition
    insurer_name: Optional[str] = None
    provider_name: Optional[str] = None


class VerificationRequestResponse(BaseModel):
    insurer_name: str
    requesting_doctor_name: str
    issued_at: Optional[int] = None
    approved: bool
    superseded: bool = False


class RecordViewResponse(BaseModel):
    """A record as shown on a dashboard."""
    token_id: int
    patient_name: Optional[str] = None
    content_hash: Optional[str] = None
    provider_name: str
    owner_address: str
    verification_request: Optional[VerificationRequestResponse] = None
    doctor_verified: bool
    insurer_verified: bool
    insurance_status: str
    fully_verified: bool


class RecordListResponse(BaseModel):
    records: list[RecordViewResponse]
    failures: dict[int, str]
    generation: int
    window: tuple[int, int]
    built_at: datetime


class ReceiptResponse(BaseModel):
    intent: str
    transaction_hash: str
    log_position: int
    token_id: Optional[int] = None
    record: Optional[RecordViewResponse] = None


class DecisionResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    message: str = ""


class ParticipantResponse(BaseModel):
    name: str
    role: str
    address: Optional[str] = None


class RefreshResponse(BaseModel):
    providers: int
    insurers: int
    refreshed_at: Optional[datetime] = None


class ContentResponse(BaseModel):
    content_hash: str
    size: int


def _view_response(view: RecordView) -> RecordViewResponse:
    request = view.verification_request
    return RecordViewResponse(
        token_id=view.token_id,
        patient_name=view.record.patient_name,
        content_hash=view.record.content_hash,
        provider_name=view.record.provider_name,
        owner_address=view.record.owner_address,
        verification_request=VerificationRequestResponse(
            insurer_name=request.insurer_name,
            requesting_doctor_name=request.requesting_doctor_name,
            issued_at=request.issued_at,
            approved=request.approved,
            superseded=request.superseded,
        ) if request is not None else None,
        doctor_verified=view.doctor_verified,
        insurer_verified=view.insurer_verified,
        insurance_status=view.insurance_status,
        fully_verified=view.fully_verified,
    )


def _participant_response(participant: Participant) -> ParticipantResponse:
    return ParticipantResponse(
        name=participant.display_name,
        role=participant.role.value,
        address=participant.address,
    )


def _receipt_response(
    receipt: Receipt,
    workflow: VerificationWorkflow,
    projector: Projector,
    actor: Actor,
) -> ReceiptResponse:
    view = None
    if receipt.token_id is not None:
        current = projector.current(workflow.viewer_for(actor))
        view = current.get(receipt.token_id) if current is not None else None
    return ReceiptResponse(
        intent=receipt.intent.value,
        transaction_hash=receipt.transaction_hash,
        log_position=receipt.log_position,
        token_id=receipt.token_id,
        record=_view_response(view) if view is not None else None,
    )


# ============================================================
# Query Endpoints
# ============================================================

@router.get(
    "/records",
    response_model=RecordListResponse,
    tags=["Records"],
    summary="Dashboard for one viewer",
)
def list_records(
    request: Request,
    role: Role = Query(...),
    address: str = Query(..., min_length=1),
    name: Optional[str] = Query(None),
):
    """
    Rebuild the viewer's projection from the ledger.

    Records whose point lookups failed are omitted and listed in `failures`.
    """
    workflow = get_workflow(request)
    projector = get_projector(request)
    try:
        actor = workflow.resolve_actor(address, role, name)
        result = projector.rebuild(workflow.viewer_for(actor))
    except MedverifyError as e:
        raise _http_error(e)

    return RecordListResponse(
        records=[_view_response(v) for v in result.views],
        failures=result.failures,
        generation=result.generation,
        window=result.window,
        built_at=result.built_at,
    )


@router.get(
    "/records/{token_id}",
    response_model=RecordViewResponse,
    tags=["Records"],
    summary="One record",
)
def get_record(
    request: Request,
    token_id: int,
    role: Role = Query(...),
    address: str = Query(..., min_length=1),
    name: Optional[str] = Query(None),
):
    workflow = get_workflow(request)
    projector = get_projector(request)
    try:
        actor = workflow.resolve_actor(address, role, name)
        view = projector.view_for(token_id, workflow.viewer_for(actor))
    except MedverifyError as e:
        raise _http_error(e)

    if view is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Record {token_id} not found",
        )
    return _view_response(view)


@router.get(
    "/registry/providers",
    response_model=list[ParticipantResponse],
    tags=["Registry"],
)
def list_providers(request: Request):
    return [_participant_response(p) for p in get_registry(request).providers()]


@router.get(
    "/registry/insurers",
    response_model=list[ParticipantResponse],
    tags=["Registry"],
)
def list_insurers(request: Request):
    return [_participant_response(p) for p in get_registry(request).insurers()]


# ============================================================
# Command Endpoints
# ============================================================

@router.post(
    "/records",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Commands"],
    summary="Upload a record",
)
def create_record(request: Request, body: CreateRecordRequest):
    """
    Register an uploaded document on the ledger against a provider.

    Upload the document through /api/content first to obtain the hash.
    """
    workflow = get_workflow(request)
    try:
        actor = workflow.resolve_actor(body.address, body.role, body.name)
        receipt = workflow.create_record(
            actor,
            patient_name=body.patient_name,
            content_hash=body.content_hash,
            provider_name=body.provider_name,
        )
    except MedverifyError as e:
        raise _http_error(e)
    return _receipt_response(receipt, workflow, get_projector(request), actor)


@router.post(
    "/records/{token_id}/requests",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Commands"],
    summary="Request insurer review",
)
def issue_request(request: Request, token_id: int, body: IssueRequestRequest):
    workflow = get_workflow(request)
    try:
        actor = workflow.resolve_actor(body.address, body.role, body.name)
        receipt = workflow.issue_request(actor, token_id, body.insurer_name)
    except MedverifyError as e:
        raise _http_error(e)
    return _receipt_response(receipt, workflow, get_projector(request), actor)


@router.post(
    "/records/{token_id}/approve",
    response_model=ReceiptResponse,
    tags=["Commands"],
    summary="Approve a verification request",
)
def approve_request(request: Request, token_id: int, body: ActorFields):
    workflow = get_workflow(request)
    try:
        actor = workflow.resolve_actor(body.address, body.role, body.name)
        receipt = workflow.approve_request(actor, token_id)
    except MedverifyError as e:
        raise _http_error(e)
    return _receipt_response(receipt, workflow, get_projector(request), actor)


@router.post(
    "/records/{token_id}/verify",
    response_model=ReceiptResponse,
    tags=["Commands"],
    summary="Verify a record",
)
def verify_record(request: Request, token_id: int, body: ActorFields):
    workflow = get_workflow(request)
    try:
        actor = workflow.resolve_actor(body.address, body.role, body.name)
        receipt = workflow.verify_by_provider(actor, token_id)
    except MedverifyError as e:
        raise _http_error(e)
    return _receipt_response(receipt, workflow, get_projector(request), actor)


@router.post(
    "/records/{token_id}/check",
    response_model=DecisionResponse,
    tags=["Commands"],
    summary="Dry-run a transition",
)
def check_transition(request: Request, token_id: int, body: CheckRequest):
    """Evaluate the guard against the freshest view. Nothing is submitted."""
    workflow = get_workflow(request)
    try:
        actor = workflow.resolve_actor(body.address, body.role, body.name)
        decision = workflow.check(
            actor,
            body.transition,
            token_id=token_id,
            insurer_name=body.insurer_name,
            provider_name=body.provider_name,
        )
    except MedverifyError as e:
        raise _http_error(e)

    return DecisionResponse(
        allowed=decision.allowed,
        reason=decision.reason.value if decision.reason else None,
        message=decision.message,
    )


# ============================================================
# Support Endpoints
# ============================================================

@router.post(
    "/registry/refresh",
    response_model=RefreshResponse,
    tags=["Registry"],
)
def refresh_registry(request: Request):
    """Reload the directory. On failure the previous snapshot stays."""
    try:
        snapshot = get_registry(request).refresh()
    except MedverifyError as e:
        raise _http_error(e)
    return RefreshResponse(
        providers=len(snapshot.providers),
        insurers=len(snapshot.insurers),
        refreshed_at=snapshot.refreshed_at,
    )


@router.post(
    "/content",
    response_model=ContentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Content"],
)
async def upload_content(request: Request, filename: str = Query("record.bin")):
    """Store the raw request body and return its content hash."""
    data = await request.body()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")

    store = request.app.state.content_store
    try:
        content_hash = await run_in_threadpool(store.upload, data, filename)
    except MedverifyError as e:
        raise _http_error(e)
    return ContentResponse(content_hash=content_hash, size=len(data))
