"""
RMA Router — service case intake, workflow, and analytics endpoints.

Case workflow (forward only):
  received → testing → sent_to_manufacturer → repaired_replaced → back_to_customer

Status changes, tracking updates, warranty decisions and assignments each
append a ServiceEvent, so GET /{case_id} always shows the full history.
"""

from datetime import datetime
from typing import Literal
from uuid import UUID

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import RetryError

from api.deps import (
    actor_from,
    enforce_public_intake_rate_limit,
    get_clock,
    get_current_user,
    get_db,
    get_shopify_client,
)
from core.clock import Clock
from integrations.shopify import ShopifyAPIError, ShopifyClient
from rma import analytics
from rma.errors import (
    CaseNotFoundError,
    InvalidTransitionError,
    MissingRequiredFieldsError,
    RmaError,
    WarrantyDecisionError,
)
from rma.filters import CaseFilters
from rma.intake import (
    OrderLookupUnavailableError,
    OrderVerificationError,
    compute_warranty,
    submit_customer_form,
)
from rma.issue_details import parse_issue_details
from rma.lifecycle import (
    add_service_note,
    assign_case,
    record_tracking,
    record_warranty_decision,
    transition_case,
)
from rma.store import create_case, get_case, list_cases, list_events, list_events_for_cases, scoped_cases

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/rma", tags=["rma"])

Priority = Literal["low", "normal", "high", "urgent"]
WarrantyStatus = Literal["in_warranty", "out_of_warranty", "unknown"]
WarrantyBasis = Literal["manufacturer", "extended", "acl", "manual_override", "unknown"]


# ─── Schemas ────────────────────────────────────────────────────────────────


class RmaCaseResponse(BaseModel):
    id: UUID
    source: str
    submission_channel: str
    shopify_return_id: str | None
    external_reference: str | None
    shopify_order_id: str | None
    shopify_order_name: str | None
    order_processed_at: datetime | None
    status: str
    priority: str
    sla_due_at: datetime | None
    warranty_status: str
    warranty_basis: str
    warranty_expires_at: datetime | None
    warranty_decision_notes: str | None
    warranty_checked_at: datetime | None
    inbound_carrier: str | None
    inbound_tracking_number: str | None
    inbound_tracking_url: str | None
    inbound_status: str | None
    outbound_carrier: str | None
    outbound_tracking_number: str | None
    outbound_tracking_url: str | None
    outbound_status: str | None
    received_at: datetime | None
    inspected_at: datetime | None
    shipped_back_at: datetime | None
    delivered_back_at: datetime | None
    assigned_owner_name: str | None
    assigned_owner_email: str | None
    assigned_technician_name: str | None
    assigned_technician_email: str | None
    assigned_at: datetime | None
    issue_summary: str
    issue_details: str | None
    serial_number: str | None
    customer_name: str | None
    customer_email: str | None
    customer_phone: str | None
    order_line_items: dict | list | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None

    model_config = {"from_attributes": True}


class ServiceEventResponse(BaseModel):
    id: UUID
    case_id: UUID
    event_type: str
    summary: str | None
    notes: str | None
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("event_metadata", "metadata"))
    created_by: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RmaCaseDetail(BaseModel):
    case: RmaCaseResponse
    events: list[ServiceEventResponse]


class RmaCaseList(BaseModel):
    items: list[RmaCaseResponse]
    total: int
    offset: int
    limit: int


class RmaMutationResponse(BaseModel):
    case: RmaCaseResponse
    event: ServiceEventResponse


class ManualCaseCreate(BaseModel):
    issue_summary: str = Field(..., min_length=1, max_length=500)
    issue_details: str | None = None
    serial_number: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    shopify_order_id: str | None = None
    shopify_order_name: str | None = None
    order_processed_at: datetime | None = None
    external_reference: str | None = None
    priority: Priority = "normal"
    note: str | None = None


class PublicCaseCreate(BaseModel):
    """Customer service form. `honeypot` is a hidden field humans leave empty."""

    order_number: str = Field(..., min_length=1, max_length=50)
    order_email: str = Field(..., min_length=3, max_length=255)
    issue_summary: str = Field(..., min_length=1, max_length=500)
    issue_details: str | None = Field(default=None, max_length=5000)
    serial_number: str | None = Field(default=None, max_length=255)
    honeypot: str | None = None


class StatusUpdate(BaseModel):
    status: str
    note: str | None = None


class TrackingUpdate(BaseModel):
    direction: Literal["inbound", "outbound"]
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    status: str | None = None
    delivered_at: datetime | None = None
    note: str | None = None


class WarrantyDecisionRequest(BaseModel):
    warranty_status: WarrantyStatus
    warranty_basis: WarrantyBasis
    decision_notes: str
    priority: Priority | None = None


class AssignmentUpdate(BaseModel):
    owner_name: str | None = None
    owner_email: str | None = None
    technician_name: str | None = None
    technician_email: str | None = None


class ServiceNoteCreate(BaseModel):
    summary: str = Field(..., min_length=1, max_length=500)
    notes: str | None = None
    metadata: dict | None = None


# ─── Helpers ────────────────────────────────────────────────────────────────


def case_filters(
    status: str | None = Query(None),
    source: str | None = Query(None),
    warranty_status: str | None = Query(None),
    priority: str | None = Query(None),
    technician_email: str | None = Query(None),
    customer_email: str | None = Query(None),
    serial_number: str | None = Query(None),
    search: str | None = Query(None),
) -> CaseFilters:
    return CaseFilters(
        status=status,
        source=source,
        warranty_status=warranty_status,
        priority=priority,
        technician_email=technician_email,
        customer_email=customer_email,
        serial_number=serial_number,
        search=search,
    )


def _http_error(exc: RmaError) -> HTTPException:
    if isinstance(exc, CaseNotFoundError):
        return HTTPException(status_code=404, detail="RMA case not found")
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=exc.to_detail())
    if isinstance(exc, (MissingRequiredFieldsError, WarrantyDecisionError)):
        return HTTPException(status_code=422, detail=exc.to_detail())
    if isinstance(exc, OrderVerificationError):
        return HTTPException(status_code=403, detail=exc.to_detail())
    if isinstance(exc, OrderLookupUnavailableError):
        return HTTPException(status_code=503, detail=exc.to_detail())
    return HTTPException(status_code=400, detail=exc.to_detail())


async def _load_case(db: AsyncSession, case_id: UUID, *, for_update: bool = False):
    try:
        return await get_case(db, case_id, for_update=for_update)
    except CaseNotFoundError as exc:
        raise _http_error(exc)


async def _commit_mutation(db: AsyncSession, case, event) -> RmaMutationResponse:
    await db.commit()
    return RmaMutationResponse(
        case=RmaCaseResponse.model_validate(case),
        event=ServiceEventResponse.model_validate(event),
    )


# ─── Analytics ──────────────────────────────────────────────────────────────


@router.get("/kpis")
async def get_kpis(
    filters: CaseFilters = Depends(case_filters),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    """Fleet KPIs over the filtered case set."""
    cases = await scoped_cases(db, filters)
    return {"kpis": analytics.compute_kpis(cases, clock.now())}


@router.get("/logistics-exceptions")
async def get_logistics_exceptions(
    filters: CaseFilters = Depends(case_filters),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    cases = await scoped_cases(db, filters)
    return analytics.logistics_exceptions(cases, clock.now())


@router.get("/time-in-stage")
async def get_time_in_stage(
    filters: CaseFilters = Depends(case_filters),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    cases = await scoped_cases(db, filters)
    events = await list_events_for_cases(db, [case.id for case in cases])
    return analytics.time_in_stage(cases, events, clock.now())


# ─── Intake ─────────────────────────────────────────────────────────────────


@router.get("/", response_model=RmaCaseList)
async def list_rma_cases(
    filters: CaseFilters = Depends(case_filters),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    rows, total = await list_cases(db, filters, offset=offset, limit=limit)
    return RmaCaseList(
        items=[RmaCaseResponse.model_validate(row) for row in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.post("/", response_model=RmaCaseDetail, status_code=201)
async def create_manual_case(
    body: ManualCaseCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    """Create a case from the internal dashboard."""
    warranty = compute_warranty(body.order_processed_at, clock.now())
    case, _ = await create_case(
        db,
        {
            "source": "manual",
            "submission_channel": "internal_dashboard",
            "issue_summary": body.issue_summary.strip(),
            "issue_details": body.issue_details,
            "serial_number": body.serial_number,
            "customer_name": body.customer_name,
            "customer_email": body.customer_email.strip().lower() if body.customer_email else None,
            "customer_phone": body.customer_phone,
            "shopify_order_id": body.shopify_order_id,
            "shopify_order_name": body.shopify_order_name,
            "order_processed_at": body.order_processed_at,
            "external_reference": body.external_reference,
            "priority": body.priority,
            "warranty_status": warranty.status,
            "warranty_basis": warranty.basis,
            "warranty_expires_at": warranty.expires_at,
            "warranty_checked_at": warranty.checked_at,
        },
        clock,
        actor=actor_from(user),
        initial_note=body.note,
    )
    await db.commit()
    events = await list_events(db, case.id)
    return RmaCaseDetail(
        case=RmaCaseResponse.model_validate(case),
        events=[ServiceEventResponse.model_validate(event) for event in events],
    )


@router.post("/public", dependencies=[Depends(enforce_public_intake_rate_limit)])
async def create_public_case(
    body: PublicCaseCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    shopify: ShopifyClient = Depends(get_shopify_client),
):
    """Customer-facing intake, rate limited per client IP. The order number and email must match a Shopify order."""
    if body.honeypot and body.honeypot.strip():
        logger.info("rma.public_honeypot_tripped")
        return {"success": True, "accepted": True}

    try:
        result = await submit_customer_form(
            db,
            clock,
            shopify,
            order_number=body.order_number,
            order_email=body.order_email,
            issue_summary=body.issue_summary,
            serial_number=body.serial_number,
            issue_details=body.issue_details,
        )
    except RmaError as exc:
        raise _http_error(exc)
    except (httpx.HTTPError, ShopifyAPIError, RetryError) as exc:
        logger.warning("rma.public_order_lookup_failed", error=str(exc))
        raise HTTPException(status_code=502, detail="Order verification failed, please retry")

    await db.commit()
    return {"success": True, "case_id": str(result.case.id), "deduped": result.deduped}


# ─── Case detail & workflow ─────────────────────────────────────────────────


@router.get("/{case_id}", response_model=RmaCaseDetail)
async def get_rma_case(
    case_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    case = await _load_case(db, case_id)
    events = await list_events(db, case.id)
    return RmaCaseDetail(
        case=RmaCaseResponse.model_validate(case),
        events=[ServiceEventResponse.model_validate(event) for event in events],
    )


@router.get("/{case_id}/parsed")
async def get_parsed_issue_details(
    case_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    case = await _load_case(db, case_id)
    parsed = parse_issue_details(case.issue_details)
    return {
        "case_id": str(case.id),
        "source": case.source,
        "shopify_return_id": case.shopify_return_id,
        "parsed_issue_details": parsed.model_dump() if parsed else None,
    }


@router.post("/{case_id}/status", response_model=RmaMutationResponse)
async def update_status(
    case_id: UUID,
    body: StatusUpdate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    """Move a case to a later stage. Guards: forward-only, required fields per stage."""
    case = await _load_case(db, case_id, for_update=True)
    try:
        event = await transition_case(db, case, body.status, clock, note=body.note, actor=actor_from(user))
    except RmaError as exc:
        logger.info("rma.transition_rejected", case_id=str(case_id), to_status=body.status, code=exc.code)
        raise _http_error(exc)
    return await _commit_mutation(db, case, event)


@router.post("/{case_id}/tracking", response_model=RmaMutationResponse)
async def update_tracking(
    case_id: UUID,
    body: TrackingUpdate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    case = await _load_case(db, case_id, for_update=True)
    try:
        event = await record_tracking(
            db,
            case,
            clock,
            direction=body.direction,
            carrier=body.carrier,
            tracking_number=body.tracking_number,
            tracking_url=body.tracking_url,
            status=body.status,
            delivered_at=body.delivered_at,
            note=body.note,
            actor=actor_from(user),
        )
    except RmaError as exc:
        raise _http_error(exc)
    return await _commit_mutation(db, case, event)


@router.post("/{case_id}/warranty-decision", response_model=RmaMutationResponse)
async def decide_warranty(
    case_id: UUID,
    body: WarrantyDecisionRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    case = await _load_case(db, case_id, for_update=True)
    try:
        event = await record_warranty_decision(
            db,
            case,
            clock,
            warranty_status=body.warranty_status,
            warranty_basis=body.warranty_basis,
            decision_notes=body.decision_notes,
            priority=body.priority,
            actor=actor_from(user),
        )
    except RmaError as exc:
        raise _http_error(exc)
    return await _commit_mutation(db, case, event)


@router.patch("/{case_id}/assignment", response_model=RmaMutationResponse)
async def update_assignment(
    case_id: UUID,
    body: AssignmentUpdate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    case = await _load_case(db, case_id, for_update=True)
    event = await assign_case(
        db,
        case,
        clock,
        owner_name=body.owner_name,
        owner_email=body.owner_email,
        technician_name=body.technician_name,
        technician_email=body.technician_email,
        actor=actor_from(user),
    )
    return await _commit_mutation(db, case, event)


@router.post("/{case_id}/events", response_model=RmaMutationResponse, status_code=201)
async def add_event(
    case_id: UUID,
    body: ServiceNoteCreate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: dict = Depends(get_current_user),
):
    """Append a free-form service note to the case history."""
    case = await _load_case(db, case_id, for_update=True)
    event = await add_service_note(
        db,
        case,
        clock,
        summary=body.summary.strip(),
        notes=body.notes,
        metadata=body.metadata,
        actor=actor_from(user),
    )
    return await _commit_mutation(db, case, event)
