"""
Case Lifecycle Engine — guarded, forward-only RMA stage transitions.

Stages (strict forward order):
  received → testing → sent_to_manufacturer → repaired_replaced → back_to_customer

Every mutation here is guard-then-write on one row: guards run against the
case as loaded, and a rejected mutation leaves the case untouched.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import Clock
from db.models import RMA_PRIORITIES, WARRANTY_BASES, WARRANTY_STATUSES, RmaCase, ServiceEvent
from rma.errors import InvalidTransitionError, MissingRequiredFieldsError, WarrantyDecisionError
from rma.sla_policy import compute_sla_due_at
from rma.store import append_event

logger = structlog.get_logger()


class RmaStatus(str, Enum):
    RECEIVED = "received"
    TESTING = "testing"
    SENT_TO_MANUFACTURER = "sent_to_manufacturer"
    REPAIRED_REPLACED = "repaired_replaced"
    BACK_TO_CUSTOMER = "back_to_customer"


STAGE_ORDER: tuple[str, ...] = tuple(status.value for status in RmaStatus)
TERMINAL_STATUSES = frozenset({RmaStatus.BACK_TO_CUSTOMER.value})

# Each stage may move to any strictly later stage.
TRANSITIONS: dict[str, frozenset[str]] = {
    stage: frozenset(STAGE_ORDER[index + 1 :]) for index, stage in enumerate(STAGE_ORDER)
}

# Fields that must be non-empty on the case before the stage can be entered.
REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    RmaStatus.BACK_TO_CUSTOMER.value: ("outbound_carrier", "outbound_tracking_number"),
}

TRACKING_DIRECTIONS = ("inbound", "outbound")


def status_event_type(status: str) -> str:
    return f"rma_{status}" if status in STAGE_ORDER else "service_note"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def missing_required_fields(case: RmaCase, target: str, pending: dict | None = None) -> list[str]:
    """Required fields for `target` still empty, reading `pending` values over the case."""
    pending = pending or {}
    missing = []
    for field_name in REQUIRED_FIELDS.get(target, ()):
        value = pending[field_name] if field_name in pending else getattr(case, field_name, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field_name)
    return missing


def check_transition(case: RmaCase, target: str) -> None:
    """Raise if `case` cannot move to `target`. Ordering is checked before fields."""
    current = case.status
    if target not in STAGE_ORDER or target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)
    missing = missing_required_fields(case, target)
    if missing:
        raise MissingRequiredFieldsError(target, missing)


async def transition_case(
    db: AsyncSession,
    case: RmaCase,
    target: str,
    clock: Clock,
    *,
    note: str | None = None,
    actor: str | None = None,
    trigger: str = "manual",
) -> ServiceEvent:
    check_transition(case, target)

    now = clock.now()
    previous = case.status
    case.status = target
    case.updated_at = now

    if case.received_at is None:
        case.received_at = now
    if target == RmaStatus.TESTING.value and case.inspected_at is None:
        case.inspected_at = now
    if target == RmaStatus.BACK_TO_CUSTOMER.value:
        if case.shipped_back_at is None:
            case.shipped_back_at = now
        if case.closed_at is None:
            case.closed_at = now
    if case.sla_due_at is None:
        case.sla_due_at = compute_sla_due_at(case.received_at, case.priority)

    event = await append_event(
        db,
        case,
        clock,
        event_type=status_event_type(target),
        summary=f"RMA status updated to {target}",
        notes=note,
        metadata={"previous_status": previous, "next_status": target, "trigger": trigger},
        actor=actor,
    )
    logger.info(
        "rma.transition",
        case_id=str(case.id),
        from_status=previous,
        to_status=target,
        trigger=trigger,
    )
    return event


def _is_delivered(status: str | None) -> bool:
    return bool(status) and "delivered" in status.lower()


async def record_tracking(
    db: AsyncSession,
    case: RmaCase,
    clock: Clock,
    *,
    direction: str,
    carrier: str | None = None,
    tracking_number: str | None = None,
    tracking_url: str | None = None,
    status: str | None = None,
    delivered_at: datetime | None = None,
    note: str | None = None,
    actor: str | None = None,
) -> ServiceEvent:
    """
    Record inbound or outbound logistics data.

    Inbound "delivered" stamps `received_at` and moves a `received` case to
    `testing`. An outbound tracking number stamps `shipped_back_at` and moves
    a `repaired_replaced` case to `back_to_customer`. Auto-advances go through
    the same guard as an explicit status change.
    """
    if direction not in TRACKING_DIRECTIONS:
        raise ValueError(f"Unknown tracking direction: {direction}")

    now = clock.now()
    delivered = _is_delivered(status)
    delivered_time = delivered_at or now
    pending = {
        f"{direction}_carrier": carrier,
        f"{direction}_tracking_number": tracking_number,
        f"{direction}_tracking_url": tracking_url,
        f"{direction}_status": status,
    }

    auto_target: str | None = None
    if direction == "inbound" and delivered and case.status == RmaStatus.RECEIVED.value:
        auto_target = RmaStatus.TESTING.value
    if direction == "outbound" and tracking_number and case.status == RmaStatus.REPAIRED_REPLACED.value:
        auto_target = RmaStatus.BACK_TO_CUSTOMER.value
    if auto_target is not None:
        missing = missing_required_fields(case, auto_target, pending)
        if missing:
            raise MissingRequiredFieldsError(auto_target, missing)

    for field_name, value in pending.items():
        setattr(case, field_name, value)

    if direction == "inbound":
        if delivered and case.received_at is None:
            case.received_at = delivered_time
    else:
        if tracking_number and case.shipped_back_at is None:
            case.shipped_back_at = now
        if delivered:
            case.delivered_back_at = delivered_time
            if case.closed_at is None:
                case.closed_at = delivered_time

    case.updated_at = now
    event = await append_event(
        db,
        case,
        clock,
        event_type="tracking_update",
        summary=f"{direction.capitalize()} tracking updated",
        notes=note,
        metadata={
            "direction": direction,
            "carrier": carrier,
            "tracking_number": tracking_number,
            "status": status,
        },
        actor=actor,
    )

    if auto_target is not None:
        await transition_case(db, case, auto_target, clock, actor=actor, trigger=f"{direction}_tracking")
    return event


async def record_warranty_decision(
    db: AsyncSession,
    case: RmaCase,
    clock: Clock,
    *,
    warranty_status: str,
    warranty_basis: str,
    decision_notes: str,
    priority: str | None = None,
    actor: str | None = None,
) -> ServiceEvent:
    notes = (decision_notes or "").strip()
    if not notes:
        raise WarrantyDecisionError("Warranty decision notes are required")
    if warranty_status not in WARRANTY_STATUSES:
        raise WarrantyDecisionError(f"Unknown warranty status: {warranty_status}")
    if warranty_basis not in WARRANTY_BASES:
        raise WarrantyDecisionError(f"Unknown warranty basis: {warranty_basis}")
    if priority is not None and priority not in RMA_PRIORITIES:
        raise WarrantyDecisionError(f"Unknown priority: {priority}")

    now = clock.now()
    previous = {"warranty_status": case.warranty_status, "priority": case.priority}
    case.warranty_status = warranty_status
    case.warranty_basis = warranty_basis
    case.warranty_decision_notes = notes
    case.warranty_checked_at = now
    if priority is not None:
        case.priority = priority
    case.updated_at = now

    event = await append_event(
        db,
        case,
        clock,
        event_type="warranty_decision",
        summary=f"Warranty decision: {warranty_status} ({warranty_basis})",
        notes=notes,
        metadata={
            "previous_warranty_status": previous["warranty_status"],
            "warranty_status": warranty_status,
            "warranty_basis": warranty_basis,
            "previous_priority": previous["priority"],
            "priority": case.priority,
        },
        actor=actor,
    )
    logger.info("rma.warranty_decision", case_id=str(case.id), warranty_status=warranty_status)
    return event


async def assign_case(
    db: AsyncSession,
    case: RmaCase,
    clock: Clock,
    *,
    owner_name: str | None = None,
    owner_email: str | None = None,
    technician_name: str | None = None,
    technician_email: str | None = None,
    actor: str | None = None,
) -> ServiceEvent:
    now = clock.now()
    case.assigned_owner_name = owner_name
    case.assigned_owner_email = owner_email.strip().lower() if owner_email else None
    case.assigned_technician_name = technician_name
    case.assigned_technician_email = technician_email.strip().lower() if technician_email else None
    case.assigned_at = now
    case.updated_at = now
    return await append_event(
        db,
        case,
        clock,
        event_type="assignment",
        summary="Assignment updated",
        metadata={
            "owner_email": case.assigned_owner_email,
            "technician_email": case.assigned_technician_email,
        },
        actor=actor,
    )


async def add_service_note(
    db: AsyncSession,
    case: RmaCase,
    clock: Clock,
    *,
    summary: str,
    notes: str | None = None,
    metadata: dict | None = None,
    actor: str | None = None,
) -> ServiceEvent:
    case.updated_at = clock.now()
    return await append_event(
        db,
        case,
        clock,
        event_type="service_note",
        summary=summary,
        notes=notes,
        metadata=metadata,
        actor=actor,
    )
