"""
Case Store — persistence for RMA cases and their service history.

Cases are never deleted. Service events are append-only.

Creation is idempotent on the two external identities a case can carry:
`shopify_return_id` (webhook returns) and `dedupe_key` (degraded webhooks,
customer form). Both are unique in the schema, so a concurrent duplicate
loses at INSERT time and is answered with the row that won.
"""

import uuid
from typing import Any

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import Clock
from db.models import RmaCase, ServiceEvent
from rma.errors import CaseNotFoundError
from rma.filters import CaseFilters, apply_case_filters
from rma.sla_policy import compute_sla_due_at

logger = structlog.get_logger()


def normalize_serial_number(serial: str | None) -> str | None:
    normalized = (serial or "").strip()
    return normalized.upper() if normalized else None


async def find_existing_case(db: AsyncSession, shopify_return_id: str | None, dedupe_key: str | None) -> RmaCase | None:
    conditions = []
    if shopify_return_id:
        conditions.append(RmaCase.shopify_return_id == shopify_return_id)
    if dedupe_key:
        conditions.append(RmaCase.dedupe_key == dedupe_key)
    if not conditions:
        return None
    result = await db.execute(select(RmaCase).where(or_(*conditions)).limit(1))
    return result.scalar_one_or_none()


async def create_case(
    db: AsyncSession,
    fields: dict[str, Any],
    clock: Clock,
    *,
    actor: str | None = None,
    initial_note: str | None = None,
) -> tuple[RmaCase, bool]:
    """
    Insert a case in stage `received` with its initial `rma_received` event.

    Returns (case, deduped). When a case with the same shopify_return_id or
    dedupe_key already exists, nothing is written and that case is returned.
    """
    fields = dict(fields)
    fields["serial_number"] = normalize_serial_number(fields.get("serial_number"))
    return_id = fields.get("shopify_return_id")
    dedupe_key = fields.get("dedupe_key")

    existing = await find_existing_case(db, return_id, dedupe_key)
    if existing is not None:
        logger.info("rma.create_deduped", case_id=str(existing.id), shopify_return_id=return_id, dedupe_key=dedupe_key)
        return existing, True

    now = clock.now()
    case = RmaCase(**fields)
    case.status = "received"
    case.priority = case.priority or "normal"
    case.created_by = actor
    case.created_at = now
    case.updated_at = now
    if case.sla_due_at is None:
        case.sla_due_at = compute_sla_due_at(case.received_at or now, case.priority)

    try:
        async with db.begin_nested():
            db.add(case)
            await db.flush()
            db.add(
                ServiceEvent(
                    case_id=case.id,
                    event_type="rma_received",
                    summary=f"RMA case created from {case.source or 'manual'}",
                    notes=initial_note,
                    event_metadata={
                        "source": case.source,
                        "submission_channel": case.submission_channel,
                        "shopify_return_id": return_id,
                    },
                    created_by=actor,
                    created_at=now,
                )
            )
            await db.flush()
    except IntegrityError:
        existing = await find_existing_case(db, return_id, dedupe_key)
        if existing is None:
            raise
        logger.info("rma.create_race_deduped", case_id=str(existing.id), shopify_return_id=return_id)
        return existing, True

    logger.info("rma.created", case_id=str(case.id), source=case.source, priority=case.priority)
    return case, False


async def get_case(db: AsyncSession, case_id: uuid.UUID, *, for_update: bool = False) -> RmaCase:
    query = select(RmaCase).where(RmaCase.id == case_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    case = result.scalar_one_or_none()
    if case is None:
        raise CaseNotFoundError(case_id)
    return case


async def list_cases(
    db: AsyncSession,
    filters: CaseFilters,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[RmaCase], int]:
    query = apply_case_filters(select(RmaCase), filters)
    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(query.order_by(RmaCase.created_at.desc()).offset(offset).limit(limit))
    return list(result.scalars().all()), int(total)


async def scoped_cases(db: AsyncSession, filters: CaseFilters) -> list[RmaCase]:
    """All cases matching the filters, unpaginated. Feeds the analytics views."""
    result = await db.execute(apply_case_filters(select(RmaCase), filters))
    return list(result.scalars().all())


async def list_events(db: AsyncSession, case_id: uuid.UUID) -> list[ServiceEvent]:
    result = await db.execute(
        select(ServiceEvent).where(ServiceEvent.case_id == case_id).order_by(ServiceEvent.created_at)
    )
    return list(result.scalars().all())


async def list_events_for_cases(db: AsyncSession, case_ids: list[uuid.UUID]) -> list[ServiceEvent]:
    if not case_ids:
        return []
    result = await db.execute(
        select(ServiceEvent).where(ServiceEvent.case_id.in_(case_ids)).order_by(ServiceEvent.created_at)
    )
    return list(result.scalars().all())


async def append_event(
    db: AsyncSession,
    case: RmaCase,
    clock: Clock,
    *,
    event_type: str,
    summary: str | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
    actor: str | None = None,
) -> ServiceEvent:
    event = ServiceEvent(
        case_id=case.id,
        event_type=event_type,
        summary=summary,
        notes=notes,
        event_metadata=metadata or {},
        created_by=actor,
        created_at=clock.now(),
    )
    db.add(event)
    await db.flush()
    return event
