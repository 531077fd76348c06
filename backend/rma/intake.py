"""
RMA intake — turning external events into cases.

Two entry points:
  - ingest_return_webhook: a verified Shopify return webhook. At most one
    case per Shopify return id; unparseable payloads still produce a
    minimal case keyed by the body hash, since Shopify will not resend.
  - submit_customer_form: the public service form, gated on the order
    number + email matching a real Shopify order.
"""

import calendar
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import RetryError

from core.clock import Clock
from core.config import get_settings
from db.models import RmaCase
from integrations.shopify import (
    ShopifyAPIError,
    ShopifyClient,
    order_customer_name,
    order_line_items,
    to_order_gid,
)
from integrations.shopify_returns import extract_return_payload, summarize_line_items
from rma.errors import RmaError
from rma.issue_details import IssueCustomer, IssueLineItem, IssuePrimary, ParsedWebhookV1, build_issue_details
from rma.store import create_case, find_existing_case, normalize_serial_number

logger = structlog.get_logger()

WEBHOOK_SOURCE = "shopify_return_webhook"
WEBHOOK_CHANNEL = "shopify_webhook"
DEGRADED_SUMMARY = "Shopify return received (unparsed payload)"


class OrderVerificationError(RmaError):
    code = "order_not_verified"

    def __init__(self):
        super().__init__("Order and email combination could not be verified")


class OrderLookupUnavailableError(RmaError):
    code = "order_lookup_unavailable"

    def __init__(self):
        super().__init__("Shopify is not configured")


@dataclass
class WarrantyBaseline:
    status: str
    basis: str
    expires_at: datetime | None
    checked_at: datetime


@dataclass
class IntakeResult:
    case: RmaCase
    deduped: bool
    degraded: bool = False


def parse_shopify_datetime(value: str | None) -> datetime | None:
    """ISO-8601 from Shopify (e.g. 2024-01-15T10:00:00Z) as naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_warranty(order_processed_at: datetime | None, now: datetime, months: int | None = None) -> WarrantyBaseline:
    """Manufacturer window from the purchase date. Operators override via warranty decisions."""
    if order_processed_at is None:
        return WarrantyBaseline(status="unknown", basis="unknown", expires_at=None, checked_at=now)
    months = months if months is not None else get_settings().warranty_months
    expires_at = add_months(order_processed_at, months)
    return WarrantyBaseline(
        status="in_warranty" if expires_at >= now else "out_of_warranty",
        basis="manufacturer",
        expires_at=expires_at,
        checked_at=now,
    )


def _warranty_fields(warranty: WarrantyBaseline) -> dict:
    return {
        "warranty_status": warranty.status,
        "warranty_basis": warranty.basis,
        "warranty_expires_at": warranty.expires_at,
        "warranty_checked_at": warranty.checked_at,
    }


async def _fetch_order_for_enrichment(shopify: ShopifyClient | None, order_id: str) -> dict | None:
    if shopify is None or not shopify.is_configured:
        return None
    try:
        return await shopify.fetch_order(order_id)
    except (httpx.HTTPError, ShopifyAPIError, RetryError) as exc:
        logger.warning("rma.webhook_enrichment_skipped", order_id=order_id, error=str(exc))
        return None


async def _ingest_degraded(
    db: AsyncSession,
    raw_body: bytes,
    clock: Clock,
    *,
    topic: str,
    webhook_id: str | None,
    reason: str,
) -> IntakeResult:
    logger.warning("rma.webhook_degraded", topic=topic, webhook_id=webhook_id, reason=reason)
    now = clock.now()
    case, deduped = await create_case(
        db,
        {
            "source": WEBHOOK_SOURCE,
            "submission_channel": WEBHOOK_CHANNEL,
            "dedupe_key": hashlib.sha256(raw_body).hexdigest(),
            "external_reference": webhook_id,
            "issue_summary": DEGRADED_SUMMARY,
            "issue_details": raw_body.decode("utf-8", errors="replace"),
            **_warranty_fields(compute_warranty(None, now)),
        },
        clock,
        actor="shopify_webhook",
        initial_note=f"Payload could not be parsed: {reason}",
    )
    return IntakeResult(case=case, deduped=deduped, degraded=True)


async def ingest_return_webhook(
    db: AsyncSession,
    raw_body: bytes,
    clock: Clock,
    *,
    topic: str | None = None,
    webhook_id: str | None = None,
    shopify: ShopifyClient | None = None,
) -> IntakeResult:
    """Create (or find) the case for an already-verified return webhook body."""
    topic = topic or "unknown"
    try:
        payload = extract_return_payload(json.loads(raw_body))
    except ValueError as exc:
        # json.JSONDecodeError, UnicodeDecodeError and InvalidReturnPayload are all ValueErrors.
        return await _ingest_degraded(db, raw_body, clock, topic=topic, webhook_id=webhook_id, reason=str(exc))

    existing = await find_existing_case(db, payload.return_id, None)
    if existing is not None:
        logger.info("rma.webhook_deduped", shopify_return_id=payload.return_id, case_id=str(existing.id))
        return IntakeResult(case=existing, deduped=True)

    order = await _fetch_order_for_enrichment(shopify, payload.order_id)
    summary = summarize_line_items(payload.line_items)

    order_serial = None
    if order:
        order_serial = next((row["serial"] for row in order_line_items(order) if row.get("serial")), None)
    order_customer = (order or {}).get("customer") or {}
    customer_name = (order_customer_name(order) if order else None) or payload.customer.name
    customer_email = order_customer.get("email") or (order or {}).get("email") or payload.customer.email
    customer_phone = order_customer.get("phone") or (order or {}).get("phone") or payload.customer.phone
    serial_hint = summary.serial_hint or order_serial
    reason_hint = summary.reason_hint or payload.reason or ""

    now = clock.now()
    order_processed_at = parse_shopify_datetime((order or {}).get("processedAt"))
    warranty = compute_warranty(order_processed_at, now)

    details = ParsedWebhookV1(
        webhook_topic=topic,
        return_id=payload.return_id,
        order_id=payload.order_id,
        return_status=payload.status or "unknown",
        customer=IssueCustomer(name=customer_name, email=customer_email, phone=customer_phone),
        primary=IssuePrimary(sku=summary.sku_hint, serial=serial_hint),
        return_note=payload.note,
        line_items=[IssueLineItem(**item) for item in summary.items],
    )

    case, deduped = await create_case(
        db,
        {
            "source": WEBHOOK_SOURCE,
            "submission_channel": WEBHOOK_CHANNEL,
            "shopify_return_id": payload.return_id,
            "external_reference": webhook_id,
            "shopify_order_id": to_order_gid(payload.order_id),
            "shopify_order_name": (order or {}).get("name") or payload.name,
            "order_processed_at": order_processed_at,
            "serial_number": serial_hint,
            "customer_name": customer_name,
            "customer_email": customer_email,
            "customer_phone": customer_phone,
            "order_line_items": {"source": WEBHOOK_SOURCE, "items": summary.items},
            "priority": "normal",
            "issue_summary": (
                f"Shopify return: {reason_hint}"
                if reason_hint
                else f"Shopify return received ({payload.status or 'open'})"
            ),
            "issue_details": build_issue_details(details),
            **_warranty_fields(warranty),
        },
        clock,
        actor="shopify_webhook",
        initial_note="\n".join(summary.detail_lines) or None,
    )
    if deduped:
        logger.info("rma.webhook_deduped", shopify_return_id=payload.return_id, case_id=str(case.id))
    return IntakeResult(case=case, deduped=deduped)


def customer_form_dedupe_key(order_number: str, email: str, serial_number: str | None, issue_summary: str) -> str:
    fingerprint = "|".join(
        [
            order_number.strip().lower(),
            email.strip().lower(),
            normalize_serial_number(serial_number) or "",
            issue_summary.strip().lower(),
        ]
    )
    return f"customer_form:{hashlib.sha256(fingerprint.encode('utf-8')).hexdigest()}"


async def submit_customer_form(
    db: AsyncSession,
    clock: Clock,
    shopify: ShopifyClient | None,
    *,
    order_number: str,
    order_email: str,
    issue_summary: str,
    serial_number: str | None = None,
    issue_details: str | None = None,
) -> IntakeResult:
    if shopify is None or not shopify.is_configured:
        raise OrderLookupUnavailableError()

    email = order_email.strip().lower()
    order = await shopify.find_order(order_number, email)
    if not order:
        logger.info("rma.customer_form_unverified", order_number=order_number)
        raise OrderVerificationError()

    now = clock.now()
    order_processed_at = parse_shopify_datetime(order.get("processedAt"))
    customer = order.get("customer") or {}

    case, deduped = await create_case(
        db,
        {
            "source": "customer_form",
            "submission_channel": "customer_portal",
            "dedupe_key": customer_form_dedupe_key(order_number, email, serial_number, issue_summary),
            "external_reference": f"{order_number.strip().lower()}:{email}",
            "shopify_order_id": order.get("id"),
            "shopify_order_name": order.get("name"),
            "order_processed_at": order_processed_at,
            "serial_number": serial_number,
            "customer_name": order_customer_name(order),
            "customer_email": email,
            "customer_phone": customer.get("phone") or order.get("phone"),
            "order_line_items": {"source": "customer_form", "items": order_line_items(order)},
            "priority": "normal",
            "issue_summary": issue_summary.strip(),
            "issue_details": issue_details,
            **_warranty_fields(compute_warranty(order_processed_at, now)),
        },
        clock,
        actor=email,
    )
    return IntakeResult(case=case, deduped=deduped)
