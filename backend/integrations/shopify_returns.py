"""
Shopify return webhook payload parsing.

Shopify delivers the return either at the top level or wrapped in a
`return` object, and line items carry SKU / serial data in several optional
places. Everything here is pure: no DB, no network.
"""

from dataclasses import dataclass, field
from typing import Any


class InvalidReturnPayload(ValueError):
    """Payload is JSON but lacks the identifiers needed to build a full case."""


@dataclass
class ReturnCustomer:
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass
class ReturnPayload:
    return_id: str
    order_id: str
    name: str | None
    status: str | None
    note: str | None
    reason: str | None
    customer: ReturnCustomer
    line_items: list[dict] = field(default_factory=list)


@dataclass
class LineItemSummary:
    reason_hint: str
    sku_hint: str | None
    serial_hint: str | None
    detail_lines: list[str]
    items: list[dict]


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _first(*values: Any) -> str | None:
    for value in values:
        text = _text(value)
        if text:
            return text
    return None


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def extract_return_payload(raw: Any) -> ReturnPayload:
    if not isinstance(raw, dict):
        raise InvalidReturnPayload("Return webhook payload is not a JSON object")

    base = raw["return"] if isinstance(raw.get("return"), dict) else raw
    return_id = _text(base.get("id"))
    order_id = _text(base.get("order_id"))
    if not return_id or not order_id:
        raise InvalidReturnPayload("Return webhook payload is missing id or order_id")

    base_customer = _dict(base.get("customer"))
    raw_customer = _dict(raw.get("customer"))
    name_parts = [
        _first(base_customer.get("first_name"), raw_customer.get("first_name")),
        _first(base_customer.get("last_name"), raw_customer.get("last_name")),
    ]
    line_items = base.get("return_line_items")

    return ReturnPayload(
        return_id=return_id,
        order_id=order_id,
        name=_text(base.get("name")),
        status=_text(base.get("status")),
        note=_first(base.get("note"), raw.get("note")),
        reason=_first(base.get("reason"), raw.get("reason")),
        customer=ReturnCustomer(
            name=" ".join(part for part in name_parts if part) or None,
            email=_first(base_customer.get("email"), raw_customer.get("email"), base.get("email"), raw.get("email")),
            phone=_first(base_customer.get("phone"), raw_customer.get("phone"), base.get("phone"), raw.get("phone")),
        ),
        line_items=[item for item in line_items if isinstance(item, dict)] if isinstance(line_items, list) else [],
    )


def summarize_line_items(line_items: list[dict]) -> LineItemSummary:
    """
    Normalize return line items into rows and pick SKU/serial hints.

    SKU:    sku → line_item.sku → line_item.variant.sku
    Serial: serial → serial_number → line_item.variant.barcode
    Reason: customer_note → reason → return_reason.name
    Hints are the first non-empty value across items, in item order.
    """
    reasons: list[str] = []
    detail_lines: list[str] = []
    items: list[dict] = []
    sku_hint = None
    serial_hint = None

    for index, item in enumerate(line_items, start=1):
        line_item = _dict(item.get("line_item"))
        variant = _dict(line_item.get("variant"))
        reason = _first(item.get("customer_note"), item.get("reason"), _dict(item.get("return_reason")).get("name"))
        sku = _first(item.get("sku"), line_item.get("sku"), variant.get("sku"))
        serial = _first(item.get("serial"), item.get("serial_number"), variant.get("barcode"))
        title = _first(line_item.get("name"), line_item.get("title"))
        qty = item.get("quantity")
        qty = qty if isinstance(qty, int) and not isinstance(qty, bool) else None

        sku_hint = sku_hint or sku
        serial_hint = serial_hint or serial
        if reason and reason not in reasons:
            reasons.append(reason)

        bits = [
            f"item={title}" if title else None,
            f"sku={sku}" if sku else None,
            f"serial={serial}" if serial else None,
            f"qty={qty}" if qty is not None else None,
            f"reason={reason}" if reason else None,
        ]
        bits = [bit for bit in bits if bit]
        if bits:
            detail_lines.append(f"line_{index}: {', '.join(bits)}")

        items.append({"index": index, "item": title, "sku": sku, "serial": serial, "qty": qty, "reason": reason})

    return LineItemSummary(
        reason_hint=" | ".join(reasons),
        sku_hint=sku_hint,
        serial_hint=serial_hint,
        detail_lines=detail_lines,
        items=items,
    )
