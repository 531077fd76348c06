"""
Structured issue details stored on webhook-created cases.

Current cases store a `shopify_return_webhook_v1` JSON document. Older cases
hold free text ("Webhook topic: ...", "line_1: item=..., sku=...") which is
parsed best-effort into the legacy shape, keeping the raw text.
"""

import json
import re
from typing import Literal

from pydantic import BaseModel, ValidationError

V1_FORMAT = "shopify_return_webhook_v1"
LEGACY_FORMAT = "shopify_return_webhook_legacy"

_LINE_ITEM_RE = re.compile(r"^line_\d+:", re.IGNORECASE)


class IssueLineItem(BaseModel):
    index: int
    item: str | None = None
    sku: str | None = None
    serial: str | None = None
    qty: int | None = None
    reason: str | None = None


class IssueCustomer(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class IssuePrimary(BaseModel):
    sku: str | None = None
    serial: str | None = None


class ParsedWebhookV1(BaseModel):
    format: Literal["shopify_return_webhook_v1"] = V1_FORMAT
    source: str = "shopify_return_webhook"
    webhook_topic: str = "unknown"
    return_id: str
    order_id: str
    return_status: str = "unknown"
    customer: IssueCustomer = IssueCustomer()
    primary: IssuePrimary = IssuePrimary()
    return_note: str | None = None
    line_items: list[IssueLineItem] = []


class LegacyTextFormat(BaseModel):
    format: Literal["shopify_return_webhook_legacy"] = LEGACY_FORMAT
    webhook_topic: str = "unknown"
    return_note: str | None = None
    primary_sku: str | None = None
    line_items: list[IssueLineItem] = []
    raw: str


ParsedIssueDetails = ParsedWebhookV1 | LegacyTextFormat


def build_issue_details(details: ParsedWebhookV1) -> str:
    return json.dumps(details.model_dump(), indent=2)


def _legacy_value(lines: list[str], label: str) -> str | None:
    prefix = f"{label}:".lower()
    for line in lines:
        if line.lower().startswith(prefix):
            return line[len(prefix) :].strip() or None
    return None


def _legacy_line_item(index: int, line: str) -> IssueLineItem:
    _, _, rest = line.partition(":")
    fields: dict[str, str] = {}
    for entry in rest.split(","):
        key, sep, value = entry.strip().partition("=")
        if sep and key not in fields:
            fields[key] = value.strip()

    qty_raw = fields.get("qty")
    try:
        qty = int(qty_raw) if qty_raw else None
    except ValueError:
        qty = None

    return IssueLineItem(
        index=index,
        item=fields.get("item") or None,
        sku=fields.get("sku") or None,
        serial=fields.get("serial") or None,
        qty=qty,
        reason=fields.get("reason") or None,
    )


def parse_legacy_issue_details(text: str) -> LegacyTextFormat:
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    item_lines = [line for line in lines if _LINE_ITEM_RE.match(line)]
    return LegacyTextFormat(
        webhook_topic=_legacy_value(lines, "Webhook topic") or "unknown",
        return_note=_legacy_value(lines, "Return note"),
        primary_sku=_legacy_value(lines, "Primary SKU"),
        line_items=[_legacy_line_item(i, line) for i, line in enumerate(item_lines, start=1)],
        raw=text,
    )


def parse_issue_details(text: str | None) -> ParsedIssueDetails | None:
    if not text:
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("format") == V1_FORMAT:
        try:
            return ParsedWebhookV1.model_validate(payload)
        except ValidationError:
            pass
    return parse_legacy_issue_details(text)
