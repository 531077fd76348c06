"""
Tests for Shopify return webhook ingestion.

Covers:
  - HMAC verification (401 and nothing persisted on failure)
  - dedup by return id
  - degraded acceptance of unparseable payloads
  - payload parsing and line item hints
  - order enrichment and warranty baseline
"""

import json
from datetime import datetime

import pytest
from httpx import AsyncClient

from core.config import get_settings
from core.security import compute_webhook_hmac, verify_webhook_hmac
from integrations.shopify_returns import InvalidReturnPayload, extract_return_payload, summarize_line_items
from rma.intake import DEGRADED_SUMMARY, add_months, compute_warranty, parse_shopify_datetime

WEBHOOK_URL = "/api/v1/shopify/webhooks/returns"

RETURN_PAYLOAD = {
    "return": {
        "id": 9001,
        "order_id": 5550001,
        "name": "#1001-R1",
        "status": "open",
        "customer": {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
        "return_line_items": [
            {
                "quantity": 1,
                "customer_note": "Screen flickers",
                "line_item": {"name": "Tablet 10", "variant": {"sku": "TAB-10", "barcode": "SN0001"}},
            },
            {
                "quantity": 1,
                "return_reason": {"name": "Screen flickers"},
                "sku": "CASE-1",
            },
        ],
    }
}


def _signed(body: bytes, topic: str = "returns/request") -> dict:
    secret = get_settings().shopify_webhook_secret
    return {
        "X-Shopify-Hmac-Sha256": compute_webhook_hmac(secret, body),
        "X-Shopify-Topic": topic,
        "X-Shopify-Webhook-Id": "wh-1",
        "Content-Type": "application/json",
    }


class TestWebhookSignature:
    def test_valid_signature_verifies(self):
        body = b'{"id": 1}'
        assert verify_webhook_hmac("secret", body, compute_webhook_hmac("secret", body))

    def test_tampered_body_fails(self):
        signature = compute_webhook_hmac("secret", b'{"id": 1}')
        assert not verify_webhook_hmac("secret", b'{"id": 2}', signature)

    def test_missing_secret_or_header_fails_closed(self):
        body = b"{}"
        assert not verify_webhook_hmac("", body, compute_webhook_hmac("", body))
        assert not verify_webhook_hmac("secret", body, None)


class TestPayloadParsing:
    def test_wrapped_payload(self):
        payload = extract_return_payload(RETURN_PAYLOAD)
        assert payload.return_id == "9001"
        assert payload.order_id == "5550001"
        assert payload.customer.name == "Ada Lovelace"
        assert payload.customer.email == "ada@example.com"
        assert len(payload.line_items) == 2

    def test_top_level_payload(self):
        payload = extract_return_payload({"id": "R1", "order_id": "O1", "email": "x@example.com"})
        assert payload.return_id == "R1"
        assert payload.customer.email == "x@example.com"

    @pytest.mark.parametrize("raw", [[1, 2], {"id": "R1"}, {"order_id": "O1"}, {"return": {"id": ""}}])
    def test_missing_identifiers_are_rejected(self, raw):
        with pytest.raises(InvalidReturnPayload):
            extract_return_payload(raw)

    def test_line_item_hints(self):
        summary = summarize_line_items(RETURN_PAYLOAD["return"]["return_line_items"])

        assert summary.sku_hint == "TAB-10"
        assert summary.serial_hint == "SN0001"
        assert summary.reason_hint == "Screen flickers"
        assert summary.detail_lines[0] == "line_1: item=Tablet 10, sku=TAB-10, serial=SN0001, qty=1, reason=Screen flickers"
        assert summary.items[1]["sku"] == "CASE-1"

    def test_serial_number_field_wins_over_barcode(self):
        summary = summarize_line_items(
            [{"serial_number": "SN-X", "line_item": {"variant": {"barcode": "BAR"}}}]
        )
        assert summary.serial_hint == "SN-X"


class TestWarrantyBaseline:
    def test_in_window(self):
        warranty = compute_warranty(datetime(2025, 6, 1), datetime(2026, 3, 2), months=12)
        assert warranty.status == "in_warranty"
        assert warranty.basis == "manufacturer"
        assert warranty.expires_at == datetime(2026, 6, 1)

    def test_out_of_window(self):
        warranty = compute_warranty(datetime(2024, 1, 31), datetime(2026, 3, 2), months=12)
        assert warranty.status == "out_of_warranty"

    def test_no_purchase_date_is_unknown(self):
        warranty = compute_warranty(None, datetime(2026, 3, 2))
        assert warranty.status == "unknown"
        assert warranty.expires_at is None

    def test_month_end_clamps(self):
        assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)

    def test_shopify_datetime_is_naive_utc(self):
        assert parse_shopify_datetime("2025-06-01T10:00:00+10:00") == datetime(2025, 6, 1, 0, 0)
        assert parse_shopify_datetime("not a date") is None


@pytest.mark.asyncio
class TestReturnsWebhookEndpoint:
    async def test_bad_signature_is_401_and_persists_nothing(self, client: AsyncClient):
        body = json.dumps(RETURN_PAYLOAD).encode()
        headers = {**_signed(body), "X-Shopify-Hmac-Sha256": "bm90LWEtc2lnbmF0dXJl"}

        resp = await client.post(WEBHOOK_URL, content=body, headers=headers)
        assert resp.status_code == 401

        listing = await client.get("/api/v1/rma/")
        assert listing.json()["total"] == 0

    async def test_missing_signature_is_401(self, client: AsyncClient):
        resp = await client.post(WEBHOOK_URL, content=b"{}")
        assert resp.status_code == 401

    async def test_creates_case_from_return(self, client: AsyncClient, clock):
        body = json.dumps(RETURN_PAYLOAD).encode()

        resp = await client.post(WEBHOOK_URL, content=body, headers=_signed(body))
        assert resp.status_code == 200
        result = resp.json()
        assert result["deduped"] is False
        assert result["degraded"] is False

        detail = (await client.get(f"/api/v1/rma/{result['case_id']}")).json()
        case = detail["case"]
        assert case["source"] == "shopify_return_webhook"
        assert case["submission_channel"] == "shopify_webhook"
        assert case["shopify_return_id"] == "9001"
        assert case["shopify_order_id"] == "gid://shopify/Order/5550001"
        assert case["serial_number"] == "SN0001"
        assert case["issue_summary"] == "Shopify return: Screen flickers"
        assert case["warranty_status"] == "unknown"
        assert case["status"] == "received"
        assert case["sla_due_at"] == "2026-03-07T09:00:00"
        assert [event["event_type"] for event in detail["events"]] == ["rma_received"]
        assert detail["events"][0]["notes"] == (
            "line_1: item=Tablet 10, sku=TAB-10, serial=SN0001, qty=1, reason=Screen flickers\n"
            "line_2: sku=CASE-1, qty=1, reason=Screen flickers"
        )

        parsed = (await client.get(f"/api/v1/rma/{result['case_id']}/parsed")).json()
        issue = parsed["parsed_issue_details"]
        assert issue["format"] == "shopify_return_webhook_v1"
        assert issue["webhook_topic"] == "returns/request"
        assert issue["primary"] == {"sku": "TAB-10", "serial": "SN0001"}

    async def test_redelivery_is_deduped(self, client: AsyncClient):
        body = json.dumps(RETURN_PAYLOAD).encode()
        first = (await client.post(WEBHOOK_URL, content=body, headers=_signed(body))).json()

        # Shopify may resend the same return with a different envelope.
        resent = json.dumps({**RETURN_PAYLOAD, "resent": True}).encode()
        second = (await client.post(WEBHOOK_URL, content=resent, headers=_signed(resent))).json()

        assert second["deduped"] is True
        assert second["case_id"] == first["case_id"]
        listing = await client.get("/api/v1/rma/")
        assert listing.json()["total"] == 1

    async def test_enrichment_sets_customer_and_warranty(self, client: AsyncClient, fake_shopify):
        fake_shopify.add_order(
            "5550001",
            {
                "id": "gid://shopify/Order/5550001",
                "name": "#1001",
                "processedAt": "2025-09-01T00:00:00Z",
                "email": "ada@example.com",
                "customer": {"firstName": "Augusta", "lastName": "King", "phone": "+61400000000"},
                "lineItems": {"edges": []},
            },
        )
        body = json.dumps(RETURN_PAYLOAD).encode()

        result = (await client.post(WEBHOOK_URL, content=body, headers=_signed(body))).json()
        case = (await client.get(f"/api/v1/rma/{result['case_id']}")).json()["case"]

        assert case["customer_name"] == "Augusta King"
        assert case["customer_phone"] == "+61400000000"
        assert case["shopify_order_name"] == "#1001"
        assert case["warranty_status"] == "in_warranty"
        assert case["warranty_basis"] == "manufacturer"

    async def test_unparseable_body_creates_degraded_case(self, client: AsyncClient):
        body = b"this is not json"

        first = (await client.post(WEBHOOK_URL, content=body, headers=_signed(body))).json()
        assert first["degraded"] is True
        assert first["deduped"] is False

        case = (await client.get(f"/api/v1/rma/{first['case_id']}")).json()["case"]
        assert case["issue_summary"] == DEGRADED_SUMMARY
        assert case["issue_details"] == "this is not json"
        assert case["shopify_return_id"] is None

        second = (await client.post(WEBHOOK_URL, content=body, headers=_signed(body))).json()
        assert second["deduped"] is True
        assert second["case_id"] == first["case_id"]

    async def test_object_without_ids_is_degraded(self, client: AsyncClient):
        body = json.dumps({"return": {"status": "open"}}).encode()
        result = (await client.post(WEBHOOK_URL, content=body, headers=_signed(body))).json()
        assert result["degraded"] is True
