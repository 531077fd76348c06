"""
Shopify Router — return webhooks in, catalog writes out.

Inbound:  POST /webhooks/returns   (HMAC-verified, creates at most one RMA case per return)
Outbound: POST /import, POST /products/{product_id}/sync
          Both run behind the idempotency gateway: send an `Idempotency-Key`
          header and a retried request replays the first response instead of
          creating duplicate Shopify products.
"""

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_clock, get_current_user, get_db, get_shopify_client
from core.clock import Clock
from core.config import get_settings
from core.security import verify_webhook_hmac
from idempotency.gateway import GatewayResponse
from idempotency.http import idempotent_response
from integrations.shopify import ShopifyAPIError, ShopifyClient
from rma.intake import ingest_return_webhook

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/shopify", tags=["shopify"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ProductDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description_html: str | None = None
    vendor: str | None = None
    product_type: str | None = None
    tags: list[str] = []


class ShopifyImportRequest(BaseModel):
    products: list[ProductDraft] = Field(..., min_length=1, max_length=50)


class ProductSyncRequest(BaseModel):
    title: str | None = None
    description_html: str | None = None
    tags: list[str] | None = None
    seo_title: str | None = None
    seo_description: str | None = None


def _product_input(draft: ProductDraft) -> dict:
    product = {"title": draft.title, "tags": draft.tags}
    if draft.description_html is not None:
        product["descriptionHtml"] = draft.description_html
    if draft.vendor:
        product["vendor"] = draft.vendor
    if draft.product_type:
        product["productType"] = draft.product_type
    return product


def _sync_fields(body: ProductSyncRequest) -> dict:
    fields: dict = {}
    if body.title is not None:
        fields["title"] = body.title
    if body.description_html is not None:
        fields["descriptionHtml"] = body.description_html
    if body.tags is not None:
        fields["tags"] = body.tags
    if body.seo_title is not None or body.seo_description is not None:
        fields["seo"] = {"title": body.seo_title, "description": body.seo_description}
    return fields


def _external_failure(action: str, exc: Exception) -> GatewayResponse:
    logger.warning("shopify.write_failed", action=action, error=str(exc))
    return GatewayResponse.json({"error": f"Shopify {action} failed", "detail": str(exc)}, status_code=502)


def _require_configured(shopify: ShopifyClient) -> None:
    if not shopify.is_configured:
        raise HTTPException(status_code=503, detail="Shopify is not configured")


# ─── Webhooks ───────────────────────────────────────────────────────────────


@router.post("/webhooks/returns")
async def shopify_returns_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    shopify: ShopifyClient = Depends(get_shopify_client),
):
    """Handle Shopify return webhooks. Signature failures are rejected before parsing."""
    body = await request.body()
    signature = request.headers.get("x-shopify-hmac-sha256")
    topic = request.headers.get("x-shopify-topic")
    webhook_id = request.headers.get("x-shopify-webhook-id")

    if not verify_webhook_hmac(get_settings().shopify_webhook_secret, body, signature):
        logger.warning("shopify.webhook_signature_invalid", topic=topic, webhook_id=webhook_id)
        raise HTTPException(status_code=401, detail="Invalid Shopify webhook signature")

    result = await ingest_return_webhook(
        db,
        body,
        clock,
        topic=topic,
        webhook_id=webhook_id,
        shopify=shopify,
    )
    await db.commit()
    return {
        "success": True,
        "case_id": str(result.case.id),
        "deduped": result.deduped,
        "degraded": result.degraded,
    }


# ─── Catalog writes ─────────────────────────────────────────────────────────


@router.post("/import")
async def import_products(
    body: ShopifyImportRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    shopify: ShopifyClient = Depends(get_shopify_client),
    user: dict = Depends(get_current_user),
):
    """Create draft products in Shopify."""
    _require_configured(shopify)

    async def handler() -> GatewayResponse:
        created = []
        errors = []
        for index, draft in enumerate(body.products):
            try:
                created.append(await shopify.create_product(_product_input(draft)))
            except (httpx.HTTPError, ShopifyAPIError) as exc:
                logger.warning("shopify.import_item_failed", index=index, title=draft.title, error=str(exc))
                errors.append({"index": index, "title": draft.title, "error": str(exc)})

        if not created:
            return GatewayResponse.json(
                {"error": "Shopify import failed", "errors": errors},
                status_code=502,
            )

        # Products already exist in Shopify: finalize as a partial result so a
        # retry with this key replays it instead of creating them again.
        return GatewayResponse.json(
            {"success": not errors, "count": len(created), "products": created, "errors": errors},
            status_code=207 if errors else 200,
        )

    return await idempotent_response(
        request,
        db,
        clock,
        "/api/v1/shopify/import",
        body.model_dump(mode="json"),
        handler,
    )


@router.post("/products/{product_id}/sync")
async def sync_product(
    product_id: str,
    body: ProductSyncRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    shopify: ShopifyClient = Depends(get_shopify_client),
    user: dict = Depends(get_current_user),
):
    """Push enriched product content back to Shopify."""
    _require_configured(shopify)
    fields = _sync_fields(body)
    if not fields:
        raise HTTPException(status_code=422, detail="No product fields to sync")

    async def handler() -> GatewayResponse:
        try:
            product = await shopify.update_product(product_id, fields)
        except (httpx.HTTPError, ShopifyAPIError) as exc:
            return _external_failure("product sync", exc)
        return GatewayResponse.json({"success": True, "product": product})

    return await idempotent_response(
        request,
        db,
        clock,
        "/api/v1/shopify/products/sync",
        {"product_id": product_id, **body.model_dump(mode="json")},
        handler,
    )
