"""
Klaviyo Router — push generated emails to Klaviyo as templates / draft campaigns.

Runs behind the idempotency gateway so a double-clicked push never creates
two templates or two campaigns.
"""

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_clock, get_current_user, get_db, get_klaviyo_client
from core.clock import Clock
from idempotency.gateway import GatewayResponse
from idempotency.http import idempotent_response
from integrations.klaviyo import KlaviyoAPIError, KlaviyoClient

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/klaviyo", tags=["klaviyo"])


class KlaviyoPushRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    html_body: str = Field(..., min_length=1)
    plain_text: str | None = None
    preheader: str | None = None
    campaign_name: str | None = Field(default=None, max_length=255)
    create_campaign: bool = False


@router.post("/push")
async def push_to_klaviyo(
    body: KlaviyoPushRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    klaviyo: KlaviyoClient = Depends(get_klaviyo_client),
    user: dict = Depends(get_current_user),
):
    """Create a Klaviyo template and, optionally, a draft campaign using it."""
    if not klaviyo.is_configured:
        raise HTTPException(status_code=503, detail="Klaviyo is not configured")

    async def handler() -> GatewayResponse:
        if body.create_campaign:
            missing = klaviyo.missing_sender_config()
            if missing:
                return GatewayResponse.json(
                    {"error": f"Campaign creation requires sender config: {', '.join(missing)}"},
                    status_code=400,
                )

        try:
            template_id = await klaviyo.create_template(
                body.campaign_name or body.subject[:100],
                body.html_body,
                body.plain_text,
            )
        except (httpx.HTTPError, KlaviyoAPIError) as exc:
            logger.warning("klaviyo.push_failed", error=str(exc))
            return GatewayResponse.json({"error": "Push to Klaviyo failed", "detail": str(exc)}, status_code=502)

        campaign_id = message_id = None
        if body.create_campaign:
            try:
                campaign_id, message_id = await klaviyo.create_campaign(
                    body.campaign_name or body.subject,
                    body.subject,
                    body.preheader,
                )
                if message_id:
                    await klaviyo.assign_template(message_id, template_id)
            except (httpx.HTTPError, KlaviyoAPIError) as exc:
                # The template exists in Klaviyo now; finalize the key with what landed.
                logger.warning("klaviyo.campaign_failed", template_id=template_id, error=str(exc))
                return GatewayResponse.json(
                    {
                        "template_id": template_id,
                        "campaign_id": campaign_id,
                        "message_id": message_id,
                        "error": "Draft campaign creation failed",
                        "detail": str(exc),
                        "message": "Template created in Klaviyo. The draft campaign was not created.",
                    },
                    status_code=207,
                )

        return GatewayResponse.json(
            {
                "template_id": template_id,
                "campaign_id": campaign_id,
                "message_id": message_id,
                "message": (
                    "Template and draft campaign created in Klaviyo."
                    if body.create_campaign
                    else "Template created in Klaviyo. Attach it to a campaign in the Klaviyo dashboard."
                ),
            }
        )

    return await idempotent_response(
        request,
        db,
        clock,
        "/api/v1/klaviyo/push",
        body.model_dump(mode="json"),
        handler,
    )
