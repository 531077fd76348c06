"""
Klaviyo API Client

Template and draft-campaign creation for the email studio push. Every call
here is a write, so none of them retry; callers run them behind the
idempotency gateway instead.
"""

import re

import httpx

from core.config import get_settings

KLAVIYO_BASE_URL = "https://a.klaviyo.com/api"
EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class KlaviyoAPIError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class KlaviyoClient:
    """Client for Klaviyo JSON:API interactions."""

    def __init__(
        self,
        api_key: str,
        revision: str = "2024-10-15",
        from_email: str = "",
        from_label: str = "",
        reply_to_email: str = "",
    ):
        self.api_key = api_key
        self.from_email = from_email.strip()
        self.from_label = from_label.strip()
        self.reply_to_email = reply_to_email.strip()
        self.headers = {
            "Authorization": f"Klaviyo-API-Key {api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "revision": revision,
        }

    @classmethod
    def from_settings(cls) -> "KlaviyoClient":
        settings = get_settings()
        return cls(
            settings.klaviyo_api_key,
            settings.klaviyo_api_revision,
            settings.klaviyo_default_from_email,
            settings.klaviyo_default_from_label,
            settings.klaviyo_default_reply_to_email,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def missing_sender_config(self) -> list[str]:
        missing = []
        if not self.from_email:
            missing.append("KLAVIYO_DEFAULT_FROM_EMAIL")
        elif not EMAIL_REGEX.match(self.from_email):
            missing.append("KLAVIYO_DEFAULT_FROM_EMAIL (invalid email format)")
        if not self.from_label:
            missing.append("KLAVIYO_DEFAULT_FROM_LABEL")
        if not self.reply_to_email:
            missing.append("KLAVIYO_DEFAULT_REPLY_TO_EMAIL")
        elif not EMAIL_REGEX.match(self.reply_to_email):
            missing.append("KLAVIYO_DEFAULT_REPLY_TO_EMAIL (invalid email format)")
        return missing

    async def _post(self, path: str, body: dict) -> dict:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(f"{KLAVIYO_BASE_URL}{path}", headers=self.headers, json=body)
        if response.status_code >= 400:
            raise KlaviyoAPIError(
                f"Klaviyo {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    async def create_template(self, name: str, html: str, plain_text: str | None = None) -> str:
        attributes = {"name": name, "editor_type": "CODE", "html": html}
        if plain_text:
            attributes["text"] = plain_text
        data = await self._post("/templates", {"data": {"type": "template", "attributes": attributes}})
        template_id = (data.get("data") or {}).get("id")
        if not template_id:
            raise KlaviyoAPIError("Klaviyo createTemplate did not return a template id")
        return template_id

    async def create_campaign(self, name: str, subject: str, preview_text: str | None = None) -> tuple[str, str | None]:
        """Create a draft email campaign. Returns (campaign_id, message_id)."""
        message = {
            "type": "campaign-message",
            "attributes": {
                "channel": "email",
                "label": subject[:255] if subject else name,
                "content": {
                    "subject": subject,
                    "preview_text": preview_text or "",
                    "from_email": self.from_email,
                    "from_label": self.from_label,
                    "reply_to_email": self.reply_to_email or self.from_email,
                },
            },
        }
        data = await self._post(
            "/campaigns",
            {
                "data": {
                    "type": "campaign",
                    "attributes": {
                        "name": name,
                        "audiences": {"included": [], "excluded": []},
                        "send_strategy": {"method": "immediate"},
                        "campaign-messages": {"data": [message]},
                    },
                }
            },
        )
        campaign = data.get("data") or {}
        if not campaign.get("id"):
            raise KlaviyoAPIError("Klaviyo createCampaign did not return a campaign id")
        messages = ((campaign.get("relationships") or {}).get("campaign-messages") or {}).get("data") or []
        return campaign["id"], (messages[0].get("id") if messages else None)

    async def assign_template(self, message_id: str, template_id: str) -> None:
        await self._post(
            "/campaign-message-assign-template",
            {
                "data": {
                    "type": "campaign-message",
                    "id": message_id,
                    "relationships": {"template": {"data": {"type": "template", "id": template_id}}},
                }
            },
        )
