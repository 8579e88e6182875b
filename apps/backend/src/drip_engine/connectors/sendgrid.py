"""SendGrid v3 mail connector."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from ..logging_config import get_logger
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

logger = get_logger(__name__)

_SENDGRID_API = "https://api.sendgrid.com/v3"


@register
class SendGridConnector(BaseConnector):
    """Real email channel using the SendGrid Mail Send API.

    Required settings: SENDGRID_API_KEY, SENDGRID_FROM_EMAIL
    """

    channel_name = "email"

    def __init__(self, api_key: str, from_email: str, http_client: httpx.AsyncClient) -> None:
        super().__init__(http_client)
        self.from_email = from_email
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> SendGridConnector:
        return cls(settings.sendgrid_api_key or "", settings.sendgrid_from_email or "", http_client)

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.sendgrid_api_key and settings.sendgrid_from_email)

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        """Send an HTML email. SendGrid answers 202 Accepted on success."""
        resp = await self.http.post(
            f"{_SENDGRID_API}/mail/send",
            headers=self._headers,
            json={
                "personalizations": [{"to": [{"email": to}]}],
                "from": {"email": self.from_email},
                "subject": subject,
                "content": [{"type": "text/html", "value": body}],
            },
        )
        self._map_status(resp)
        logger.info("SendGrid accepted email to %s", to)
        return True
