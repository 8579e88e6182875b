"""Twilio Programmable Messaging connector."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from ..logging_config import get_logger
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

logger = get_logger(__name__)

_TWILIO_API = "https://api.twilio.com/2010-04-01"


@register
class TwilioConnector(BaseConnector):
    """Real SMS channel using the Twilio Messages resource.

    Required settings: TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER
    """

    channel_name = "sms"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, http_client: httpx.AsyncClient) -> None:
        super().__init__(http_client)
        self.account_sid = account_sid
        self.from_number = from_number
        self._auth = httpx.BasicAuth(account_sid, auth_token)

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> TwilioConnector:
        return cls(
            settings.twilio_account_sid or "",
            settings.twilio_auth_token or "",
            settings.twilio_from_number or "",
            http_client,
        )

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number)

    async def send_sms(self, to: str, body: str) -> bool:
        resp = await self.http.post(
            f"{_TWILIO_API}/Accounts/{self.account_sid}/Messages.json",
            auth=self._auth,
            data={"To": to, "From": self.from_number, "Body": body},
        )
        self._map_status(resp)
        sid = resp.json().get("sid", "")
        logger.info("Twilio queued SMS %s to %s", sid, to)
        return True
