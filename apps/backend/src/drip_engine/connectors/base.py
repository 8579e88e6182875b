"""Base interface for real message channel connectors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx

from ..automation.errors import ChannelError

if TYPE_CHECKING:
    from ..config import Settings


class BaseConnector(ABC):
    """Abstract base for real channel connectors.

    Connectors implement the same coroutine the simulated channel does
    (send_email or send_sms) and raise ChannelError on provider errors.
    """

    channel_name: str = ""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self.http = http_client

    def _fail(self, message: str, error_type: str = "connector_error") -> None:
        raise ChannelError(message, error_type)

    def _map_status(self, resp: httpx.Response) -> None:
        """Translate an HTTP error response into a ChannelError."""
        if resp.is_success:
            return
        if resp.status_code == 429:
            self._fail(f"{self.channel_name} rate limited", "rate_limit")
        if resp.status_code in (401, 403):
            self._fail(f"{self.channel_name} credentials rejected", "permission_denied")
        if resp.status_code == 400:
            self._fail(f"{self.channel_name} rejected the message: {resp.text[:200]}", "invalid_recipient")
        self._fail(f"{self.channel_name} returned HTTP {resp.status_code}")

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> BaseConnector:
        """Construct this connector from application Settings."""
        ...

    @classmethod
    @abstractmethod
    def is_configured(cls, settings: Settings) -> bool:
        """Return True if all required credentials are present in settings."""
        ...
