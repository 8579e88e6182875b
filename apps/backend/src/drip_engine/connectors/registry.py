"""Connector registry: maps channel names to connector classes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Type

import httpx

from .base import BaseConnector

if TYPE_CHECKING:
    from ..config import Settings


# Built-in connector class registry, populated via @register decorator
_BUILTIN_REGISTRY: dict[str, Type[BaseConnector]] = {}


def register(cls: Type[BaseConnector]) -> Type[BaseConnector]:
    """Class decorator that registers a connector in the built-in registry."""
    _BUILTIN_REGISTRY[cls.channel_name] = cls
    return cls


class ConnectorRegistry:
    """Instantiates configured connectors for the channel layer."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._cache: dict[str, BaseConnector] = {}

    def get(self, channel_name: str) -> BaseConnector | None:
        """Return a connector instance, or None if no connector is registered."""
        if channel_name in self._cache:
            return self._cache[channel_name]

        cls = _BUILTIN_REGISTRY.get(channel_name)
        if cls is None:
            return None
        instance = cls.from_settings(self._settings, self._http)
        self._cache[channel_name] = instance
        return instance

    def is_configured(self, channel_name: str) -> bool:
        cls = _BUILTIN_REGISTRY.get(channel_name)
        return cls is not None and cls.is_configured(self._settings)

    def list_available(self) -> list[str]:
        return sorted(_BUILTIN_REGISTRY)
