"""Channel connectors: real email/SMS providers with transparent simulator fallback.

Usage:
    from drip_engine.connectors import create_channel_layer, close_channel_layer

    state, records, channels, failure_config = create_channel_layer(settings)
    try:
        ...
    finally:
        await close_channel_layer(channels)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from ..logging_config import get_logger
from ..simulator import create_simulator
from ..simulator.failures import FailureConfig
from ..simulator.services import InMemoryRecords
from ..simulator.state import SimulatorState
from .base import BaseConnector
from .registry import ConnectorRegistry

if TYPE_CHECKING:
    from ..config import Settings

# Import all built-in connectors to trigger @register decoration
from . import sendgrid, twilio  # noqa: E402, F401

logger = get_logger(__name__)


def create_channel_layer(
    settings: Settings,
    failure_config: FailureConfig | None = None,
    *,
    seed: bool = True,
) -> tuple[SimulatorState, InMemoryRecords, dict[str, Any], FailureConfig | None]:
    """Create a channel dict with hybrid real+simulator routing.

    Modes (controlled by settings.connector_mode):
      "simulator": always returns the in-memory simulated channels (default)
      "hybrid":    uses a real connector per channel when credentials are set,
                   falls back to the simulated channel otherwise
      "real":      same routing as hybrid; callers can inspect the returned
                   channels to verify all are real connectors
    """
    state, records, sim_channels, _ = create_simulator(failure_config, seed=seed)

    if settings.connector_mode == "simulator":
        return state, records, sim_channels, failure_config

    http_client = httpx.AsyncClient(timeout=30.0)
    registry = ConnectorRegistry(settings, http_client)

    channels: dict[str, Any] = {}
    for name, sim_channel in sim_channels.items():
        if registry.is_configured(name):
            channels[name] = registry.get(name)
        else:
            if settings.connector_mode == "real":
                logger.warning("No credentials for %s connector, using simulator", name)
            channels[name] = sim_channel

    # Stash the http_client so close_channel_layer can always close it
    channels["_http_client"] = http_client

    return state, records, channels, failure_config


async def close_channel_layer(channels: dict[str, Any]) -> None:
    """Close any connector AsyncClient instances attached to the channel map."""
    clients: dict[int, httpx.AsyncClient] = {}

    stashed = channels.pop("_http_client", None)
    if isinstance(stashed, httpx.AsyncClient):
        clients[id(stashed)] = stashed

    for channel in channels.values():
        if isinstance(channel, BaseConnector):
            clients[id(channel.http)] = channel.http

    for client in clients.values():
        await client.aclose()
