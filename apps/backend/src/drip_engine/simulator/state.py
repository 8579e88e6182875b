"""Shared in-memory CRM state for the simulator."""

from datetime import datetime

from pydantic import BaseModel, Field

from ..automation.schema import Interaction, MessageTemplate, utc_now


class OutboundMessage(BaseModel):
    """A message handed to a simulated channel."""

    channel: str  # "email" | "sms"
    to: str
    subject: str = ""
    body: str
    status: str  # "sent" | "failed"
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class SimulatorState(BaseModel):
    """Mutable state shared across the simulated record store and channels."""

    leads: dict[str, dict] = {}
    properties: dict[str, dict] = {}
    users: dict[str, dict] = {}
    templates: dict[str, MessageTemplate] = {}
    interactions: list[Interaction] = []
    outbox: list[OutboundMessage] = []
