"""Simulated record store, template source and message channels."""

from __future__ import annotations

import threading

from ..automation.errors import ChannelError
from ..automation.schema import Interaction, MessageTemplate
from ..logging_config import get_logger
from .failures import FailureConfig
from .state import OutboundMessage, SimulatorState

logger = get_logger(__name__)


class InMemoryRecords:
    """Lead records, templates and the interaction log backed by SimulatorState."""

    def __init__(self, state: SimulatorState):
        self.state = state
        self._lock = threading.RLock()

    def get_subject_record(self, subject_id: str) -> dict | None:
        with self._lock:
            lead = self.state.leads.get(subject_id)
            if lead is None:
                return None
            record = dict(lead)
            record["tags"] = list(lead.get("tags", []))
        prop = self.state.properties.get(record.get("property_id") or "")
        if prop is not None:
            record.setdefault("property_name", prop.get("name", ""))
        return record

    def update_subject_record(self, subject_id: str, fields: dict) -> bool:
        with self._lock:
            lead = self.state.leads.get(subject_id)
            if lead is None:
                return False
            lead.update(fields)
            return True

    def record_interaction(self, subject_id: str, interaction: Interaction) -> None:
        with self._lock:
            self.state.interactions.append(interaction)

    def get_template(self, template_id: str) -> MessageTemplate | None:
        return self.state.templates.get(template_id)


class BaseChannel:
    """Shared outbox logging and failure injection for simulated channels."""

    channel_name: str = ""

    def __init__(self, state: SimulatorState, failure_config: FailureConfig | None = None):
        self.state = state
        self.failure_config = failure_config

    def _check_failure(self, to: str, subject: str, body: str) -> None:
        if self.failure_config is None:
            return
        rule = self.failure_config.should_fail(self.channel_name, "send")
        if rule is not None:
            self._log(to, subject, body, status="failed", error=rule.message)
            raise ChannelError(rule.message, rule.error_type)

    def _log(self, to: str, subject: str, body: str, *, status: str = "sent", error: str | None = None) -> None:
        self.state.outbox.append(
            OutboundMessage(channel=self.channel_name, to=to, subject=subject, body=body, status=status, error=error)
        )


class SimulatedEmailSender(BaseChannel):
    channel_name = "email"

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        self._check_failure(to, subject, body)
        logger.info("[simulated email] to=%s subject=%r", to, subject)
        self._log(to, subject, body)
        return True


class SimulatedSmsSender(BaseChannel):
    channel_name = "sms"

    async def send_sms(self, to: str, body: str) -> bool:
        self._check_failure(to, "", body)
        logger.info("[simulated sms] to=%s", to)
        self._log(to, "", body)
        return True
