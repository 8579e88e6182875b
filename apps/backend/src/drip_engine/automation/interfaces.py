"""Collaborator interfaces the engine is given by the host application."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .schema import Interaction, MessageTemplate

Record = dict[str, Any]


class RecordAccessor(Protocol):
    """Read/write access to subject records (leads) and their history."""

    def get_subject_record(self, subject_id: str) -> Optional[Record]: ...

    def update_subject_record(self, subject_id: str, fields: Record) -> bool: ...

    def record_interaction(self, subject_id: str, interaction: Interaction) -> None: ...


class TemplateSource(Protocol):
    def get_template(self, template_id: str) -> Optional[MessageTemplate]: ...


class EmailSender(Protocol):
    async def send_email(self, to: str, subject: str, body: str) -> bool: ...


class SmsSender(Protocol):
    async def send_sms(self, to: str, body: str) -> bool: ...
