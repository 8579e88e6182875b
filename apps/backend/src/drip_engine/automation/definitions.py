"""Raw definition payloads, compilation into typed steps, and the definition store."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from ..logging_config import get_logger
from .conditions import ConditionParseError, parse_condition
from .errors import StepConfigError
from .schema import (
    ActionKind,
    AssignOwnerAction,
    CreateTaskAction,
    DefinitionStatus,
    SendEmailAction,
    SendSmsAction,
    StepKind,
    TagAction,
    WorkflowDefinition,
    WorkflowStep,
    utc_now,
)
from .triggers import parse_trigger

logger = get_logger(__name__)


class RawStep(BaseModel):
    """A step as authored by an administrator (untyped action/config strings)."""

    id: str
    step_order: int
    type: str  # "Action" | "Delay" | "Condition"
    action: str = ""
    delay_hours: float = 0
    content_template_id: str = ""
    condition_json: str = ""


class RawDefinition(BaseModel):
    id: str
    name: str = ""
    trigger_type: str = "Event"
    trigger_event: str
    status: DefinitionStatus = DefinitionStatus.DRAFT
    steps: list[RawStep] = []
    enrolled_count: int = 0
    completed_count: int = 0
    created_by_user_id: str = ""
    created_at: datetime = Field(default_factory=utc_now)


_ACTION_ALIASES = {
    "send-email": ActionKind.SEND_EMAIL,
    "send-sms": ActionKind.SEND_SMS,
    "assign-owner": ActionKind.ASSIGN_OWNER,
    "assign-agent": ActionKind.ASSIGN_OWNER,
    "create-task": ActionKind.CREATE_TASK,
    "add-tag": ActionKind.ADD_TAG,
    "remove-tag": ActionKind.REMOVE_TAG,
}


def _normalise(name: str) -> str:
    return "-".join(name.strip().lower().replace("_", " ").split())


def _config(raw: RawStep) -> dict[str, Any]:
    """Action steps keep their payload in condition_json."""
    text = (raw.condition_json or "").strip()
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StepConfigError(f"Step {raw.id}: invalid config JSON ({exc.msg})") from exc
    if not isinstance(payload, dict):
        raise StepConfigError(f"Step {raw.id}: config must be a JSON object")
    return payload


def compile_action(raw: RawStep):
    kind = _ACTION_ALIASES.get(_normalise(raw.action))
    if kind is None:
        raise StepConfigError(f"Step {raw.id}: unknown action {raw.action!r}")

    if kind in (ActionKind.SEND_EMAIL, ActionKind.SEND_SMS):
        if not raw.content_template_id:
            raise StepConfigError(f"Step {raw.id}: {kind.value} requires a template")
        cls = SendEmailAction if kind is ActionKind.SEND_EMAIL else SendSmsAction
        return cls(template_id=raw.content_template_id)

    config = _config(raw)
    if kind is ActionKind.ASSIGN_OWNER:
        return AssignOwnerAction(user_id=config.get("user_id"), team_id=config.get("team"))
    if kind is ActionKind.CREATE_TASK:
        return CreateTaskAction(title=config.get("task_title") or "Follow up")
    return TagAction(kind=kind.value, tag=str(config.get("tag", "")))


def compile_step(raw: RawStep) -> WorkflowStep:
    """Resolve a raw step into a typed WorkflowStep (done once, at load time)."""
    try:
        kind = StepKind(raw.type.strip().lower())
    except ValueError:
        raise StepConfigError(f"Step {raw.id}: unknown step type {raw.type!r}") from None
    if raw.step_order < 1:
        raise StepConfigError(f"Step {raw.id}: step_order must be >= 1")

    if kind is StepKind.DELAY:
        if raw.delay_hours < 0:
            raise StepConfigError(f"Step {raw.id}: delay_hours must not be negative")
        return WorkflowStep(id=raw.id, order=raw.step_order, kind=kind, delay_hours=raw.delay_hours)

    if kind is StepKind.CONDITION:
        step = WorkflowStep(
            id=raw.id, order=raw.step_order, kind=kind, condition_expression=raw.condition_json or ""
        )
        try:
            step.condition = parse_condition(step.condition_expression)
        except ConditionParseError as exc:
            logger.warning("Step %s: %s, condition will evaluate false", raw.id, exc)
            step.condition_error = str(exc)
        return step

    return WorkflowStep(id=raw.id, order=raw.step_order, kind=kind, action=compile_action(raw))


def compile_definition(raw: RawDefinition) -> WorkflowDefinition:
    steps = sorted((compile_step(s) for s in raw.steps), key=lambda s: s.order)
    orders = [s.order for s in steps]
    if len(set(orders)) != len(orders):
        raise StepConfigError(f"Definition {raw.id}: duplicate step_order values")
    ids = [s.id for s in steps]
    if len(set(ids)) != len(ids):
        raise StepConfigError(f"Definition {raw.id}: duplicate step ids")

    return WorkflowDefinition(
        id=raw.id,
        name=raw.name,
        trigger_type=raw.trigger_type,
        trigger=parse_trigger(raw.trigger_event),
        status=raw.status,
        steps=steps,
        enrolled_count=raw.enrolled_count,
        completed_count=raw.completed_count,
        created_by_user_id=raw.created_by_user_id,
        created_at=raw.created_at,
    )


class DefinitionStore:
    """In-memory registry of compiled workflow definitions and their counters."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._definitions: dict[str, WorkflowDefinition] = {}

    def add(self, raw: RawDefinition) -> WorkflowDefinition:
        """Compile and register a definition. Raises StepConfigError / ValueError."""
        definition = compile_definition(raw)
        with self._lock:
            if definition.id in self._definitions:
                raise ValueError(f"Definition {definition.id} already exists")
            self._definitions[definition.id] = definition
        logger.info("Loaded definition %s (%d steps, %s)", definition.id, len(definition.steps), definition.status.value)
        return definition.model_copy(deep=True)

    def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            definition = self._definitions.get(definition_id)
            return definition.model_copy(deep=True) if definition else None

    def list(self, status: Optional[DefinitionStatus] = None) -> list[WorkflowDefinition]:
        with self._lock:
            return [
                d.model_copy(deep=True)
                for d in self._definitions.values()
                if status is None or d.status is status
            ]

    def set_status(self, definition_id: str, status: DefinitionStatus) -> bool:
        with self._lock:
            definition = self._definitions.get(definition_id)
            if definition is None:
                return False
            definition.status = status
            return True

    def append_step(self, definition_id: str, raw: RawStep) -> Optional[WorkflowStep]:
        """Append a step after the current last one; existing steps never change."""
        step = compile_step(raw)
        with self._lock:
            definition = self._definitions.get(definition_id)
            if definition is None:
                return None
            if definition.steps and step.order <= definition.steps[-1].order:
                raise StepConfigError(f"Step {raw.id}: step_order must exceed {definition.steps[-1].order}")
            if definition.get_step(step.id) is not None:
                raise StepConfigError(f"Step {raw.id} already exists in {definition_id}")
            definition.steps.append(step)
        return step

    def increment_enrolled(self, definition_id: str) -> None:
        with self._lock:
            if definition_id in self._definitions:
                self._definitions[definition_id].enrolled_count += 1

    def increment_completed(self, definition_id: str) -> None:
        with self._lock:
            if definition_id in self._definitions:
                self._definitions[definition_id].completed_count += 1

    def load_directory(self, directory: Path) -> list[WorkflowDefinition]:
        """Load every *.json definition file in a directory. Bad files are logged and skipped."""
        loaded: list[WorkflowDefinition] = []
        for filepath in sorted(directory.glob("*.json")):
            try:
                raw = RawDefinition.model_validate(json.loads(filepath.read_text()))
                loaded.append(self.add(raw))
            except (json.JSONDecodeError, ValidationError, ValueError) as exc:
                logger.error("Skipping definition file %s: %s", filepath.name, exc)
        return loaded
