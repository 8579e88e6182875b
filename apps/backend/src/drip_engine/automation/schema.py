"""Pydantic models for drip workflow definitions, enrollments and execution history."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EnrollmentStatus.COMPLETED, EnrollmentStatus.TERMINATED, EnrollmentStatus.FAILED)


OPEN_STATUSES = frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED})


class StepKind(str, Enum):
    ACTION = "action"
    DELAY = "delay"
    CONDITION = "condition"


class ActionKind(str, Enum):
    SEND_EMAIL = "send-email"
    SEND_SMS = "send-sms"
    ASSIGN_OWNER = "assign-owner"
    CREATE_TASK = "create-task"
    ADD_TAG = "add-tag"
    REMOVE_TAG = "remove-tag"


class LogEventType(str, Enum):
    ENROLLMENT = "enrollment"
    STEP_EXECUTION = "step_execution"
    DELAY_START = "delay_start"
    DELAY_COMPLETE = "delay_complete"
    CONDITION_EVAL = "condition_eval"
    COMPLETION = "completion"
    FAILURE = "failure"
    RETRY = "retry"
    PAUSE = "pause"
    RESUME = "resume"
    TERMINATION = "termination"


class LogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Actions (resolved once when a step is compiled)
# ---------------------------------------------------------------------------


class SendEmailAction(BaseModel):
    kind: Literal["send-email"] = "send-email"
    template_id: str


class SendSmsAction(BaseModel):
    kind: Literal["send-sms"] = "send-sms"
    template_id: str


class AssignOwnerAction(BaseModel):
    """Explicit user wins over the team default."""

    kind: Literal["assign-owner"] = "assign-owner"
    user_id: Optional[str] = None
    team_id: Optional[str] = None


class CreateTaskAction(BaseModel):
    kind: Literal["create-task"] = "create-task"
    title: str = "Follow up"


class TagAction(BaseModel):
    kind: Literal["add-tag", "remove-tag"]
    tag: str = ""


Action = Annotated[
    Union[SendEmailAction, SendSmsAction, AssignOwnerAction, CreateTaskAction, TagAction],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Conditions and triggers
# ---------------------------------------------------------------------------


class ConditionField(str, Enum):
    SCORE = "score"
    REPLIED = "has_replied"
    SOURCE = "lead_source"
    TAG = "tag_exists"


ConditionOperator = Literal[">", "<", ">=", "<=", "=", "exists", "not_exists"]


class ConditionRule(BaseModel):
    """A typed predicate over one field of a subject record."""

    model_config = ConfigDict(frozen=True)

    field: ConditionField
    operator: ConditionOperator
    value: Union[bool, int, float, str, None] = None


class TriggerFilter(BaseModel):
    field: str
    operator: Literal["equals", "not_equals", "contains", "starts_with"] = "equals"
    value: str


class TriggerSpec(BaseModel):
    """A trigger expression parsed into a base event and field filters."""

    expression: str
    base_event: str
    filters: list[TriggerFilter] = []
    malformed: bool = False


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class WorkflowStep(BaseModel):
    """A single compiled step of a workflow definition."""

    id: str
    order: int = Field(ge=1)
    kind: StepKind
    action: Optional[Action] = None
    delay_hours: float = 0
    condition_expression: str = ""
    condition: Optional[ConditionRule] = None
    # Set when condition_expression could not be parsed; the step then fails closed
    condition_error: Optional[str] = None

    @property
    def template_id(self) -> Optional[str]:
        return getattr(self.action, "template_id", None)


class WorkflowDefinition(BaseModel):
    """A named, ordered drip sequence and its trigger."""

    id: str
    name: str = ""
    trigger_type: str = "Event"
    trigger: TriggerSpec
    status: DefinitionStatus = DefinitionStatus.DRAFT
    steps: list[WorkflowStep] = []
    enrolled_count: int = 0
    completed_count: int = 0
    created_by_user_id: str = ""
    created_at: datetime = Field(default_factory=utc_now)

    def first_step(self) -> Optional[WorkflowStep]:
        return self.steps[0] if self.steps else None

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def next_step(self, step_id: str) -> Optional[WorkflowStep]:
        """Return the step following step_id by order index, or None at the end."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return self.steps[index + 1] if index + 1 < len(self.steps) else None
        return None


# ---------------------------------------------------------------------------
# Enrollments and history
# ---------------------------------------------------------------------------


class ExecutionLogEntry(BaseModel):
    """One immutable record of an attempted or completed step."""

    model_config = ConfigDict(frozen=True)

    id: str
    step_id: str
    event_type: LogEventType
    timestamp: datetime
    status: LogStatus
    details: str = ""
    condition_result: Optional[bool] = None
    template_id: Optional[str] = None
    error: Optional[str] = None


class Enrollment(BaseModel):
    """The live execution state of one subject in one workflow definition."""

    id: str
    definition_id: str
    subject_id: str
    current_step_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrolled_at: datetime
    last_step_completed_at: Optional[datetime] = None
    next_step_due_at: Optional[datetime] = None
    attempts: int = 0
    condition_evaluations: int = 0
    condition_results: dict[str, bool] = {}
    history: list[ExecutionLogEntry] = []

    def is_due(self, now: datetime) -> bool:
        return self.next_step_due_at is None or self.next_step_due_at <= now


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


class MessageTemplate(BaseModel):
    id: str
    name: str = ""
    type: str = "email"  # "email" | "sms"
    subject: str = ""
    body: str


class Interaction(BaseModel):
    """An automated outbound message appended to a subject's communication history."""

    subject_id: str
    type: str = "Message"
    direction: str = "Outbound"
    channel: str  # "Email" | "SMS"
    subject: str = ""
    message_body: str
    channel_message_id: str
    created_by_user_id: str
    created_by_source: str = "Automation"
    timestamp: datetime
    delivered: bool
    error: Optional[str] = None
    assigned_to_user_id: Optional[str] = None


class TriggerEvent(BaseModel):
    name: str
    subject_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class StepOutcome(str, Enum):
    ADVANCED = "advanced"    # moved to the next step
    COMPLETED = "completed"  # last step done, enrollment completed
    WAITING = "waiting"      # delay started or condition not met
    FAILED = "failed"
    SKIPPED = "skipped"      # re-entry guard, nothing done


class ExecutionResult(BaseModel):
    success: bool
    outcome: StepOutcome
    step_id: Optional[str] = None
    next_step_id: Optional[str] = None
    condition_result: Optional[bool] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    SUBJECT_NOT_FOUND = "subject_not_found"
    NOT_ACTIVE = "not_active"
    NO_STEPS = "no_steps"
    ALREADY_ENROLLED = "already_enrolled"
    TERMINAL_STATUS = "terminal_status"
    INVALID_TRANSITION = "invalid_transition"


class OperationResult(BaseModel):
    """Structured outcome of a public engine operation."""

    success: bool
    error: Optional[str] = None
    error_code: Optional[RejectionReason] = None
    enrollment_id: Optional[str] = None

    @classmethod
    def ok(cls, enrollment_id: Optional[str] = None) -> OperationResult:
        return cls(success=True, enrollment_id=enrollment_id)

    @classmethod
    def rejected(cls, code: RejectionReason, error: str) -> OperationResult:
        return cls(success=False, error=error, error_code=code)


class TriggerResult(BaseModel):
    enrolled: list[str] = []   # definition ids
    skipped: list[str] = []
    errors: list[str] = []
