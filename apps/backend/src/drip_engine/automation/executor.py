"""Step executor: runs one workflow step for one enrollment."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from ..config import Settings
from ..logging_config import get_logger
from .conditions import ConditionEvaluator
from .definitions import DefinitionStore
from .errors import ChannelError, StepExecutionError
from .interfaces import EmailSender, RecordAccessor, SmsSender, TemplateSource
from .schema import (
    OPEN_STATUSES,
    AssignOwnerAction,
    CreateTaskAction,
    DefinitionStatus,
    Enrollment,
    EnrollmentStatus,
    ExecutionResult,
    Interaction,
    LogEventType,
    LogStatus,
    SendEmailAction,
    SendSmsAction,
    StepKind,
    StepOutcome,
    TagAction,
    WorkflowDefinition,
    WorkflowStep,
    utc_now,
)
from .store import EnrollmentStore
from .templates import build_token_map, render

logger = get_logger(__name__)


class StepExecutor:
    """Executes the current step of an enrollment and records its history.

    execute_step is safe to call repeatedly: it does nothing unless the
    enrollment is active, its definition is active and its step is due.
    Calls for the same enrollment are serialized by a per-enrollment lock.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        definitions: DefinitionStore,
        records: RecordAccessor,
        templates: TemplateSource,
        channels: Mapping[str, Any],
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.definitions = definitions
        self.records = records
        self.templates = templates
        self.channels = channels
        self.settings = settings
        self.clock = clock
        self.evaluator = ConditionEvaluator(records)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def execute_step(self, enrollment_id: str) -> ExecutionResult:
        async with self._locks[enrollment_id]:
            result = await self._execute(enrollment_id)
        enrollment = self.store.get(enrollment_id)
        if enrollment is None or enrollment.status.is_terminal:
            self.discard_lock(enrollment_id)
        return result

    def discard_lock(self, enrollment_id: str) -> None:
        """Forget the lock of a finished enrollment unless a step still holds it."""
        lock = self._locks.get(enrollment_id)
        if lock is not None and not lock.locked():
            del self._locks[enrollment_id]

    async def _execute(self, enrollment_id: str) -> ExecutionResult:
        now = self.clock()
        enrollment = self.store.get(enrollment_id)
        if enrollment is None:
            return ExecutionResult(
                success=False, outcome=StepOutcome.SKIPPED, error=f"Enrollment {enrollment_id} not found", timestamp=now
            )

        skipped = ExecutionResult(
            success=True, outcome=StepOutcome.SKIPPED, step_id=enrollment.current_step_id, timestamp=now
        )
        if enrollment.status is not EnrollmentStatus.ACTIVE:
            return skipped
        definition = self.definitions.get(enrollment.definition_id)
        if definition is None or definition.status is not DefinitionStatus.ACTIVE:
            return skipped
        if not enrollment.is_due(now):
            return skipped

        step = definition.get_step(enrollment.current_step_id)
        if step is None:
            return self._fail(enrollment, enrollment.current_step_id, f"Step {enrollment.current_step_id} not found")

        record = self.records.get_subject_record(enrollment.subject_id)
        if record is None:
            return self._fail(enrollment, step.id, f"Subject {enrollment.subject_id} not found")

        logger.debug("Executing %s step %s for enrollment %s", step.kind.value, step.id, enrollment.id)
        try:
            if step.kind is StepKind.DELAY:
                return self._run_delay(enrollment, definition, step, now)
            if step.kind is StepKind.CONDITION:
                return self._run_condition(enrollment, definition, step, record, now)
            return await self._run_action(enrollment, definition, step, record, now)
        except Exception as e:
            logger.warning("Step %s failed for enrollment %s: %s", step.id, enrollment.id, e)
            return self._fail(enrollment, step.id, str(e) or type(e).__name__, template_id=step.template_id)

    # ------------------------------------------------------------------
    # Step kinds
    # ------------------------------------------------------------------

    def _run_delay(
        self, enrollment: Enrollment, definition: WorkflowDefinition, step: WorkflowStep, now: datetime
    ) -> ExecutionResult:
        if enrollment.next_step_due_at is not None and _delay_pending(enrollment, step.id):
            # The guard already checked the due time, so the wait is over
            return self._complete_delay(enrollment, definition, step, now)

        due_at = now + timedelta(hours=step.delay_hours)
        self.store.update(
            enrollment.id,
            only_if_status=OPEN_STATUSES,
            next_step_due_at=due_at,
            last_step_completed_at=now,
        )
        self.store.append_log(
            enrollment.id,
            step_id=step.id,
            event_type=LogEventType.DELAY_START,
            status=LogStatus.SUCCESS,
            details=f"Delay started: {step.delay_hours:g} hours, due {due_at.isoformat()}",
        )
        if step.delay_hours <= 0:
            return self._complete_delay(enrollment, definition, step, now)
        return ExecutionResult(success=True, outcome=StepOutcome.WAITING, step_id=step.id, timestamp=now)

    def _complete_delay(
        self, enrollment: Enrollment, definition: WorkflowDefinition, step: WorkflowStep, now: datetime
    ) -> ExecutionResult:
        self.store.append_log(
            enrollment.id,
            step_id=step.id,
            event_type=LogEventType.DELAY_COMPLETE,
            status=LogStatus.SUCCESS,
            details=f"Delay of {step.delay_hours:g} hours elapsed",
        )
        return self._advance(enrollment, definition, step, now)

    def _run_condition(
        self,
        enrollment: Enrollment,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: dict,
        now: datetime,
    ) -> ExecutionResult:
        if step.condition_error:
            result = False
        elif step.condition is None:
            result = True
        else:
            result = self.evaluator.evaluate(step.condition, enrollment.subject_id)

        self.store.append_log(
            enrollment.id,
            step_id=step.id,
            event_type=LogEventType.CONDITION_EVAL,
            status=LogStatus.SUCCESS,
            details=f'Condition "{step.condition_expression}" evaluated to {result}',
            condition_result=result,
        )
        results = {**enrollment.condition_results, step.id: result}
        logger.info("Condition step %s for enrollment %s: %s", step.id, enrollment.id, result)

        if result:
            self.store.update(
                enrollment.id,
                only_if_status=OPEN_STATUSES,
                condition_results=results,
                last_step_completed_at=now,
            )
            advanced = self._advance(enrollment, definition, step, now)
            advanced.condition_result = True
            return advanced

        self.store.update(
            enrollment.id,
            only_if_status=OPEN_STATUSES,
            condition_results=results,
            condition_evaluations=enrollment.condition_evaluations + 1,
        )
        return ExecutionResult(
            success=True, outcome=StepOutcome.WAITING, step_id=step.id, condition_result=False, timestamp=now
        )

    async def _run_action(
        self,
        enrollment: Enrollment,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        record: dict,
        now: datetime,
    ) -> ExecutionResult:
        action = step.action
        error: Optional[str] = None

        if isinstance(action, (SendEmailAction, SendSmsAction)):
            ok, details, error = await self._send_message(enrollment, step, action, record, now)
        elif isinstance(action, AssignOwnerAction):
            owner = action.user_id or self.settings.team_owners.get(
                action.team_id or "", self.settings.default_owner_id
            )
            ok = self.records.update_subject_record(enrollment.subject_id, {"lead_owner_id": owner})
            details = f"Assigned {enrollment.subject_id} to {owner}"
            if not ok:
                error = f"Could not update owner of {enrollment.subject_id}"
        elif isinstance(action, CreateTaskAction):
            # Task creation belongs to the host application; only the intent is recorded
            logger.info("Would create task %r for %s", action.title, enrollment.subject_id)
            ok, details = True, f"Created task: {action.title}"
        elif isinstance(action, TagAction):
            # Tags are not modelled on subject records yet
            ok, details = True, f"{action.kind} operation completed"
        else:
            raise StepExecutionError(f"Step {step.id} has no action")

        if not ok:
            return self._fail(enrollment, step.id, error or details, template_id=step.template_id)

        if self.store.update(enrollment.id, only_if_status=OPEN_STATUSES, last_step_completed_at=now) is None:
            # Terminated while the action was in flight
            return ExecutionResult(success=True, outcome=StepOutcome.SKIPPED, step_id=step.id, timestamp=now)
        self.store.append_log(
            enrollment.id,
            step_id=step.id,
            event_type=LogEventType.STEP_EXECUTION,
            status=LogStatus.SUCCESS,
            details=details,
            template_id=step.template_id,
        )
        return self._advance(enrollment, definition, step, now)

    async def _send_message(
        self,
        enrollment: Enrollment,
        step: WorkflowStep,
        action: SendEmailAction | SendSmsAction,
        record: dict,
        now: datetime,
    ) -> tuple[bool, str, Optional[str]]:
        template = self.templates.get_template(action.template_id)
        if template is None:
            raise StepExecutionError(f"Template {action.template_id} not found")

        tokens = build_token_map(enrollment.subject_id, record, link_base_url=self.settings.link_base_url)
        body = render(template.body, tokens)
        is_email = isinstance(action, SendEmailAction)
        channel = "email" if is_email else "sms"
        to = record.get("email" if is_email else "phone")
        if not to:
            raise StepExecutionError(f"Subject {enrollment.subject_id} has no {channel} address")
        sender: Optional[EmailSender | SmsSender] = self.channels.get(channel)
        if sender is None:
            raise StepExecutionError(f"No sender configured for channel {channel!r}")

        subject = render(template.subject, tokens) if is_email else ""
        error: Optional[str] = None
        try:
            if is_email:
                delivered = await sender.send_email(to, subject, body)
            else:
                delivered = await sender.send_sms(to, body)
        except ChannelError as exc:
            delivered, error = False, f"[{exc.error_type}] {exc}"
        if not delivered and error is None:
            error = f"{channel} delivery to {to} failed"

        self.records.record_interaction(
            enrollment.subject_id,
            Interaction(
                subject_id=enrollment.subject_id,
                channel="Email" if is_email else "SMS",
                subject=subject,
                message_body=body,
                channel_message_id=f"auto_{enrollment.id}_{step.id}",
                created_by_user_id=self.settings.automation_user_id,
                timestamp=now,
                delivered=delivered,
                error=error,
                assigned_to_user_id=record.get("lead_owner_id"),
            ),
        )
        if is_email:
            details = f'Sent email "{subject}" to {to}'
        else:
            details = f"Sent SMS to {to}"
        return delivered, details, error

    # ------------------------------------------------------------------
    # Progression
    # ------------------------------------------------------------------

    def _advance(
        self, enrollment: Enrollment, definition: WorkflowDefinition, step: WorkflowStep, now: datetime
    ) -> ExecutionResult:
        """Move to the next step by order index, or complete the enrollment."""
        next_step = definition.next_step(step.id)
        if next_step is None:
            completed = self.store.transition(
                enrollment.id,
                EnrollmentStatus.COMPLETED,
                next_step_due_at=None,
                last_step_completed_at=now,
            )
            if completed is None:
                # Terminated while the step was in flight
                return ExecutionResult(success=True, outcome=StepOutcome.SKIPPED, step_id=step.id, timestamp=now)
            self.definitions.increment_completed(definition.id)
            self.store.append_log(
                enrollment.id,
                step_id=step.id,
                event_type=LogEventType.COMPLETION,
                status=LogStatus.SUCCESS,
                details="Automation workflow completed successfully",
            )
            logger.info("Enrollment %s completed", enrollment.id)
            return ExecutionResult(success=True, outcome=StepOutcome.COMPLETED, step_id=step.id, timestamp=now)

        moved = self.store.update(
            enrollment.id,
            only_if_status=OPEN_STATUSES,
            current_step_id=next_step.id,
            next_step_due_at=None,
            attempts=0,
            condition_evaluations=0,
        )
        if moved is None:
            return ExecutionResult(success=True, outcome=StepOutcome.SKIPPED, step_id=step.id, timestamp=now)
        return ExecutionResult(
            success=True, outcome=StepOutcome.ADVANCED, step_id=step.id, next_step_id=next_step.id, timestamp=now
        )

    def _fail(
        self, enrollment: Enrollment, step_id: str, error: str, *, template_id: Optional[str] = None
    ) -> ExecutionResult:
        current = self.store.get(enrollment.id)
        if current is not None and current.status.is_terminal:
            return ExecutionResult(success=True, outcome=StepOutcome.SKIPPED, step_id=step_id, timestamp=self.clock())
        self.store.append_log(
            enrollment.id,
            step_id=step_id,
            event_type=LogEventType.FAILURE,
            status=LogStatus.FAILED,
            details=f"Step {step_id} failed",
            error=error,
            template_id=template_id,
        )
        return ExecutionResult(
            success=False, outcome=StepOutcome.FAILED, step_id=step_id, error=error, timestamp=self.clock()
        )


def _delay_pending(enrollment: Enrollment, step_id: str) -> bool:
    """True when the latest delay event for this step is a start without a completion."""
    for entry in reversed(enrollment.history):
        if entry.step_id == step_id and entry.event_type in (LogEventType.DELAY_START, LogEventType.DELAY_COMPLETE):
            return entry.event_type is LogEventType.DELAY_START
    return False
