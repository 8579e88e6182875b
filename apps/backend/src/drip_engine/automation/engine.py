"""Automation engine: coordinates triggers, enrollment, execution and admin controls."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from ..config import Settings, get_settings
from ..logging_config import get_logger
from .definitions import DefinitionStore
from .executor import StepExecutor
from .interfaces import RecordAccessor, TemplateSource
from .report import EngineStats, EnrollmentReport
from .scheduler import DueCheck, SchedulerLoop, default_due_check
from .schema import (
    DefinitionStatus,
    Enrollment,
    EnrollmentStatus,
    ExecutionResult,
    LogEventType,
    LogStatus,
    OperationResult,
    RejectionReason,
    StepOutcome,
    TriggerEvent,
    TriggerResult,
    WorkflowDefinition,
    utc_now,
)
from .store import EnrollmentStore
from .triggers import Events, TriggerMatcher

logger = get_logger(__name__)


class AutomationEngine:
    """Embedded drip engine driven by host event hooks, admin calls and a scheduler.

    Public operations return OperationResult / TriggerResult / ExecutionResult
    and never raise for invalid caller requests.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        records: RecordAccessor,
        templates: TemplateSource,
        channels: Mapping[str, Any],
        *,
        enrollments: Optional[EnrollmentStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        due_check: DueCheck = default_due_check,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.definitions = definitions
        self.enrollments = enrollments or EnrollmentStore(clock=clock)
        self.records = records
        self.channels = channels
        self.matcher = TriggerMatcher(definitions, records)
        self.executor = StepExecutor(
            self.enrollments, definitions, records, templates, channels, self.settings, clock=clock
        )
        self.scheduler = SchedulerLoop(
            self.enrollments,
            self._dispatch_due,
            interval_seconds=self.settings.scheduler_tick_seconds,
            clock=clock,
            due_check=due_check,
        )
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        return self.scheduler.start()

    async def stop(self) -> bool:
        stopped = await self.scheduler.stop()
        await self.wait_idle()
        return stopped

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    async def wait_idle(self) -> None:
        """Wait until every background execution kicked off so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background execution failed", exc_info=task.exception())

    def dispatch(self, enrollment_id: str) -> bool:
        """Process an enrollment in the background unless it is already being processed.

        A send that hangs only holds up its own enrollment; later scans skip it.
        """
        if enrollment_id in self._in_flight:
            logger.debug("Enrollment %s still in flight, skipping", enrollment_id)
            return False
        self._in_flight.add(enrollment_id)
        task = self._spawn(self.process_enrollment(enrollment_id))
        task.add_done_callback(lambda _: self._in_flight.discard(enrollment_id))
        return True

    async def _dispatch_due(self, enrollment_id: str) -> None:
        self.dispatch(enrollment_id)

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll(self, definition_id: str, subject_id: str) -> OperationResult:
        """Enroll a subject and kick off its first step without waiting for it."""
        result = self._create_enrollment(definition_id, subject_id)
        if result.success:
            self.dispatch(result.enrollment_id)
        return result

    def _create_enrollment(self, definition_id: str, subject_id: str) -> OperationResult:
        definition = self.definitions.get(definition_id)
        if definition is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Automation {definition_id} not found")
        if definition.status is not DefinitionStatus.ACTIVE:
            return OperationResult.rejected(RejectionReason.NOT_ACTIVE, f"Automation {definition_id} is not active")
        first_step = definition.first_step()
        if first_step is None:
            return OperationResult.rejected(RejectionReason.NO_STEPS, f"Automation {definition_id} has no steps")
        if self.records.get_subject_record(subject_id) is None:
            return OperationResult.rejected(RejectionReason.SUBJECT_NOT_FOUND, f"Subject {subject_id} not found")

        enrollment = self.enrollments.create_if_absent(definition_id, subject_id, first_step.id)
        if enrollment is None:
            return OperationResult.rejected(
                RejectionReason.ALREADY_ENROLLED,
                f"Subject {subject_id} is already enrolled in {definition_id}",
            )
        self.definitions.increment_enrolled(definition_id)
        return OperationResult.ok(enrollment.id)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def fire_trigger(self, event: TriggerEvent) -> TriggerResult:
        logger.info("Firing trigger %r for %s", event.name, event.subject_id)
        result = TriggerResult()
        for definition in self.matcher.match(event):
            outcome = self._create_enrollment(definition.id, event.subject_id)
            if outcome.success:
                result.enrolled.append(definition.id)
                self.dispatch(outcome.enrollment_id)
            elif outcome.error_code is RejectionReason.ALREADY_ENROLLED:
                logger.info("%s already enrolled in %s, skipping", event.subject_id, definition.id)
                result.skipped.append(definition.id)
            else:
                logger.error("Could not enroll %s in %s: %s", event.subject_id, definition.id, outcome.error)
                result.errors.append(outcome.error or definition.id)
        return result

    async def on_lead_created(self, subject_id: str) -> TriggerResult:
        """Fire the creation event; a lead with a source fires the source-specific form."""
        record = self.records.get_subject_record(subject_id) or {}
        source = record.get("source_name") or record.get("source_id")
        name = Events.lead_source(source) if source else Events.LEAD_CREATED
        return await self.fire_trigger(TriggerEvent(name=name, subject_id=subject_id, timestamp=self.clock()))

    async def on_lead_updated(self, subject_id: str, changed_fields: list[str]) -> TriggerResult:
        return await self.fire_trigger(
            TriggerEvent(
                name=Events.LEAD_UPDATED,
                subject_id=subject_id,
                timestamp=self.clock(),
                metadata={"changed_fields": changed_fields},
            )
        )

    async def on_tag_added(self, subject_id: str, tag: str) -> TriggerResult:
        return await self.fire_trigger(
            TriggerEvent(name=Events.TAG_ADDED, subject_id=subject_id, timestamp=self.clock(), metadata={"tag": tag})
        )

    async def on_tour_completed(self, subject_id: str) -> TriggerResult:
        return await self.fire_trigger(
            TriggerEvent(name=Events.TOUR_COMPLETED, subject_id=subject_id, timestamp=self.clock())
        )

    async def on_move_in_completed(self, subject_id: str) -> TriggerResult:
        return await self.fire_trigger(
            TriggerEvent(name=Events.MOVE_IN_COMPLETED, subject_id=subject_id, timestamp=self.clock())
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_step(self, enrollment_id: str) -> ExecutionResult:
        """Run the current step once. Repeated calls before the step is due are no-ops."""
        return await self.executor.execute_step(enrollment_id)

    async def process_enrollment(self, enrollment_id: str) -> ExecutionResult:
        """Run steps until the enrollment waits, fails, completes or is stopped."""
        while True:
            result = await self.executor.execute_step(enrollment_id)
            if result.outcome is StepOutcome.ADVANCED:
                continue
            if result.outcome is StepOutcome.FAILED:
                self._schedule_retry(enrollment_id, result)
            elif result.outcome is StepOutcome.WAITING and result.condition_result is False:
                self._schedule_recheck(enrollment_id)
            return result

    def _schedule_retry(self, enrollment_id: str, result: ExecutionResult) -> None:
        """Exponential backoff, then a terminal failed status once retries run out."""
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None or enrollment.status is not EnrollmentStatus.ACTIVE:
            return
        attempts = enrollment.attempts + 1
        step_id = result.step_id or enrollment.current_step_id

        if attempts > self.settings.max_step_retries:
            failed = self.enrollments.transition(
                enrollment_id,
                EnrollmentStatus.FAILED,
                allowed_from={EnrollmentStatus.ACTIVE},
                attempts=attempts,
                next_step_due_at=None,
            )
            if failed is not None:
                self.enrollments.append_log(
                    enrollment_id,
                    step_id=step_id,
                    event_type=LogEventType.FAILURE,
                    status=LogStatus.FAILED,
                    details=f"Giving up after {self.settings.max_step_retries} retries",
                    error=result.error,
                )
                logger.warning("Enrollment %s failed permanently at step %s", enrollment_id, step_id)
                self.executor.discard_lock(enrollment_id)
            return

        delay = timedelta(minutes=self.settings.retry_backoff_base_minutes * 2 ** (attempts - 1))
        due_at = self.clock() + delay
        updated = self.enrollments.update(
            enrollment_id,
            only_if_status={EnrollmentStatus.ACTIVE},
            attempts=attempts,
            next_step_due_at=due_at,
        )
        if updated is not None:
            self.enrollments.append_log(
                enrollment_id,
                step_id=step_id,
                event_type=LogEventType.RETRY,
                status=LogStatus.PENDING,
                details=f"Retry {attempts}/{self.settings.max_step_retries} scheduled for {due_at.isoformat()}",
            )

    def _schedule_recheck(self, enrollment_id: str) -> None:
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None or enrollment.status is not EnrollmentStatus.ACTIVE:
            return
        limit = self.settings.condition_max_evaluations
        if limit and enrollment.condition_evaluations >= limit:
            self._terminate(enrollment_id, f"Condition not met after {limit} evaluations")
            return
        self.enrollments.update(
            enrollment_id,
            only_if_status={EnrollmentStatus.ACTIVE},
            next_step_due_at=self.clock() + timedelta(minutes=self.settings.condition_recheck_minutes),
        )

    async def retry_step(self, enrollment_id: str, step_id: Optional[str] = None) -> OperationResult:
        """Manually re-run a step now, resetting the retry budget."""
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Enrollment {enrollment_id} not found")
        if enrollment.status not in (EnrollmentStatus.ACTIVE, EnrollmentStatus.FAILED):
            return OperationResult.rejected(
                RejectionReason.INVALID_TRANSITION,
                f"Enrollment {enrollment_id} is {enrollment.status.value} and cannot be retried",
            )
        definition = self.definitions.get(enrollment.definition_id)
        step_id = step_id or enrollment.current_step_id
        if definition is None or definition.get_step(step_id) is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Step {step_id} not found")

        changes = {"current_step_id": step_id, "attempts": 0, "next_step_due_at": None}
        if enrollment.status is EnrollmentStatus.FAILED:
            updated, conflict = self.enrollments.reopen(enrollment_id, **changes)
            if conflict:
                return OperationResult.rejected(
                    RejectionReason.ALREADY_ENROLLED,
                    f"Subject {enrollment.subject_id} is already enrolled in {enrollment.definition_id}",
                )
        else:
            updated = self.enrollments.update(enrollment_id, only_if_status={EnrollmentStatus.ACTIVE}, **changes)
        if updated is None:
            return OperationResult.rejected(
                RejectionReason.INVALID_TRANSITION, f"Enrollment {enrollment_id} changed status during retry"
            )
        self.enrollments.append_log(
            enrollment_id,
            step_id=step_id,
            event_type=LogEventType.RETRY,
            status=LogStatus.PENDING,
            details="Retry requested",
        )
        result = await self.process_enrollment(enrollment_id)
        if result.outcome is StepOutcome.FAILED:
            return OperationResult(success=False, error=result.error, enrollment_id=enrollment_id)
        return OperationResult.ok(enrollment_id)

    # ------------------------------------------------------------------
    # Admin controls
    # ------------------------------------------------------------------

    async def activate(self, definition_id: str) -> OperationResult:
        definition = self.definitions.get(definition_id)
        if definition is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Automation {definition_id} not found")
        if not definition.steps:
            return OperationResult.rejected(RejectionReason.NO_STEPS, "Automation has no steps defined")
        if definition.status is DefinitionStatus.PAUSED:
            return await self.resume(definition_id)
        self.definitions.set_status(definition_id, DefinitionStatus.ACTIVE)
        logger.info("Automation %s activated", definition_id)
        return OperationResult.ok()

    async def pause(self, definition_id: str) -> OperationResult:
        definition = self.definitions.get(definition_id)
        if definition is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Automation {definition_id} not found")
        if definition.status is DefinitionStatus.DRAFT:
            return OperationResult.rejected(RejectionReason.INVALID_TRANSITION, "Draft automations cannot be paused")

        self.definitions.set_status(definition_id, DefinitionStatus.PAUSED)
        paused = self.enrollments.bulk_transition(definition_id, EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)
        for enrollment_id in paused:
            self._log_status_change(enrollment_id, LogEventType.PAUSE, "Automation paused")
        logger.info("Automation %s paused (%d enrollments)", definition_id, len(paused))
        return OperationResult.ok()

    async def resume(self, definition_id: str) -> OperationResult:
        definition = self.definitions.get(definition_id)
        if definition is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Automation {definition_id} not found")
        if definition.status is DefinitionStatus.DRAFT:
            return OperationResult.rejected(
                RejectionReason.INVALID_TRANSITION, "Draft automations must be activated, not resumed"
            )

        self.definitions.set_status(definition_id, DefinitionStatus.ACTIVE)
        resumed = self.enrollments.bulk_transition(definition_id, EnrollmentStatus.PAUSED, EnrollmentStatus.ACTIVE)
        for enrollment_id in resumed:
            self._log_status_change(enrollment_id, LogEventType.RESUME, "Automation resumed")
            self.dispatch(enrollment_id)
        logger.info("Automation %s resumed (%d enrollments)", definition_id, len(resumed))
        return OperationResult.ok()

    async def terminate(self, enrollment_id: str, reason: str = "Manually terminated") -> OperationResult:
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None:
            return OperationResult.rejected(RejectionReason.NOT_FOUND, f"Enrollment {enrollment_id} not found")
        if enrollment.status.is_terminal or not self._terminate(enrollment_id, reason):
            return OperationResult.rejected(
                RejectionReason.TERMINAL_STATUS, f"Enrollment {enrollment_id} has already finished"
            )
        return OperationResult.ok(enrollment_id)

    def _terminate(self, enrollment_id: str, reason: str) -> bool:
        terminated = self.enrollments.transition(enrollment_id, EnrollmentStatus.TERMINATED, next_step_due_at=None)
        if terminated is None:
            return False
        self.enrollments.append_log(
            enrollment_id,
            step_id=terminated.current_step_id,
            event_type=LogEventType.TERMINATION,
            status=LogStatus.SUCCESS,
            details=reason,
        )
        logger.info("Enrollment %s terminated: %s", enrollment_id, reason)
        self.executor.discard_lock(enrollment_id)
        return True

    def _log_status_change(self, enrollment_id: str, event_type: LogEventType, details: str) -> None:
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is not None:
            self.enrollments.append_log(
                enrollment_id,
                step_id=enrollment.current_step_id,
                event_type=event_type,
                status=LogStatus.SUCCESS,
                details=details,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self.definitions.get(definition_id)

    def list_definitions(self) -> list[WorkflowDefinition]:
        return self.definitions.list()

    def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        return self.enrollments.get(enrollment_id)

    def list_enrollments(
        self,
        definition_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        return self.enrollments.list(definition_id=definition_id, subject_id=subject_id, status=status)

    def enrollment_report(self, enrollment_id: str) -> Optional[EnrollmentReport]:
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None:
            return None
        definition = self.definitions.get(enrollment.definition_id)
        return EnrollmentReport(definition_name=definition.name if definition else "", enrollment=enrollment)

    def get_engine_stats(self) -> EngineStats:
        definitions = self.definitions.list()
        enrollments = self.enrollments.list()

        def count(status: EnrollmentStatus) -> int:
            return sum(1 for e in enrollments if e.status is status)

        return EngineStats(
            is_running=self.is_running,
            total_automations=len(definitions),
            active_automations=sum(1 for d in definitions if d.status is DefinitionStatus.ACTIVE),
            total_enrollments=len(enrollments),
            active_enrollments=count(EnrollmentStatus.ACTIVE),
            paused_enrollments=count(EnrollmentStatus.PAUSED),
            completed_enrollments=count(EnrollmentStatus.COMPLETED),
            terminated_enrollments=count(EnrollmentStatus.TERMINATED),
            failed_enrollments=count(EnrollmentStatus.FAILED),
        )
