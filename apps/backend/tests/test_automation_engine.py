import asyncio
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from drip_engine.automation.definitions import DefinitionStore, RawDefinition, RawStep
from drip_engine.automation.engine import AutomationEngine
from drip_engine.automation.schema import (
    DefinitionStatus,
    EnrollmentStatus,
    LogEventType,
    LogStatus,
    RejectionReason,
    StepOutcome,
)
from drip_engine.config import Settings
from drip_engine.simulator import (
    FailureConfig,
    FailureRule,
    SimulatedEmailSender,
    create_simulator,
    demo_definitions,
)


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 12, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_engine(clock: FakeClock, failure_config: FailureConfig | None = None, **overrides):
    state, records, channels, _ = create_simulator(failure_config)
    definitions = DefinitionStore()
    for raw in demo_definitions():
        definitions.add(raw)
    settings = Settings(scheduler_autostart=False, **overrides)
    engine = AutomationEngine(definitions, records, records, channels, settings=settings, clock=clock)
    return engine, state


def event_types(enrollment) -> list[LogEventType]:
    return [entry.event_type for entry in enrollment.history]


class HangingEmailSender(SimulatedEmailSender):
    """Holds sends to one address until released."""

    def __init__(self, state, address: str):
        super().__init__(state)
        self.address = address
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        if to == self.address:
            self.started.set()
            await self.release.wait()
        return await super().send_email(to, subject, body)


class WelcomeSequenceTests(unittest.TestCase):
    def test_lead_created_runs_welcome_sequence_to_completion(self):
        clock = FakeClock()
        engine, state = make_engine(clock)

        async def scenario():
            result = await engine.on_lead_created("LEA_003")
            self.assertEqual(result.enrolled, ["AUTO_001"])
            await engine.wait_idle()

            [enrollment] = engine.list_enrollments(subject_id="LEA_003")
            self.assertEqual(enrollment.current_step_id, "STEP_002")
            self.assertEqual(enrollment.next_step_due_at, clock.now + timedelta(hours=24))
            self.assertEqual(len(state.outbox), 1)
            self.assertEqual(state.outbox[0].subject, "Welcome to Sunset Towers")
            self.assertIn("Hi Robert,", state.outbox[0].body)

            # Re-running before the delay elapses changes nothing
            history_before = len(engine.get_enrollment(enrollment.id).history)
            skipped = await engine.execute_step(enrollment.id)
            self.assertEqual(skipped.outcome, StepOutcome.SKIPPED)
            self.assertEqual(len(engine.get_enrollment(enrollment.id).history), history_before)

            clock.advance(hours=24)
            final = await engine.process_enrollment(enrollment.id)
            self.assertEqual(final.outcome, StepOutcome.COMPLETED)
            return enrollment.id

        enrollment_id = asyncio.run(scenario())

        enrollment = engine.get_enrollment(enrollment_id)
        self.assertEqual(enrollment.status, EnrollmentStatus.COMPLETED)
        self.assertEqual(
            event_types(enrollment),
            [
                LogEventType.ENROLLMENT,
                LogEventType.STEP_EXECUTION,
                LogEventType.DELAY_START,
                LogEventType.DELAY_COMPLETE,
                LogEventType.STEP_EXECUTION,
                LogEventType.STEP_EXECUTION,
                LogEventType.COMPLETION,
            ],
        )
        self.assertEqual([m.channel for m in state.outbox], ["email", "sms"])
        self.assertEqual(engine.get_definition("AUTO_001").enrolled_count, 1)
        self.assertEqual(engine.get_definition("AUTO_001").completed_count, 1)

        interactions = [i for i in state.interactions if i.subject_id == "LEA_003"]
        self.assertEqual(len(interactions), 2)
        self.assertEqual(interactions[0].channel_message_id, f"auto_{enrollment_id}_STEP_001")
        self.assertEqual(interactions[0].created_by_user_id, "USR_004")
        self.assertEqual(interactions[0].created_by_source, "Automation")

    def test_zillow_lead_enrolls_in_both_sequences_and_gets_assigned(self):
        clock = FakeClock()
        engine, state = make_engine(clock, team_owners={"TM_001": "USR_003"})

        async def scenario():
            first = await engine.on_lead_created("LEA_001")
            await engine.wait_idle()
            second = await engine.on_lead_created("LEA_001")
            await engine.wait_idle()
            return first, second

        first, second = asyncio.run(scenario())

        self.assertEqual(first.enrolled, ["AUTO_001", "AUTO_008"])
        # The welcome sequence is still waiting; the fast-response one already completed
        self.assertEqual(second.skipped, ["AUTO_001"])
        self.assertEqual(second.enrolled, ["AUTO_008"])

        zillow = engine.list_enrollments(definition_id="AUTO_008", subject_id="LEA_001")
        self.assertTrue(all(e.status is EnrollmentStatus.COMPLETED for e in zillow))
        self.assertEqual(state.leads["LEA_001"]["lead_owner_id"], "USR_003")
        self.assertEqual(engine.get_definition("AUTO_008").completed_count, 2)

    def test_trigger_for_unknown_subject_enrolls_nothing(self):
        engine, _ = make_engine(FakeClock())
        result = asyncio.run(engine.on_tour_completed("LEA_404"))
        self.assertEqual((result.enrolled, result.skipped, result.errors), ([], [], []))


class EnrollmentRulesTests(unittest.TestCase):
    def test_enroll_rejections(self):
        engine, _ = make_engine(FakeClock())

        async def scenario():
            results = [
                await engine.enroll("AUTO_404", "LEA_001"),
                await engine.enroll("AUTO_010", "LEA_001"),
                await engine.enroll("AUTO_001", "LEA_404"),
                await engine.enroll("AUTO_001", "LEA_001"),
                await engine.enroll("AUTO_001", "LEA_001"),
            ]
            await engine.wait_idle()
            return results

        results = asyncio.run(scenario())

        self.assertEqual(
            [r.error_code for r in results],
            [
                RejectionReason.NOT_FOUND,
                RejectionReason.NOT_ACTIVE,
                RejectionReason.SUBJECT_NOT_FOUND,
                None,
                RejectionReason.ALREADY_ENROLLED,
            ],
        )
        self.assertTrue(results[3].success)
        self.assertEqual(engine.get_definition("AUTO_001").enrolled_count, 1)

    def test_concurrent_enrollments_create_one_record(self):
        engine, _ = make_engine(FakeClock())

        async def scenario():
            results = await asyncio.gather(*(engine.enroll("AUTO_001", "LEA_002") for _ in range(5)))
            await engine.wait_idle()
            return results

        results = asyncio.run(scenario())

        self.assertEqual(sum(r.success for r in results), 1)
        self.assertEqual(len(engine.list_enrollments(definition_id="AUTO_001", subject_id="LEA_002")), 1)

    def test_activate_draft_requires_steps(self):
        engine, _ = make_engine(FakeClock())

        async def scenario():
            empty = await engine.activate("AUTO_010")
            engine.definitions.append_step(
                "AUTO_010",
                RawStep(id="STEP_011", step_order=1, type="Action", action="Send Email",
                        content_template_id="TMPL_WELCOME"),
            )
            activated = await engine.activate("AUTO_010")
            tagged = await engine.on_tag_added("LEA_002", "Interested in 1BHK")
            await engine.wait_idle()
            return empty, activated, tagged

        empty, activated, tagged = asyncio.run(scenario())

        self.assertEqual(empty.error_code, RejectionReason.NO_STEPS)
        self.assertTrue(activated.success)
        self.assertEqual(engine.get_definition("AUTO_010").status, DefinitionStatus.ACTIVE)
        self.assertEqual(tagged.enrolled, ["AUTO_010"])


class ConditionStepTests(unittest.TestCase):
    def test_false_condition_waits_and_rechecks(self):
        clock = FakeClock()
        engine, state = make_engine(clock)

        async def scenario():
            await engine.on_tour_completed("LEA_003")
            await engine.wait_idle()
            [enrollment] = engine.list_enrollments(definition_id="AUTO_002")

            clock.advance(hours=2)
            waiting = await engine.process_enrollment(enrollment.id)
            self.assertEqual(waiting.outcome, StepOutcome.WAITING)
            self.assertIs(waiting.condition_result, False)

            stalled = engine.get_enrollment(enrollment.id)
            self.assertEqual(stalled.status, EnrollmentStatus.ACTIVE)
            self.assertEqual(stalled.current_step_id, "STEP_007")
            self.assertEqual(stalled.condition_evaluations, 1)
            self.assertEqual(stalled.next_step_due_at, clock.now + timedelta(minutes=60))

            engine.records.update_subject_record("LEA_003", {"lead_score": 90})
            clock.advance(minutes=60)
            done = await engine.process_enrollment(enrollment.id)
            self.assertEqual(done.outcome, StepOutcome.COMPLETED)
            return enrollment.id

        enrollment_id = asyncio.run(scenario())

        enrollment = engine.get_enrollment(enrollment_id)
        self.assertEqual(enrollment.condition_results, {"STEP_007": True})
        evaluations = [e.condition_result for e in enrollment.history if e.event_type is LogEventType.CONDITION_EVAL]
        self.assertEqual(evaluations, [False, True])
        self.assertEqual([m.subject for m in state.outbox], ["How did the tour go?", "Share your review"])
        self.assertIn("https://nexus.app/feedback/LEA_003", state.outbox[0].body)

    def test_stalled_condition_is_terminated_after_limit(self):
        clock = FakeClock()
        engine, _ = make_engine(clock, condition_max_evaluations=2)

        async def scenario():
            await engine.on_tour_completed("LEA_003")
            await engine.wait_idle()
            [enrollment] = engine.list_enrollments(definition_id="AUTO_002")
            clock.advance(hours=2)
            await engine.process_enrollment(enrollment.id)
            clock.advance(minutes=60)
            await engine.process_enrollment(enrollment.id)
            return enrollment.id

        enrollment = engine.get_enrollment(asyncio.run(scenario()))

        self.assertEqual(enrollment.status, EnrollmentStatus.TERMINATED)
        self.assertEqual(enrollment.history[-1].event_type, LogEventType.TERMINATION)
        self.assertIn("Condition not met", enrollment.history[-1].details)

    def test_malformed_condition_fails_closed(self):
        clock = FakeClock()
        engine, state = make_engine(clock)
        engine.definitions.add(
            RawDefinition(
                id="AUTO_900",
                trigger_event="Move-in Completed",
                status=DefinitionStatus.ACTIVE,
                steps=[
                    RawStep(id="C1", step_order=1, type="Condition", condition_json="{broken"),
                    RawStep(id="E1", step_order=2, type="Action", action="Send Email",
                            content_template_id="TMPL_REVIEW_LINK"),
                ],
            )
        )

        async def scenario():
            await engine.on_move_in_completed("LEA_002")
            await engine.wait_idle()

        asyncio.run(scenario())

        [enrollment] = engine.list_enrollments(definition_id="AUTO_900")
        self.assertEqual(enrollment.status, EnrollmentStatus.ACTIVE)
        self.assertEqual(enrollment.current_step_id, "C1")
        self.assertEqual(enrollment.condition_results, {"C1": False})
        self.assertEqual(state.outbox, [])


class FailureHandlingTests(unittest.TestCase):
    def test_failed_send_retries_with_backoff_then_fails(self):
        clock = FakeClock()
        failures = FailureConfig(
            rules={"email.send": FailureRule(error_type="rate_limit", message="Too many requests")}
        )
        engine, state = make_engine(clock, failure_config=failures)

        async def scenario():
            result = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            enrollment_id = result.enrollment_id

            first = engine.get_enrollment(enrollment_id)
            self.assertEqual(first.attempts, 1)
            self.assertEqual(first.next_step_due_at, clock.now + timedelta(minutes=5))
            self.assertEqual(first.status, EnrollmentStatus.ACTIVE)

            for minutes in (5, 10, 20):
                clock.advance(minutes=minutes)
                outcome = await engine.process_enrollment(enrollment_id)
                self.assertEqual(outcome.outcome, StepOutcome.FAILED)
            return enrollment_id

        enrollment_id = asyncio.run(scenario())

        enrollment = engine.get_enrollment(enrollment_id)
        self.assertEqual(enrollment.status, EnrollmentStatus.FAILED)
        self.assertEqual(enrollment.attempts, 4)
        self.assertEqual(enrollment.current_step_id, "STEP_001")
        self.assertEqual(
            [e.event_type for e in enrollment.history if e.event_type is LogEventType.RETRY],
            [LogEventType.RETRY] * 3,
        )
        last = enrollment.history[-1]
        self.assertEqual((last.event_type, last.status), (LogEventType.FAILURE, LogStatus.FAILED))
        self.assertIn("rate_limit", last.error)

        self.assertEqual(len(state.interactions), 4)
        self.assertFalse(any(i.delivered for i in state.interactions))
        self.assertTrue(all(m.status == "failed" for m in state.outbox))

    def test_manual_retry_recovers_failed_enrollment(self):
        clock = FakeClock()
        failures = FailureConfig(
            rules={"email.send": FailureRule(error_type="delivery_failed", message="Mailbox full")}
        )
        engine, state = make_engine(clock, failure_config=failures, max_step_retries=0)

        async def scenario():
            result = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            self.assertEqual(engine.get_enrollment(result.enrollment_id).status, EnrollmentStatus.FAILED)

            failures.rules.clear()
            return await engine.retry_step(result.enrollment_id)

        retried = asyncio.run(scenario())

        self.assertTrue(retried.success)
        enrollment = engine.get_enrollment(retried.enrollment_id)
        self.assertEqual(enrollment.status, EnrollmentStatus.ACTIVE)
        self.assertEqual(enrollment.attempts, 0)
        self.assertEqual(enrollment.current_step_id, "STEP_002")
        self.assertEqual(state.outbox[-1].status, "sent")

    def test_retry_rejected_when_subject_was_enrolled_again(self):
        failures = FailureConfig(
            rules={"email.send": FailureRule(error_type="delivery_failed", message="Mailbox full", max_failures=1)}
        )
        engine, _ = make_engine(FakeClock(), failure_config=failures, max_step_retries=0)

        async def scenario():
            first = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            self.assertEqual(engine.get_enrollment(first.enrollment_id).status, EnrollmentStatus.FAILED)

            second = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            self.assertTrue(second.success)
            return first.enrollment_id, await engine.retry_step(first.enrollment_id)

        first_id, retried = asyncio.run(scenario())

        self.assertEqual(retried.error_code, RejectionReason.ALREADY_ENROLLED)
        self.assertEqual(engine.get_enrollment(first_id).status, EnrollmentStatus.FAILED)
        open_pairs = [
            e for e in engine.list_enrollments(definition_id="AUTO_001", subject_id="LEA_003")
            if e.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)
        ]
        self.assertEqual(len(open_pairs), 1)

    def test_retry_rejected_for_completed_or_unknown_enrollment(self):
        engine, _ = make_engine(FakeClock())

        async def scenario():
            result = await engine.enroll("AUTO_008", "LEA_001")
            await engine.wait_idle()
            return (
                await engine.retry_step(result.enrollment_id),
                await engine.retry_step("ENR_9999"),
            )

        completed, unknown = asyncio.run(scenario())

        self.assertEqual(completed.error_code, RejectionReason.INVALID_TRANSITION)
        self.assertEqual(unknown.error_code, RejectionReason.NOT_FOUND)

    def test_missing_template_is_a_step_failure(self):
        engine, state = make_engine(FakeClock(), max_step_retries=0)
        del state.templates["TMPL_ZILLOW_AUTO"]

        async def scenario():
            result = await engine.enroll("AUTO_008", "LEA_001")
            await engine.wait_idle()
            return result.enrollment_id

        enrollment = engine.get_enrollment(asyncio.run(scenario()))

        self.assertEqual(enrollment.status, EnrollmentStatus.FAILED)
        self.assertIn("TMPL_ZILLOW_AUTO", enrollment.history[-1].error)


class AdminControlTests(unittest.TestCase):
    def test_pause_and_resume_definition(self):
        clock = FakeClock()
        engine, state = make_engine(clock)

        async def scenario():
            result = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            enrollment_id = result.enrollment_id

            self.assertTrue((await engine.pause("AUTO_001")).success)
            self.assertEqual(engine.get_enrollment(enrollment_id).status, EnrollmentStatus.PAUSED)

            clock.advance(hours=24)
            skipped = await engine.execute_step(enrollment_id)
            self.assertEqual(skipped.outcome, StepOutcome.SKIPPED)
            blocked = await engine.enroll("AUTO_001", "LEA_002")
            self.assertEqual(blocked.error_code, RejectionReason.NOT_ACTIVE)

            self.assertTrue((await engine.resume("AUTO_001")).success)
            await engine.wait_idle()
            return enrollment_id

        enrollment = engine.get_enrollment(asyncio.run(scenario()))

        self.assertEqual(enrollment.status, EnrollmentStatus.COMPLETED)
        self.assertIn(LogEventType.PAUSE, event_types(enrollment))
        self.assertIn(LogEventType.RESUME, event_types(enrollment))
        self.assertEqual(len(state.outbox), 2)

    def test_draft_definitions_cannot_be_paused_or_resumed(self):
        engine, _ = make_engine(FakeClock())

        async def scenario():
            return await engine.pause("AUTO_010"), await engine.resume("AUTO_010"), await engine.pause("AUTO_404")

        paused, resumed, missing = asyncio.run(scenario())

        self.assertEqual(paused.error_code, RejectionReason.INVALID_TRANSITION)
        self.assertEqual(resumed.error_code, RejectionReason.INVALID_TRANSITION)
        self.assertEqual(missing.error_code, RejectionReason.NOT_FOUND)

    def test_terminate_is_final(self):
        clock = FakeClock()
        engine, _ = make_engine(clock)

        async def scenario():
            result = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            terminated = await engine.terminate(result.enrollment_id, "Lead opted out")
            again = await engine.terminate(result.enrollment_id)
            clock.advance(hours=24)
            after = await engine.execute_step(result.enrollment_id)
            return result.enrollment_id, terminated, again, after

        enrollment_id, terminated, again, after = asyncio.run(scenario())

        self.assertTrue(terminated.success)
        self.assertEqual(again.error_code, RejectionReason.TERMINAL_STATUS)
        self.assertEqual(after.outcome, StepOutcome.SKIPPED)
        enrollment = engine.get_enrollment(enrollment_id)
        self.assertEqual(enrollment.status, EnrollmentStatus.TERMINATED)
        self.assertEqual(enrollment.history[-1].details, "Lead opted out")
        self.assertEqual(engine.get_definition("AUTO_001").completed_count, 0)

    def test_stats_and_report(self):
        engine, _ = make_engine(FakeClock())

        async def scenario():
            await engine.on_lead_created("LEA_001")
            await engine.wait_idle()

        asyncio.run(scenario())

        stats = engine.get_engine_stats()
        self.assertFalse(stats.is_running)
        self.assertEqual(stats.total_automations, 4)
        self.assertEqual(stats.active_automations, 3)
        self.assertEqual(stats.total_enrollments, 2)
        self.assertEqual(stats.active_enrollments, 1)
        self.assertEqual(stats.completed_enrollments, 1)

        [welcome] = engine.list_enrollments(definition_id="AUTO_001")
        markdown = engine.enrollment_report(welcome.id).to_markdown()
        self.assertIn("# Enrollment Report: New Lead Welcome", markdown)
        self.assertIn("delay_start", markdown)
        self.assertIsNone(engine.enrollment_report("ENR_9999"))

    def test_termination_during_send_is_final(self):
        engine, state = make_engine(FakeClock())

        async def scenario():
            sender = HangingEmailSender(state, "john.smith@example.com")
            engine.channels["email"] = sender
            result = await engine.enroll("AUTO_001", "LEA_001")
            await asyncio.wait_for(sender.started.wait(), timeout=1)
            terminated = await engine.terminate(result.enrollment_id, "Lead opted out")
            sender.release.set()
            await engine.wait_idle()
            return result.enrollment_id, terminated

        enrollment_id, terminated = asyncio.run(scenario())

        self.assertTrue(terminated.success)
        enrollment = engine.get_enrollment(enrollment_id)
        self.assertEqual(enrollment.status, EnrollmentStatus.TERMINATED)
        self.assertEqual(enrollment.history[-1].event_type, LogEventType.TERMINATION)
        self.assertNotIn(LogEventType.STEP_EXECUTION, event_types(enrollment))
        self.assertNotIn(enrollment_id, engine.executor._locks)


class SchedulerScanTests(unittest.TestCase):
    def test_scan_before_due_changes_nothing_and_scan_after_completes(self):
        clock = FakeClock()
        engine, state = make_engine(clock)

        async def scenario():
            result = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            before = engine.get_enrollment(result.enrollment_id)

            clock.advance(hours=23)
            early = await engine.scheduler.tick()
            await engine.wait_idle()
            unchanged = engine.get_enrollment(result.enrollment_id)

            clock.advance(hours=1)
            late = await engine.scheduler.tick()
            await engine.wait_idle()
            return before, early, unchanged, late

        before, early, unchanged, late = asyncio.run(scenario())

        self.assertEqual(before.current_step_id, "STEP_002")
        self.assertEqual(early, 0)
        self.assertEqual(len(unchanged.history), len(before.history))
        self.assertEqual(late, 1)

        enrollment = engine.get_enrollment(before.id)
        self.assertEqual(enrollment.status, EnrollmentStatus.COMPLETED)
        self.assertEqual(enrollment.current_step_id, "STEP_004")
        self.assertEqual(event_types(enrollment)[-1], LogEventType.COMPLETION)
        self.assertEqual([m.channel for m in state.outbox], ["email", "sms"])
        self.assertNotIn(enrollment.id, engine.executor._locks)

    def test_scan_skips_paused_enrollments(self):
        clock = FakeClock()
        engine, state = make_engine(clock)

        async def scenario():
            result = await engine.enroll("AUTO_001", "LEA_003")
            await engine.wait_idle()
            await engine.pause("AUTO_001")
            paused = engine.get_enrollment(result.enrollment_id)

            clock.advance(hours=24)
            scanned = await engine.scheduler.tick()
            await engine.wait_idle()
            return paused, scanned

        paused, scanned = asyncio.run(scenario())

        self.assertEqual(scanned, 0)
        enrollment = engine.get_enrollment(paused.id)
        self.assertEqual(enrollment.status, EnrollmentStatus.PAUSED)
        self.assertEqual(len(enrollment.history), len(paused.history))
        self.assertEqual(len(state.outbox), 1)

    def test_hung_send_stalls_only_its_own_enrollment(self):
        engine, state = make_engine(FakeClock())

        async def scenario():
            sender = HangingEmailSender(state, "john.smith@example.com")
            engine.channels["email"] = sender
            stuck = await engine.enroll("AUTO_001", "LEA_001")
            await asyncio.wait_for(sender.started.wait(), timeout=1)
            other = engine.enrollments.create_if_absent("AUTO_001", "LEA_003", "STEP_001")

            scanned = await asyncio.wait_for(engine.scheduler.tick(), timeout=1)
            await asyncio.sleep(0.05)
            progressed = engine.get_enrollment(other.id)

            sender.release.set()
            await asyncio.wait_for(engine.wait_idle(), timeout=1)
            return stuck.enrollment_id, progressed, scanned

        stuck_id, progressed, scanned = asyncio.run(scenario())

        self.assertEqual(scanned, 2)
        self.assertEqual(progressed.current_step_id, "STEP_002")
        self.assertIn(LogEventType.STEP_EXECUTION, event_types(progressed))

        stuck = engine.get_enrollment(stuck_id)
        self.assertEqual(stuck.current_step_id, "STEP_002")
        self.assertEqual(event_types(stuck).count(LogEventType.STEP_EXECUTION), 1)


if __name__ == "__main__":
    unittest.main()
