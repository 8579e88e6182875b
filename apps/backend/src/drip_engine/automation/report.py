"""Engine statistics and per-enrollment execution reports with markdown rendering."""

from pydantic import BaseModel

from .schema import Enrollment


class EngineStats(BaseModel):
    is_running: bool
    total_automations: int
    active_automations: int
    total_enrollments: int
    active_enrollments: int
    paused_enrollments: int
    completed_enrollments: int
    terminated_enrollments: int
    failed_enrollments: int


class EnrollmentReport(BaseModel):
    """Execution history of one enrollment."""

    definition_name: str
    enrollment: Enrollment

    def to_markdown(self) -> str:
        e = self.enrollment
        lines = [
            f"# Enrollment Report: {self.definition_name or e.definition_id}",
            "",
            f"**Enrollment ID:** `{e.id}`",
            f"**Subject:** `{e.subject_id}`",
            f"**Status:** {e.status.value}",
            f"**Current step:** `{e.current_step_id}`",
            f"**Enrolled at:** {e.enrolled_at.isoformat()}",
        ]
        if e.next_step_due_at:
            lines.append(f"**Next step due:** {e.next_step_due_at.isoformat()}")
        if e.attempts:
            lines.append(f"**Failed attempts:** {e.attempts}")
        lines.append("")

        if e.condition_results:
            lines.append("## Condition Results")
            for step_id, result in e.condition_results.items():
                lines.append(f"- `{step_id}`: {result}")
            lines.append("")

        lines.append("## Execution History")
        lines.append("")
        lines.append("| # | Time | Step | Event | Status | Detail |")
        lines.append("|---|------|------|-------|--------|--------|")

        for i, entry in enumerate(e.history, 1):
            detail = entry.error or entry.details
            status_icon = {"success": "OK", "failed": "FAIL", "skipped": "SKIP", "pending": "WAIT"}.get(
                entry.status.value, entry.status.value
            )
            lines.append(
                f"| {i} | {entry.timestamp:%Y-%m-%d %H:%M:%S} | `{entry.step_id}` | "
                f"{entry.event_type.value} | {status_icon} | {detail} |"
            )

        return "\n".join(lines)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
