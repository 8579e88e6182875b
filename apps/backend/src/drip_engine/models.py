"""API models for the drip engine."""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class EnrollRequest(BaseModel):
    """Manually enroll a subject into an automation."""

    subject_id: str = Field(..., description="Lead id to enroll")


class TerminateRequest(BaseModel):
    reason: str = Field("Manually terminated", description="Recorded in the enrollment history")


class RetryRequest(BaseModel):
    step_id: Optional[str] = Field(
        None,
        description="Step to re-run; defaults to the enrollment's current step",
    )


class EventRequest(BaseModel):
    """A host application event that may enroll a subject."""

    event: Literal["lead_created", "lead_updated", "tag_added", "tour_completed", "move_in_completed"]
    subject_id: str
    tag: Optional[str] = Field(None, description="Required for tag_added")
    changed_fields: list[str] = Field(default_factory=list, description="Used by lead_updated")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str = "Drip Engine"
    scheduler_running: bool = False
