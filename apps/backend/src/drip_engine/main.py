from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .automation.definitions import DefinitionStore, RawDefinition, RawStep
from .automation.engine import AutomationEngine
from .automation.errors import StepConfigError
from .automation.schema import EnrollmentStatus, OperationResult, RejectionReason
from .config import Settings, get_settings
from .connectors import close_channel_layer, create_channel_layer
from .logging_config import get_logger, setup_logging
from .models import EnrollRequest, EventRequest, HealthResponse, RetryRequest, TerminateRequest
from .simulator import demo_definitions

load_dotenv()
setup_logging()

logger = get_logger(__name__)


def build_engine(settings: Optional[Settings] = None) -> AutomationEngine:
    """Wire the definition store, record layer and channels into an engine."""
    settings = settings or get_settings()
    _, records, channels, _ = create_channel_layer(settings)

    definitions = DefinitionStore()
    if settings.definitions_dir:
        definitions.load_directory(Path(settings.definitions_dir))
    else:
        for raw in demo_definitions():
            definitions.add(raw)

    return AutomationEngine(definitions, records, records, channels, settings=settings)


engine = build_engine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    current = engine
    if current.settings.scheduler_autostart:
        current.start()
    try:
        yield
    finally:
        await current.stop()
        await close_channel_layer(current.channels)


app = FastAPI(
    title="Drip Engine API",
    description="Event-driven drip automations for leasing leads",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_NOT_FOUND = {RejectionReason.NOT_FOUND, RejectionReason.SUBJECT_NOT_FOUND}


def _raise_if_rejected(result: OperationResult) -> dict:
    """Map engine rejections to HTTP errors. Execution failures are returned as-is."""
    if result.error_code is not None:
        status_code = 404 if result.error_code in _NOT_FOUND else 409
        raise HTTPException(status_code=status_code, detail=result.error)
    return result.model_dump(mode="json")


@app.get("/api/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok", scheduler_running=engine.is_running)


# --- Automation definitions ---

@app.get("/api/automations")
def list_automations():
    return [d.model_dump(mode="json") for d in engine.list_definitions()]


@app.get("/api/automations/{definition_id}")
def get_automation(definition_id: str):
    definition = engine.get_definition(definition_id)
    if definition is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return definition.model_dump(mode="json")


@app.post("/api/automations", status_code=201)
def create_automation(request: RawDefinition):
    try:
        definition = engine.definitions.add(request)
    except StepConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return definition.model_dump(mode="json")


@app.post("/api/automations/{definition_id}/steps", status_code=201)
def append_step(definition_id: str, request: RawStep):
    try:
        step = engine.definitions.append_step(definition_id, request)
    except StepConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if step is None:
        raise HTTPException(status_code=404, detail="Automation not found")
    return step.model_dump(mode="json")


@app.post("/api/automations/{definition_id}/activate")
async def activate_automation(definition_id: str):
    return _raise_if_rejected(await engine.activate(definition_id))


@app.post("/api/automations/{definition_id}/pause")
async def pause_automation(definition_id: str):
    return _raise_if_rejected(await engine.pause(definition_id))


@app.post("/api/automations/{definition_id}/resume")
async def resume_automation(definition_id: str):
    return _raise_if_rejected(await engine.resume(definition_id))


@app.post("/api/automations/{definition_id}/enroll", status_code=201)
async def enroll(definition_id: str, request: EnrollRequest):
    return _raise_if_rejected(await engine.enroll(definition_id, request.subject_id))


# --- Enrollments ---

@app.get("/api/enrollments")
def list_enrollments(
    definition_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    status: Optional[EnrollmentStatus] = None,
):
    enrollments = engine.list_enrollments(definition_id=definition_id, subject_id=subject_id, status=status)
    return [e.model_dump(mode="json") for e in enrollments]


@app.get("/api/enrollments/{enrollment_id}")
def get_enrollment(enrollment_id: str):
    enrollment = engine.get_enrollment(enrollment_id)
    if enrollment is None:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return enrollment.model_dump(mode="json")


@app.get("/api/enrollments/{enrollment_id}/report")
def get_enrollment_report(enrollment_id: str):
    report = engine.enrollment_report(enrollment_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return {**report.to_dict(), "markdown": report.to_markdown()}


@app.post("/api/enrollments/{enrollment_id}/terminate")
async def terminate_enrollment(enrollment_id: str, request: TerminateRequest):
    return _raise_if_rejected(await engine.terminate(enrollment_id, request.reason))


@app.post("/api/enrollments/{enrollment_id}/retry")
async def retry_enrollment(enrollment_id: str, request: RetryRequest):
    return _raise_if_rejected(await engine.retry_step(enrollment_id, request.step_id))


# --- Host events ---

@app.post("/api/events")
async def fire_event(request: EventRequest):
    if request.event == "lead_created":
        result = await engine.on_lead_created(request.subject_id)
    elif request.event == "lead_updated":
        result = await engine.on_lead_updated(request.subject_id, request.changed_fields)
    elif request.event == "tag_added":
        if not request.tag:
            raise HTTPException(status_code=422, detail="tag is required for tag_added")
        result = await engine.on_tag_added(request.subject_id, request.tag)
    elif request.event == "tour_completed":
        result = await engine.on_tour_completed(request.subject_id)
    else:
        result = await engine.on_move_in_completed(request.subject_id)
    return result.model_dump(mode="json")


@app.get("/api/engine/stats")
def engine_stats():
    return engine.get_engine_stats().model_dump(mode="json")
