from .definitions import DefinitionStore, RawDefinition, RawStep
from .engine import AutomationEngine
from .schema import (
    DefinitionStatus,
    Enrollment,
    EnrollmentStatus,
    ExecutionResult,
    OperationResult,
    TriggerEvent,
    TriggerResult,
    WorkflowDefinition,
)
from .store import EnrollmentStore
from .triggers import Events

__all__ = [
    "AutomationEngine",
    "DefinitionStatus",
    "DefinitionStore",
    "Enrollment",
    "EnrollmentStatus",
    "EnrollmentStore",
    "Events",
    "ExecutionResult",
    "OperationResult",
    "RawDefinition",
    "RawStep",
    "TriggerEvent",
    "TriggerResult",
    "WorkflowDefinition",
]
