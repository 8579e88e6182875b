"""In-memory CRM records and simulated email/SMS channels."""

from .failures import FailureConfig, FailureRule
from .seed import demo_definitions, seed_state
from .services import InMemoryRecords, SimulatedEmailSender, SimulatedSmsSender
from .state import OutboundMessage, SimulatorState


def create_simulator(
    failure_config: FailureConfig | None = None,
    *,
    seed: bool = True,
) -> tuple[SimulatorState, InMemoryRecords, dict, FailureConfig | None]:
    """Create a fresh simulator with records and channels wired together."""
    state = SimulatorState()
    if seed:
        seed_state(state)
    records = InMemoryRecords(state)

    channels = {
        "email": SimulatedEmailSender(state, failure_config),
        "sms": SimulatedSmsSender(state, failure_config),
    }

    return state, records, channels, failure_config


__all__ = [
    "FailureConfig",
    "FailureRule",
    "InMemoryRecords",
    "OutboundMessage",
    "SimulatedEmailSender",
    "SimulatedSmsSender",
    "SimulatorState",
    "create_simulator",
    "demo_definitions",
    "seed_state",
]
