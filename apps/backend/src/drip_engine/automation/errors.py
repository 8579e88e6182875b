"""Exceptions raised inside the drip engine."""


class ChannelError(Exception):
    """Raised by a channel sender when a message cannot be delivered."""

    def __init__(self, message: str, error_type: str = "delivery_failed"):
        self.error_type = error_type
        super().__init__(message)


class StepConfigError(ValueError):
    """Raised when a raw step cannot be compiled into a typed WorkflowStep."""


class StepExecutionError(Exception):
    """Raised by an action that cannot run (missing template, missing address)."""
