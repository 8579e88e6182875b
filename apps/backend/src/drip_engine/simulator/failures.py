"""Failure injection configuration for simulated channels."""

import random

from pydantic import BaseModel


class FailureRule(BaseModel):
    """Defines how a specific channel action should fail."""

    error_type: str  # "rate_limit" | "invalid_recipient" | "delivery_failed"
    message: str
    probability: float = 1.0  # 1.0 = always fail, 0.5 = 50% chance
    max_failures: int | None = None  # stop failing after this many hits


class FailureConfig(BaseModel):
    """Maps channel.action keys (e.g. "email.send") to failure rules."""

    rules: dict[str, FailureRule] = {}
    hits: dict[str, int] = {}

    def should_fail(self, channel: str, action: str) -> FailureRule | None:
        """Check if a channel action should fail. Returns the rule if it triggers."""
        key = f"{channel}.{action}"
        rule = self.rules.get(key)
        if rule is None:
            return None
        if rule.max_failures is not None and self.hits.get(key, 0) >= rule.max_failures:
            return None
        if random.random() <= rule.probability:
            self.hits[key] = self.hits.get(key, 0) + 1
            return rule
        return None
