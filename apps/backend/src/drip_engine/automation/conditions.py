"""Condition rule parsing and evaluation for drip condition steps.

Two expression forms are accepted:

    {"score": ">8"}   {"has_replied": false}   {"tag_exists": "VIP"}
    score >= 8        has_replied = true       tag exists VIP

Parsing happens once, when a definition is loaded. Evaluation is a pure
function over a snapshot of the subject record and never raises: unknown
fields and unsupported operators evaluate to False.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from ..logging_config import get_logger
from .interfaces import RecordAccessor
from .schema import ConditionField, ConditionRule

logger = get_logger(__name__)

_FIELD_ALIASES: dict[str, ConditionField] = {
    "score": ConditionField.SCORE,
    "lead_score": ConditionField.SCORE,
    "has_replied": ConditionField.REPLIED,
    "replied": ConditionField.REPLIED,
    "reply-flag": ConditionField.REPLIED,
    "source": ConditionField.SOURCE,
    "lead_source": ConditionField.SOURCE,
    "tag": ConditionField.TAG,
    "tags": ConditionField.TAG,
    "tag_exists": ConditionField.TAG,
    "tag-presence": ConditionField.TAG,
}

_COMPARISON = re.compile(r"^\s*(>=|<=|>|<|=)?\s*(-?\d+(?:\.\d+)?)\s*$")
_TEXT_RULE = re.compile(
    r"^\s*(?P<field>[a-z][\w\-]*)\s*(?P<op>>=|<=|>|<|=|not_exists|not exists|exists)\s*(?P<value>.*?)\s*$",
    re.IGNORECASE,
)
_TRUTHY = {"true", "yes", "1"}
_FALSY = {"false", "no", "0"}


class ConditionParseError(ValueError):
    """Raised when a condition expression cannot be turned into a ConditionRule."""


def parse_condition(expression: str) -> Optional[ConditionRule]:
    """Parse a raw condition expression.

    Returns None for an empty expression ("" or "{}"), which callers treat as
    an always-true gate. Raises ConditionParseError for anything malformed.
    """
    text = (expression or "").strip()
    if not text or text == "{}":
        return None
    if text.startswith("{"):
        return _parse_json(text)
    return _parse_text(text)


def _parse_json(text: str) -> ConditionRule:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConditionParseError(f"Invalid condition JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ConditionParseError("Condition JSON must be an object")

    if "score" in payload:
        raw = payload["score"]
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return ConditionRule(field=ConditionField.SCORE, operator=">=", value=raw)
        match = _COMPARISON.match(str(raw))
        if not match:
            raise ConditionParseError(f"Invalid score comparison: {raw!r}")
        return ConditionRule(
            field=ConditionField.SCORE,
            operator=match.group(1) or "=",
            value=_number(match.group(2)),
        )

    if "has_replied" in payload:
        return ConditionRule(
            field=ConditionField.REPLIED,
            operator="=",
            value=_boolean(payload["has_replied"]),
        )

    if "lead_score" in payload:
        try:
            threshold = _number(str(payload["lead_score"]))
        except ValueError as exc:
            raise ConditionParseError(f"Invalid lead_score: {payload['lead_score']!r}") from exc
        return ConditionRule(field=ConditionField.SCORE, operator=">=", value=threshold)

    if "tag_exists" in payload:
        return ConditionRule(field=ConditionField.TAG, operator="exists", value=str(payload["tag_exists"]))

    if "tag_not_exists" in payload:
        return ConditionRule(
            field=ConditionField.TAG, operator="not_exists", value=str(payload["tag_not_exists"])
        )

    if "lead_source" in payload:
        return ConditionRule(field=ConditionField.SOURCE, operator="=", value=str(payload["lead_source"]))

    raise ConditionParseError(f"Unknown condition keys: {sorted(payload)}")


def _parse_text(text: str) -> ConditionRule:
    match = _TEXT_RULE.match(text)
    if not match:
        raise ConditionParseError(f"Unrecognised condition: {text!r}")

    field = _FIELD_ALIASES.get(match.group("field").lower())
    if field is None:
        raise ConditionParseError(f"Unknown condition field: {match.group('field')!r}")

    operator = match.group("op").lower().replace(" ", "_")
    raw_value = match.group("value").strip().strip("'\"")

    if operator in ("exists", "not_exists"):
        return ConditionRule(field=field, operator=operator, value=raw_value or None)
    if not raw_value:
        raise ConditionParseError(f"Missing comparison value in {text!r}")

    if field is ConditionField.SCORE:
        try:
            return ConditionRule(field=field, operator=operator, value=_number(raw_value))
        except ValueError as exc:
            raise ConditionParseError(f"Score must be numeric: {raw_value!r}") from exc
    if field is ConditionField.REPLIED:
        return ConditionRule(field=field, operator=operator, value=_boolean(raw_value))
    return ConditionRule(field=field, operator=operator, value=raw_value)


def _number(raw: str) -> float | int:
    value = float(raw)
    return int(value) if value.is_integer() else value


def _boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ConditionParseError(f"Expected a boolean, got {raw!r}")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate_rule(rule: ConditionRule, record: dict[str, Any]) -> bool:
    """Evaluate a rule against a record snapshot. Fails closed, never raises."""
    try:
        if rule.field is ConditionField.SCORE:
            return _compare_score(record.get("lead_score"), rule)
        if rule.field is ConditionField.REPLIED:
            return _check_replied(record, rule)
        if rule.field is ConditionField.SOURCE:
            return _check_source(record, rule)
        if rule.field is ConditionField.TAG:
            return _check_tag(record, rule)
    except (TypeError, ValueError):
        logger.warning("Condition %s could not be evaluated, failing closed", rule.model_dump())
    return False


def _compare_score(score: Any, rule: ConditionRule) -> bool:
    if rule.operator == "exists":
        return score is not None
    if rule.operator == "not_exists":
        return score is None
    if score is None:
        return False
    score, target = float(score), float(rule.value)
    if rule.operator == ">":
        return score > target
    if rule.operator == "<":
        return score < target
    if rule.operator == ">=":
        return score >= target
    if rule.operator == "<=":
        return score <= target
    return score == target


def _check_replied(record: dict[str, Any], rule: ConditionRule) -> bool:
    replied = bool(record.get("has_replied") or record.get("last_inbound_at"))
    if rule.operator == "exists":
        return replied
    if rule.operator == "not_exists":
        return not replied
    if rule.operator == "=":
        return replied is bool(rule.value)
    return False


def _check_source(record: dict[str, Any], rule: ConditionRule) -> bool:
    sources = {
        str(v).lower()
        for v in (record.get("source_id"), record.get("source_name"), record.get("original_channel"))
        if v
    }
    if rule.operator == "exists":
        return bool(sources)
    if rule.operator == "not_exists":
        return not sources
    if rule.operator == "=":
        return str(rule.value).lower() in sources
    return False


def _check_tag(record: dict[str, Any], rule: ConditionRule) -> bool:
    tag = str(rule.value or "").lower()
    tags = [str(t).lower() for t in record.get("tags") or []]
    if tags or "tags" in record:
        present = tag in tags if tag else bool(tags)
    else:
        # Leads without a tag list carry tags in free-text notes
        present = bool(tag) and tag in str(record.get("notes") or "").lower()
    if rule.operator == "not_exists":
        return not present
    if rule.operator in ("exists", "="):
        return present
    return False


class ConditionEvaluator:
    """Evaluates rules against the current state of a subject record."""

    def __init__(self, records: RecordAccessor):
        self.records = records

    def evaluate(self, rule: ConditionRule, subject_id: str) -> bool:
        record = self.records.get_subject_record(subject_id)
        if record is None:
            return False
        return evaluate_rule(rule, record)
