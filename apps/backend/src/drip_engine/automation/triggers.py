"""Trigger expression parsing and event-to-definition matching."""

from __future__ import annotations

import re
from typing import Any, Iterable

from ..logging_config import get_logger
from .interfaces import RecordAccessor
from .schema import DefinitionStatus, TriggerEvent, TriggerFilter, TriggerSpec, WorkflowDefinition

logger = get_logger(__name__)


class Events:
    """Event names raised by the host application's hooks."""

    LEAD_CREATED = "Lead Created"
    LEAD_UPDATED = "Lead Updated"
    TAG_ADDED = "Tag Added"
    TOUR_COMPLETED = "Tour Completed"
    MOVE_IN_COMPLETED = "Move-in Completed"

    # Synthetic base events produced by pattern triggers
    SOURCE_MATCH = "Lead Source Match"
    TAG_MATCH = "Tag Match"

    SOURCE_PREFIX = "Lead Source ="

    @classmethod
    def lead_source(cls, source: str) -> str:
        return f"{cls.SOURCE_PREFIX} {source}"


_SOURCE_TRIGGER = re.compile(r"^Lead Source\s*=\s*(.+)$", re.IGNORECASE)
_TAG_TRIGGER = re.compile(r"^Tag\s*=\s*'([^']+)'$", re.IGNORECASE)
_WHERE = re.compile(r"\s+where\s+", re.IGNORECASE)
_AND = re.compile(r"\s+and\s+", re.IGNORECASE)
_FILTER = re.compile(r"^(?P<field>\w+)\s*(?P<op>!=|=|contains|starts_with)\s*(?P<value>.+)$", re.IGNORECASE)
_OPERATORS = {"=": "equals", "!=": "not_equals", "contains": "contains", "starts_with": "starts_with"}

# Filter field -> record fields consulted
_FIELD_MAP: dict[str, tuple[str, ...]] = {
    "source": ("source_id", "source_name"),
    "source_id": ("source_id", "source_name"),
    "tag": ("tags",),
    "tags": ("tags",),
    "score": ("lead_score",),
    "lead_score": ("lead_score",),
}


def parse_trigger(expression: str) -> TriggerSpec:
    """Parse a definition's trigger expression into a base event plus filters.

    Supported forms:
        Lead Created
        Lead Source = Zillow
        Tag = 'Interested in 1BHK'
        Lead Updated where status = Qualified and priority != Low
    """
    text = (expression or "").strip()
    if not text:
        logger.warning("Empty trigger expression, trigger will never match")
        return TriggerSpec(expression=expression, base_event="", malformed=True)

    source = _SOURCE_TRIGGER.match(text)
    if source:
        return TriggerSpec(
            expression=expression,
            base_event=Events.SOURCE_MATCH,
            filters=[TriggerFilter(field="source_id", value=source.group(1).strip())],
        )

    tag = _TAG_TRIGGER.match(text)
    if tag:
        return TriggerSpec(
            expression=expression,
            base_event=Events.TAG_MATCH,
            filters=[TriggerFilter(field="tag", value=tag.group(1))],
        )

    parts = _WHERE.split(text, maxsplit=1)
    base_event = parts[0].strip()
    if len(parts) == 1:
        return TriggerSpec(expression=expression, base_event=base_event)

    filters: list[TriggerFilter] = []
    for clause in _AND.split(parts[1]):
        match = _FILTER.match(clause.strip())
        if not match:
            logger.warning("Malformed trigger filter %r in %r, trigger will never match", clause, expression)
            return TriggerSpec(expression=expression, base_event=base_event, malformed=True)
        filters.append(
            TriggerFilter(
                field=match.group("field"),
                operator=_OPERATORS[match.group("op").lower()],
                value=match.group("value").strip().strip("'\""),
            )
        )
    return TriggerSpec(expression=expression, base_event=base_event, filters=filters)


def event_matches(event_name: str, spec: TriggerSpec) -> bool:
    """Check the base event, applying the source alias rules."""
    if spec.malformed:
        return False
    if event_name == spec.base_event:
        return True
    if event_name.startswith(Events.SOURCE_PREFIX):
        # A source-specific creation event also satisfies the generic one
        return spec.base_event in (Events.SOURCE_MATCH, Events.LEAD_CREATED)
    if event_name == Events.TAG_ADDED:
        return spec.base_event == Events.TAG_MATCH
    return False


def _field_values(record: dict[str, Any], event: TriggerEvent, field: str) -> list[str]:
    values: list[Any] = []
    for name in _FIELD_MAP.get(field, (field,)):
        value = record.get(name)
        if isinstance(value, (list, tuple, set)):
            values.extend(value)
        elif value is not None and value != "":
            values.append(value)
    if field in ("tag", "tags") and event.metadata.get("tag"):
        values.append(event.metadata["tag"])
    return [str(v).lower() for v in values]


def evaluate_filters(record: dict[str, Any], event: TriggerEvent, filters: Iterable[TriggerFilter]) -> bool:
    """All filters must hold; comparisons are case-insensitive."""
    for f in filters:
        target = f.value.lower()
        values = _field_values(record, event, f.field)
        if f.operator == "equals":
            ok = target in values
        elif f.operator == "not_equals":
            ok = target not in values
        elif f.operator == "contains":
            ok = any(target in v for v in values)
        else:
            ok = any(v.startswith(target) for v in values)
        if not ok:
            return False
    return True


class TriggerMatcher:
    """Finds the active definitions whose trigger matches a runtime event."""

    def __init__(self, definitions, records: RecordAccessor):
        self.definitions = definitions
        self.records = records

    def match(self, event: TriggerEvent) -> list[WorkflowDefinition]:
        record = self.records.get_subject_record(event.subject_id)
        if record is None:
            logger.info("Subject %s not found, no triggers matched for %r", event.subject_id, event.name)
            return []

        matched: list[WorkflowDefinition] = []
        for definition in self.definitions.list(status=DefinitionStatus.ACTIVE):
            if not event_matches(event.name, definition.trigger):
                continue
            if definition.trigger.filters and not evaluate_filters(record, event, definition.trigger.filters):
                continue
            matched.append(definition)
        return matched
