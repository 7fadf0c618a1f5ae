"""Routes: ``(subject_table, operation)`` → outbound document builder.

A builder returns the document to POST to the sink, or ``None`` when the
mutation carries nothing worth delivering.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Callable, Mapping

from webhook_relay.core.exceptions import ValidationError
from webhook_relay.domain.enums import Operation
from webhook_relay.domain.models import Envelope
from webhook_relay.repositories.events import EVENTS_TABLE

SOURCE_TAG = "webhook_relay"

# fields whose change on update triggers a delivery
SIGNIFICANT_FIELDS = ("event_type", "payload")

DocumentBuilder = Callable[[Envelope], "dict[str, Any] | None"]


def significant_changes(record: Mapping[str, Any], old_record: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    old_record = old_record or {}
    changes: dict[str, dict[str, Any]] = {}
    for field in SIGNIFICANT_FIELDS:
        old, new = old_record.get(field), record.get(field)
        if old != new:
            changes[field] = {"old": old, "new": new}
    return changes


def _base_document(record: Mapping[str, Any], occurred_at: Any) -> dict[str, Any]:
    return {
        "event_id": record["id"],
        "subject_id": record.get("subject_id"),
        "event_type": record.get("event_type"),
        "payload": record.get("payload"),
        "occurred_at": occurred_at,
        "source": SOURCE_TAG,
    }


def build_insert_document(envelope: Envelope) -> dict[str, Any]:
    return _base_document(envelope.record, envelope.record.get("created_at"))


def build_update_document(envelope: Envelope) -> dict[str, Any] | None:
    changes = significant_changes(envelope.record, envelope.old_record)
    if not changes:
        return None
    document = _base_document(envelope.record, envelope.timestamp.isoformat())
    document["changes"] = changes
    return document


ROUTES: Mapping[tuple[str, Operation], DocumentBuilder] = MappingProxyType(
    {
        (EVENTS_TABLE, Operation.INSERT): build_insert_document,
        (EVENTS_TABLE, Operation.UPDATE): build_update_document,
    }
)


def resolve_route(subject_table: str, operation: Operation) -> DocumentBuilder:
    try:
        return ROUTES[(subject_table, operation)]
    except KeyError:
        raise ValidationError(
            f"No route for subject_table={subject_table!r} operation={operation.value!r}"
        ) from None
