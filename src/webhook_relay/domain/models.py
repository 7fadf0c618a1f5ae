"""Pydantic models representing key domain entities."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from webhook_relay.domain.enums import DeliveryStatus, FailureKind, Operation, WebhookStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    return str(uuid4())


class EventRecord(BaseModel):
    id: int
    subject_id: UUID
    event_type: str
    payload: Any = None
    created_at: datetime
    processed_at: datetime | None = None
    webhook_status: WebhookStatus = WebhookStatus.PENDING
    status_attempt_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe row image carried inside envelopes."""
        return self.model_dump(mode="json")


class DeliveryLogEntry(BaseModel):
    id: int
    subject_table: str
    operation: Operation
    record_id: int
    request_id: str
    status: DeliveryStatus
    error_message: str | None = None
    response_data: Any = None
    attempt: int = 1
    attempt_at: datetime
    next_attempt_at: datetime | None = None
    envelope: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class Envelope(BaseModel):
    """Notification produced for one mutation and consumed by the coordinator.

    ``table`` is accepted as an alias of ``subject_table`` and operations are
    matched case-insensitively, so trigger-style payloads
    (``{"table": "user_events", "operation": "INSERT", ...}``) validate as-is.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    request_id: str = Field(min_length=1)
    subject_table: str = Field(
        min_length=1, validation_alias=AliasChoices("subject_table", "table")
    )
    operation: Operation
    record: dict[str, Any]
    old_record: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    attempt: int = Field(default=1, ge=1)

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _require_record_id(self) -> "Envelope":
        if self.record.get("id") is None:
            raise ValueError("record.id is required")
        return self

    @property
    def record_id(self) -> int:
        return int(self.record["id"])


class DeliveryOutcome(BaseModel):
    """Result of one dispatch call, as returned to synchronous callers."""

    request_id: str
    record_id: int
    status: DeliveryStatus
    attempt: int = 1
    response_data: Any = None
    error_message: str | None = None
    failure_kind: FailureKind | None = None
    next_attempt_at: datetime | None = None
    duplicate: bool = False

    @classmethod
    def from_entry(cls, entry: DeliveryLogEntry, *, duplicate: bool = False) -> "DeliveryOutcome":
        return cls(
            request_id=entry.request_id,
            record_id=entry.record_id,
            status=entry.status,
            attempt=entry.attempt,
            response_data=entry.response_data,
            error_message=entry.error_message,
            next_attempt_at=entry.next_attempt_at,
            duplicate=duplicate,
        )


class WebhookStats(BaseModel):
    total_events: int = 0
    pending: int = 0
    sent: int = 0
    success: int = 0
    failed: int = 0
    last_event_time: datetime | None = None


class DeliveryStats(BaseModel):
    since: datetime
    until: datetime
    total: int = 0
    sent: int = 0
    success: int = 0
    failed: int = 0
