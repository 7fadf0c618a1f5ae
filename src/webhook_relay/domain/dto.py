"""Request payloads accepted by the HTTP API."""
from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventCreateDTO(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    event_type: str = Field(min_length=1, max_length=50)
    payload: Any = None
    subject_id: UUID | None = None


class EventUpdateDTO(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    event_type: str | None = Field(default=None, min_length=1, max_length=50)
    payload: Any = None

    @model_validator(mode="after")
    def _require_change(self) -> "EventUpdateDTO":
        if not self.model_fields_set & {"event_type", "payload"}:
            raise ValueError("at least one of event_type, payload is required")
        if "event_type" in self.model_fields_set and self.event_type is None:
            raise ValueError("event_type cannot be null")
        return self
