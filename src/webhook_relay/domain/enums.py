"""Domain enums."""
from __future__ import annotations

from enum import Enum


class WebhookStatus(str, Enum):
    """Delivery status mirrored onto an event record."""

    PENDING = "pending"
    SENT = "sent"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WebhookStatus.SUCCESS, WebhookStatus.FAILED)


class DeliveryStatus(str, Enum):
    """Status of a single dispatch attempt."""

    SENT = "sent"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DeliveryStatus.SENT


class Operation(str, Enum):
    """Mutation kinds that produce envelopes."""

    INSERT = "insert"
    UPDATE = "update"


class FailureKind(str, Enum):
    """Classification of a failed sink call."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
