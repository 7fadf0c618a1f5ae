"""Error taxonomy shared by repositories, services and API handlers."""
from __future__ import annotations

from webhook_relay.domain.enums import FailureKind


class WebhookRelayError(Exception):
    """Base error for the relay."""


class ValidationError(WebhookRelayError):
    """Raised for a malformed or unroutable envelope. Never an attempt."""


class RepositoryError(WebhookRelayError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class DuplicateRequestError(RepositoryError):
    """Raised when a delivery log entry already exists for a request_id."""


class AlreadyResolvedError(RepositoryError):
    """Raised when resolving a delivery log entry that is already terminal."""


class PersistenceError(RepositoryError):
    """Raised when the database rejects or cannot complete a write or read."""


class DeliveryError(WebhookRelayError):
    """Raised when the external sink call fails."""

    kind: FailureKind

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Timeout, connection failure, 5xx or 429. Retried with backoff."""

    kind = FailureKind.TRANSIENT


class PermanentDeliveryError(DeliveryError):
    """Any other non-2xx status or an invalid response body. Never retried."""

    kind = FailureKind.PERMANENT
