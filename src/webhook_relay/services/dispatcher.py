"""Dispatch coordinator: one envelope in, one tracked delivery attempt out."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping

import structlog
from opentelemetry.trace import Span
from pydantic import ValidationError as PydanticValidationError

from webhook_relay.core.exceptions import (
    AlreadyResolvedError,
    DeliveryError,
    DuplicateRequestError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from webhook_relay.domain.enums import DeliveryStatus, FailureKind, WebhookStatus
from webhook_relay.domain.models import DeliveryLogEntry, DeliveryOutcome, Envelope, utcnow
from webhook_relay.otel import get_tracer
from webhook_relay.repositories.delivery_log import DeliveryLogRepository
from webhook_relay.services.persistence import PendingWrites, retry_persistence
from webhook_relay.services.reconciliation import StatusReconciler
from webhook_relay.services.retry import RetryPolicy
from webhook_relay.services.routing import DocumentBuilder, resolve_route
from webhook_relay.services.sink import WebhookSink

logger = structlog.get_logger(__name__)


def parse_envelope(raw: Envelope | Mapping[str, Any]) -> Envelope:
    if isinstance(raw, Envelope):
        return raw
    try:
        return Envelope.model_validate(raw)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'envelope'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid envelope: {details}") from exc


def record_status_for(outcome: DeliveryOutcome) -> WebhookStatus:
    """Record status implied by a resolved attempt.

    A failure with a retry pending is still ``failed``; the retry's own
    outcome carries a later timestamp and supersedes it.
    """
    if outcome.status is DeliveryStatus.SUCCESS:
        return WebhookStatus.SUCCESS
    return WebhookStatus.FAILED


class DispatchCoordinator:
    def __init__(
        self,
        delivery_log: DeliveryLogRepository,
        reconciler: StatusReconciler,
        sink: WebhookSink,
        policy: RetryPolicy,
        *,
        pending_writes: PendingWrites | None = None,
        persistence_attempts: int = 3,
        persistence_delay_seconds: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._log = delivery_log
        self._reconciler = reconciler
        self._sink = sink
        self._policy = policy
        self._pending_writes = pending_writes if pending_writes is not None else PendingWrites()
        self._persistence_attempts = persistence_attempts
        self._persistence_delay = persistence_delay_seconds
        self._clock = clock
        self._tracer = get_tracer(__name__)

    async def dispatch(self, envelope: Envelope | Mapping[str, Any]) -> DeliveryOutcome:
        """Deliver one envelope and persist the outcome.

        Raises :class:`ValidationError` before anything is written when the
        envelope is malformed or unroutable, and :class:`NotFoundError` when
        its record does not exist. A repeated ``request_id`` returns the
        recorded outcome without calling the sink. When the log entry cannot
        be opened the dispatch is parked for replay and
        :class:`PersistenceError` is raised.
        """
        envelope = parse_envelope(envelope)
        build_document = resolve_route(envelope.subject_table, envelope.operation)
        with self._attempt_scope(envelope) as span:
            outcome = await self._dispatch(envelope, build_document, park=True)
            span.set_attribute("webhook.status", outcome.status.value)
            return outcome

    async def resume(self, envelope: Envelope) -> DeliveryOutcome:
        """Deliver an attempt whose ``sent`` entry was opened ahead of time.

        Retries are opened by the scheduler before they are queued. An entry
        that is already resolved (e.g. abandoned by the stuck-sent reclaim)
        is returned as a duplicate without calling the sink.
        """
        build_document = resolve_route(envelope.subject_table, envelope.operation)
        with self._attempt_scope(envelope) as span:
            entry = await self._log.get_by_request_id(envelope.request_id)
            if entry is None:
                raise NotFoundError(f"No delivery opened for request_id={envelope.request_id}")
            if entry.status.is_terminal:
                logger.info("opened attempt already resolved", delivery_status=entry.status.value)
                return DeliveryOutcome.from_entry(entry, duplicate=True)
            outcome = await self._attempt(envelope, build_document)
            span.set_attribute("webhook.status", outcome.status.value)
            return outcome

    @contextmanager
    def _attempt_scope(self, envelope: Envelope) -> Iterator[Span]:
        with structlog.contextvars.bound_contextvars(
            request_id=envelope.request_id,
            record_id=envelope.record_id,
            attempt=envelope.attempt,
        ):
            with self._tracer.start_as_current_span("webhook.dispatch") as span:
                span.set_attribute("webhook.request_id", envelope.request_id)
                span.set_attribute("webhook.record_id", envelope.record_id)
                span.set_attribute("webhook.operation", envelope.operation.value)
                span.set_attribute("webhook.attempt", envelope.attempt)
                yield span

    async def _dispatch(
        self, envelope: Envelope, build_document: DocumentBuilder, *, park: bool
    ) -> DeliveryOutcome:
        try:
            duplicate = await retry_persistence(
                lambda: self._open(envelope),
                attempts=self._persistence_attempts,
                delay_seconds=self._persistence_delay,
                operation=f"open {envelope.request_id}",
            )
        except PersistenceError:
            if park:
                self._pending_writes.add(f"dispatch {envelope.request_id}", lambda: self._replay(envelope))
            raise
        if duplicate is not None:
            return duplicate
        return await self._attempt(envelope, build_document)

    async def _replay(self, envelope: Envelope) -> DeliveryOutcome:
        build_document = resolve_route(envelope.subject_table, envelope.operation)
        with self._attempt_scope(envelope):
            return await self._dispatch(envelope, build_document, park=False)

    async def _open(self, envelope: Envelope) -> DeliveryOutcome | None:
        """Open the ``sent`` entry. Returns the recorded outcome for a duplicate."""
        existing = await self._log.get_by_request_id(envelope.request_id)
        if existing is not None:
            logger.info("duplicate envelope ignored", delivery_status=existing.status.value)
            return DeliveryOutcome.from_entry(existing, duplicate=True)

        if not await self._reconciler.record_exists(envelope.record_id):
            raise NotFoundError(f"Event {envelope.record_id} not found")

        try:
            await self._log.open(
                envelope.request_id,
                subject_table=envelope.subject_table,
                operation=envelope.operation,
                record_id=envelope.record_id,
                attempt=envelope.attempt,
                attempt_at=envelope.timestamp,
                envelope=envelope.model_dump(mode="json"),
            )
        except DuplicateRequestError:
            existing = await self._log.get_by_request_id(envelope.request_id)
            if existing is None:
                raise
            logger.info("concurrent duplicate envelope ignored", delivery_status=existing.status.value)
            return DeliveryOutcome.from_entry(existing, duplicate=True)
        return None

    async def _attempt(self, envelope: Envelope, build_document: DocumentBuilder) -> DeliveryOutcome:
        try:
            await self._reconciler.update_status(envelope.record_id, WebhookStatus.SENT, envelope.timestamp)
        except PersistenceError as exc:
            logger.warning("could not mark record as sent", error=str(exc))

        outcome = await self._deliver(envelope, build_document)
        return await self._persist(envelope.record_id, envelope.timestamp, outcome)

    async def _deliver(self, envelope: Envelope, build_document: DocumentBuilder) -> DeliveryOutcome:
        document = build_document(envelope)
        if document is None:
            logger.info("no significant change, sink not called")
            return DeliveryOutcome(
                request_id=envelope.request_id,
                record_id=envelope.record_id,
                status=DeliveryStatus.SUCCESS,
                attempt=envelope.attempt,
                response_data={},
            )
        try:
            response = await self._sink.send(document, request_id=envelope.request_id)
        except DeliveryError as exc:
            next_attempt_at = None
            if self._policy.should_retry(envelope.attempt, exc.kind):
                next_attempt_at = self._policy.next_attempt_at(envelope.attempt, self._clock())
            return DeliveryOutcome(
                request_id=envelope.request_id,
                record_id=envelope.record_id,
                status=DeliveryStatus.FAILED,
                attempt=envelope.attempt,
                error_message=str(exc),
                failure_kind=exc.kind,
                next_attempt_at=next_attempt_at,
            )
        return DeliveryOutcome(
            request_id=envelope.request_id,
            record_id=envelope.record_id,
            status=DeliveryStatus.SUCCESS,
            attempt=envelope.attempt,
            response_data=response,
        )

    async def abandon(self, entry: DeliveryLogEntry) -> DeliveryOutcome:
        """Fail an attempt that never recorded an outcome, retrying under the usual policy."""
        next_attempt_at = None
        if self._policy.should_retry(entry.attempt, FailureKind.TRANSIENT):
            next_attempt_at = self._policy.next_attempt_at(entry.attempt, self._clock())
        outcome = DeliveryOutcome(
            request_id=entry.request_id,
            record_id=entry.record_id,
            status=DeliveryStatus.FAILED,
            attempt=entry.attempt,
            error_message="Attempt abandoned: no outcome recorded",
            failure_kind=FailureKind.TRANSIENT,
            next_attempt_at=next_attempt_at,
        )
        with structlog.contextvars.bound_contextvars(
            request_id=entry.request_id, record_id=entry.record_id, attempt=entry.attempt
        ):
            return await self._persist(entry.record_id, entry.attempt_at, outcome)

    async def _persist(self, record_id: int, attempt_at: datetime, outcome: DeliveryOutcome) -> DeliveryOutcome:
        record_status = record_status_for(outcome)
        logged = False
        superseded: DeliveryLogEntry | None = None

        async def write() -> None:
            nonlocal logged, superseded
            if not logged:
                try:
                    await self._log.resolve(
                        outcome.request_id,
                        outcome.status,
                        error_message=outcome.error_message,
                        response_data=outcome.response_data,
                        next_attempt_at=outcome.next_attempt_at,
                    )
                except AlreadyResolvedError:
                    superseded = await self._log.get_by_request_id(outcome.request_id)
                    logger.info("delivery already resolved elsewhere")
                    return
                logged = True
            await self._reconciler.update_status(record_id, record_status, attempt_at)

        try:
            await retry_persistence(
                write,
                attempts=self._persistence_attempts,
                delay_seconds=self._persistence_delay,
                operation=f"resolve {outcome.request_id}",
            )
        except PersistenceError:
            self._pending_writes.add(f"resolve {outcome.request_id}", write)

        if superseded is not None:
            return DeliveryOutcome.from_entry(superseded, duplicate=True)

        log = logger.info if outcome.status is DeliveryStatus.SUCCESS else logger.warning
        log(
            "delivery resolved",
            delivery_status=outcome.status.value,
            failure_kind=outcome.failure_kind.value if outcome.failure_kind else None,
            error=outcome.error_message,
            next_attempt_at=outcome.next_attempt_at.isoformat() if outcome.next_attempt_at else None,
        )
        return outcome
