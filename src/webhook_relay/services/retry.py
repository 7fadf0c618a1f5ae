"""Retry policy for transient delivery failures and the scheduler that mints retries."""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import structlog

from webhook_relay.core.exceptions import PersistenceError
from webhook_relay.domain.enums import FailureKind
from webhook_relay.domain.models import DeliveryLogEntry, Envelope, new_request_id
from webhook_relay.repositories.delivery_log import DeliveryLogRepository
from webhook_relay.settings import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and additive jitter.

    ``attempt`` is 1-based: the delay after attempt ``n`` fails is
    ``min(cap, base * 2**n) + uniform(0, jitter)``.
    """

    max_attempts: int = 5
    base_seconds: float = 2.0
    cap_seconds: float = 300.0
    jitter_seconds: float = 1.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.delivery_max_attempts,
            base_seconds=settings.retry_backoff_base_seconds,
            cap_seconds=settings.retry_backoff_cap_seconds,
            jitter_seconds=settings.retry_jitter_seconds,
        )

    def should_retry(self, attempt: int, kind: FailureKind | None) -> bool:
        return kind is FailureKind.TRANSIENT and attempt < self.max_attempts

    def backoff_seconds(self, attempt: int) -> float:
        delay = min(self.cap_seconds, self.base_seconds * 2 ** attempt)
        if self.jitter_seconds > 0:
            delay += self.rng.uniform(0, self.jitter_seconds)
        return delay

    def next_attempt_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds(attempt))


def build_retry_envelope(entry: DeliveryLogEntry, now: datetime) -> Envelope:
    """Next attempt for a failed entry: same snapshot, new request_id."""
    return Envelope.model_validate(
        {
            **entry.envelope,
            "request_id": new_request_id(),
            "subject_table": entry.subject_table,
            "operation": entry.operation,
            "attempt": entry.attempt + 1,
            "timestamp": now,
        }
    )


class RetryScheduler:
    """Mints due retries from the delivery log and submits them for dispatch.

    Each retry's ``sent`` entry is opened together with its claim, before
    the envelope is queued, so a retry lost in the queue or to a crash is
    still visible to the stuck-sent reclaim.
    """

    def __init__(
        self,
        delivery_log: DeliveryLogRepository,
        submit: Callable[[Envelope], bool],
        *,
        batch_size: int = 100,
        requeue_delay_seconds: float = 5.0,
    ):
        self._log = delivery_log
        self._submit = submit
        self._batch_size = batch_size
        self._requeue_delay = timedelta(seconds=requeue_delay_seconds)

    async def run_due(self, now: datetime) -> str | None:
        """Worker task: mint one retry per due entry. Returns a summary when work was done."""
        entries = await self._log.list_due_retries(now, limit=self._batch_size)
        if not entries:
            return None
        submitted = deferred = 0
        for entry in entries:
            try:
                handed_off = await self._retry(entry, now)
            except PersistenceError as exc:
                logger.warning(
                    "retry hand-off failed, entry stays due",
                    previous_request_id=entry.request_id,
                    record_id=entry.record_id,
                    error=str(exc),
                )
                deferred += 1
                continue
            if handed_off is None:
                continue
            if handed_off:
                submitted += 1
            else:
                deferred += 1
        return f"submitted={submitted} deferred={deferred}" if deferred else f"submitted={submitted}"

    async def _retry(self, entry: DeliveryLogEntry, now: datetime) -> bool | None:
        """``True`` when queued, ``False`` when pushed back, ``None`` when claimed elsewhere."""
        try:
            envelope = build_retry_envelope(entry, now)
        except ValueError:
            logger.exception(
                "retry envelope could not be built",
                previous_request_id=entry.request_id,
                record_id=entry.record_id,
            )
            await self._log.reschedule(entry.request_id, now + self._requeue_delay)
            return False

        if not await self._log.open_retry(entry.request_id, envelope, now=now):
            logger.info("retry already claimed", previous_request_id=entry.request_id)
            return None

        if not self._submit(envelope):
            await self._log.release_retry(envelope.request_id, entry.request_id, now + self._requeue_delay)
            return False

        logger.info(
            "retry scheduled",
            previous_request_id=entry.request_id,
            request_id=envelope.request_id,
            record_id=entry.record_id,
            attempt=envelope.attempt,
        )
        return True
