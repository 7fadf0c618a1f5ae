from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from tests.fakes import InMemoryDeliveryLog, make_envelope
from webhook_relay.domain.enums import DeliveryStatus, FailureKind, Operation
from webhook_relay.domain.models import EventRecord
from webhook_relay.services.retry import RetryPolicy, RetryScheduler, build_retry_envelope
from webhook_relay.settings import Settings

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record():
    return EventRecord(
        id=1,
        subject_id="7b0c9a34-8d3c-4c55-8a4f-0a1d1f2a9b11",
        event_type="user_signup",
        payload={"email": "test@example.com"},
        created_at=NOW,
    )


async def _failed_entry(log: InMemoryDeliveryLog, *, next_attempt_at, attempt=1):
    envelope = make_envelope(_record(), attempt=attempt, timestamp=NOW)
    await log.open(
        envelope.request_id,
        subject_table=envelope.subject_table,
        operation=Operation.INSERT,
        record_id=1,
        attempt=attempt,
        attempt_at=NOW,
        envelope=envelope.model_dump(mode="json"),
    )
    return await log.resolve(
        envelope.request_id,
        DeliveryStatus.FAILED,
        error_message="HTTP 503: unavailable",
        next_attempt_at=next_attempt_at,
    )


def test_should_retry_only_transient_below_limit():
    policy = RetryPolicy(max_attempts=3)

    assert policy.should_retry(1, FailureKind.TRANSIENT)
    assert policy.should_retry(2, FailureKind.TRANSIENT)
    assert not policy.should_retry(3, FailureKind.TRANSIENT)
    assert not policy.should_retry(1, FailureKind.PERMANENT)
    assert not policy.should_retry(1, None)


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(base_seconds=2.0, cap_seconds=20.0, jitter_seconds=0.0)

    assert [policy.backoff_seconds(n) for n in range(1, 6)] == [4.0, 8.0, 16.0, 20.0, 20.0]


def test_backoff_jitter_is_bounded():
    policy = RetryPolicy(base_seconds=1.0, cap_seconds=100.0, jitter_seconds=0.5, rng=random.Random(7))

    for _ in range(50):
        assert 2.0 <= policy.backoff_seconds(1) <= 2.5


def test_next_attempt_at_offsets_now():
    policy = RetryPolicy(base_seconds=1.0, jitter_seconds=0.0)

    assert policy.next_attempt_at(2, NOW) == NOW + timedelta(seconds=4)


def test_policy_from_settings():
    settings = Settings(
        delivery_max_attempts=7,
        retry_backoff_base_seconds=0.5,
        retry_backoff_cap_seconds=30,
        retry_jitter_seconds=0,
    )

    policy = RetryPolicy.from_settings(settings)

    assert policy.max_attempts == 7
    assert policy.base_seconds == 0.5
    assert policy.cap_seconds == 30
    assert policy.jitter_seconds == 0


@pytest.mark.asyncio
async def test_retry_envelope_keeps_snapshot_with_new_identity():
    log = InMemoryDeliveryLog()
    entry = await _failed_entry(log, next_attempt_at=NOW, attempt=2)
    retry_at = NOW + timedelta(minutes=1)

    envelope = build_retry_envelope(entry, retry_at)

    assert envelope.request_id != entry.request_id
    assert envelope.attempt == 3
    assert envelope.timestamp == retry_at
    assert envelope.record == entry.envelope["record"]
    assert envelope.operation is Operation.INSERT


@pytest.mark.asyncio
async def test_scheduler_only_claims_due_entries():
    log = InMemoryDeliveryLog()
    due = await _failed_entry(log, next_attempt_at=NOW - timedelta(seconds=1))
    await _failed_entry(log, next_attempt_at=NOW + timedelta(minutes=5))
    submitted = []
    scheduler = RetryScheduler(log, lambda e: submitted.append(e) or True)

    assert await scheduler.run_due(NOW) == "submitted=1"
    assert [e.attempt for e in submitted] == [2]
    assert log.entries[due.request_id].next_attempt_at is None
    opened = log.entries[submitted[0].request_id]
    assert opened.status is DeliveryStatus.SENT
    assert opened.attempt == 2
    # claimed entries are not handed out twice
    assert await scheduler.run_due(NOW) is None


@pytest.mark.asyncio
async def test_scheduler_reschedules_rejected_retries():
    log = InMemoryDeliveryLog()
    entry = await _failed_entry(log, next_attempt_at=NOW)
    scheduler = RetryScheduler(log, lambda e: False, requeue_delay_seconds=5)

    assert await scheduler.run_due(NOW) == "submitted=0 deferred=1"
    assert log.entries[entry.request_id].next_attempt_at == NOW + timedelta(seconds=5)
    # the retry opened for the rejected hand-off is withdrawn
    assert list(log.entries) == [entry.request_id]


@pytest.mark.asyncio
async def test_scheduler_leaves_entry_due_when_open_fails():
    log = InMemoryDeliveryLog()
    first = await _failed_entry(log, next_attempt_at=NOW - timedelta(seconds=2))
    second = await _failed_entry(log, next_attempt_at=NOW - timedelta(seconds=1))
    log.open_retry_failures = 1
    submitted = []
    scheduler = RetryScheduler(log, lambda e: submitted.append(e) or True)

    assert await scheduler.run_due(NOW) == "submitted=1 deferred=1"
    assert log.entries[first.request_id].next_attempt_at == first.next_attempt_at
    assert log.entries[second.request_id].next_attempt_at is None

    assert await scheduler.run_due(NOW) == "submitted=1"
    assert len(submitted) == 2
    assert log.entries[first.request_id].next_attempt_at is None


@pytest.mark.asyncio
async def test_scheduler_isolates_entry_whose_envelope_cannot_be_rebuilt():
    log = InMemoryDeliveryLog()
    broken = await _failed_entry(log, next_attempt_at=NOW - timedelta(seconds=2))
    log.entries[broken.request_id] = broken.model_copy(update={"envelope": {"record": {}}})
    healthy = await _failed_entry(log, next_attempt_at=NOW - timedelta(seconds=1))
    submitted = []
    scheduler = RetryScheduler(log, lambda e: submitted.append(e) or True, requeue_delay_seconds=30)

    assert await scheduler.run_due(NOW) == "submitted=1 deferred=1"
    assert log.entries[broken.request_id].next_attempt_at == NOW + timedelta(seconds=30)
    assert log.entries[healthy.request_id].next_attempt_at is None
    assert [e.record_id for e in submitted] == [1]


@pytest.mark.asyncio
async def test_scheduler_skips_retry_claimed_by_another_scheduler():
    log = InMemoryDeliveryLog()
    entry = await _failed_entry(log, next_attempt_at=NOW)
    stale = log.entries[entry.request_id]
    winner = []
    await RetryScheduler(log, lambda e: winner.append(e) or True).run_due(NOW)

    log.list_due_retries = AsyncMock(return_value=[stale])  # type: ignore[method-assign]
    submitted = []
    loser = RetryScheduler(log, lambda e: submitted.append(e) or True)

    assert await loser.run_due(NOW) == "submitted=0"
    assert submitted == []
    assert len(log.for_record(1)) == 2
