"""Housekeeping tasks over in-memory stores."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from tests.fakes import FakeSink, InMemoryEventStore, later, make_envelope, make_harness
from webhook_relay.core.exceptions import PersistenceError, TransientDeliveryError
from webhook_relay.domain.enums import DeliveryStatus, WebhookStatus
from webhook_relay.domain.models import utcnow
from webhook_relay.services.emitter import ChangeEventEmitter, DispatchQueue
from webhook_relay.services.events import EventService
from webhook_relay.services.retry import RetryScheduler
from webhook_relay.settings import Settings
from webhook_relay.workers import create_housekeeping_worker, create_retry_worker
from webhook_relay.workers.tasks import make_delivery_reclaim_stuck, make_pending_resweep


@pytest.mark.asyncio
async def test_reclaim_stuck_abandons_old_sent_attempts():
    harness = make_harness(FakeSink())
    record = await harness.events.create(event_type="user_signup", payload={})
    envelope = make_envelope(record)
    await harness.log.open(
        envelope.request_id,
        subject_table=envelope.subject_table,
        operation=envelope.operation,
        record_id=record.id,
        attempt=1,
        attempt_at=envelope.timestamp,
        envelope=envelope.model_dump(mode="json"),
    )
    runtime = SimpleNamespace(delivery_log=harness.log, coordinator=harness.coordinator)
    reclaim = make_delivery_reclaim_stuck(runtime, stuck_minutes=10)

    assert await reclaim(utcnow()) is None
    assert await reclaim(utcnow() + timedelta(minutes=11)) == "reclaimed=1"
    entry = harness.log.entries[envelope.request_id]
    assert entry.status is DeliveryStatus.FAILED
    assert entry.next_attempt_at is not None


@pytest.mark.asyncio
async def test_pending_resweep_reemits_only_unattempted_records():
    harness = make_harness(FakeSink())
    submitted = []
    emitter = ChangeEventEmitter(lambda e: submitted.append(e) or True)
    service = EventService(harness.events, harness.log, emitter)  # type: ignore[arg-type]
    orphan = await harness.events.create(event_type="user_signup", payload={})
    attempted = await harness.events.create(event_type="user_login", payload={})
    await harness.coordinator.dispatch(make_envelope(attempted))
    runtime = SimpleNamespace(event_service=service)
    resweep = make_pending_resweep(runtime, stale_minutes=10)

    assert await resweep(utcnow()) is None
    assert await resweep(utcnow() + timedelta(minutes=11)) == "emitted=1"
    assert [e.record_id for e in submitted] == [orphan.id]
    assert harness.events.records[orphan.id].webhook_status is WebhookStatus.PENDING


@pytest.mark.asyncio
async def test_resweep_counts_only_accepted_handoffs():
    events = InMemoryEventStore()
    await events.create(event_type="user_signup", payload={})
    emitter = ChangeEventEmitter(lambda e: False)
    service = EventService(events, AsyncMock(), emitter)  # type: ignore[arg-type]

    assert await service.resweep_pending(utcnow() + timedelta(hours=1), stale_after=timedelta(minutes=10)) == 0


def test_worker_factories_register_tasks():
    settings = Settings(retry_poll_interval_seconds=0.5, worker_interval_seconds=30)
    runtime = SimpleNamespace(
        retry_scheduler=SimpleNamespace(run_due=AsyncMock()),
        pending_writes=SimpleNamespace(flush=AsyncMock()),
    )

    retry = create_retry_worker(runtime, settings)
    housekeeping = create_housekeeping_worker(runtime, settings)

    assert retry.interval_seconds == 0.5
    assert [t.name for t in retry.tasks] == ["retry_due_deliveries"]
    assert housekeeping.interval_seconds == 30
    assert [t.name for t in housekeeping.tasks] == [
        "pending_writes_flush",
        "delivery_reclaim_stuck",
        "pending_resweep",
    ]


async def _failed_first_attempt(harness):
    record = await harness.events.create(event_type="user_signup", payload={})
    harness.sink.error = TransientDeliveryError("HTTP 503: unavailable", status_code=503)
    await harness.coordinator.dispatch(make_envelope(record))
    harness.sink.error = None
    return record


@pytest.mark.asyncio
async def test_retry_dropped_at_shutdown_is_reclaimed():
    harness = make_harness(FakeSink())
    record = await _failed_first_attempt(harness)
    queue = DispatchQueue(harness.coordinator.dispatch, resume=harness.coordinator.resume, maxsize=10)
    scheduler = RetryScheduler(harness.log, queue.submit_opened)

    assert await scheduler.run_due(later(harness.clock_now, 60)) == "submitted=1"
    await queue.stop()

    assert harness.events.records[record.id].webhook_status is WebhookStatus.FAILED
    (opened,) = [e for e in harness.log.for_record(record.id) if e.status is DeliveryStatus.SENT]
    runtime = SimpleNamespace(delivery_log=harness.log, coordinator=harness.coordinator)
    reclaim = make_delivery_reclaim_stuck(runtime, stuck_minutes=10)

    assert await reclaim(utcnow() + timedelta(minutes=11)) == "reclaimed=1"
    assert harness.log.entries[opened.request_id].status is DeliveryStatus.FAILED
    due = await harness.log.list_due_retries(later(harness.clock_now, 3600))
    assert [e.request_id for e in due] == [opened.request_id]


@pytest.mark.asyncio
async def test_retry_whose_resume_fails_is_reclaimed():
    harness = make_harness(FakeSink())
    record = await _failed_first_attempt(harness)
    queue = DispatchQueue(harness.coordinator.dispatch, resume=harness.coordinator.resume, maxsize=10)
    scheduler = RetryScheduler(harness.log, queue.submit_opened)
    await scheduler.run_due(later(harness.clock_now, 60))
    lookup = harness.log.get_by_request_id
    harness.log.get_by_request_id = AsyncMock(side_effect=PersistenceError("connection reset"))  # type: ignore[method-assign]

    await queue.start()
    await asyncio.wait_for(queue.join(), timeout=2)
    await queue.stop()
    harness.log.get_by_request_id = lookup  # type: ignore[method-assign]

    assert len(harness.sink.calls) == 1
    runtime = SimpleNamespace(delivery_log=harness.log, coordinator=harness.coordinator)
    reclaim = make_delivery_reclaim_stuck(runtime, stuck_minutes=10)
    assert await reclaim(utcnow() + timedelta(minutes=11)) == "reclaimed=1"
    assert await harness.log.list_due_retries(later(harness.clock_now, 3600)) != []
    assert harness.events.records[record.id].webhook_status is WebhookStatus.FAILED
