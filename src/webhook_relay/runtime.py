"""Wiring of repositories, services and workers for one application."""
from __future__ import annotations

from dataclasses import dataclass

import asyncpg  # type: ignore[import-untyped]
from aiohttp import ClientSession, ClientTimeout, web

from webhook_relay.db.pool import get_pool
from webhook_relay.repositories.delivery_log import DeliveryLogRepository
from webhook_relay.repositories.events import EventRepository
from webhook_relay.services.dispatcher import DispatchCoordinator
from webhook_relay.services.emitter import ChangeEventEmitter, DispatchQueue
from webhook_relay.services.events import EventService
from webhook_relay.services.persistence import PendingWrites
from webhook_relay.services.reconciliation import StatusReconciler
from webhook_relay.services.retry import RetryPolicy, RetryScheduler
from webhook_relay.services.sink import WebhookSink
from webhook_relay.services.stats import StatsService
from webhook_relay.settings import Settings
from webhook_relay.worker import BackgroundWorker
from webhook_relay.workers import create_housekeeping_worker, create_retry_worker

RUNTIME_KEY = "webhook_relay_runtime"


@dataclass
class Runtime:
    session: ClientSession
    events: EventRepository
    delivery_log: DeliveryLogRepository
    sink: WebhookSink
    pending_writes: PendingWrites
    coordinator: DispatchCoordinator
    queue: DispatchQueue
    emitter: ChangeEventEmitter
    event_service: EventService
    stats_service: StatsService
    retry_scheduler: RetryScheduler
    workers: list[BackgroundWorker]


def build_runtime(pool: asyncpg.Pool, session: ClientSession, settings: Settings) -> Runtime:
    events = EventRepository(pool)
    delivery_log = DeliveryLogRepository(pool)
    sink = WebhookSink(
        session,
        str(settings.sink_url),
        token=settings.sink_token,
        timeout_seconds=settings.sink_request_timeout_seconds,
        required_fields=settings.sink_required_response_fields,
    )
    pending_writes = PendingWrites()
    coordinator = DispatchCoordinator(
        delivery_log,
        StatusReconciler(events),
        sink,
        RetryPolicy.from_settings(settings),
        pending_writes=pending_writes,
        persistence_attempts=settings.persistence_retry_attempts,
        persistence_delay_seconds=settings.persistence_retry_delay_seconds,
    )
    queue = DispatchQueue(
        coordinator.dispatch,
        resume=coordinator.resume,
        maxsize=settings.dispatch_queue_size,
        concurrency=settings.dispatch_max_concurrency,
    )
    emitter = ChangeEventEmitter(queue.submit)
    runtime = Runtime(
        session=session,
        events=events,
        delivery_log=delivery_log,
        sink=sink,
        pending_writes=pending_writes,
        coordinator=coordinator,
        queue=queue,
        emitter=emitter,
        event_service=EventService(events, delivery_log, emitter),
        stats_service=StatsService(events, delivery_log),
        retry_scheduler=RetryScheduler(
            delivery_log,
            queue.submit_opened,
            batch_size=settings.retry_batch_size,
            requeue_delay_seconds=settings.retry_poll_interval_seconds,
        ),
        workers=[],
    )
    runtime.workers = [
        create_retry_worker(runtime, settings),
        create_housekeeping_worker(runtime, settings),
    ]
    return runtime


def create_runtime_hooks(settings: Settings):
    """aiohttp ``on_startup`` / ``on_cleanup`` hooks owning the runtime."""

    async def start_runtime(app: web.Application) -> None:
        pool = await get_pool()
        session = ClientSession(timeout=ClientTimeout(total=settings.sink_request_timeout_seconds))
        runtime = build_runtime(pool, session, settings)
        app[RUNTIME_KEY] = runtime
        await runtime.queue.start()
        for worker in runtime.workers:
            await worker.start(app)

    async def stop_runtime(app: web.Application) -> None:
        runtime: Runtime | None = app.get(RUNTIME_KEY)
        if runtime is None:
            return
        for worker in runtime.workers:
            await worker.stop(app)
        await runtime.queue.stop(drain_timeout=settings.dispatch_drain_timeout_seconds)
        await runtime.session.close()

    return start_runtime, stop_runtime


def get_runtime(request: web.Request) -> Runtime:
    return request.app[RUNTIME_KEY]
