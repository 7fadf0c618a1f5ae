"""Background workers for the relay.

``retry`` runs on a short interval and mints due delivery retries.
``housekeeping`` runs on ``worker_interval_seconds`` and recovers work that
fell through: parked outcome writes, abandoned attempts, and records whose
change event was never handed off.
"""
from __future__ import annotations

from webhook_relay.settings import Settings
from webhook_relay.worker import BackgroundWorker, WorkerTask
from webhook_relay.workers.tasks import (
    make_delivery_reclaim_stuck,
    make_pending_resweep,
)


def create_retry_worker(runtime, settings: Settings) -> BackgroundWorker:
    return BackgroundWorker(
        name="retry",
        interval_seconds=settings.retry_poll_interval_seconds,
        tasks=[WorkerTask(name="retry_due_deliveries", fn=runtime.retry_scheduler.run_due)],
    )


def create_housekeeping_worker(runtime, settings: Settings) -> BackgroundWorker:
    return BackgroundWorker(
        name="housekeeping",
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(name="pending_writes_flush", fn=runtime.pending_writes.flush),
            WorkerTask(
                name="delivery_reclaim_stuck",
                fn=make_delivery_reclaim_stuck(runtime, settings.delivery_stuck_minutes),
            ),
            WorkerTask(
                name="pending_resweep",
                fn=make_pending_resweep(runtime, settings.pending_stale_minutes),
            ),
        ],
    )


__all__ = [
    "create_housekeeping_worker",
    "create_retry_worker",
]
