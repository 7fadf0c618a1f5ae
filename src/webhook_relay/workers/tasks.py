"""Housekeeping task functions, compatible with :class:`WorkerTask`."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_relay.worker import TaskFn


def make_delivery_reclaim_stuck(runtime, stuck_minutes: int) -> TaskFn:
    async def delivery_reclaim_stuck(now: datetime) -> str | None:
        """Fail attempts left in ``sent`` longer than ``stuck_minutes``."""
        cutoff = now - timedelta(minutes=stuck_minutes)
        stuck = await runtime.delivery_log.list_stuck_sent(cutoff)
        for entry in stuck:
            await runtime.coordinator.abandon(entry)
        return f"reclaimed={len(stuck)}" if stuck else None

    return delivery_reclaim_stuck


def make_pending_resweep(runtime, stale_minutes: int) -> TaskFn:
    async def pending_resweep(now: datetime) -> str | None:
        """Re-emit change events for records that never got an attempt."""
        emitted = await runtime.event_service.resweep_pending(
            now, stale_after=timedelta(minutes=stale_minutes)
        )
        return f"emitted={emitted}" if emitted else None

    return pending_resweep
