"""Read-only rollups over the event store and delivery log."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_relay.domain.enums import DeliveryStatus
from webhook_relay.domain.models import DeliveryStats, WebhookStats, utcnow
from webhook_relay.repositories.delivery_log import DeliveryLogRepository
from webhook_relay.repositories.events import EventRepository


class StatsService:
    def __init__(self, events: EventRepository, delivery_log: DeliveryLogRepository):
        self._events = events
        self._delivery_log = delivery_log

    async def get_stats(self) -> WebhookStats:
        return await self._events.stats()

    async def get_delivery_stats(
        self,
        *,
        window: timedelta = timedelta(hours=1),
        until: datetime | None = None,
    ) -> DeliveryStats:
        until = until or utcnow()
        since = until - window
        counts = await self._delivery_log.count_by_status(since, until)
        return DeliveryStats(
            since=since,
            until=until,
            total=sum(counts.values()),
            sent=counts.get(DeliveryStatus.SENT, 0),
            success=counts.get(DeliveryStatus.SUCCESS, 0),
            failed=counts.get(DeliveryStatus.FAILED, 0),
        )
