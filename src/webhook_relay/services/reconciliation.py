"""Status reconciliation: the single writer of ``webhook_status``."""
from __future__ import annotations

from datetime import datetime

import structlog

from webhook_relay.domain.enums import WebhookStatus
from webhook_relay.repositories.events import EventRepository

logger = structlog.get_logger(__name__)


class StatusReconciler:
    def __init__(self, events: EventRepository):
        self._events = events

    async def record_exists(self, record_id: int) -> bool:
        return await self._events.exists(record_id)

    async def update_status(
        self,
        record_id: int,
        new_status: WebhookStatus,
        attempt_timestamp: datetime,
    ) -> bool:
        """Apply ``new_status`` unless a later attempt already resolved the record.

        Returns ``True`` when the write was applied. A skipped write is normal
        for a straggling attempt and is only logged.
        """
        applied = await self._events.update_status(record_id, new_status, attempt_timestamp)
        if applied:
            logger.info(
                "record status updated",
                record_id=record_id,
                webhook_status=new_status.value,
                attempt_at=attempt_timestamp.isoformat(),
            )
        else:
            logger.info(
                "record status update superseded",
                record_id=record_id,
                webhook_status=new_status.value,
                attempt_at=attempt_timestamp.isoformat(),
            )
        return applied
