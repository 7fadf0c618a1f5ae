"""Event service: the mutation source for ``user_events``."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, List
from uuid import UUID

from webhook_relay.domain.enums import Operation
from webhook_relay.domain.models import DeliveryLogEntry, EventRecord
from webhook_relay.repositories.delivery_log import DeliveryLogRepository
from webhook_relay.repositories.events import EventRepository
from webhook_relay.services.emitter import ChangeEventEmitter


class EventService:
    def __init__(
        self,
        repository: EventRepository,
        delivery_log: DeliveryLogRepository,
        emitter: ChangeEventEmitter,
    ):
        self._repository = repository
        self._delivery_log = delivery_log
        self._emitter = emitter

    async def create_event(
        self,
        *,
        event_type: str,
        payload: Any = None,
        subject_id: UUID | None = None,
    ) -> EventRecord:
        record = await self._repository.create(
            event_type=event_type, payload=payload, subject_id=subject_id
        )
        self._emitter.emit(Operation.INSERT, record)
        return record

    async def update_event(self, record_id: int, changes: dict[str, Any]) -> EventRecord:
        before, after = await self._repository.update(record_id, changes)
        self._emitter.emit(Operation.UPDATE, after, before)
        return after

    async def get_event(self, record_id: int) -> EventRecord:
        return await self._repository.get(record_id)

    async def list_deliveries(self, record_id: int) -> List[DeliveryLogEntry]:
        await self._repository.get(record_id)
        return await self._delivery_log.list_by_record(record_id)

    async def resweep_pending(self, now: datetime, *, stale_after: timedelta, limit: int = 100) -> int:
        """Re-emit insert envelopes for records whose hand-off never produced an attempt."""
        stale = await self._repository.list_stale_pending(now - stale_after, limit=limit)
        emitted = 0
        for record in stale:
            if self._emitter.emit(Operation.INSERT, record) is not None:
                emitted += 1
        return emitted
