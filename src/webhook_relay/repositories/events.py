"""Event store: ``user_events`` rows and their mirrored delivery status."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_relay.core.exceptions import NotFoundError
from webhook_relay.domain.enums import WebhookStatus
from webhook_relay.domain.models import EventRecord, WebhookStats
from webhook_relay.repositories.base import BaseRepository, dump_json, load_json

EVENTS_TABLE = "user_events"

# columns a mutation may change; everything else is owned by the relay
_MUTABLE_COLUMNS = ("event_type", "payload")


class EventRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> EventRecord:
        payload = dict(record)
        payload["payload"] = load_json(payload.get("payload"))
        return EventRecord.model_validate(payload)

    async def create(
        self,
        *,
        event_type: str,
        payload: Any = None,
        subject_id: UUID | None = None,
    ) -> EventRecord:
        record = await self._fetchrow(
            """
            INSERT INTO user_events (subject_id, event_type, payload)
            VALUES (COALESCE($1, gen_random_uuid()), $2, $3::jsonb)
            RETURNING *
            """,
            subject_id,
            event_type,
            dump_json(payload),
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, record_id: int) -> EventRecord:
        record = await self._fetchrow("SELECT * FROM user_events WHERE id = $1", record_id)
        if record is None:
            raise NotFoundError("Event not found")
        return self._to_model(record)

    async def exists(self, record_id: int) -> bool:
        record = await self._fetchrow("SELECT 1 FROM user_events WHERE id = $1", record_id)
        return record is not None

    async def update(
        self, record_id: int, changes: dict[str, Any]
    ) -> tuple[EventRecord, EventRecord]:
        """Apply ``changes`` and return ``(before, after)`` row images."""
        unknown = set(changes) - set(_MUTABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Columns are not mutable: {sorted(unknown)}")
        async with self._transaction() as conn:
            before = await conn.fetchrow(
                "SELECT * FROM user_events WHERE id = $1 FOR UPDATE", record_id
            )
            if before is None:
                raise NotFoundError("Event not found")
            assignments = []
            values: list[Any] = [record_id]
            for column in _MUTABLE_COLUMNS:
                if column not in changes:
                    continue
                values.append(dump_json(changes[column]) if column == "payload" else changes[column])
                cast = "::jsonb" if column == "payload" else ""
                assignments.append(f"{column} = ${len(values)}{cast}")
            if not assignments:
                return self._to_model(before), self._to_model(before)
            after = await conn.fetchrow(
                f"UPDATE user_events SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
                *values,
            )
        assert after is not None
        return self._to_model(before), self._to_model(after)

    async def update_status(
        self,
        record_id: int,
        status: WebhookStatus,
        attempt_at: datetime,
    ) -> bool:
        """Guarded status write.

        Applies only when no attempt with a later ``attempt_at`` has written
        the status already. ``sent`` applies only over ``pending``. Terminal
        statuses stamp ``processed_at`` once.
        """
        record = await self._fetchrow(
            """
            UPDATE user_events
            SET webhook_status = $2::text,
                status_attempt_at = $3,
                processed_at = CASE
                    WHEN $2::text IN ('success', 'failed') THEN COALESCE(processed_at, now())
                    ELSE processed_at
                END
            WHERE id = $1
              AND (status_attempt_at IS NULL OR status_attempt_at <= $3)
              AND ($2::text <> 'sent' OR webhook_status = 'pending')
            RETURNING id
            """,
            record_id,
            status.value,
            attempt_at,
        )
        return record is not None

    async def list_stale_pending(self, created_before: datetime, *, limit: int = 100) -> List[EventRecord]:
        """Pending records older than ``created_before`` that never got an attempt."""
        records = await self._fetch(
            """
            SELECT e.*
            FROM user_events e
            WHERE e.webhook_status = 'pending'
              AND e.created_at < $1
              AND NOT EXISTS (SELECT 1 FROM webhook_logs l WHERE l.record_id = e.id)
            ORDER BY e.created_at ASC
            LIMIT $2
            """,
            created_before,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def stats(self) -> WebhookStats:
        record = await self._fetchrow(
            """
            SELECT COUNT(*) AS total_events,
                   COUNT(*) FILTER (WHERE webhook_status = 'pending') AS pending,
                   COUNT(*) FILTER (WHERE webhook_status = 'sent') AS sent,
                   COUNT(*) FILTER (WHERE webhook_status = 'success') AS success,
                   COUNT(*) FILTER (WHERE webhook_status = 'failed') AS failed,
                   MAX(created_at) AS last_event_time
            FROM user_events
            """
        )
        if record is None:
            return WebhookStats()
        return WebhookStats.model_validate(dict(record))
