"""Delivery log: one ``webhook_logs`` row per dispatch attempt."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_relay.core.exceptions import AlreadyResolvedError, DuplicateRequestError, NotFoundError
from webhook_relay.domain.enums import DeliveryStatus, Operation
from webhook_relay.domain.models import DeliveryLogEntry, Envelope
from webhook_relay.repositories.base import BaseRepository, dump_json, load_json

_OPEN_SQL = """
INSERT INTO webhook_logs (
    subject_table,
    operation,
    record_id,
    request_id,
    status,
    attempt,
    attempt_at,
    envelope
)
VALUES ($1, $2, $3, $4, 'sent', $5, $6, $7::jsonb)
ON CONFLICT (request_id) DO NOTHING
RETURNING id
"""


class DeliveryLogRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DeliveryLogEntry:
        return DeliveryLogEntry.model_validate(DeliveryLogRepository._normalize(dict(record)))

    @staticmethod
    def _normalize(payload: dict[str, Any]) -> dict[str, Any]:
        for key in ("response_data", "envelope"):
            payload[key] = load_json(payload.get(key))
        if payload.get("envelope") is None:
            payload["envelope"] = {}
        return payload

    async def open(
        self,
        request_id: str,
        *,
        subject_table: str,
        operation: Operation,
        record_id: int,
        attempt: int,
        attempt_at: datetime,
        envelope: dict[str, Any],
    ) -> int:
        """Insert a ``sent`` entry. The unique ``request_id`` is the dedup point."""
        record = await self._fetchrow(
            _OPEN_SQL,
            subject_table,
            operation.value,
            record_id,
            request_id,
            attempt,
            attempt_at,
            dump_json(envelope),
        )
        if record is None:
            raise DuplicateRequestError(f"Delivery already opened for request_id={request_id}")
        return int(record["id"])

    async def resolve(
        self,
        request_id: str,
        status: DeliveryStatus,
        *,
        error_message: str | None = None,
        response_data: Any = None,
        next_attempt_at: datetime | None = None,
    ) -> DeliveryLogEntry:
        """Move a ``sent`` entry to its terminal status, exactly once."""
        if not status.is_terminal:
            raise ValueError("resolve() requires a terminal status")
        record = await self._fetchrow(
            """
            UPDATE webhook_logs
            SET status = $2,
                error_message = $3,
                response_data = $4::jsonb,
                next_attempt_at = $5,
                updated_at = now()
            WHERE request_id = $1
              AND status = 'sent'
            RETURNING *
            """,
            request_id,
            status.value,
            error_message if status is DeliveryStatus.FAILED else None,
            dump_json(response_data) if status is DeliveryStatus.SUCCESS else None,
            next_attempt_at,
        )
        if record is not None:
            return self._to_model(record)
        existing = await self.get_by_request_id(request_id)
        if existing is None:
            raise NotFoundError(f"No delivery opened for request_id={request_id}")
        raise AlreadyResolvedError(
            f"Delivery request_id={request_id} already resolved as {existing.status.value}"
        )

    async def get_by_request_id(self, request_id: str) -> DeliveryLogEntry | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_logs WHERE request_id = $1",
            request_id,
        )
        return self._to_model(record) if record is not None else None

    async def list_by_record(self, record_id: int) -> List[DeliveryLogEntry]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_logs
            WHERE record_id = $1
            ORDER BY created_at ASC, id ASC
            """,
            record_id,
        )
        return [self._to_model(r) for r in records]

    async def count_by_status(self, since: datetime, until: datetime) -> dict[DeliveryStatus, int]:
        records = await self._fetch(
            """
            SELECT status, COUNT(*) AS total
            FROM webhook_logs
            WHERE created_at >= $1 AND created_at < $2
            GROUP BY status
            """,
            since,
            until,
        )
        counts = {status: 0 for status in DeliveryStatus}
        for rec in records:
            counts[DeliveryStatus(rec["status"])] = int(rec["total"])
        return counts

    async def list_due_retries(self, now: datetime, *, limit: int = 100) -> List[DeliveryLogEntry]:
        """Failed entries whose retry is due. Nothing is claimed here, see :meth:`open_retry`."""
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_logs
            WHERE status = 'failed'
              AND next_attempt_at IS NOT NULL
              AND next_attempt_at <= $1
            ORDER BY next_attempt_at ASC, id ASC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def open_retry(self, previous_request_id: str, envelope: Envelope, *, now: datetime) -> bool:
        """
        Claim a due retry and open its ``sent`` entry in one transaction.

        The claim clears ``next_attempt_at`` on the failed entry only while it
        is still due, so concurrent schedulers never mint two retries for it.
        Returns ``False`` when another scheduler got there first. From here on
        the retry is durable: if it is never delivered the ``sent`` entry is
        picked up by the stuck-sent reclaim.
        """
        async with self._transaction() as conn:
            claimed = await conn.fetchrow(
                """
                UPDATE webhook_logs
                SET next_attempt_at = NULL,
                    updated_at = now()
                WHERE request_id = $1
                  AND status = 'failed'
                  AND next_attempt_at IS NOT NULL
                  AND next_attempt_at <= $2
                RETURNING id
                """,
                previous_request_id,
                now,
            )
            if claimed is None:
                return False
            await conn.fetchrow(
                _OPEN_SQL,
                envelope.subject_table,
                envelope.operation.value,
                envelope.record_id,
                envelope.request_id,
                envelope.attempt,
                envelope.timestamp,
                dump_json(envelope.model_dump(mode="json")),
            )
        return True

    async def release_retry(self, request_id: str, previous_request_id: str, next_attempt_at: datetime) -> None:
        """Undo :meth:`open_retry` for a retry that was never handed off."""
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM webhook_logs WHERE request_id = $1 AND status = 'sent'",
                request_id,
            )
            await conn.execute(
                """
                UPDATE webhook_logs
                SET next_attempt_at = $2,
                    updated_at = now()
                WHERE request_id = $1
                  AND status = 'failed'
                """,
                previous_request_id,
                next_attempt_at,
            )

    async def reschedule(self, request_id: str, next_attempt_at: datetime) -> None:
        """Push a failed entry's retry back to ``next_attempt_at``."""
        await self._execute(
            """
            UPDATE webhook_logs
            SET next_attempt_at = $2,
                updated_at = now()
            WHERE request_id = $1
              AND status = 'failed'
            """,
            request_id,
            next_attempt_at,
        )

    async def list_stuck_sent(self, opened_before: datetime, *, limit: int = 100) -> List[DeliveryLogEntry]:
        """Entries still ``sent`` since before ``opened_before`` (e.g. after a crash)."""
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_logs
            WHERE status = 'sent'
              AND created_at < $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            opened_before,
            limit,
        )
        return [self._to_model(r) for r in records]
