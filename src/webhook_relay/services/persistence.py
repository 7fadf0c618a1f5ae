"""Retrying writes of delivery outcomes.

A write that keeps failing after its inline retries is parked in
:class:`PendingWrites` and replayed by the background worker, so an outcome
that reached the sink is never silently dropped.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

import structlog

from webhook_relay.core.exceptions import PersistenceError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

WriteFn = Callable[[], Awaitable[object]]


async def retry_persistence(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay_seconds: float,
    operation: str,
) -> T:
    """Run ``fn`` up to ``attempts`` times while it raises :class:`PersistenceError`."""
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except PersistenceError as exc:
            logger.warning(
                "persistence attempt failed",
                operation=operation,
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
            if attempt >= attempts:
                raise
            await asyncio.sleep(delay_seconds * attempt)
    raise AssertionError("unreachable")


@dataclass
class PendingWrite:
    operation: str
    fn: WriteFn
    failures: int = 0


class PendingWrites:
    """In-process backlog of outcome writes awaiting replay."""

    def __init__(self) -> None:
        self._items: deque[PendingWrite] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def add(self, operation: str, fn: WriteFn) -> None:
        self._items.append(PendingWrite(operation=operation, fn=fn))
        logger.error("outcome write parked for replay", operation=operation, backlog=len(self._items))

    async def flush(self, _now: datetime | None = None) -> str | None:
        """Worker task: replay every parked write once."""
        if not self._items:
            return None
        flushed = 0
        for _ in range(len(self._items)):
            item = self._items.popleft()
            try:
                await item.fn()
            except PersistenceError as exc:
                item.failures += 1
                self._items.append(item)
                logger.warning(
                    "parked write still failing",
                    operation=item.operation,
                    failures=item.failures,
                    error=str(exc),
                )
                continue
            flushed += 1
        return f"flushed={flushed} remaining={len(self._items)}"
