"""Change event capture and the in-process hand-off to the coordinator."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from webhook_relay.domain.enums import Operation
from webhook_relay.domain.models import DeliveryOutcome, Envelope, EventRecord, new_request_id, utcnow
from webhook_relay.repositories.events import EVENTS_TABLE

logger = structlog.get_logger(__name__)

DispatchFn = Callable[[Envelope], Awaitable[DeliveryOutcome]]


class DispatchQueue:
    """Bounded queue drained by a fixed number of consumer tasks.

    :meth:`submit` never blocks: a full queue rejects the envelope and the
    caller decides what to do with it. Envelopes whose log entry is already
    open go through :meth:`submit_opened` and are handed to ``resume``.
    """

    def __init__(
        self,
        dispatch: DispatchFn,
        *,
        resume: DispatchFn | None = None,
        maxsize: int = 1000,
        concurrency: int = 10,
    ):
        self._dispatch = dispatch
        self._resume = resume
        self._queue: asyncio.Queue[tuple[Envelope, bool]] = asyncio.Queue(maxsize=maxsize)
        self._concurrency = concurrency
        self._consumers: list[asyncio.Task[None]] = []

    @property
    def size(self) -> int:
        return self._queue.qsize()

    def submit(self, envelope: Envelope) -> bool:
        return self._put(envelope, opened=False)

    def submit_opened(self, envelope: Envelope) -> bool:
        if self._resume is None:
            raise RuntimeError("dispatch queue has no resume handler")
        return self._put(envelope, opened=True)

    def _put(self, envelope: Envelope, *, opened: bool) -> bool:
        try:
            self._queue.put_nowait((envelope, opened))
        except asyncio.QueueFull:
            logger.error(
                "dispatch queue full, envelope rejected",
                request_id=envelope.request_id,
                record_id=envelope.record_id,
                queue_size=self._queue.qsize(),
            )
            return False
        return True

    async def start(self) -> None:
        if self._consumers:
            return
        self._consumers = [
            asyncio.create_task(self._consume(), name=f"dispatch-consumer-{i}")
            for i in range(self._concurrency)
        ]
        logger.info("dispatch queue started", concurrency=self._concurrency)

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Let consumers finish queued work for up to ``drain_timeout`` seconds, then cancel them."""
        if self._consumers and drain_timeout > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("dispatch queue drain timed out", remaining=self._queue.qsize())
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []
        logger.info("dispatch queue stopped", dropped=self._queue.qsize())

    async def join(self) -> None:
        """Wait until every submitted envelope has been dispatched."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            envelope, opened = await self._queue.get()
            handler = self._resume if opened and self._resume is not None else self._dispatch
            try:
                await handler(envelope)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "dispatch failed",
                    request_id=envelope.request_id,
                    record_id=envelope.record_id,
                )
            finally:
                self._queue.task_done()


class ChangeEventEmitter:
    """Turns record mutations into envelopes and hands them off.

    Never raises into the mutating code path: a failed hand-off is logged and
    the record stays ``pending``.
    """

    def __init__(self, submit: Callable[[Envelope], bool], *, subject_table: str = EVENTS_TABLE):
        self._submit = submit
        self._subject_table = subject_table

    def build_envelope(
        self,
        operation: Operation,
        record: EventRecord,
        old_record: EventRecord | None = None,
    ) -> Envelope:
        return Envelope(
            request_id=new_request_id(),
            subject_table=self._subject_table,
            operation=operation,
            record=record.snapshot(),
            old_record=old_record.snapshot() if operation is Operation.UPDATE and old_record else None,
            timestamp=utcnow(),
        )

    def emit(
        self,
        operation: Operation,
        record: EventRecord,
        old_record: EventRecord | None = None,
    ) -> Envelope | None:
        try:
            envelope = self.build_envelope(operation, record, old_record)
            accepted = self._submit(envelope)
        except Exception:
            logger.exception("change event hand-off failed", record_id=record.id, operation=operation.value)
            return None
        if not accepted:
            logger.error(
                "change event not handed off, record stays pending",
                record_id=record.id,
                operation=operation.value,
                request_id=envelope.request_id,
            )
            return None
        logger.info(
            "change event emitted",
            record_id=record.id,
            operation=operation.value,
            request_id=envelope.request_id,
        )
        return envelope
