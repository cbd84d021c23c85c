"""
Bounded asynchronous audit channel.

Request handlers call emit(), which never blocks: events go onto a bounded
queue and a single writer task drains it into the configured sink in FIFO
order. A full queue drops the event with a warning; a failing sink is logged
and the writer moves on to the next event.
"""

import asyncio
import logging
from typing import Optional

from .audit_service import IAuditService
from .schemas import SSOAuditEntry

logger = logging.getLogger(__name__)


class AuditChannel:
    def __init__(self, sink: IAuditService, max_size: int = 1000):
        self._sink = sink
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._writer: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._writer is not None and not self._writer.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def emit(self, entry: SSOAuditEntry) -> bool:
        """Queue an event for the writer; returns False when it was dropped."""
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue full, dropping event",
                extra={
                    "action": entry.action.value,
                    "tenant_id": entry.tenant_id,
                    "dropped_total": self.dropped,
                },
            )
            return False
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._writer = asyncio.create_task(self._run(), name="sso-audit-writer")

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._sink.log(entry)
            except Exception:
                logger.exception(
                    "Audit sink failed to persist event",
                    extra={"action": entry.action.value, "tenant_id": entry.tenant_id},
                )
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the sink."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        if self._writer is None:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Audit channel stopped with undelivered events",
                extra={"pending": self.pending},
            )
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None
