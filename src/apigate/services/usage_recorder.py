"""Background usage recording off the request path."""

import asyncio
import logging
from collections import deque
from collections.abc import Sequence
from typing import Protocol

from apigate.metrics import USAGE_RECORDS_DROPPED_TOTAL, USAGE_SINK_ERRORS_TOTAL
from apigate.models.usage import UsageRecord

logger = logging.getLogger(__name__)


class UsageSink(Protocol):
    async def enqueue_batch(self, records: Sequence[UsageRecord]) -> None: ...


class UsageRecorder:
    """Buffers usage records and drains them to a sink from a background task.

    ``record`` never blocks and never raises. When the buffer is full the
    oldest pending record is dropped and counted; request handling never
    waits on the sink.
    """

    def __init__(
        self,
        sink: UsageSink,
        max_pending: int = 10_000,
        batch_size: int = 500,
        flush_interval: float = 1.0,
    ) -> None:
        self._sink = sink
        self._buffer: deque[UsageRecord] = deque(maxlen=max_pending)
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(self, client_id: str, endpoint: str, method: str, status_code: int) -> None:
        try:
            usage = UsageRecord(
                client_id=client_id,
                endpoint=endpoint,
                method=method.upper(),
                status_code=status_code,
            )
            if len(self._buffer) == self._buffer.maxlen:
                # deque(maxlen) evicts from the left on append
                self.dropped += 1
                USAGE_RECORDS_DROPPED_TOTAL.inc()
            self._buffer.append(usage)
            if len(self._buffer) >= self._batch_size:
                self._wakeup.set()
        except Exception:
            logger.exception("Failed to buffer usage record for %s", client_id)

    async def flush(self) -> int:
        """Drain everything pending to the sink. Returns records written."""
        written = 0
        while self._buffer:
            batch = [
                self._buffer.popleft()
                for _ in range(min(self._batch_size, len(self._buffer)))
            ]
            try:
                await self._sink.enqueue_batch(batch)
                written += len(batch)
            except Exception as exc:
                USAGE_SINK_ERRORS_TOTAL.inc()
                logger.warning("Usage sink rejected %d records: %s", len(batch), exc)
        return written

    async def run(self) -> None:
        logger.info("Usage recorder started (flush_interval=%.1fs)", self._flush_interval)
        while True:
            try:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self._flush_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
                await self.flush()
            except asyncio.CancelledError:
                logger.info("Usage recorder stopped")
                raise

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Cancel the drain task, then write whatever is still buffered."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
