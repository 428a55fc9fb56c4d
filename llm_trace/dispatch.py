"""Log dispatch: decouple trace finalization from sink I/O.

Finalized trace payloads are pushed onto a ``LogQueue``. A ``LogWorker``
running on a background thread (its own event loop) wakes on a fixed
interval, moves queued payloads one at a time into a ``LogBatcher``, and the
batcher hands batches to the sink when either the size or the time threshold
is reached. Failed batches are retried a bounded number of times with a fixed
delay, then dropped with an error log. Delivery is best-effort: nothing here
ever raises into application code.

``LogDispatcher`` is the facade the trace manager talks to.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from llm_trace.errors import LogDeliveryError
from llm_trace.sinks import LogSink, TracePayload

logger = logging.getLogger(__name__)


class LogQueue:
    """Thread-safe FIFO of whole trace payloads."""

    def __init__(self) -> None:
        self._items: deque[TracePayload] = deque()
        self._lock = threading.Lock()

    def enqueue(self, payload: TracePayload) -> None:
        with self._lock:
            self._items.append(payload)

    def dequeue(self) -> TracePayload | None:
        with self._lock:
            return self._items.popleft() if self._items else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class LogBatcher:
    """Accumulates payloads and hands them off by size or by time, whichever comes first.

    Every payload is at all times either in the source queue, in the batch,
    or in a batch being handed off; ``wait_idle`` waits for the hand-offs.
    """

    def __init__(
        self,
        on_batch_ready: Callable[[list[TracePayload]], Awaitable[None]],
        batch_size: int = 100,
        batch_interval_s: float = 1.0,
    ) -> None:
        self._on_batch_ready = on_batch_ready
        self.batch_size = max(1, batch_size)
        self.batch_interval_s = batch_interval_s
        self._batch: list[TracePayload] = []
        self._lock = threading.Condition()
        self._handing_off = 0
        self._timer: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._batch)

    async def add(self, payload: TracePayload) -> None:
        with self._lock:
            self._batch.append(payload)
            full = len(self._batch) >= self.batch_size
        await self._added(full)

    async def pull(self, queue: LogQueue) -> bool:
        """Move one payload from ``queue`` into the batch. Returns False if the queue is empty."""
        with self._lock:
            payload = queue.dequeue()
            if payload is None:
                return False
            self._batch.append(payload)
            full = len(self._batch) >= self.batch_size
        await self._added(full)
        return True

    async def _added(self, full: bool) -> None:
        if full:
            await self.flush()
        elif self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.batch_interval_s)
        # Past this point the hand-off must not be cancelled by flush().
        self._timer = None
        await self._send(self._claim())

    def take_pending(self, queue: LogQueue | None = None) -> list[TracePayload]:
        """Remove and return the current batch, plus everything left in ``queue``, without sending."""
        with self._lock:
            batch, self._batch = self._batch, []
            if queue is not None:
                while (payload := queue.dequeue()) is not None:
                    batch.append(payload)
            return batch

    def _claim(self) -> list[TracePayload]:
        with self._lock:
            batch, self._batch = self._batch, []
            if batch:
                self._handing_off += 1
            return batch

    async def flush(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()
        await self._send(self._claim())

    async def _send(self, batch: list[TracePayload]) -> None:
        if not batch:
            return
        try:
            await self._on_batch_ready(batch)
        finally:
            with self._lock:
                self._handing_off -= 1
                self._lock.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no claimed batch is still being handed off."""
        with self._lock:
            return self._lock.wait_for(lambda: self._handing_off == 0, timeout=timeout)


class LogWorker:
    """Drains the queue into the batcher and delivers batches with bounded retry."""

    def __init__(
        self,
        queue: LogQueue,
        sink: LogSink,
        *,
        batch_size: int = 100,
        batch_interval_s: float = 1.0,
        interval_s: float = 1.0,
        retry_count: int = 3,
        retry_delay_s: float = 1.0,
    ) -> None:
        self.queue = queue
        self.sink = sink
        self.interval_s = interval_s
        self.retry_count = retry_count
        self.retry_delay_s = retry_delay_s
        self.batcher = LogBatcher(self.send_batch, batch_size=batch_size, batch_interval_s=batch_interval_s)
        self._in_flight = 0
        self._idle = threading.Condition()

    async def send_batch(self, batch: list[TracePayload]) -> bool:
        """Deliver one batch. Returns False when it was dropped after exhausting retries."""
        with self._idle:
            self._in_flight += 1
        try:
            attempt = 0
            while True:
                try:
                    await self.sink.record_logs(batch)
                    logger.debug("Sent batch of %d trace logs.", len(batch))
                    return True
                except LogDeliveryError as exc:
                    err: Exception = exc
                except Exception as exc:
                    logger.debug("Unexpected sink failure", exc_info=True)
                    err = exc
                attempt += 1
                if attempt > self.retry_count:
                    logger.error(
                        "Failed to send batch of %d trace logs after %d retries; dropping it: %s",
                        len(batch),
                        self.retry_count,
                        err,
                    )
                    return False
                logger.warning("Error sending batch (attempt %d): %s", attempt, err)
                await asyncio.sleep(self.retry_delay_s)
        finally:
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

    async def tick(self) -> int:
        """Move everything currently queued into the batcher, one payload at a time."""
        moved = 0
        while await self.batcher.pull(self.queue):
            moved += 1
        return moved

    async def drain(self) -> None:
        """Deliver everything queued or batched right now."""
        pending = self.batcher.take_pending(self.queue)
        for start in range(0, len(pending), self.batcher.batch_size):
            await self.send_batch(pending[start:start + self.batcher.batch_size])

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no batch is mid-delivery, including ones the batcher has claimed."""
        if not self.batcher.wait_idle(timeout):
            return False
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    async def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            await self.tick()
            await asyncio.sleep(self.interval_s)
        await self.batcher.flush()
        await self.drain()


class LogDispatcher:
    """Facade over queue, worker and sink used by the trace manager."""

    def __init__(
        self,
        sink: LogSink,
        *,
        batch_size: int = 100,
        batch_interval_s: float = 1.0,
        worker_interval_s: float = 1.0,
        retry_count: int = 3,
        retry_delay_s: float = 1.0,
        autostart: bool = True,
    ) -> None:
        self.sink = sink
        self.queue = LogQueue()
        self.worker = LogWorker(
            self.queue,
            sink,
            batch_size=batch_size,
            batch_interval_s=batch_interval_s,
            interval_s=worker_interval_s,
            retry_count=retry_count,
            retry_delay_s=retry_delay_s,
        )
        self.autostart = autostart
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._start_lock = threading.Lock()

    @classmethod
    def from_config(cls, sink: LogSink, config: Any, *, autostart: bool = True) -> "LogDispatcher":
        return cls(
            sink,
            batch_size=config.batch_size,
            batch_interval_s=config.batch_interval_s,
            worker_interval_s=config.worker_interval_s,
            retry_count=config.retry_count,
            retry_delay_s=config.retry_delay_s,
            autostart=autostart,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_worker(self) -> None:
        asyncio.run(self.worker.run(self._stop))

    def start(self) -> None:
        """Start the background worker thread (idempotent)."""
        with self._start_lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run_worker, name="llm-trace-log-worker", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the worker after it delivers what is queued."""
        with self._start_lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop.set()
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Log worker did not stop within %ss; %d logs still queued.", timeout, len(self.queue))

    def enqueue(self, payload: TracePayload) -> None:
        """Queue a finalized payload for background delivery. Never raises."""
        self.queue.enqueue(payload)
        if self.autostart and not self.running:
            try:
                self.start()
            except RuntimeError:
                logger.warning("Could not start log worker; logs stay queued until flush().", exc_info=True)

    async def send_immediately(self, payload: TracePayload, *, update: bool = False) -> bool:
        """Deliver one payload now, bypassing the queue. Same retry policy as batches."""
        if not update:
            return await self.worker.send_batch([payload])
        attempt = 0
        while True:
            try:
                await self.sink.update_log(payload)
                return True
            except Exception as exc:
                attempt += 1
                if attempt > self.worker.retry_count:
                    logger.error("Failed to update trace log %s; dropping it: %s", payload.get("trace_id"), exc)
                    return False
                await asyncio.sleep(self.worker.retry_delay_s)

    async def flush(self, timeout: float | None = 10.0) -> None:
        """Deliver everything queued, then wait for in-flight background batches."""
        await self.worker.drain()
        await asyncio.to_thread(self.worker.wait_idle, timeout)
