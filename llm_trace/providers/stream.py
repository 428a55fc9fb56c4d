"""Transparent stream wrappers that finalize a leaf trace once the stream ends.

Chunks are forwarded to the consumer unchanged. The trace is finalized when
the stream is exhausted, fails, or is closed, and never before.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from llm_trace.context import ActiveTrace
from llm_trace.merge import merge_trace_data
from llm_trace.providers.base import ProviderAdapter, StreamState

logger = logging.getLogger(__name__)


class _StreamRecorder:
    """Shared bookkeeping for the sync and async stream wrappers."""

    def __init__(self, active: ActiveTrace, adapter: ProviderAdapter, manager: Any, started: float) -> None:
        self.active = active
        self.adapter = adapter
        self.manager = manager
        self.started = started
        self.state = StreamState()
        self.time_to_first_token: float | None = None
        self.finalized = False

    def observe(self, chunk: Any) -> None:
        if self.time_to_first_token is None:
            self.time_to_first_token = time.perf_counter() - self.started
        try:
            self.adapter.reduce_chunk(self.state, chunk)
        except Exception:
            logger.warning("Could not read stream chunk for trace %s", self.active.trace_id, exc_info=True)

    def fail(self, error: BaseException) -> None:
        if not self.finalized:
            self.manager.record_error(self.active, error)
        self.finish()

    def finish(self) -> None:
        if self.finalized:
            return
        self.finalized = True
        try:
            record_stream_result(self.active, self.adapter, self.state, self.time_to_first_token)
        finally:
            self.manager.finalize_trace(self.active)


def record_stream_result(
    active: ActiveTrace,
    adapter: ProviderAdapter,
    state: StreamState,
    time_to_first_token: float | None,
) -> None:
    """Write reconstructed output, timing, model and usage onto the leaf trace. Never raises."""
    record = active.record
    try:
        data: dict[str, Any] = {"output": adapter.stream_output(state)}
        if time_to_first_token is not None:
            data["time_to_first_token"] = time_to_first_token
        if state.model:
            data["configuration"] = {"model": state.model}
        if state.usage is not None:
            prompt, completion, total = adapter.extract_usage({"usage": state.usage})
            model = state.model or (record.configuration.model if record.configuration else None)
            data.update(input_tokens=prompt, output_tokens=completion, total_tokens=total)
            if model and prompt is not None and completion is not None:
                data["cost"] = adapter.cost_of(model, prompt, completion)
        merge_trace_data(record, data)
    except Exception:
        logger.warning("Could not record stream result for trace %s", record.trace_id, exc_info=True)


class TracedStream:
    """Sync iterator wrapper around a provider stream."""

    def __init__(self, stream: Any, active: ActiveTrace, adapter: ProviderAdapter, manager: Any, started: float) -> None:
        self._stream = stream
        self._iter: Any = None
        self._recorder = _StreamRecorder(active, adapter, manager, started)

    @property
    def trace_id(self) -> str:
        return self._recorder.active.trace_id

    def __iter__(self) -> "TracedStream":
        return self

    def __next__(self) -> Any:
        if self._iter is None:
            self._iter = iter(self._stream)
        try:
            chunk = next(self._iter)
        except StopIteration:
            self._recorder.finish()
            raise
        except Exception as exc:
            self._recorder.fail(exc)
            raise
        self._recorder.observe(chunk)
        return chunk

    def close(self) -> None:
        try:
            close = getattr(self._stream, "close", None)
            if close is not None:
                close()
        finally:
            self._recorder.finish()

    def __enter__(self) -> "TracedStream":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._stream, name)


class AsyncTracedStream:
    """Async iterator wrapper around a provider stream."""

    def __init__(self, stream: Any, active: ActiveTrace, adapter: ProviderAdapter, manager: Any, started: float) -> None:
        self._stream = stream
        self._iter: Any = None
        self._recorder = _StreamRecorder(active, adapter, manager, started)

    @property
    def trace_id(self) -> str:
        return self._recorder.active.trace_id

    def __aiter__(self) -> "AsyncTracedStream":
        return self

    async def __anext__(self) -> Any:
        if self._iter is None:
            self._iter = self._stream.__aiter__()
        try:
            chunk = await self._iter.__anext__()
        except StopAsyncIteration:
            self._recorder.finish()
            raise
        except Exception as exc:
            self._recorder.fail(exc)
            raise
        self._recorder.observe(chunk)
        return chunk

    async def aclose(self) -> None:
        try:
            for name in ("aclose", "close"):
                closer = getattr(self._stream, name, None)
                if closer is not None:
                    result = closer()
                    if hasattr(result, "__await__"):
                        await result
                    break
        finally:
            self._recorder.finish()

    async def __aenter__(self) -> "AsyncTracedStream":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._stream, name)
