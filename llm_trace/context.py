"""Execution context: ambient, async-aware registry of active trace logs.

The registry is bound to the asynchronous call graph with ``contextvars``,
so code running after an ``await`` inside a traced function still resolves to
the right trace, and concurrent sibling tasks never see each other's current
trace (each asyncio task runs in its own copy of the context).

Two context variables are involved:

- the *store*: the per-call-chain ``TraceStore`` holding every active
  ``TraceLog`` of the chain, shared by nested calls;
- the *frame*: an immutable ``TraceFrame`` describing the current trace
  (id, root id, depth, inherited target), set on trace creation and reset
  when the call completes.

Usage::

    ctx = ExecutionContext()
    with ctx.scope():
        active = ctx.create("outer")
        ...
        ctx.detach(active)
"""

from __future__ import annotations

import contextvars
import inspect
import itertools
import logging
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable

from llm_trace.helpers import gen_trace_id, to_date_time_string, utcnow
from llm_trace.merge import merge_trace_data
from llm_trace.models import TraceLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TraceFrame:
    """Linkage data of the current trace, as seen by code nested under it."""

    trace_id: str
    root_trace_id: str
    depth: int
    target: str | None = None
    # Shared by every frame of one root, so numbering survives the root returning.
    counter: itertools.count = field(default_factory=itertools.count, compare=False, repr=False)


@dataclass
class TraceStore:
    """Active trace logs of one call chain, keyed by trace id."""

    records: dict[str, TraceLog] = field(default_factory=dict)
    target: str | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


@dataclass
class ActiveTrace:
    """Handle for a trace between creation and completion."""

    record: TraceLog
    frame: TraceFrame
    store: TraceStore
    parent_frame: TraceFrame | None = None
    token: contextvars.Token[TraceFrame | None] | None = None
    started: float = field(default_factory=time.perf_counter)
    eval_funcs: list[Callable[..., Any]] = field(default_factory=list)
    apply_eval_frac: float = 1.0
    detached: bool = False

    @property
    def trace_id(self) -> str:
        return self.record.trace_id


class ExecutionContext:
    """Registry of active traces scoped to the asynchronous call graph."""

    def __init__(self, name: str = "llm_trace") -> None:
        self._store_var: contextvars.ContextVar[TraceStore | None] = contextvars.ContextVar(
            f"{name}_trace_store", default=None
        )
        self._frame_var: contextvars.ContextVar[TraceFrame | None] = contextvars.ContextVar(
            f"{name}_trace_frame", default=None
        )
        self._order_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Scoping
    # ------------------------------------------------------------------

    @contextmanager
    def scope(self, *, fresh: bool = False, target: str | None = None) -> Iterator[TraceStore]:
        """Make a trace store visible for the dynamic extent of the block.

        An already-active store is reused, so nested traced calls share one
        registry. ``fresh=True`` always starts an isolated store with no
        current trace (one per experiment trial).
        """
        existing = self._store_var.get()
        if existing is not None and not fresh:
            yield existing
            return
        store = TraceStore(target=target)
        store_token = self._store_var.set(store)
        frame_token = self._frame_var.set(None) if fresh else None
        try:
            yield store
        finally:
            if frame_token is not None:
                self._frame_var.reset(frame_token)
            self._store_var.reset(store_token)

    def run_in_context(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``fn`` inside a scope; coroutine functions return an awaitable."""
        if inspect.iscoroutinefunction(fn):

            async def _runner() -> Any:
                with self.scope():
                    return await fn(*args, **kwargs)

            return _runner()
        with self.scope():
            return fn(*args, **kwargs)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def current_store(self) -> TraceStore | None:
        return self._store_var.get()

    def get_current_frame(self) -> TraceFrame | None:
        return self._frame_var.get()

    def get_current_trace_id(self) -> str | None:
        frame = self._frame_var.get()
        return frame.trace_id if frame is not None else None

    def get(self, trace_id: str) -> TraceLog | None:
        store = self._store_var.get()
        if store is None:
            return None
        with store.lock:
            return store.records.get(trace_id)

    def get_current(self) -> TraceLog | None:
        """The innermost still-active trace log of the calling context."""
        trace_id = self.get_current_trace_id()
        return self.get(trace_id) if trace_id else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def next_execution_order(self, parent: TraceFrame | None) -> tuple[int, itertools.count]:
        """Next order number within the parent's root; a new root starts a new counter."""
        counter = parent.counter if parent is not None else itertools.count()
        with self._order_lock:
            return next(counter), counter

    def create(
        self,
        name: str,
        *,
        target: str | None = None,
        activate: bool = True,
        **fields: Any,
    ) -> ActiveTrace:
        """Allocate a trace log linked under the current trace, if any.

        With ``activate`` the new trace becomes current for nested code; leaf
        traces (provider requests) are created without activation.
        """
        store = self._store_var.get()
        if store is None:
            # No scope entered: bind a store to the caller's context.
            store = TraceStore()
            self._store_var.set(store)

        parent = self._frame_var.get()
        trace_id = gen_trace_id()
        execution_order, counter = self.next_execution_order(parent)
        if parent is not None:
            root_trace_id = parent.root_trace_id
            depth = parent.depth + 1
        else:
            root_trace_id = trace_id
            depth = 0

        record = TraceLog(
            trace_id=trace_id,
            trace_name=name,
            parent_trace_id=parent.trace_id if parent is not None else None,
            root_trace_id=root_trace_id,
            start_timestamp=to_date_time_string(utcnow()),
            depth=depth,
            execution_order=execution_order,
            target=target,
            **fields,
        )
        frame = TraceFrame(
            trace_id=trace_id, root_trace_id=root_trace_id, depth=depth, target=target, counter=counter
        )

        with store.lock:
            store.records[trace_id] = record
            if parent is not None:
                parent_record = store.records.get(parent.trace_id)
                if parent_record is not None:
                    parent_record.children.append(trace_id)

        active = ActiveTrace(record=record, frame=frame, store=store, parent_frame=parent)
        if activate:
            active.token = self._frame_var.set(frame)
        return active

    def detach(self, active: ActiveTrace) -> TraceLog:
        """Stamp end time and latency, and remove the trace from the active set."""
        record = active.record
        if active.detached:
            return record
        active.detached = True
        end = utcnow()
        record.end_timestamp = to_date_time_string(end)
        record.latency = round(time.perf_counter() - active.started, 6)

        self._release_frame(active)
        with active.store.lock:
            active.store.records.pop(record.trace_id, None)
        return record

    def _release_frame(self, active: ActiveTrace) -> None:
        if active.token is None:
            return
        try:
            self._frame_var.reset(active.token)
        except (ValueError, RuntimeError):
            # Completed in a different context than it started in.
            if self._frame_var.get() == active.frame:
                self._frame_var.set(active.parent_frame)
        active.token = None

    def deactivate(self, active: ActiveTrace) -> None:
        """Stop treating ``active`` as current in the calling context. It stays registered."""
        self._release_frame(active)

    @contextmanager
    def resume(self, active: ActiveTrace) -> Iterator[ActiveTrace]:
        """Make a deactivated trace current again for the block.

        Used when a call returns an awaitable: the trace is completed later, in
        whichever context awaits the result.
        """
        store_token = self._store_var.set(active.store)
        active.token = self._frame_var.set(active.frame)
        try:
            yield active
        finally:
            self._release_frame(active)
            self._store_var.reset(store_token)

    def insert(self, data: Mapping[str, Any], trace_id: str | None = None) -> bool:
        """Merge ``data`` into the current (or given) active trace.

        Returns False and logs a warning when there is no such trace; never raises.
        """
        store = self._store_var.get()
        if store is None:
            logger.warning("No active trace context found for trace_insert.")
            return False
        target_id = trace_id or self.get_current_trace_id()
        if not target_id:
            logger.warning("No current trace id found for trace_insert.")
            return False
        with store.lock:
            record = store.records.get(target_id)
            if record is None:
                logger.warning("No trace data found for trace_id %s.", target_id)
                return False
            merge_trace_data(record, data)
        return True
