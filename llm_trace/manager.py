"""Trace manager: create, enrich, finalize and evaluate trace logs.

The manager is the one object the trace wrapper and the provider patch talk
to. It owns the execution context, the log dispatcher and the evaluation
runner, plus the handles of evaluations still running in the background.

Construct one per test (with a ``MemoryLogSink``) or use the process default::

    from llm_trace.manager import get_trace_manager

    manager = get_trace_manager()
    await manager.flush()
"""

from __future__ import annotations

import asyncio
import atexit
import concurrent.futures
import contextvars
import dataclasses
import logging
import random
import threading
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from llm_trace.config import TraceConfig
from llm_trace.context import ActiveTrace, ExecutionContext
from llm_trace.dispatch import LogDispatcher
from llm_trace.evaluation import EvalFunction, EvaluationHandle, EvaluationRunner
from llm_trace.helpers import run_sync, serialize_value
from llm_trace.merge import merge_trace_data
from llm_trace.models import TraceLog
from llm_trace.sinks import LogSink, sink_from_config

if TYPE_CHECKING:
    from llm_trace.experiment.context import ExperimentContext

logger = logging.getLogger(__name__)


def _experiment_state() -> tuple[str | None, "ExperimentContext | None"]:
    # Imported lazily: the experiment package depends on this module.
    from llm_trace.experiment.context import current_experiment_context, get_active_experiment_id

    return get_active_experiment_id(), current_experiment_context()


class TraceManager:
    """Orchestrates trace logs for one process (or one test)."""

    def __init__(
        self,
        config: TraceConfig | None = None,
        *,
        sink: LogSink | None = None,
        dispatcher: LogDispatcher | None = None,
        context: ExecutionContext | None = None,
        evaluator: EvaluationRunner | None = None,
        autostart: bool = True,
    ) -> None:
        self.config = config or TraceConfig.from_env()
        if dispatcher is None:
            dispatcher = LogDispatcher.from_config(sink or sink_from_config(self.config), self.config, autostart=autostart)
        self.dispatcher = dispatcher
        self.context = context or ExecutionContext()
        self.evaluator = evaluator or EvaluationRunner()
        self._pending: set[EvaluationHandle] = set()
        self._pending_lock = threading.Lock()
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def sink(self) -> LogSink:
        return self.dispatcher.sink

    # ------------------------------------------------------------------
    # Trace lifecycle
    # ------------------------------------------------------------------

    def create_trace(
        self,
        name: str,
        *,
        target: str | None = None,
        eval_funcs: Sequence[EvalFunction] | None = None,
        apply_eval_frac: float = 1.0,
        activate: bool = True,
        metadata: Mapping[str, Any] | None = None,
        tags: Sequence[str] | None = None,
        **fields: Any,
    ) -> ActiveTrace:
        """Create a trace log under the current trace (if any) and make it current.

        A child without its own target inherits the parent's, or the one the
        enclosing experiment trial supplied.
        """
        if target is None:
            frame = self.context.get_current_frame()
            store = self.context.current_store()
            if frame is not None and frame.target is not None:
                target = frame.target
            elif store is not None:
                target = store.target

        experiment_uuid, _ = _experiment_state()
        if experiment_uuid is not None:
            fields.setdefault("experiment_uuid", experiment_uuid)
        if eval_funcs:
            fields.setdefault("apply_eval_frac", apply_eval_frac)

        active = self.context.create(
            name,
            target=target,
            activate=activate,
            metadata=dict(metadata) if metadata else None,
            tags=list(dict.fromkeys(tags)) if tags else None,
            **fields,
        )
        active.eval_funcs = list(eval_funcs or [])
        active.apply_eval_frac = apply_eval_frac
        return active

    def set_output(self, active: ActiveTrace, value: Any, projector: Callable[[Any], Any] | None = None) -> None:
        """Record the serialized output, plus the projected output used for scoring."""
        record = active.record
        try:
            record.output = serialize_value(value)
        except ValueError:
            logger.debug("Could not store output for trace %s", record.trace_id, exc_info=True)
        if projector is None:
            return
        try:
            record.output_for_eval_metrics = serialize_value(projector(value))
        except Exception:
            logger.warning("Output projector failed for trace %s", record.trace_id, exc_info=True)

    def record_error(self, active: ActiveTrace, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        merge_trace_data(active.record, {"error": message, "status": "error"})

    def finalize_trace(self, active: ActiveTrace, skip_eval: bool = False) -> EvaluationHandle | None:
        """Complete a trace exactly once.

        Without evaluation the log is queued for delivery right away. With
        evaluation, scoring is scheduled in the background and the scored log
        is delivered when it completes; the returned handle can be awaited.
        Never raises.
        """
        if active.detached:
            logger.debug("Trace %s already finalized", active.trace_id)
            return None
        record = self.context.detach(active)
        _, experiment = _experiment_state()

        should_eval = (
            not skip_eval
            and bool(active.eval_funcs)
            and record.status == "success"
            and random.random() < active.apply_eval_frac
        )
        if not should_eval:
            try:
                self.dispatcher.enqueue(record.to_payload())
            except Exception:
                logger.error("Could not queue trace %s for delivery", record.trace_id, exc_info=True)
            if experiment is not None and record.depth == 0:
                experiment.add_log(record.model_copy(deep=True))
            return None
        return self._schedule_evaluation(record, active.eval_funcs, experiment)

    def insert_trace_data(self, data: Mapping[str, Any], trace_id: str | None = None) -> bool:
        return self.context.insert(data, trace_id)

    def get_current_trace_id(self) -> str | None:
        return self.context.get_current_trace_id()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _get_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=4, thread_name_prefix="llm-trace-eval"
                )
            return self._executor

    def _schedule_evaluation(
        self,
        record: TraceLog,
        eval_funcs: list[EvalFunction],
        experiment: "ExperimentContext | None",
    ) -> EvaluationHandle:
        coro = self._evaluate_and_send(record, eval_funcs, experiment)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            handle = EvaluationHandle(record.trace_id, task=loop.create_task(coro))
        else:
            ctx = contextvars.copy_context()
            future = self._get_executor().submit(ctx.run, asyncio.run, coro)
            handle = EvaluationHandle(record.trace_id, future=future)

        with self._pending_lock:
            self._pending.add(handle)
        handle.add_done_callback(self._discard_handle)
        if experiment is not None:
            experiment.add_pending(handle)
        return handle

    def _discard_handle(self, handle: EvaluationHandle) -> None:
        with self._pending_lock:
            self._pending.discard(handle)

    async def _evaluate_and_send(
        self,
        record: TraceLog,
        eval_funcs: list[EvalFunction],
        experiment: "ExperimentContext | None",
    ) -> None:
        try:
            scores = await self.evaluator.run(record, eval_funcs)
            record.scores = [*(record.scores or []), *scores]
            if experiment is not None:
                experiment.add_scores(scores)
                if record.depth == 0:
                    experiment.add_log(record.model_copy(deep=True))
        finally:
            await self.dispatcher.send_immediately(record.to_payload())

    async def wait_for_evaluations(self) -> None:
        """Wait until every background evaluation scheduled so far is delivered."""
        while True:
            with self._pending_lock:
                pending = [h for h in self._pending if not h.done()]
            if not pending:
                return
            await asyncio.gather(*(h.wait() for h in pending))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.dispatcher.start()

    async def flush(self) -> None:
        """Wait for evaluations, then deliver everything queued."""
        await self.wait_for_evaluations()
        await self.dispatcher.flush()

    def flush_sync(self) -> None:
        run_sync(self.flush)

    def shutdown(self) -> None:
        """Finish background work and stop the log worker."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        if self.dispatcher.running:
            self.dispatcher.stop()
        elif len(self.dispatcher.queue):
            run_sync(self.dispatcher.flush)


# ---------------------------------------------------------------------------
# Process default
# ---------------------------------------------------------------------------

_default_manager: TraceManager | None = None
_default_lock = threading.Lock()


def _shutdown_default() -> None:
    manager = _default_manager
    if manager is not None:
        try:
            manager.shutdown()
        except Exception:
            logger.debug("Trace manager shutdown failed", exc_info=True)


atexit.register(_shutdown_default)


def get_trace_manager() -> TraceManager:
    """The process-wide manager, built from the environment on first use."""
    global _default_manager
    with _default_lock:
        if _default_manager is None:
            _default_manager = TraceManager(TraceConfig.from_env())
        return _default_manager


def set_trace_manager(manager: TraceManager | None) -> TraceManager | None:
    """Install ``manager`` as the process default and return the previous one."""
    global _default_manager
    with _default_lock:
        previous, _default_manager = _default_manager, manager
    return previous


def configure(**overrides: Any) -> TraceManager:
    """Replace the default manager with one whose config has ``overrides`` applied.

    Accepts any ``TraceConfig`` field, e.g. ``configure(enabled=False)`` or
    ``configure(sink="memory")``. Logs already queued on the old manager are
    delivered before it is replaced.
    """
    current = get_trace_manager()
    new = TraceManager(dataclasses.replace(current.config, **overrides))
    set_trace_manager(new)
    current.shutdown()
    return new
