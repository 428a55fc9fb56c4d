"""Evaluation runner: score finished traces without letting scoring break anything.

Evaluation functions receive the evaluated log (a copy of the trace log whose
``output`` is the projected output when an output projector was given) and may
return any of:

- a number, or a bool (mapped to 1/0), named after the function
- an ``EvaluationResult`` (or a dict with ``name``/``score``/``reason``)
- a list of those, appended as-is
- ``None``, meaning the function opted out

Functions may be sync or async. A function that raises is logged, recorded as
an error annotation on the trace, and skipped; the others still run.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextvars
import inspect
import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Callable

from pydantic import ValidationError

from llm_trace.helpers import func_name
from llm_trace.merge import merge_trace_data
from llm_trace.models import EvaluationResult, TraceLog

logger = logging.getLogger(__name__)

EvalFunction = Callable[..., Any]

_is_evaluating: contextvars.ContextVar[bool] = contextvars.ContextVar("llm_trace_is_evaluating", default=False)


def is_evaluating() -> bool:
    """True while an evaluation function is running in this context."""
    return _is_evaluating.get()


@contextmanager
def evaluating() -> Iterator[None]:
    token = _is_evaluating.set(True)
    try:
        yield
    finally:
        _is_evaluating.reset(token)


# ---------------------------------------------------------------------------
# Score normalization
# ---------------------------------------------------------------------------


def normalize_score(name: str, value: Any) -> list[EvaluationResult]:
    """Turn one evaluation function's return value into a list of results.

    Raises:
        TypeError: If the value has an unsupported shape.
    """
    if value is None:
        return []
    if isinstance(value, bool):
        return [EvaluationResult(name=name, score=1.0 if value else 0.0)]
    if isinstance(value, (int, float)):
        return [EvaluationResult(name=name, score=float(value))]
    if isinstance(value, EvaluationResult):
        return [value]
    if isinstance(value, Mapping):
        return [EvaluationResult.model_validate({"name": name, **value})]
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        results: list[EvaluationResult] = []
        for item in value:
            results.extend(normalize_score(name, item))
        return results
    raise TypeError(f"Unsupported evaluation result type {type(value).__name__} from '{name}'")


def prepare_evaluated_log(record: TraceLog) -> TraceLog:
    """Copy of ``record`` with ``output`` replaced by the output used for scoring."""
    log = record.model_copy(deep=True)
    if log.output_for_eval_metrics is not None:
        log.output = log.output_for_eval_metrics
    return log


class EvaluationRunner:
    """Runs evaluation functions against trace logs, tolerating failures."""

    async def _call(self, func: EvalFunction, arg: Any) -> Any:
        result = func(arg)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run(self, record: TraceLog, eval_funcs: Sequence[EvalFunction]) -> list[EvaluationResult]:
        """Score one trace log. Failures are annotated on ``record`` as errors."""
        scores: list[EvaluationResult] = []
        log = prepare_evaluated_log(record)
        with evaluating():
            for func in eval_funcs:
                name = func_name(func)
                try:
                    value = await self._call(func, log)
                    scores.extend(normalize_score(name, value))
                except Exception as exc:
                    logger.error("Error occurred calling evaluation function '%s': %s", name, exc, exc_info=True)
                    merge_trace_data(
                        record,
                        {"error": f"Error occurred calling evaluation function '{name}': {exc!r}"},
                    )
        return scores

    async def run_dataset_level(
        self,
        logs: Sequence[TraceLog],
        eval_funcs: Sequence[EvalFunction],
    ) -> list[EvaluationResult]:
        """Score a whole experiment's evaluated logs; one function per aggregate."""
        results: list[EvaluationResult] = []
        with evaluating():
            for func in eval_funcs:
                name = func_name(func)
                try:
                    value = await self._call(func, list(logs))
                    results.extend(normalize_score(name, value))
                except (TypeError, ValueError, ValidationError) as exc:
                    logger.error("Dataset-level evaluation '%s' returned an invalid result: %s", name, exc)
                except Exception as exc:
                    logger.error("Error occurred calling dataset-level evaluation '%s': %s", name, exc, exc_info=True)
        return results


# ---------------------------------------------------------------------------
# Background handles
# ---------------------------------------------------------------------------


class EvaluationHandle:
    """Awaitable handle for an evaluation scheduled in the background.

    Wraps either an asyncio task (an event loop was running when the trace
    finished) or a thread-pool future (no loop was running).
    """

    def __init__(
        self,
        trace_id: str,
        *,
        task: asyncio.Task[Any] | None = None,
        future: concurrent.futures.Future[Any] | None = None,
    ) -> None:
        if (task is None) == (future is None):
            raise ValueError("EvaluationHandle needs exactly one of task or future")
        self.trace_id = trace_id
        self._task = task
        self._future = future

    def done(self) -> bool:
        if self._task is not None:
            return self._task.done()
        assert self._future is not None
        return self._future.done()

    def add_done_callback(self, callback: Callable[["EvaluationHandle"], None]) -> None:
        if self._task is not None:
            self._task.add_done_callback(lambda _t: callback(self))
        else:
            assert self._future is not None
            self._future.add_done_callback(lambda _f: callback(self))

    async def wait(self) -> None:
        """Wait for the evaluation (and its delivery) to finish. Never raises."""
        try:
            if self._task is not None:
                task_loop = self._task.get_loop()
                if task_loop is asyncio.get_running_loop():
                    await asyncio.shield(self._task)
                else:
                    # Scheduled on another thread's loop.
                    bridge = asyncio.run_coroutine_threadsafe(_await_task(self._task), task_loop)
                    await asyncio.wrap_future(bridge)
            else:
                assert self._future is not None
                await asyncio.wrap_future(self._future)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug("Evaluation for trace %s finished with an error", self.trace_id, exc_info=True)

    def result(self, timeout: float | None = None) -> None:
        """Block until a thread-scheduled evaluation finishes."""
        if self._future is not None:
            self._future.result(timeout=timeout)
            return
        raise RuntimeError("Use 'await handle.wait()' for evaluations scheduled on an event loop")


async def _await_task(task: asyncio.Task[Any]) -> Any:
    return await task
