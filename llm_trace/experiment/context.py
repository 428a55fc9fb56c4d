"""Per-trial collection state and the active experiment marker.

Both live in context variables, so concurrent trials each see their own
``ExperimentContext`` and nothing leaks once a run ends.
"""

from __future__ import annotations

import asyncio
import contextvars
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Literal

from llm_trace.evaluation import EvaluationHandle
from llm_trace.models import EvaluationResult, TraceLog

_active_experiment_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "llm_trace_active_experiment_id", default=None
)
_current_experiment_context: contextvars.ContextVar["ExperimentContext | None"] = contextvars.ContextVar(
    "llm_trace_experiment_context", default=None
)


def get_active_experiment_id() -> str | None:
    """Correlation id of the experiment run in progress, if any."""
    return _active_experiment_id.get()


def current_experiment_context() -> "ExperimentContext | None":
    return _current_experiment_context.get()


class ActiveExperimentRun:
    """Bind a run id as the active experiment for the enclosed block."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> "ActiveExperimentRun":
        if get_active_experiment_id() != self.run_id:
            self._token = _active_experiment_id.set(self.run_id)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: Any,
    ) -> Literal[False]:
        if self._token is not None:
            _active_experiment_id.reset(self._token)
            self._token = None
        return False

    async def __aenter__(self) -> "ActiveExperimentRun":
        return self.__enter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: Any,
    ) -> Literal[False]:
        return self.__exit__(exc_type, exc, tb)


def activate_experiment_run(run_id: str) -> ActiveExperimentRun:
    return ActiveExperimentRun(run_id)


class ExperimentContext:
    """Logs, scores and pending evaluations gathered while one trial runs."""

    def __init__(self, experiment_uuid: str | None = None) -> None:
        self.experiment_uuid = experiment_uuid
        self.logs: list[TraceLog] = []
        self.scores: list[EvaluationResult] = []
        self._pending: list[EvaluationHandle] = []
        self._lock = threading.Lock()

    def add_log(self, log: TraceLog) -> None:
        with self._lock:
            self.logs.append(log)

    def add_scores(self, scores: list[EvaluationResult]) -> None:
        with self._lock:
            self.scores.extend(scores)

    def add_pending(self, handle: EvaluationHandle) -> None:
        with self._lock:
            self._pending.append(handle)

    async def wait_for_evaluations(self) -> None:
        """Await every evaluation scheduled by this trial, including late ones."""
        while True:
            with self._lock:
                pending = [h for h in self._pending if not h.done()]
            if not pending:
                return
            await asyncio.gather(*(h.wait() for h in pending))

    @contextmanager
    def activate(self) -> Iterator["ExperimentContext"]:
        token = _current_experiment_context.set(self)
        try:
            yield self
        finally:
            _current_experiment_context.reset(token)
