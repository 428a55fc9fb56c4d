"""One dataset row run through the experiment function in an isolated trace context."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

from llm_trace.experiment.context import ExperimentContext
from llm_trace.experiment.result import TrialResult
from llm_trace.helpers import positional_param_names, serialize_value
from llm_trace.manager import TraceManager, get_trace_manager
from llm_trace.models import ExperimentStatus

logger = logging.getLogger(__name__)

TARGET_KEY = "target"


def unpack_row(func: Callable[..., Any], row: Mapping[str, Any]) -> tuple[tuple[Any, ...], dict[str, Any], str | None]:
    """Split a dataset row into call arguments and the target.

    Rows whose keys all name declared parameters are passed by keyword;
    otherwise values are passed positionally in row order.
    """
    inputs = {k: v for k, v in row.items() if k != TARGET_KEY}
    target = row.get(TARGET_KEY)
    if target is not None and not isinstance(target, str):
        target = serialize_value(target)

    try:
        params = inspect.signature(func).parameters
    except (TypeError, ValueError):
        params = None
    if params is not None:
        accepts_kwargs = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())
        keyword_names = {
            name for name, p in params.items()
            if p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
        }
        if inputs and (accepts_kwargs or set(inputs) <= keyword_names):
            return (), inputs, target

    names = positional_param_names(func)
    values = tuple(inputs.values())
    if names is not None and len(values) > len(names):
        logger.warning(
            "Row has %d values but %s declares %d positional parameters",
            len(values),
            getattr(func, "__name__", func),
            len(names),
        )
    return values, {}, target


class Trial:
    """Runs the function once for one row, collecting output, scores and logs."""

    def __init__(
        self,
        data: Mapping[str, Any],
        func: Callable[..., Any],
        experiment_uuid: str | None = None,
        *,
        manager: TraceManager | None = None,
    ) -> None:
        self.data = dict(data)
        self.func = func
        self.experiment_uuid = experiment_uuid
        self.manager = manager
        self.state = ExperimentStatus.PENDING

    async def _call(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(*args, **kwargs)
        result = await asyncio.to_thread(self.func, *args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run(self) -> TrialResult:
        """Never raises for errors of the function itself; those mark the trial failed."""
        self.state = ExperimentStatus.RUNNING
        manager = self.manager or get_trace_manager()
        collector = ExperimentContext(self.experiment_uuid)
        args, kwargs, target = unpack_row(self.func, self.data)
        output: Any = None
        error: BaseException | None = None

        with collector.activate(), manager.context.scope(fresh=True, target=target):
            try:
                output = await self._call(args, kwargs)
                self.state = ExperimentStatus.COMPLETED
            except Exception as exc:
                logger.debug("Trial failed for row %s", self.data, exc_info=True)
                error = exc
                self.state = ExperimentStatus.FAILED
            await collector.wait_for_evaluations()

        return TrialResult(
            input=self.data,
            output=output,
            error=error,
            state=self.state,
            scores=list(collector.scores) if error is None else [],
            logs=list(collector.logs),
        )
