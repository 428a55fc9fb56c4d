"""The ``trace`` decorator and the public insert/lookup helpers.

Usage::

    from llm_trace import trace, trace_insert

    @trace(eval_funcs=[exact_match])
    async def answer(question: str) -> str:
        trace_insert({"metadata": {"retriever": "bm25"}})
        ...

    greet = trace("greet", lambda name: f"Hello {name}")

Sync functions, coroutine functions and methods are supported. A traced call
that raises re-raises the same exception after its trace is finalized.
"""

from __future__ import annotations

import functools
import inspect
import logging
import random
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar, overload

from llm_trace.context import ActiveTrace
from llm_trace.evaluation import EvalFunction, is_evaluating
from llm_trace.helpers import extract_inputs, positional_param_names, serialize_value
from llm_trace.manager import TraceManager, get_trace_manager

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Set on traced functions; holds the ``manager=`` they were pinned to, or None.
PINNED_MANAGER_ATTR = "__llm_trace_manager__"


@dataclass(frozen=True)
class TraceOptions:
    """Per-function tracing options.

    ``apply_eval_frac`` and ``sample_rate`` are probabilities in [0, 1].
    ``accept_trailing_target`` turns on the legacy convention where one extra
    trailing string argument beyond the declared parameters is taken as the
    target and not passed to the function.
    """

    metadata: Mapping[str, Any] | None = None
    tags: Sequence[str] | None = None
    end_user_identifier: str | None = None
    session_id: str | None = None
    eval_funcs: Sequence[EvalFunction] = field(default_factory=tuple)
    eval_func_names: Sequence[str] | None = None
    target: Any = None
    output_projector: Callable[[Any], Any] | None = None
    apply_eval_frac: float = 1.0
    sample_rate: float = 1.0
    accept_trailing_target: bool = False


def _resolve_manager(manager: TraceManager | None) -> TraceManager:
    return manager if manager is not None else get_trace_manager()


def _split_trailing_target(
    func: Callable[..., Any], args: tuple[Any, ...]
) -> tuple[tuple[Any, ...], str | None]:
    names = positional_param_names(func)
    if names is None:
        return args, None
    if len(args) > len(names) and isinstance(args[-1], str):
        return args[:-1], args[-1]
    return args, None


def _start(
    manager: TraceManager,
    name: str,
    func: Callable[..., Any],
    options: TraceOptions,
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
) -> tuple[ActiveTrace, tuple[Any, ...]]:
    target = options.target
    if options.accept_trailing_target:
        args, trailing = _split_trailing_target(func, args)
        if target is None:
            target = trailing
    if target is not None and not isinstance(target, str):
        target = serialize_value(target)

    active = manager.create_trace(
        name,
        target=target,
        eval_funcs=options.eval_funcs,
        apply_eval_frac=options.apply_eval_frac,
        metadata=options.metadata,
        tags=options.tags,
        end_user_identifier=options.end_user_identifier,
        session_id=options.session_id,
        evaluation_metric_names=list(options.eval_func_names) if options.eval_func_names else None,
    )
    try:
        active.record.inputs = extract_inputs(func, args, kwargs)
    except Exception:
        logger.debug("Could not capture inputs for %s", name, exc_info=True)
    return active, args


def _bypass(manager: TraceManager, options: TraceOptions) -> bool:
    if not manager.enabled or is_evaluating():
        return True
    return options.sample_rate < 1.0 and random.random() >= options.sample_rate


def _complete(manager: TraceManager, active: ActiveTrace, options: TraceOptions, result: Any) -> None:
    try:
        manager.set_output(active, result, options.output_projector)
    finally:
        manager.finalize_trace(active)


def _fail(manager: TraceManager, active: ActiveTrace, error: BaseException) -> None:
    try:
        manager.record_error(active, error)
    finally:
        manager.finalize_trace(active)


async def _settle(
    manager: TraceManager, active: ActiveTrace, options: TraceOptions, awaitable: Any
) -> Any:
    with manager.context.resume(active):
        try:
            result = await awaitable
        except BaseException as exc:
            _fail(manager, active, exc)
            raise
        _complete(manager, active, options, result)
        return result


def _wrap(func: F, name: str, options: TraceOptions, manager: TraceManager | None) -> F:
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            mgr = _resolve_manager(manager)
            if _bypass(mgr, options):
                return await func(*args, **kwargs)
            with mgr.context.scope():
                try:
                    active, call_args = _start(mgr, name, func, options, args, kwargs)
                except Exception:
                    logger.warning("Could not start trace %s; calling it untraced", name, exc_info=True)
                    return await func(*args, **kwargs)
                try:
                    result = await func(*call_args, **kwargs)
                except BaseException as exc:
                    _fail(mgr, active, exc)
                    raise
                _complete(mgr, active, options, result)
                return result

        setattr(async_wrapper, PINNED_MANAGER_ATTR, manager)
        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        mgr = _resolve_manager(manager)
        if _bypass(mgr, options):
            return func(*args, **kwargs)
        with mgr.context.scope():
            try:
                active, call_args = _start(mgr, name, func, options, args, kwargs)
            except Exception:
                logger.warning("Could not start trace %s; calling it untraced", name, exc_info=True)
                return func(*args, **kwargs)
            try:
                result = func(*call_args, **kwargs)
            except BaseException as exc:
                _fail(mgr, active, exc)
                raise
            if inspect.isawaitable(result):
                # Lambdas, partials and callable objects around coroutines.
                mgr.context.deactivate(active)
                return _settle(mgr, active, options, result)
            _complete(mgr, active, options, result)
            return result

    setattr(wrapper, PINNED_MANAGER_ATTR, manager)
    return wrapper  # type: ignore[return-value]


@overload
def trace(name: Callable[..., Any]) -> Callable[..., Any]: ...


@overload
def trace(
    name: str | None = None,
    func: Callable[..., Any] | None = None,
    *,
    options: TraceOptions | None = None,
    manager: TraceManager | None = None,
    **option_fields: Any,
) -> Any: ...


def trace(
    name: Any = None,
    func: Callable[..., Any] | None = None,
    *,
    options: TraceOptions | None = None,
    manager: TraceManager | None = None,
    **option_fields: Any,
) -> Any:
    """Trace every call of a function.

    Forms::

        @trace
        @trace("custom-name", tags=["prod"])
        @trace(eval_funcs=[levenshtein], target="expected")
        traced = trace("greet", greet)

    Keyword arguments are ``TraceOptions`` fields. ``manager`` pins a specific
    ``TraceManager``; by default the process manager is looked up at call time.
    """
    if callable(name) and func is None:
        func, name = name, None
    opts = options or TraceOptions()
    if option_fields:
        opts = replace(opts, **option_fields)

    def decorator(fn: F) -> F:
        trace_name = name or getattr(fn, "__name__", None) or "anonymous"
        return _wrap(fn, trace_name, opts, manager)

    if func is not None:
        return decorator(func)
    return decorator


def trace_insert(
    data: Mapping[str, Any],
    trace_id: str | None = None,
    *,
    manager: TraceManager | None = None,
) -> bool:
    """Merge ``data`` into the current trace (or ``trace_id``). Warns and returns False if none."""
    return _resolve_manager(manager).insert_trace_data(data, trace_id)


def get_current_trace_id(*, manager: TraceManager | None = None) -> str | None:
    return _resolve_manager(manager).get_current_trace_id()
