"""Instrument a provider client's request method so each call is a leaf trace.

Usage::

    from openai import AsyncOpenAI
    from llm_trace import patch_provider_client

    client = patch_provider_client(AsyncOpenAI())
    await client.chat.completions.create(model="gpt-4o-mini", messages=[...])

Calls made while an evaluation function runs pass through untraced.
"""

from __future__ import annotations

import functools
import inspect
import logging
import time
from typing import Any, Callable

from llm_trace.context import ActiveTrace
from llm_trace.evaluation import is_evaluating
from llm_trace.manager import TraceManager, get_trace_manager
from llm_trace.merge import merge_trace_data
from llm_trace.providers.base import ProviderAdapter
from llm_trace.providers.openai import OpenAIAdapter
from llm_trace.providers.stream import AsyncTracedStream, TracedStream

logger = logging.getLogger(__name__)

_PATCHED_ATTR = "__llm_trace_patched__"


def _start_leaf(manager: TraceManager, adapter: ProviderAdapter, kwargs: dict[str, Any]) -> ActiveTrace | None:
    try:
        configuration = adapter.extract_configuration(kwargs)
        name = f"llm-{configuration.model}" if configuration.model else "llm"
        with manager.context.scope():
            return manager.create_trace(name, activate=False, configuration=configuration)
    except Exception:
        logger.warning("Could not start provider trace; calling untraced", exc_info=True)
        return None


def record_response(active: ActiveTrace, adapter: ProviderAdapter, response: Any) -> None:
    """Copy output, token counts and cost from a response onto the leaf trace. Never raises."""
    record = active.record
    try:
        data: dict[str, Any] = {"output": adapter.extract_output(response)}
        model = adapter.response_model(response)
        if model:
            data["configuration"] = {"model": model}
        else:
            model = record.configuration.model if record.configuration else None
        prompt, completion, total = adapter.extract_usage(response)
        data.update(input_tokens=prompt, output_tokens=completion, total_tokens=total)
        if model and prompt is not None and completion is not None:
            data["cost"] = adapter.cost_of(model, prompt, completion)
        merge_trace_data(record, data)
    except Exception:
        logger.warning("Could not read provider response for trace %s", record.trace_id, exc_info=True)


def _fail(manager: TraceManager, active: ActiveTrace, error: BaseException) -> None:
    try:
        manager.record_error(active, error)
    finally:
        manager.finalize_trace(active)


async def _settle_leaf(
    manager: TraceManager,
    active: ActiveTrace,
    adapter: ProviderAdapter,
    awaitable: Any,
    started: float,
    stream: bool,
) -> Any:
    try:
        response = await awaitable
    except BaseException as exc:
        _fail(manager, active, exc)
        raise
    if stream:
        return AsyncTracedStream(response, active, adapter, manager, started)
    record_response(active, adapter, response)
    manager.finalize_trace(active)
    return response


def wrap_method(
    method: Callable[..., Any],
    adapter: ProviderAdapter | None = None,
    manager: TraceManager | None = None,
) -> Callable[..., Any]:
    """Wrap a request method (sync or async) so every call becomes a leaf trace.

    SDK methods are often async behind a sync decorator, so a sync call that
    returns an awaitable is traced when that awaitable settles.
    """
    adapter = adapter or OpenAIAdapter()

    def _manager() -> TraceManager:
        return manager if manager is not None else get_trace_manager()

    if inspect.iscoroutinefunction(method):

        @functools.wraps(method)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            mgr = _manager()
            if not mgr.enabled or is_evaluating():
                return await method(*args, **kwargs)
            active = _start_leaf(mgr, adapter, kwargs)
            if active is None:
                return await method(*args, **kwargs)
            started = time.perf_counter()
            try:
                response = await method(*args, **kwargs)
            except BaseException as exc:
                _fail(mgr, active, exc)
                raise
            if kwargs.get("stream"):
                return AsyncTracedStream(response, active, adapter, mgr, started)
            record_response(active, adapter, response)
            mgr.finalize_trace(active)
            return response

        setattr(async_wrapper, _PATCHED_ATTR, True)
        return async_wrapper

    @functools.wraps(method)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        mgr = _manager()
        if not mgr.enabled or is_evaluating():
            return method(*args, **kwargs)
        active = _start_leaf(mgr, adapter, kwargs)
        if active is None:
            return method(*args, **kwargs)
        started = time.perf_counter()
        try:
            response = method(*args, **kwargs)
        except BaseException as exc:
            _fail(mgr, active, exc)
            raise
        if inspect.isawaitable(response):
            return _settle_leaf(mgr, active, adapter, response, started, bool(kwargs.get("stream")))
        if kwargs.get("stream"):
            return TracedStream(response, active, adapter, mgr, started)
        record_response(active, adapter, response)
        mgr.finalize_trace(active)
        return response

    setattr(wrapper, _PATCHED_ATTR, True)
    return wrapper


def patch_provider_client(
    client: Any,
    adapter: ProviderAdapter | None = None,
    manager: TraceManager | None = None,
) -> Any:
    """Replace ``client.chat.completions.create`` with a traced version (once)."""
    completions = client.chat.completions
    original = completions.create
    if getattr(original, _PATCHED_ATTR, False):
        logger.debug("Client %r is already patched", client)
        return client
    completions.create = wrap_method(original, adapter, manager)
    return client
