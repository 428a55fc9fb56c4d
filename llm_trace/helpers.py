"""Identifier, clock and serialization helpers shared across llm_trace."""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import json
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

ADJECTIVES: tuple[str, ...] = (
    "able", "bold", "brave", "bright", "calm", "clever", "cosmic", "crisp",
    "eager", "fancy", "gentle", "glad", "grand", "happy", "jolly", "keen",
    "lively", "lucky", "mellow", "nimble", "polite", "proud", "quick", "quiet",
    "rapid", "shiny", "silent", "steady", "swift", "tidy", "vivid", "witty",
)

NOUNS: tuple[str, ...] = (
    "anchor", "badger", "beacon", "canyon", "cedar", "comet", "delta", "ember",
    "falcon", "fjord", "galaxy", "garnet", "harbor", "heron", "island", "jaguar",
    "lagoon", "maple", "meadow", "nebula", "otter", "pepper", "quartz", "raven",
    "river", "saturn", "spruce", "summit", "tundra", "walrus", "willow", "zephyr",
)


def gen_trace_id() -> str:
    """Generate a unique trace id for each traced call."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_date_time_string(dt: datetime) -> str:
    """ISO-8601 UTC timestamp string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def gen_random_name() -> str:
    """Random ``adjective-noun`` name used for experiment runs."""
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}"


def func_name(func: Any) -> str:
    """Best-effort display name for a callable (handles partials and callables)."""
    name = getattr(func, "__name__", None)
    if name:
        return str(name)
    inner = getattr(func, "func", None)
    if inner is not None:
        return func_name(inner)
    return type(func).__name__


def serialize_value(value: Any) -> str:
    """Canonical string form: strings pass through, everything else is JSON.

    Values that cannot be JSON-encoded degrade to ``str(value)``.
    """
    if isinstance(value, str):
        return value
    try:
        if isinstance(value, BaseModel):
            return value.model_dump_json()
        return json.dumps(value, default=_json_default)
    except (TypeError, ValueError):
        logger.debug("serialize_value fell back to str() for %s", type(value).__name__, exc_info=True)
        try:
            return str(value)
        except Exception:
            return f"<unserializable {type(value).__name__}>"


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, datetime):
        return to_date_time_string(value)
    return str(value)


def _serialize_input(value: Any) -> Any:
    # Lists stay lists so chat message histories remain structured.
    if isinstance(value, list):
        return value
    return serialize_value(value)


def positional_param_names(func: Callable[..., Any]) -> list[str] | None:
    """Names of the positional parameters ``func`` declares.

    Returns None when the function accepts ``*args`` (arity is unbounded) and an
    empty list when the signature cannot be inspected.
    """
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return []
    names: list[str] = []
    for param in sig.parameters.values():
        if param.kind is inspect.Parameter.VAR_POSITIONAL:
            return None
        if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            names.append(param.name)
    return names


def extract_inputs(func: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> dict[str, Any]:
    """Map call arguments to parameter names and serialize them for the trace log.

    Falls back to positional indices (``arg0``, ``arg1``…) when the signature
    cannot be inspected or the arguments do not bind.
    """
    try:
        bound = inspect.signature(func).bind_partial(*args, **kwargs)
    except (TypeError, ValueError):
        inputs = {f"arg{i}": _serialize_input(a) for i, a in enumerate(args)}
        inputs.update({k: _serialize_input(v) for k, v in kwargs.items()})
        return inputs

    inputs: dict[str, Any] = {}
    params = bound.signature.parameters
    first = next(iter(params), None)
    for name, value in bound.arguments.items():
        if name == first and name in ("self", "cls"):
            continue
        kind = params[name].kind
        if kind is inspect.Parameter.VAR_POSITIONAL:
            inputs[name] = [_serialize_input(v) for v in value]
        elif kind is inspect.Parameter.VAR_KEYWORD:
            inputs.update({k: _serialize_input(v) for k, v in value.items()})
        else:
            inputs[name] = _serialize_input(value)
    return inputs


def run_sync(factory: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine to completion from sync code, even inside a running loop."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(lambda: asyncio.run(_as_coro(factory))).result()
    return asyncio.run(_as_coro(factory))


async def _as_coro(factory: Callable[[], Awaitable[T]]) -> T:
    return await factory()
