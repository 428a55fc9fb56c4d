"""Adapter for the OpenAI chat completions shape.

Works on SDK objects and on plain dicts, so any OpenAI-compatible client
(including a test double returning dicts) can be patched.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import litellm
from pydantic import BaseModel

from llm_trace.models import LLMInputs, Message, ModelParams
from llm_trace.providers.base import ProviderAdapter, StreamState

logger = logging.getLogger(__name__)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _parse_args(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.debug("Tool call arguments are not JSON; storing them as a string")
        return raw


def _response_format(value: Any) -> Any:
    if isinstance(value, type) and issubclass(value, BaseModel):
        return {"type": "json_schema", "name": value.__name__, "schema": value.model_json_schema()}
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _to_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return value


def format_tool_calls(tool_calls: Any) -> str:
    formatted: list[Any] = []
    for call in tool_calls or []:
        if _get(call, "type", "function") == "function":
            function = _get(call, "function")
            formatted.append({
                "id": _get(call, "id"),
                "type": "function",
                "function": {
                    "name": _get(function, "name"),
                    "arguments": _parse_args(_get(function, "arguments")),
                },
            })
        else:
            formatted.append(_to_plain(call))
    return json.dumps(formatted, indent=4, default=str)


def format_function_call(function_call: Any) -> str:
    body = {"name": _get(function_call, "name"), "arguments": _parse_args(_get(function_call, "arguments"))}
    return f"```{json.dumps(body, indent=4, default=str)}```"


class OpenAIAdapter(ProviderAdapter):
    provider = "openai"

    def extract_configuration(self, params: Mapping[str, Any]) -> LLMInputs:
        functions = params.get("functions")
        if not functions and params.get("tools"):
            functions = [_get(tool, "function", tool) for tool in params["tools"]]
        functions = [_to_plain(f) for f in functions or []]
        function_call = params.get("function_call") or params.get("tool_choice")
        if function_call is None and functions:
            function_call = "auto"

        return LLMInputs(
            model=params.get("model"),
            provider=self.provider,
            messages=[self.convert_message(m) for m in params.get("messages") or []],
            functions=functions,
            function_call=_to_plain(function_call),
            model_params=ModelParams(
                temp=params.get("temperature", 1.0),
                top_p=params.get("top_p", 1.0),
                frequency_penalty=params.get("frequency_penalty", 0.0),
                presence_penalty=params.get("presence_penalty", 0.0),
                max_length=params.get("max_tokens") or params.get("max_completion_tokens"),
                response_format=_response_format(params.get("response_format")),
            ),
        )

    def convert_message(self, raw: Any) -> Message:
        role = _get(raw, "role", "user")
        tool_calls = _get(raw, "tool_calls")
        if role == "assistant" and tool_calls:
            try:
                return Message(role=role, content=format_tool_calls(tool_calls))
            except (TypeError, ValueError):
                logger.warning("Could not format assistant tool calls", exc_info=True)
                return Message(role=role, content=str(raw))
        if role == "tool":
            content = json.dumps({"tool_call_id": _get(raw, "tool_call_id"), "content": _get(raw, "content")}, default=str)
            return Message(role=role, content=content)
        return Message(role=role, content=_get(raw, "content"))

    def extract_output(self, response: Any) -> str:
        choices = _get(response, "choices") or []
        if not choices:
            return ""
        message = _get(choices[0], "message")
        if _get(message, "function_call"):
            return format_function_call(_get(message, "function_call"))
        if _get(message, "tool_calls"):
            return format_tool_calls(_get(message, "tool_calls"))
        content = _get(message, "content")
        if content is None:
            return ""
        return content.strip() if isinstance(content, str) else json.dumps(content, default=str)

    def extract_usage(self, response: Any) -> tuple[int | None, int | None, int | None]:
        usage = _get(response, "usage")
        if usage is None:
            return None, None, None
        return _get(usage, "prompt_tokens"), _get(usage, "completion_tokens"), _get(usage, "total_tokens")

    def response_model(self, response: Any) -> str | None:
        return _get(response, "model")

    def cost_of(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        try:
            prompt_cost, completion_cost = litellm.cost_per_token(
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )
            return float(prompt_cost) + float(completion_cost)
        except Exception as exc:
            logger.warning("No cost data for model %s; recording cost 0.0 (%s)", model, exc)
            return 0.0

    # Streaming

    def chunk_model(self, chunk: Any) -> str | None:
        return _get(chunk, "model")

    def reduce_chunk(self, state: StreamState, chunk: Any) -> None:
        state.chunk_count += 1
        if state.model is None:
            state.model = self.chunk_model(chunk)
        usage = _get(chunk, "usage")
        if usage is not None:
            state.usage = usage
        choices = _get(chunk, "choices") or []
        if not choices:
            return
        delta = _get(choices[0], "delta")
        content = _get(delta, "content")
        if content:
            state.content.append(content)
        for call in _get(delta, "tool_calls") or []:
            index = _get(call, "index", 0)
            slot = state.tool_calls.setdefault(
                index, {"id": None, "type": "function", "function": {"name": "", "arguments": ""}}
            )
            if _get(call, "id"):
                slot["id"] = _get(call, "id")
            function = _get(call, "function")
            if _get(function, "name"):
                slot["function"]["name"] += _get(function, "name")
            if _get(function, "arguments"):
                slot["function"]["arguments"] += _get(function, "arguments")

    def stream_output(self, state: StreamState) -> str:
        if state.tool_calls:
            return format_tool_calls([state.tool_calls[i] for i in sorted(state.tool_calls)])
        return "".join(state.content)
