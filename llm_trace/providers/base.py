"""Provider adapter interface: translate one vendor's request/response shapes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from llm_trace.models import LLMInputs, Message


@dataclass
class StreamState:
    """What has been reconstructed from a stream so far."""

    content: list[str] = field(default_factory=list)
    tool_calls: dict[int, dict[str, Any]] = field(default_factory=dict)
    model: str | None = None
    usage: Any = None
    chunk_count: int = 0


class ProviderAdapter(ABC):
    """Vendor-specific translation used by the provider patch."""

    provider: str = "unknown"

    @abstractmethod
    def extract_configuration(self, params: Mapping[str, Any]) -> LLMInputs:
        """Canonical configuration from the request keyword arguments."""

    @abstractmethod
    def convert_message(self, raw: Any) -> Message:
        ...

    @abstractmethod
    def extract_output(self, response: Any) -> str:
        ...

    @abstractmethod
    def cost_of(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Cost in USD. Unknown models return 0.0 with a warning, never raise."""

    def extract_usage(self, response: Any) -> tuple[int | None, int | None, int | None]:
        """``(prompt, completion, total)`` token counts; Nones when absent."""
        return None, None, None

    def response_model(self, response: Any) -> str | None:
        return None

    # Streaming

    @abstractmethod
    def reduce_chunk(self, state: StreamState, chunk: Any) -> None:
        """Fold one stream chunk into ``state``."""

    def chunk_model(self, chunk: Any) -> str | None:
        return None

    def stream_output(self, state: StreamState) -> str:
        return "".join(state.content)
