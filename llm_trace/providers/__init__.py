"""Provider client instrumentation."""

from llm_trace.providers.base import ProviderAdapter, StreamState
from llm_trace.providers.openai import OpenAIAdapter
from llm_trace.providers.patch import patch_provider_client, record_response, wrap_method
from llm_trace.providers.stream import AsyncTracedStream, TracedStream

__all__ = [
    "AsyncTracedStream",
    "OpenAIAdapter",
    "ProviderAdapter",
    "StreamState",
    "TracedStream",
    "patch_provider_client",
    "record_response",
    "wrap_method",
]
