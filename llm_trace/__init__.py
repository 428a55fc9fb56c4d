"""Client-side tracing and experiments for LLM applications.

Wrap functions with ``trace``; every call becomes a trace log linked into the
live call tree, enriched with inputs, output, timing and (for provider calls)
tokens and cost, optionally scored by evaluation functions, and delivered in
the background to a log sink.

Usage:
    from llm_trace import trace, trace_insert, patch_provider_client, run_experiment

    client = patch_provider_client(AsyncOpenAI())

    @trace(tags=["prod"])
    async def answer(question: str) -> str:
        trace_insert({"metadata": {"source": "faq"}})
        response = await client.chat.completions.create(model="gpt-4o-mini", messages=[...])
        return response.choices[0].message.content

    # Replay over a dataset with bounded concurrency
    result = await run_experiment("faq", rows, answer, n_workers=5).run()
    print(result.success_rate, result.average_scores)

Configuration comes from ``LLM_TRACE_*`` environment variables (see
``llm_trace.config``) or ``configure(...)`` at runtime.
"""

from llm_trace.collaborators import (
    ControlPlaneClient,
    DatasetSource,
    FileDatasetSource,
    LocalControlPlane,
)
from llm_trace.config import TraceConfig
from llm_trace.context import ExecutionContext
from llm_trace.errors import DatasetNotFoundError, ExperimentError, LogDeliveryError, TraceError
from llm_trace.evaluation import EvaluationRunner, is_evaluating
from llm_trace.experiment import (
    Experiment,
    ExperimentOptions,
    ExperimentResult,
    TrialResult,
    get_active_experiment_id,
    run_experiment,
)
from llm_trace.manager import TraceManager, configure, get_trace_manager, set_trace_manager
from llm_trace.models import (
    EvaluatedLog,
    EvaluationResult,
    ExperimentStatus,
    LLMInputs,
    TraceLog,
    create_test_collection,
    create_test_cases,
)
from llm_trace.providers import OpenAIAdapter, ProviderAdapter, patch_provider_client, wrap_method
from llm_trace.sinks import HttpLogSink, JsonlLogSink, LogSink, MemoryLogSink
from llm_trace.tracing import TraceOptions, get_current_trace_id, trace, trace_insert

__all__ = [
    "ControlPlaneClient",
    "DatasetNotFoundError",
    "DatasetSource",
    "EvaluatedLog",
    "EvaluationResult",
    "EvaluationRunner",
    "ExecutionContext",
    "Experiment",
    "ExperimentError",
    "ExperimentOptions",
    "ExperimentResult",
    "ExperimentStatus",
    "FileDatasetSource",
    "HttpLogSink",
    "JsonlLogSink",
    "LLMInputs",
    "LocalControlPlane",
    "LogDeliveryError",
    "LogSink",
    "MemoryLogSink",
    "OpenAIAdapter",
    "ProviderAdapter",
    "TraceConfig",
    "TraceError",
    "TraceLog",
    "TraceManager",
    "TraceOptions",
    "TrialResult",
    "configure",
    "create_test_cases",
    "create_test_collection",
    "get_active_experiment_id",
    "get_current_trace_id",
    "get_trace_manager",
    "is_evaluating",
    "patch_provider_client",
    "run_experiment",
    "set_trace_manager",
    "trace",
    "trace_insert",
    "wrap_method",
]
