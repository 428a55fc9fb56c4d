"""Pydantic models for trace logs, evaluation results, experiments and datasets."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from llm_trace.helpers import gen_random_name


TraceStatus = Literal["success", "error"]


# ---------------------------------------------------------------------------
# LLM configuration
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """A canonical chat message."""

    role: str
    content: Any = None


class ModelParams(BaseModel):
    temp: float | None = 1.0
    top_p: float | None = 1.0
    frequency_penalty: float | None = 0.0
    presence_penalty: float | None = 0.0
    max_length: int | None = None
    response_format: Any = None


class LLMInputs(BaseModel):
    """Canonical configuration of one LLM request, independent of the provider."""

    model_config = ConfigDict(protected_namespaces=())

    model: str | None = None
    provider: str | None = None
    model_params: ModelParams | None = None
    messages: list[Message] | None = None
    functions: list[Any] | None = None
    function_call: str | dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Trace log
# ---------------------------------------------------------------------------


class EvaluationResult(BaseModel):
    """One named score produced by an evaluation function."""

    name: str
    score: float
    reason: str | None = None


class TraceLog(BaseModel):
    """One entry per traced invocation.

    Extra keys are allowed so ``trace_insert`` can attach fields the model
    does not declare (e.g. ``images``).
    """

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    trace_id: str
    trace_name: str | None = None
    parent_trace_id: str | None = None
    root_trace_id: str
    start_timestamp: str
    end_timestamp: str | None = None
    latency: float | None = None
    status: TraceStatus = "success"
    inputs: dict[str, Any] | None = None
    output: str | None = None
    output_for_eval_metrics: str | None = None
    target: str | None = None
    error: str | list[str] | None = None
    children: list[str] = Field(default_factory=list)
    depth: int = 0
    execution_order: int = 0
    metadata: dict[str, Any] | None = None
    tags: list[str] | None = None
    end_user_identifier: str | None = None
    session_id: str | None = None
    configuration: LLMInputs | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None
    time_to_first_token: float | None = None
    scores: list[EvaluationResult] | None = None
    evaluation_metric_names: list[str] | None = None
    apply_eval_frac: float | None = None
    experiment_uuid: str | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_trace_id is None

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict, as handed to a log sink."""
        return self.model_dump(mode="json")


# An evaluated log is a trace log whose ``scores`` are filled in.
EvaluatedLog = TraceLog


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------


class ExperimentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TraceStats(BaseModel):
    """Per-trial aggregate of the root trace, used for experiment averages."""

    trace_id: str | None = None
    latency: float | None = 0.0
    input_tokens: int | None = 0
    output_tokens: int | None = 0
    total_tokens: int | None = 0
    cost: float | None = 0.0
    scores: list[EvaluationResult] = Field(default_factory=list)

    @classmethod
    def from_log(cls, log: TraceLog) -> "TraceStats":
        return cls(
            trace_id=log.trace_id,
            latency=log.latency or 0.0,
            input_tokens=log.input_tokens or 0,
            output_tokens=log.output_tokens or 0,
            total_tokens=log.total_tokens or 0,
            cost=log.cost or 0.0,
            scores=list(log.scores or []),
        )


class ExperimentStats(BaseModel):
    parent_trace_stats: list[TraceStats] = Field(default_factory=list)
    dataset_level_stats: list[EvaluationResult] = Field(default_factory=list)
    status: ExperimentStatus | None = None

    @property
    def avg_scores(self) -> dict[str, float]:
        values: dict[str, list[float]] = {}
        for stat in self.parent_trace_stats:
            for score in stat.scores:
                values.setdefault(score.name, []).append(score.score)
        return {name: sum(v) / len(v) for name, v in values.items() if v}


class ExperimentRunRecord(BaseModel):
    """Remote correlation record for one experiment run."""

    id: str
    name: str
    run_name: str
    metadata: dict[str, Any] | None = None
    status: ExperimentStatus = ExperimentStatus.RUNNING
    created_at: str | None = None
    stats: ExperimentStats | None = None


class FeedbackRequest(BaseModel):
    score: float
    trace_id: str | None = None
    name: str | None = None
    target: str | None = None
    comment: str | None = None


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------


class TestCase(BaseModel):
    __test__ = False  # keep pytest from collecting this model

    id: int | str
    inputs: dict[str, str]
    target: str | None = None
    tags: list[str] = Field(default_factory=list)


class TestCaseCollection(BaseModel):
    __test__ = False

    id: int | str
    name: str
    created_at: str | None = None
    last_updated_at: str | None = None
    column_names: list[str] = Field(default_factory=list)
    test_cases: dict[str, TestCase] = Field(default_factory=dict)

    def num_test_cases(self) -> int:
        return len(self.test_cases)

    def get_all_test_case_inputs(self) -> list[dict[str, str]]:
        return [dict(tc.inputs) for tc in self.test_cases.values()]

    def get_all_test_case_targets(self) -> list[str | None]:
        return [tc.target for tc in self.test_cases.values()]

    def get_all_test_inputs_and_targets(self) -> list[dict[str, Any]]:
        """Rows ready for an experiment: inputs plus a ``target`` key when set."""
        rows: list[dict[str, Any]] = []
        for tc in self.test_cases.values():
            row: dict[str, Any] = dict(tc.inputs)
            if tc.target is not None:
                row["target"] = tc.target
            rows.append(row)
        return rows


class CreateTestCase(BaseModel):
    __test__ = False

    inputs: dict[str, str]
    target: str | None = None
    tags: list[str] = Field(default_factory=list)


class CreateTestCaseCollection(BaseModel):
    __test__ = False

    name: str
    column_names: list[str]
    test_cases: list[CreateTestCase]


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, indent=2, default=str)


def create_test_cases(data: list[dict[str, Any]]) -> list[CreateTestCase]:
    """Build test cases from rows; ``target`` and ``tags`` are reserved keys.

    Raises:
        ValueError: If ``tags`` is present but not a list.
    """
    cases: list[CreateTestCase] = []
    for row in data:
        inputs: dict[str, str] = {}
        target: str | None = None
        tags: list[str] = []
        for key, value in row.items():
            if key == "target":
                target = None if value is None else _as_text(value)
            elif key == "tags":
                if not isinstance(value, list):
                    raise ValueError("Tags must be a list of json serializable values.")
                tags = [_as_text(tag) for tag in value]
            else:
                inputs[key] = _as_text(value)
        cases.append(CreateTestCase(inputs=inputs, target=target, tags=tags))
    return cases


def create_test_collection(data: list[dict[str, Any]], name: str | None = None) -> CreateTestCaseCollection:
    """Build a collection payload from rows, generating a name when none is given."""
    if not name:
        name = gen_random_name()
    column_names: list[str] = []
    for row in data:
        for key in row:
            if key not in ("target", "tags") and key not in column_names:
                column_names.append(key)
    return CreateTestCaseCollection(name=name, column_names=column_names, test_cases=create_test_cases(data))
