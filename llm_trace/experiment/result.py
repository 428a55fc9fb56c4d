"""Trial and experiment results, plus the summary statistics printed after a run."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from llm_trace.models import EvaluationResult, ExperimentStats, ExperimentStatus, TraceLog, TraceStats


@dataclass
class TrialResult:
    """Outcome of one dataset row run through the experiment function."""

    input: dict[str, Any]
    output: Any = None
    error: BaseException | None = None
    state: ExperimentStatus = ExperimentStatus.PENDING
    scores: list[EvaluationResult] = field(default_factory=list)
    logs: list[TraceLog] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == ExperimentStatus.COMPLETED


def calculate_avg_as_string(values: Sequence[float | None] | None, is_cost: bool = False) -> str:
    """Mean formatted to 2 decimals (5 for cost); ``N/A`` when there is nothing to average."""
    digits = 5 if is_cost else 2
    filtered = [v for v in values or [] if v is not None]
    if not filtered:
        return "N/A"
    return f"{sum(filtered) / len(filtered):.{digits}f}"


def calculate_avg_std_for_experiment(stats: ExperimentStats) -> dict[str, str]:
    trace_stats = stats.parent_trace_stats
    summary = {
        "latency": calculate_avg_as_string([s.latency or 0 for s in trace_stats]),
        "input_tokens": calculate_avg_as_string([s.input_tokens or 0 for s in trace_stats]),
        "output_tokens": calculate_avg_as_string([s.output_tokens or 0 for s in trace_stats]),
        "total_tokens": calculate_avg_as_string([s.total_tokens or 0 for s in trace_stats]),
        "cost": calculate_avg_as_string([s.cost or 0 for s in trace_stats], is_cost=True),
    }
    by_name: dict[str, list[float]] = {}
    for stat in trace_stats:
        for score in stat.scores:
            by_name.setdefault(score.name, []).append(score.score)
    for name, values in by_name.items():
        summary[name] = calculate_avg_as_string(values)
    return summary


@dataclass
class ExperimentResult:
    """Aggregated results of one experiment run. All views are derived from ``results``."""

    name: str
    results: list[TrialResult]
    metadata: dict[str, Any] | None = None
    run_id: str | None = None
    run_name: str | None = None
    dataset_level_stats: list[EvaluationResult] = field(default_factory=list)
    stats: ExperimentStats | None = None

    @property
    def success_rate(self) -> float:
        """Percentage of trials that completed."""
        if not self.results:
            return 0.0
        completed = sum(1 for r in self.results if r.succeeded)
        return completed / len(self.results) * 100

    @property
    def errors(self) -> list[BaseException]:
        return [r.error for r in self.results if r.error is not None]

    @property
    def errors_string(self) -> str:
        return ", ".join(str(e) for e in self.errors)

    @property
    def average_scores(self) -> dict[str, float]:
        by_name: dict[str, list[float]] = {}
        for result in self.results:
            for score in result.scores:
                by_name.setdefault(score.name, []).append(score.score)
        return {name: sum(values) / len(values) for name, values in by_name.items()}

    @property
    def logs(self) -> list[TraceLog]:
        """Root logs of every trial, in trial order."""
        return [log for result in self.results for log in result.logs]

    def summary(self) -> dict[str, str]:
        """Averages as printed after a run, including dataset-level scores."""
        stats = self.stats or ExperimentStats(
            parent_trace_stats=[TraceStats.from_log(log) for log in self.logs],
            dataset_level_stats=self.dataset_level_stats,
        )
        summary = calculate_avg_std_for_experiment(stats)
        for result in self.dataset_level_stats:
            summary[result.name] = f"{result.score:.2f}"
        return summary
