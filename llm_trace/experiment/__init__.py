"""Experiment engine: trials, bounded-concurrency runner, results."""

from llm_trace.experiment.context import (
    ActiveExperimentRun,
    ExperimentContext,
    activate_experiment_run,
    current_experiment_context,
    get_active_experiment_id,
)
from llm_trace.experiment.experiment import Experiment, ExperimentOptions, run_experiment
from llm_trace.experiment.result import (
    ExperimentResult,
    TrialResult,
    calculate_avg_as_string,
    calculate_avg_std_for_experiment,
)
from llm_trace.experiment.runner import ExperimentRunner, async_pool
from llm_trace.experiment.trial import Trial, unpack_row

__all__ = [
    "ActiveExperimentRun",
    "Experiment",
    "ExperimentContext",
    "ExperimentOptions",
    "ExperimentResult",
    "ExperimentRunner",
    "Trial",
    "TrialResult",
    "activate_experiment_run",
    "async_pool",
    "calculate_avg_as_string",
    "calculate_avg_std_for_experiment",
    "current_experiment_context",
    "get_active_experiment_id",
    "run_experiment",
    "unpack_row",
]
