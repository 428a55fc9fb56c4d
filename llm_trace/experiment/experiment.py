"""Experiments: replay a traced function over a dataset and report aggregate stats.

Usage::

    from llm_trace import run_experiment, trace
    from llm_trace.evals import exact_match

    @trace(eval_funcs=[exact_match])
    async def greet(name: str) -> str:
        return f"Hello {name}"

    experiment = run_experiment(
        "greetings",
        [{"name": "Foo", "target": "Hi Foo"}, {"name": "Bar", "target": "Hello Bar"}],
        greet,
    )
    result = await experiment.run()
    result.success_rate      # 100.0
    result.average_scores    # {"exact_match": 0.5}
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from llm_trace.collaborators import ControlPlaneClient, DatasetSource, FileDatasetSource, LocalControlPlane
from llm_trace.errors import DatasetNotFoundError, ExperimentError
from llm_trace.evaluation import EvalFunction
from llm_trace.experiment.context import ActiveExperimentRun
from llm_trace.experiment.result import ExperimentResult, TrialResult, calculate_avg_std_for_experiment
from llm_trace.experiment.runner import DEFAULT_N_WORKERS, ExperimentRunner
from llm_trace.experiment.trial import Trial
from llm_trace.helpers import gen_random_name, run_sync
from llm_trace.manager import TraceManager, get_trace_manager
from llm_trace.models import EvaluationResult, ExperimentStats, ExperimentStatus, TraceStats
from llm_trace.tracing import PINNED_MANAGER_ATTR

logger = logging.getLogger(__name__)


@dataclass
class ExperimentOptions:
    n_trials: int = 1
    metadata: dict[str, Any] | None = None
    n_workers: int = DEFAULT_N_WORKERS
    dataset_level_eval_funcs: Sequence[EvalFunction] = field(default_factory=tuple)


class Experiment:
    """One experiment definition; each ``run()`` is a separate run with its own id."""

    def __init__(
        self,
        name: str,
        dataset: str | int | Sequence[Mapping[str, Any]],
        func: Callable[..., Any],
        options: ExperimentOptions | None = None,
        *,
        manager: TraceManager | None = None,
        control_plane: ControlPlaneClient | None = None,
        dataset_source: DatasetSource | None = None,
    ) -> None:
        self.name = name
        self.dataset = dataset
        self.func = func
        self.options = options or ExperimentOptions()
        self.manager = manager
        self.control_plane = control_plane
        self.dataset_source = dataset_source
        self.runner = ExperimentRunner(self.options.n_workers)
        self.state = ExperimentStatus.PENDING
        self.run_name: str | None = None
        self.result: ExperimentResult | None = None

    def _manager(self) -> TraceManager:
        return self.manager or get_trace_manager()

    def _control_plane(self) -> ControlPlaneClient:
        if self.control_plane is None:
            self.control_plane = LocalControlPlane.from_config(self._manager().config)
        return self.control_plane

    def _dataset_source(self) -> DatasetSource:
        if self.dataset_source is None:
            config = self._manager().config
            self.dataset_source = FileDatasetSource(config.data_root / config.project_name / "datasets")
        return self.dataset_source

    def _run_metadata(self) -> dict[str, Any] | None:
        metadata = dict(self.options.metadata or {})
        if isinstance(self.dataset, (str, int)):
            metadata["Dataset"] = str(self.dataset)
        return metadata or None

    async def determine_dataset(self) -> list[dict[str, Any]]:
        """Rows to run: the in-memory list, or the named collection's inputs and targets.

        Raises:
            DatasetNotFoundError: If a named collection cannot be resolved.
        """
        if not isinstance(self.dataset, (str, int)):
            return [dict(row) for row in self.dataset]
        logger.info("Fetching test collection: %s", self.dataset)
        collection = await self._dataset_source().get_collection(self.dataset)
        if collection is None:
            raise DatasetNotFoundError(f"Collection {self.dataset} not found")
        logger.info("Fetched %d test cases from collection: %s", collection.num_test_cases(), self.dataset)
        return collection.get_all_test_inputs_and_targets()

    @staticmethod
    def determine_state(results: Sequence[TrialResult]) -> ExperimentStatus:
        if any(r.state != ExperimentStatus.COMPLETED for r in results):
            return ExperimentStatus.FAILED
        return ExperimentStatus.COMPLETED

    def _check_pinned_manager(self, manager: TraceManager) -> None:
        # Trials isolate trace scopes on the experiment's manager only.
        pinned = getattr(self.func, PINNED_MANAGER_ATTR, None)
        if pinned is not None and pinned is not manager:
            logger.warning(
                "%s is traced with a different manager than experiment %s; "
                "its traces will not be isolated per trial or tagged with the run",
                getattr(self.func, "__name__", self.func),
                self.name,
            )

    async def run(self, run_name: str | None = None) -> ExperimentResult:
        """Run every row ``n_trials`` times and aggregate.

        Trial failures are captured per trial. Only run-level problems raise:
        ``DatasetNotFoundError`` for a missing collection, ``ExperimentError``
        for anything else.
        """
        self.run_name = run_name or gen_random_name()
        self.state = ExperimentStatus.RUNNING
        manager = self._manager()
        self._check_pinned_manager(manager)
        metadata = self._run_metadata()
        run = await self._control_plane().create_experiment_run(self.name, self.run_name, metadata)
        result: ExperimentResult | None = None

        async with ActiveExperimentRun(run.id):
            try:
                rows = await self.determine_dataset()
                trials = [
                    Trial(row, self.func, run.id, manager=manager)
                    for row in rows
                    for _ in range(max(1, self.options.n_trials))
                ]
                results = await self.runner.run_trials(trials)
                self.state = self.determine_state(results)
                result = ExperimentResult(
                    name=self.name,
                    results=results,
                    metadata=metadata,
                    run_id=run.id,
                    run_name=self.run_name,
                )
                self.result = result
                return result
            except DatasetNotFoundError:
                self.state = ExperimentStatus.FAILED
                raise
            except Exception as exc:
                self.state = ExperimentStatus.FAILED
                raise ExperimentError(f"Experiment failed: {exc}", original=exc) from exc
            finally:
                await self._log_experiment_results(run.id, result)

    def run_sync(self, run_name: str | None = None) -> ExperimentResult:
        """Blocking ``run()`` for callers without an event loop."""
        return run_sync(lambda: self.run(run_name))

    async def get_dataset_level_stats(self, result: ExperimentResult | None) -> list[EvaluationResult]:
        funcs = list(self.options.dataset_level_eval_funcs)
        if not funcs or result is None:
            return []
        return await self._manager().evaluator.run_dataset_level(result.logs, funcs)

    async def _log_experiment_results(self, run_id: str, result: ExperimentResult | None) -> None:
        try:
            dataset_level_stats = await self.get_dataset_level_stats(result)
            await self._manager().flush()
            logs = result.logs if result is not None else []
            stats = ExperimentStats(
                parent_trace_stats=[TraceStats.from_log(log) for log in logs],
                dataset_level_stats=dataset_level_stats,
                status=self.state,
            )
            final = await self._control_plane().finish_experiment_run(run_id, stats)
        except Exception:
            logger.error("Could not record results of experiment %s run %s", self.name, self.run_name, exc_info=True)
            return

        summary = calculate_avg_std_for_experiment(final)
        for score in dataset_level_stats:
            summary[score.name] = f"{score.score:.2f}"
        logger.info("Experiment %s Run %s avg. stats:\n%s", self.name, self.run_name, json.dumps(summary, indent=2))
        if result is not None:
            result.dataset_level_stats = dataset_level_stats
            result.stats = final
            logger.info("Success rate: %s%%", result.success_rate)
            if result.errors_string:
                logger.info("Errors: %s", result.errors_string)


def run_experiment(
    name: str,
    data: str | int | Sequence[Mapping[str, Any]],
    func: Callable[..., Any],
    *,
    n_trials: int = 1,
    metadata: Mapping[str, Any] | None = None,
    n_workers: int = DEFAULT_N_WORKERS,
    dataset_level_eval_funcs: Sequence[EvalFunction] | None = None,
    manager: TraceManager | None = None,
    control_plane: ControlPlaneClient | None = None,
    dataset_source: DatasetSource | None = None,
) -> Experiment:
    """Define an experiment; call ``.run()`` (or ``.run_sync()``) to execute it."""
    options = ExperimentOptions(
        n_trials=n_trials,
        metadata=dict(metadata) if metadata else None,
        n_workers=n_workers,
        dataset_level_eval_funcs=tuple(dataset_level_eval_funcs or ()),
    )
    return Experiment(
        name,
        data,
        func,
        options,
        manager=manager,
        control_plane=control_plane,
        dataset_source=dataset_source,
    )
