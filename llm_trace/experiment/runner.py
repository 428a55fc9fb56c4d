"""Bounded-concurrency execution of trials."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import TypeVar

from llm_trace.experiment.result import TrialResult
from llm_trace.experiment.trial import Trial

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_N_WORKERS = 10


async def async_pool(
    concurrency: int,
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
) -> AsyncIterator[R]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` in flight.

    A new item starts as soon as any running one settles (sliding window, not
    fixed batches). Results are yielded in completion order. An exception
    from ``fn`` propagates after the remaining tasks are cancelled.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    running: set[asyncio.Task[R]] = set()
    iterator = iter(items)
    exhausted = False
    try:
        while True:
            while not exhausted and len(running) < concurrency:
                try:
                    item = next(iterator)
                except StopIteration:
                    exhausted = True
                    break
                running.add(asyncio.ensure_future(fn(item)))
            if not running:
                return
            done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                yield task.result()
    finally:
        for task in running:
            task.cancel()


class ExperimentRunner:
    """Runs trials through ``async_pool`` and returns results in trial order."""

    def __init__(self, n_workers: int = DEFAULT_N_WORKERS) -> None:
        self.n_workers = max(1, n_workers)

    async def run_trials(self, trials: list[Trial]) -> list[TrialResult]:
        results: list[TrialResult | None] = [None] * len(trials)

        async def _run(indexed: tuple[int, Trial]) -> tuple[int, TrialResult]:
            index, trial = indexed
            return index, await trial.run()

        async for index, result in async_pool(self.n_workers, enumerate(trials), _run):
            results[index] = result
        return [r for r in results if r is not None]

    def __repr__(self) -> str:
        return f"ExperimentRunner(n_workers={self.n_workers})"
