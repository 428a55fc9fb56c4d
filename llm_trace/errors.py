"""Structured error types for llm_trace.

Only the experiment layer raises these to application code. Everything else
that goes wrong inside instrumentation is logged and swallowed, so a traced
function never fails because tracing failed:

    from llm_trace.errors import DatasetNotFoundError

    try:
        await experiment.run()
    except DatasetNotFoundError:
        # The named collection does not exist; nothing was run
        ...
"""

from __future__ import annotations


class TraceError(Exception):
    """Base for all llm_trace errors."""

    def __init__(self, message: str, original: BaseException | None = None) -> None:
        super().__init__(message)
        self.original = original


class DatasetNotFoundError(TraceError):
    """A named dataset could not be resolved; the experiment cannot start."""


class LogDeliveryError(TraceError):
    """A log sink rejected or failed to receive a batch."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.status_code = status_code


class ExperimentError(TraceError):
    """An experiment failed as a whole (as opposed to individual trials failing)."""
