"""Stock evaluation functions for traces that carry a target."""

from __future__ import annotations

from llm_trace.models import TraceLog


def _edit_distance(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(a) + 1))
    for i, cb in enumerate(b, start=1):
        current = [i]
        for j, ca in enumerate(a, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j - 1], current[j - 1], previous[j]) + 1)
        previous = current
    return previous[-1]


def levenshtein(log: TraceLog) -> float:
    """Similarity in [0, 1]: 1 minus edit distance over the longer string's length.

    Raises:
        ValueError: If the log has no target.
    """
    if log.target is None:
        raise ValueError("Levenshtein requires a ground truth")
    output = log.output or ""
    target = log.target
    max_len = max(len(output), len(target))
    if max_len == 0:
        return 1.0
    return 1.0 - _edit_distance(output, target) / max_len


def exact_match(log: TraceLog) -> float | None:
    """1.0 when the output equals the target, else 0.0; opts out without a target."""
    if log.target is None:
        return None
    return 1.0 if (log.output or "") == log.target else 0.0
