"""Typed runtime configuration for llm_trace."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

TRACE_ENABLED_ENV = "LLM_TRACE_ENABLED"
SINK_ENV = "LLM_TRACE_SINK"
DATA_ROOT_ENV = "LLM_TRACE_DATA_ROOT"
PROJECT_ENV = "LLM_TRACE_PROJECT"
API_BASE_ENV = "LLM_TRACE_API_BASE"
API_KEY_ENV = "LLM_TRACE_API_KEY"
BATCH_SIZE_ENV = "LLM_TRACE_BATCH_SIZE"
BATCH_INTERVAL_ENV = "LLM_TRACE_BATCH_INTERVAL_S"
WORKER_INTERVAL_ENV = "LLM_TRACE_WORKER_INTERVAL_S"
RETRY_COUNT_ENV = "LLM_TRACE_RETRY_COUNT"
RETRY_DELAY_ENV = "LLM_TRACE_RETRY_DELAY_S"

DEFAULT_DATA_ROOT = Path.home() / "projects" / "data"

SinkKind = Literal["memory", "jsonl", "http", "none"]

_TRUE = {"1", "true", "yes", "on", ""}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    logger.warning("Invalid %s=%r; expected on/off boolean. Defaulting to %s.", name, raw, default)
    return default


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected integer. Defaulting to %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Invalid %s=%r; must be >= %d. Defaulting to %d.", name, raw, minimum, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected number. Defaulting to %s.", name, raw, default)
        return default
    if value < 0:
        logger.warning("Invalid %s=%r; must be >= 0. Defaulting to %s.", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class TraceConfig:
    """Runtime policy/config resolved once and passed explicitly to the TraceManager."""

    enabled: bool = True
    sink: SinkKind = "jsonl"
    data_root: Path = field(default_factory=lambda: DEFAULT_DATA_ROOT)
    project: str | None = None
    api_base: str | None = None
    api_key: str | None = None
    batch_size: int = 100
    batch_interval_s: float = 1.0
    worker_interval_s: float = 1.0
    retry_count: int = 3
    retry_delay_s: float = 1.0

    @property
    def project_name(self) -> str:
        """Project name, lazily resolving cwd if not configured."""
        return self.project or Path.cwd().name

    @classmethod
    def from_env(cls) -> "TraceConfig":
        """Build typed config from LLM_TRACE_* environment variables."""
        sink_raw = os.environ.get(SINK_ENV, "jsonl").strip().lower()
        if sink_raw in {"memory", "jsonl", "http", "none"}:
            sink: SinkKind = sink_raw  # type: ignore[assignment]
        else:
            logger.warning(
                "Invalid %s=%r; expected memory/jsonl/http/none. Defaulting to jsonl.",
                SINK_ENV,
                sink_raw,
            )
            sink = "jsonl"

        data_root_raw = os.environ.get(DATA_ROOT_ENV)
        return cls(
            enabled=_env_bool(TRACE_ENABLED_ENV, True),
            sink=sink,
            data_root=Path(data_root_raw) if data_root_raw else DEFAULT_DATA_ROOT,
            project=os.environ.get(PROJECT_ENV) or None,
            api_base=os.environ.get(API_BASE_ENV) or None,
            api_key=os.environ.get(API_KEY_ENV) or None,
            batch_size=_env_int(BATCH_SIZE_ENV, 100, minimum=1),
            batch_interval_s=_env_float(BATCH_INTERVAL_ENV, 1.0),
            worker_interval_s=_env_float(WORKER_INTERVAL_ENV, 1.0),
            retry_count=_env_int(RETRY_COUNT_ENV, 3),
            retry_delay_s=_env_float(RETRY_DELAY_ENV, 1.0),
        )
