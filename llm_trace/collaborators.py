"""Control plane and dataset interfaces, with local file-backed implementations.

The experiment engine only talks to the abstract bases. ``LocalControlPlane``
keeps run records in an append-only ``experiments.jsonl`` ledger and
``FileDatasetSource`` resolves named test collections from YAML/JSON files,
so experiments run with no remote service at all.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import yaml

from llm_trace.helpers import to_date_time_string, utcnow
from llm_trace.models import (
    ExperimentRunRecord,
    ExperimentStats,
    ExperimentStatus,
    FeedbackRequest,
    TestCase,
    TestCaseCollection,
    create_test_collection,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class ControlPlaneClient(ABC):
    """Experiment bookkeeping on the logging service side."""

    @abstractmethod
    async def create_experiment_run(
        self, name: str, run_name: str, metadata: Mapping[str, Any] | None = None
    ) -> ExperimentRunRecord:
        ...

    @abstractmethod
    async def finish_experiment_run(self, run_id: str, stats: ExperimentStats) -> ExperimentStats:
        ...

    @abstractmethod
    async def record_feedback(self, feedback: FeedbackRequest) -> None:
        ...

    @abstractmethod
    async def resolve_project_id(self, name: str) -> str:
        """Project id for ``name``; implementations memoize per process."""


class DatasetSource(ABC):
    """Named test case collections."""

    @abstractmethod
    async def get_collection(self, name_or_id: str | int) -> TestCaseCollection | None:
        """The collection, or None when it does not exist."""

    @abstractmethod
    async def add_rows(self, rows: Sequence[Mapping[str, Any]], collection_name: str) -> None:
        ...

    @abstractmethod
    async def update_row(self, collection_id: str | int, row_id: str | int, patch: Mapping[str, Any]) -> None:
        ...


# ---------------------------------------------------------------------------
# Local control plane
# ---------------------------------------------------------------------------


class LocalControlPlane(ControlPlaneClient):
    """Run records and feedback appended to JSONL ledgers under ``{data_root}/{project}``."""

    def __init__(self, data_root: Path | str, project: str) -> None:
        self.project = project
        self.log_dir = Path(data_root).expanduser() / project
        self._project_ids: dict[str, str] = {}
        self._runs: dict[str, ExperimentRunRecord] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Any) -> "LocalControlPlane":
        return cls(config.data_root, config.project_name)

    def _append(self, filename: str, record: Mapping[str, Any]) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self._lock, open(self.log_dir / filename, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except OSError:
            logger.debug("LocalControlPlane write to %s failed", filename, exc_info=True)

    async def resolve_project_id(self, name: str) -> str:
        with self._lock:
            if name not in self._project_ids:
                self._project_ids[name] = str(uuid.uuid5(uuid.NAMESPACE_URL, f"llm_trace/{name}"))
            return self._project_ids[name]

    async def create_experiment_run(
        self, name: str, run_name: str, metadata: Mapping[str, Any] | None = None
    ) -> ExperimentRunRecord:
        run = ExperimentRunRecord(
            id=uuid.uuid4().hex[:12],
            name=name,
            run_name=run_name,
            metadata=dict(metadata) if metadata else None,
            status=ExperimentStatus.RUNNING,
            created_at=to_date_time_string(utcnow()),
        )
        with self._lock:
            self._runs[run.id] = run
        self._append("experiments.jsonl", {
            "type": "run_start",
            "project_id": await self.resolve_project_id(self.project),
            **run.model_dump(mode="json", exclude={"stats"}),
        })
        return run

    async def finish_experiment_run(self, run_id: str, stats: ExperimentStats) -> ExperimentStats:
        status = stats.status or ExperimentStatus.COMPLETED
        final = stats.model_copy(update={"status": status})
        with self._lock:
            run = self._runs.get(run_id)
            if run is not None:
                self._runs[run_id] = run.model_copy(update={"status": status, "stats": final})
        self._append("experiments.jsonl", {
            "type": "run_finish",
            "id": run_id,
            "finished_at": to_date_time_string(utcnow()),
            "status": status.value,
            "avg_scores": final.avg_scores,
            "dataset_level_stats": [s.model_dump() for s in final.dataset_level_stats],
            "n_trials": len(final.parent_trace_stats),
        })
        return final

    async def record_feedback(self, feedback: FeedbackRequest) -> None:
        self._append("feedback.jsonl", {"recorded_at": to_date_time_string(utcnow()), **feedback.model_dump()})

    def get_run(self, run_id: str) -> ExperimentRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)


# ---------------------------------------------------------------------------
# File dataset source
# ---------------------------------------------------------------------------

_DATASET_SUFFIXES = (".yaml", ".yml", ".json")


def _collection_from_data(data: Any, fallback_name: str) -> TestCaseCollection:
    """Accept either a bare list of rows or a stored collection mapping."""
    if isinstance(data, list):
        payload = create_test_collection(data, name=fallback_name)
        return TestCaseCollection(
            id=fallback_name,
            name=payload.name,
            column_names=payload.column_names,
            test_cases={
                str(i): TestCase(id=i, inputs=tc.inputs, target=tc.target, tags=tc.tags)
                for i, tc in enumerate(payload.test_cases, start=1)
            },
        )
    if not isinstance(data, Mapping):
        raise ValueError(f"Dataset {fallback_name!r} must be a list of rows or a mapping")
    if "rows" in data and "test_cases" not in data:
        collection = _collection_from_data(list(data["rows"]), str(data.get("name") or fallback_name))
        return collection.model_copy(update={"id": data.get("id", collection.id)})
    raw_cases = data.get("test_cases") or []
    if isinstance(raw_cases, Mapping):
        raw_cases = list(raw_cases.values())
    cases = {}
    for i, raw in enumerate(raw_cases, start=1):
        case = TestCase.model_validate({"id": raw.get("id", i), **raw})
        cases[str(case.id)] = case
    return TestCaseCollection(
        id=data.get("id", fallback_name),
        name=str(data.get("name") or fallback_name),
        created_at=data.get("created_at"),
        last_updated_at=data.get("last_updated_at"),
        column_names=list(data.get("column_names") or []),
        test_cases=cases,
    )


class FileDatasetSource(DatasetSource):
    """Collections stored as ``<root>/<name>.yaml`` (or ``.yml``/``.json``).

    Resolution order for ``get_collection``:
    1. An existing file path
    2. ``<root>/<name>`` with each known suffix
    3. Any file in ``<root>`` whose stored ``id`` matches
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()
        self._lock = threading.Lock()

    def _path_for(self, name_or_id: str | int) -> Path | None:
        direct = Path(str(name_or_id))
        if direct.suffix in _DATASET_SUFFIXES and direct.is_file():
            return direct
        for suffix in _DATASET_SUFFIXES:
            candidate = self.root / f"{name_or_id}{suffix}"
            if candidate.is_file():
                return candidate
        if not self.root.is_dir():
            return None
        for candidate in sorted(self.root.iterdir()):
            if candidate.suffix not in _DATASET_SUFFIXES:
                continue
            try:
                data = self._read(candidate)
            except (OSError, yaml.YAMLError):
                continue
            if isinstance(data, Mapping) and str(data.get("id")) == str(name_or_id):
                return candidate
        return None

    def _read(self, path: Path) -> Any:
        with open(path) as f:
            return yaml.safe_load(f)

    def _write(self, path: Path, collection: TestCaseCollection) -> None:
        data = {
            "id": collection.id,
            "name": collection.name,
            "created_at": collection.created_at,
            "last_updated_at": to_date_time_string(utcnow()),
            "column_names": collection.column_names,
            "test_cases": [tc.model_dump() for tc in collection.test_cases.values()],
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            if path.suffix == ".json":
                json.dump(data, f, indent=2)
            else:
                yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)

    def _load(self, path: Path) -> TestCaseCollection:
        return _collection_from_data(self._read(path), path.stem)

    async def get_collection(self, name_or_id: str | int) -> TestCaseCollection | None:
        path = self._path_for(name_or_id)
        if path is None:
            return None
        try:
            return self._load(path)
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.warning("Could not load dataset %s: %s", path, exc)
            return None

    async def add_rows(self, rows: Sequence[Mapping[str, Any]], collection_name: str) -> None:
        """Append rows to a collection, creating the file if needed."""
        with self._lock:
            path = self._path_for(collection_name) or self.root / f"{collection_name}.yaml"
            if path.is_file():
                collection = self._load(path)
            else:
                collection = TestCaseCollection(
                    id=collection_name, name=collection_name, created_at=to_date_time_string(utcnow())
                )
            added = _collection_from_data([dict(r) for r in rows], collection_name)
            next_id = max((int(k) for k in collection.test_cases if str(k).isdigit()), default=0) + 1
            cases = dict(collection.test_cases)
            for offset, case in enumerate(added.test_cases.values()):
                new_id = next_id + offset
                cases[str(new_id)] = case.model_copy(update={"id": new_id})
            columns = list(collection.column_names)
            columns.extend(c for c in added.column_names if c not in columns)
            self._write(path, collection.model_copy(update={"test_cases": cases, "column_names": columns}))

    async def update_row(self, collection_id: str | int, row_id: str | int, patch: Mapping[str, Any]) -> None:
        """Patch one test case. ``target``/``tags`` replace; other keys update inputs.

        Raises:
            KeyError: If the collection or row does not exist.
        """
        with self._lock:
            path = self._path_for(collection_id)
            if path is None:
                raise KeyError(f"Dataset {collection_id!r} not found")
            collection = self._load(path)
            case = collection.test_cases.get(str(row_id))
            if case is None:
                raise KeyError(f"Row {row_id!r} not found in dataset {collection_id!r}")
            inputs = dict(case.inputs)
            target = case.target
            tags = list(case.tags)
            for key, value in patch.items():
                if key == "target":
                    target = value if value is None or isinstance(value, str) else json.dumps(value, indent=2)
                elif key == "tags":
                    tags = [t if isinstance(t, str) else json.dumps(t, indent=2) for t in value]
                else:
                    inputs[key] = value if isinstance(value, str) else json.dumps(value, indent=2)
            cases = dict(collection.test_cases)
            cases[str(row_id)] = case.model_copy(update={"inputs": inputs, "target": target, "tags": tags})
            self._write(path, collection.model_copy(update={"test_cases": cases}))
