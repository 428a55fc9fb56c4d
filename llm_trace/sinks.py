"""Log sinks: where finalized trace log payloads end up.

A sink receives JSON-ready dicts (snapshots taken at finalization), never live
``TraceLog`` objects. ``record_log`` creates an entry, ``update_log`` patches
one by ``trace_id`` (last write wins on overlapping fields).
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from llm_trace.errors import LogDeliveryError

logger = logging.getLogger(__name__)

TracePayload = dict[str, Any]


class LogSink(ABC):
    """Destination for trace log payloads."""

    @abstractmethod
    async def record_log(self, payload: TracePayload) -> None:
        ...

    @abstractmethod
    async def update_log(self, payload: TracePayload) -> None:
        ...

    async def record_logs(self, payloads: Sequence[TracePayload]) -> None:
        """Deliver a batch. Sinks with a batch endpoint override this."""
        for payload in payloads:
            await self.record_log(payload)

    async def aclose(self) -> None:
        return None


class NullLogSink(LogSink):
    """Discards everything (``LLM_TRACE_SINK=none``)."""

    async def record_log(self, payload: TracePayload) -> None:
        return None

    async def update_log(self, payload: TracePayload) -> None:
        return None


class MemoryLogSink(LogSink):
    """Keeps every delivery in memory, for tests and in-process inspection."""

    def __init__(self) -> None:
        self.records: list[TracePayload] = []
        self.updates: list[TracePayload] = []
        self._lock = threading.Lock()

    async def record_log(self, payload: TracePayload) -> None:
        with self._lock:
            self.records.append(dict(payload))

    async def update_log(self, payload: TracePayload) -> None:
        with self._lock:
            self.updates.append(dict(payload))

    @property
    def logs(self) -> dict[str, TracePayload]:
        """Current view per trace id: records with their updates applied in order."""
        with self._lock:
            merged: dict[str, TracePayload] = {}
            for payload in self.records:
                merged.setdefault(payload["trace_id"], {}).update(payload)
            for payload in self.updates:
                merged.setdefault(payload["trace_id"], {}).update(payload)
            return merged

    def by_name(self, trace_name: str) -> list[TracePayload]:
        return [p for p in self.logs.values() if p.get("trace_name") == trace_name]

    def clear(self) -> None:
        with self._lock:
            self.records.clear()
            self.updates.clear()


class JsonlLogSink(LogSink):
    """Appends one JSON line per delivery to ``{data_root}/{project}/traces.jsonl``."""

    def __init__(self, data_root: Path, project: str, filename: str = "traces.jsonl") -> None:
        self.path = Path(data_root).expanduser() / project / filename
        self._lock = threading.Lock()

    def _append(self, lines: Sequence[TracePayload]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                for line in lines:
                    f.write(json.dumps(line, default=str) + "\n")

    def _line(self, event: str, payload: TracePayload) -> TracePayload:
        return {"event": event, "logged_at": datetime.now(timezone.utc).isoformat(), **payload}

    async def record_log(self, payload: TracePayload) -> None:
        await self.record_logs([payload])

    async def record_logs(self, payloads: Sequence[TracePayload]) -> None:
        try:
            await asyncio.to_thread(self._append, [self._line("record", p) for p in payloads])
        except OSError as exc:
            raise LogDeliveryError(f"Could not write {self.path}: {exc}", original=exc) from exc

    async def update_log(self, payload: TracePayload) -> None:
        try:
            await asyncio.to_thread(self._append, [self._line("update", payload)])
        except OSError as exc:
            raise LogDeliveryError(f"Could not write {self.path}: {exc}", original=exc) from exc

    def read(self) -> list[TracePayload]:
        """All lines written so far, in order."""
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]


class HttpLogSink(LogSink):
    """Sends payloads to a remote logging service over HTTP."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None = None,
        *,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _send(self, method: str, path: str, body: Any) -> None:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                r = await client.request(method, url, headers=self._headers(), content=json.dumps(body, default=str))
                r.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LogDeliveryError(
                f"{method} {url} failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
                original=exc,
            ) from exc
        except httpx.HTTPError as exc:
            raise LogDeliveryError(f"{method} {url} failed: {exc}", original=exc) from exc

    async def record_log(self, payload: TracePayload) -> None:
        await self._send("POST", "/trace_log", payload)

    async def record_logs(self, payloads: Sequence[TracePayload]) -> None:
        await self._send("POST", "/trace_logs", list(payloads))

    async def update_log(self, payload: TracePayload) -> None:
        trace_id = payload.get("trace_id")
        field_updates = {k: v for k, v in payload.items() if k != "trace_id"}
        await self._send("PUT", "/trace_log", {"trace_id": trace_id, "field_name_to_value_map": field_updates})


def sink_from_config(config: Any) -> LogSink:
    """Build the sink named by ``config.sink``."""
    if config.sink == "memory":
        return MemoryLogSink()
    if config.sink == "none":
        return NullLogSink()
    if config.sink == "http":
        if not config.api_base:
            logger.warning("LLM_TRACE_SINK=http but no API base configured; falling back to jsonl.")
        else:
            return HttpLogSink(config.api_base, config.api_key)
    return JsonlLogSink(config.data_root, config.project_name)
