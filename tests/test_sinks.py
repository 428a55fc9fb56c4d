"""Tests for log sinks: memory, JSONL file and HTTP."""

import json

import httpx
import pytest

from llm_trace.config import TraceConfig
from llm_trace.errors import LogDeliveryError
from llm_trace.sinks import HttpLogSink, JsonlLogSink, MemoryLogSink, NullLogSink, sink_from_config


# ---------------------------------------------------------------------------
# MemoryLogSink
# ---------------------------------------------------------------------------


class TestMemoryLogSink:
    @pytest.mark.asyncio
    async def test_updates_apply_over_records(self):
        sink = MemoryLogSink()
        await sink.record_logs([{"trace_id": "a", "trace_name": "x", "output": None}])
        await sink.update_log({"trace_id": "a", "output": "done"})
        assert sink.logs["a"] == {"trace_id": "a", "trace_name": "x", "output": "done"}
        assert sink.by_name("x")[0]["output"] == "done"
        sink.clear()
        assert sink.logs == {}


# ---------------------------------------------------------------------------
# JsonlLogSink
# ---------------------------------------------------------------------------


class TestJsonlLogSink:
    @pytest.mark.asyncio
    async def test_appends_lines(self, tmp_path):
        sink = JsonlLogSink(tmp_path, "demo")
        await sink.record_logs([{"trace_id": "a"}, {"trace_id": "b"}])
        await sink.update_log({"trace_id": "a", "output": "late"})

        assert sink.path == tmp_path / "demo" / "traces.jsonl"
        lines = sink.read()
        assert [(line["event"], line["trace_id"]) for line in lines] == [
            ("record", "a"),
            ("record", "b"),
            ("update", "a"),
        ]
        assert all("logged_at" in line for line in lines)

    @pytest.mark.asyncio
    async def test_unwritable_path_raises_delivery_error(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")
        sink = JsonlLogSink(blocker, "demo")
        with pytest.raises(LogDeliveryError):
            await sink.record_log({"trace_id": "a"})

    def test_read_missing_file(self, tmp_path):
        assert JsonlLogSink(tmp_path, "demo").read() == []


# ---------------------------------------------------------------------------
# HttpLogSink
# ---------------------------------------------------------------------------


class TestHttpLogSink:
    @pytest.mark.asyncio
    async def test_batch_and_update_requests(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        sink = HttpLogSink("https://logs.example.com/api/", "secret", transport=httpx.MockTransport(handler))
        await sink.record_logs([{"trace_id": "a"}, {"trace_id": "b"}])
        await sink.record_log({"trace_id": "c"})
        await sink.update_log({"trace_id": "a", "output": "late"})

        assert [(r.method, r.url.path) for r in requests] == [
            ("POST", "/api/trace_logs"),
            ("POST", "/api/trace_log"),
            ("PUT", "/api/trace_log"),
        ]
        assert requests[0].headers["x-api-key"] == "secret"
        assert json.loads(requests[0].content) == [{"trace_id": "a"}, {"trace_id": "b"}]
        assert json.loads(requests[2].content) == {
            "trace_id": "a",
            "field_name_to_value_map": {"output": "late"},
        }

    @pytest.mark.asyncio
    async def test_status_error_carries_code(self):
        sink = HttpLogSink(
            "https://logs.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(LogDeliveryError) as excinfo:
            await sink.record_log({"trace_id": "a"})
        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sink = HttpLogSink("https://logs.example.com", transport=httpx.MockTransport(handler))
        with pytest.raises(LogDeliveryError) as excinfo:
            await sink.record_log({"trace_id": "a"})
        assert excinfo.value.status_code is None
        assert isinstance(excinfo.value.original, httpx.ConnectError)

    def test_no_api_key_header(self):
        sink = HttpLogSink("https://logs.example.com")
        assert "x-api-key" not in sink._headers()


# ---------------------------------------------------------------------------
# sink_from_config
# ---------------------------------------------------------------------------


class TestSinkFromConfig:
    def test_kinds(self, tmp_path):
        assert isinstance(sink_from_config(TraceConfig(sink="memory")), MemoryLogSink)
        assert isinstance(sink_from_config(TraceConfig(sink="none")), NullLogSink)
        http = sink_from_config(TraceConfig(sink="http", api_base="https://x.test", api_key="k"))
        assert isinstance(http, HttpLogSink)
        assert http.api_key == "k"
        jsonl = sink_from_config(TraceConfig(sink="jsonl", data_root=tmp_path, project="p"))
        assert jsonl.path == tmp_path / "p" / "traces.jsonl"

    def test_http_without_base_falls_back(self, tmp_path, caplog):
        sink = sink_from_config(TraceConfig(sink="http", data_root=tmp_path, project="p"))
        assert isinstance(sink, JsonlLogSink)
        assert "falling back" in caplog.text
