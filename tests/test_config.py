"""Tests for TraceConfig environment parsing."""

from pathlib import Path

import pytest

from llm_trace.config import TraceConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Start each test with no LLM_TRACE_* variables set."""
    for name in (
        "LLM_TRACE_ENABLED",
        "LLM_TRACE_SINK",
        "LLM_TRACE_DATA_ROOT",
        "LLM_TRACE_PROJECT",
        "LLM_TRACE_API_BASE",
        "LLM_TRACE_API_KEY",
        "LLM_TRACE_BATCH_SIZE",
        "LLM_TRACE_BATCH_INTERVAL_S",
        "LLM_TRACE_WORKER_INTERVAL_S",
        "LLM_TRACE_RETRY_COUNT",
        "LLM_TRACE_RETRY_DELAY_S",
    ):
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:
    def test_defaults(self):
        config = TraceConfig.from_env()
        assert config.enabled is True
        assert config.sink == "jsonl"
        assert config.batch_size == 100
        assert config.batch_interval_s == 1.0
        assert config.retry_count == 3
        assert config.api_base is None

    def test_reads_values(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LLM_TRACE_ENABLED", "off")
        monkeypatch.setenv("LLM_TRACE_SINK", "HTTP")
        monkeypatch.setenv("LLM_TRACE_DATA_ROOT", str(tmp_path))
        monkeypatch.setenv("LLM_TRACE_PROJECT", "demo")
        monkeypatch.setenv("LLM_TRACE_API_BASE", "https://logs.example.com")
        monkeypatch.setenv("LLM_TRACE_API_KEY", "secret")
        monkeypatch.setenv("LLM_TRACE_BATCH_SIZE", "25")
        monkeypatch.setenv("LLM_TRACE_RETRY_DELAY_S", "0.5")

        config = TraceConfig.from_env()
        assert config.enabled is False
        assert config.sink == "http"
        assert config.data_root == Path(tmp_path)
        assert config.project_name == "demo"
        assert config.api_base == "https://logs.example.com"
        assert config.api_key == "secret"
        assert config.batch_size == 25
        assert config.retry_delay_s == 0.5

    def test_invalid_values_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("LLM_TRACE_ENABLED", "maybe")
        monkeypatch.setenv("LLM_TRACE_SINK", "kafka")
        monkeypatch.setenv("LLM_TRACE_BATCH_SIZE", "0")
        monkeypatch.setenv("LLM_TRACE_RETRY_COUNT", "three")
        monkeypatch.setenv("LLM_TRACE_BATCH_INTERVAL_S", "-2")

        config = TraceConfig.from_env()
        assert config.enabled is True
        assert config.sink == "jsonl"
        assert config.batch_size == 100
        assert config.retry_count == 3
        assert config.batch_interval_s == 1.0

    def test_project_name_defaults_to_cwd(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        assert TraceConfig().project_name == tmp_path.name

    def test_frozen(self):
        config = TraceConfig()
        with pytest.raises(Exception):
            config.enabled = False  # type: ignore[misc]
