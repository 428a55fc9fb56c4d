"""Tests for the trace decorator: capture, errors, options and bypass paths."""

import asyncio
import functools

import pytest

from llm_trace.config import TraceConfig
from llm_trace.evals import exact_match
from llm_trace.manager import TraceManager, get_trace_manager, set_trace_manager
from llm_trace.sinks import MemoryLogSink
from llm_trace.tracing import TraceOptions, get_current_trace_id, trace


@pytest.fixture
def manager():
    """Fresh in-memory manager installed as the process default for the test."""
    mgr = TraceManager(TraceConfig(sink="memory"), sink=MemoryLogSink(), autostart=False)
    previous = set_trace_manager(mgr)
    yield mgr
    set_trace_manager(previous)
    mgr.shutdown()


# ---------------------------------------------------------------------------
# Basic capture
# ---------------------------------------------------------------------------


class TestCapture:
    def test_combinator_form(self, manager):
        greet = trace("greet", lambda name: f"Hello {name}")
        assert greet("Foo") == "Hello Foo"
        manager.flush_sync()

        [log] = manager.sink.by_name("greet")
        assert log["inputs"] == {"name": "Foo"}
        assert log["output"] == "Hello Foo"
        assert log["status"] == "success"
        assert log["depth"] == 0
        assert log["end_timestamp"] is not None
        assert log["latency"] >= 0

    @pytest.mark.asyncio
    async def test_bare_decorator_uses_function_name(self, manager):
        @trace
        async def summarize(text: str) -> str:
            return text[:3]

        assert await summarize("abcdef") == "abc"
        await manager.flush()
        [log] = manager.sink.logs.values()
        assert log["trace_name"] == "summarize"
        assert log["output"] == "abc"

    @pytest.mark.asyncio
    async def test_structured_output_is_json(self, manager):
        @trace("stats")
        async def stats():
            return {"count": 2, "items": ["a", "b"]}

        assert await stats() == {"count": 2, "items": ["a", "b"]}
        await manager.flush()
        assert manager.sink.by_name("stats")[0]["output"] == '{"count": 2, "items": ["a", "b"]}'

    @pytest.mark.asyncio
    async def test_unserializable_output_does_not_break_call(self, manager):
        sentinel = object()

        @trace("opaque")
        async def opaque():
            return sentinel

        assert await opaque() is sentinel
        await manager.flush()
        assert manager.sink.by_name("opaque")[0]["status"] == "success"

    @pytest.mark.asyncio
    async def test_options_are_recorded(self, manager):
        @trace(
            "tagged",
            tags=["prod", "prod", "beta"],
            metadata={"team": "search"},
            end_user_identifier="user-1",
            session_id="session-9",
        )
        async def tagged():
            return "ok"

        await tagged()
        await manager.flush()
        log = manager.sink.by_name("tagged")[0]
        assert log["tags"] == ["prod", "beta"]
        assert log["metadata"] == {"team": "search"}
        assert log["end_user_identifier"] == "user-1"
        assert log["session_id"] == "session-9"

    def test_methods_skip_self(self, manager):
        class Bot:
            @trace
            def ask(self, question):
                return question.upper()

        assert Bot().ask("why") == "WHY"
        manager.flush_sync()
        assert manager.sink.by_name("ask")[0]["inputs"] == {"question": "why"}

    def test_delivered_exactly_once(self, manager):
        @trace
        def once():
            return 1

        for _ in range(3):
            once()
        manager.flush_sync()
        assert len(manager.sink.records) == 3
        assert len({p["trace_id"] for p in manager.sink.records}) == 3

    @pytest.mark.asyncio
    async def test_current_trace_id_inside_and_outside(self, manager):
        @trace
        async def inside():
            return get_current_trace_id()

        trace_id = await inside()
        assert trace_id is not None
        assert get_current_trace_id() is None
        await manager.flush()
        assert trace_id in manager.sink.logs


# ---------------------------------------------------------------------------
# Callables returning awaitables
# ---------------------------------------------------------------------------


class TestAwaitableResults:
    @pytest.mark.asyncio
    async def test_lambda_around_coroutine(self, manager):
        async def _impl(name):
            await asyncio.sleep(0.01)
            return f"Hello {name}"

        greet = trace("greet", lambda name: _impl(name))
        assert await greet("Foo") == "Hello Foo"
        await manager.flush()

        [log] = manager.sink.by_name("greet")
        assert log["inputs"] == {"name": "Foo"}
        assert log["output"] == "Hello Foo"
        assert log["status"] == "success"
        assert log["latency"] >= 0.005

    @pytest.mark.asyncio
    async def test_not_finalized_until_awaited(self, manager):
        async def _impl():
            return "done"

        deferred = trace("deferred", lambda: _impl())
        pending = deferred()
        assert get_current_trace_id() is None
        await manager.flush()
        assert manager.sink.by_name("deferred") == []

        assert await pending == "done"
        await manager.flush()
        assert manager.sink.by_name("deferred")[0]["output"] == "done"

    @pytest.mark.asyncio
    async def test_error_in_awaited_result(self, manager):
        async def _impl():
            await asyncio.sleep(0)
            raise ValueError("late failure")

        broken = trace("broken", lambda: _impl())
        with pytest.raises(ValueError, match="late failure"):
            await broken()
        await manager.flush()
        log = manager.sink.by_name("broken")[0]
        assert log["status"] == "error"
        assert log["error"] == "late failure"

    @pytest.mark.asyncio
    async def test_nested_calls_link_under_deferred_trace(self, manager):
        @trace
        async def step(x):
            return x * 2

        async def pipeline(x, offset):
            return await step(x) + offset

        traced = trace("pipeline", lambda x: pipeline(x, offset=1))
        partial_traced = trace("partial_pipeline", functools.partial(pipeline, offset=1))
        assert await traced(3) == 7
        assert await partial_traced(3) == 7
        await manager.flush()

        parents = {p["trace_name"]: p for p in manager.sink.logs.values() if p["trace_name"] != "step"}
        steps = manager.sink.by_name("step")
        assert {s["parent_trace_id"] for s in steps} == {p["trace_id"] for p in parents.values()}
        assert all(s["depth"] == 1 for s in steps)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_async_error_re_raised_and_recorded(self, manager):
        @trace
        async def broken():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            await broken()
        await manager.flush()
        log = manager.sink.by_name("broken")[0]
        assert log["status"] == "error"
        assert log["error"] == "bad input"
        assert log["end_timestamp"] is not None

    def test_sync_error_re_raised_with_eval_funcs(self, manager):
        @trace(eval_funcs=[exact_match], target="x")
        def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError) as excinfo:
            broken()
        assert excinfo.value.args == ("missing",)
        manager.flush_sync()
        log = manager.sink.by_name("broken")[0]
        assert log["status"] == "error"
        assert log["scores"] is None

    @pytest.mark.asyncio
    async def test_error_without_message_records_type(self, manager):
        @trace
        async def quiet():
            raise RuntimeError()

        with pytest.raises(RuntimeError):
            await quiet()
        await manager.flush()
        assert manager.sink.by_name("quiet")[0]["error"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_cancellation_is_finalized(self, manager):
        @trace
        async def slow():
            await asyncio.sleep(10)

        task = asyncio.ensure_future(slow())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await manager.flush()
        assert manager.sink.by_name("slow")[0]["status"] == "error"

    @pytest.mark.asyncio
    async def test_parent_sees_child_failure_separately(self, manager):
        @trace
        async def child():
            raise ValueError("child failed")

        @trace
        async def parent():
            try:
                await child()
            except ValueError:
                return "recovered"

        assert await parent() == "recovered"
        await manager.flush()
        assert manager.sink.by_name("child")[0]["status"] == "error"
        assert manager.sink.by_name("parent")[0]["status"] == "success"


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


class TestTargets:
    @pytest.mark.asyncio
    async def test_explicit_target(self, manager):
        @trace(target={"answer": 42})
        async def solve():
            return "42"

        await solve()
        await manager.flush()
        assert manager.sink.by_name("solve")[0]["target"] == '{"answer": 42}'

    def test_trailing_target_opt_in(self, manager):
        @trace(accept_trailing_target=True)
        def greet(name):
            return f"Hello {name}"

        assert greet("Foo", "Hello Foo") == "Hello Foo"
        manager.flush_sync()
        log = manager.sink.by_name("greet")[0]
        assert log["target"] == "Hello Foo"
        assert log["inputs"] == {"name": "Foo"}

    def test_trailing_target_ignored_by_default(self, manager):
        @trace
        def greet(*names):
            return ",".join(names)

        assert greet("a", "b") == "a,b"
        manager.flush_sync()
        assert manager.sink.by_name("greet")[0]["target"] is None

    @pytest.mark.asyncio
    async def test_child_inherits_parent_target(self, manager):
        @trace
        async def child():
            return "x"

        @trace(target="expected")
        async def parent():
            return await child()

        await parent()
        await manager.flush()
        assert manager.sink.by_name("child")[0]["target"] == "expected"


# ---------------------------------------------------------------------------
# Bypass
# ---------------------------------------------------------------------------


class TestBypass:
    def test_disabled_manager_calls_through(self):
        mgr = TraceManager(TraceConfig(enabled=False, sink="memory"), sink=MemoryLogSink(), autostart=False)

        @trace(manager=mgr)
        def add(a, b):
            return a + b

        assert add(1, 2) == 3
        mgr.flush_sync()
        assert mgr.sink.records == []

    def test_sample_rate_zero_skips(self, manager):
        @trace(options=TraceOptions(sample_rate=0.0))
        def sampled():
            return "ok"

        assert sampled() == "ok"
        manager.flush_sync()
        assert manager.sink.records == []

    def test_recursive_calls_nest(self, manager):
        @trace
        def countdown(n):
            return 0 if n == 0 else countdown(n - 1)

        countdown(2)
        manager.flush_sync()
        depths = sorted(p["depth"] for p in manager.sink.by_name("countdown"))
        assert depths == [0, 1, 2]

    def test_pinned_manager_wins_over_default(self, manager):
        other = TraceManager(TraceConfig(sink="memory"), sink=MemoryLogSink(), autostart=False)

        @trace(manager=other)
        def pinned():
            return 1

        pinned()
        other.flush_sync()
        manager.flush_sync()
        assert len(other.sink.records) == 1
        assert manager.sink.records == []
        assert get_trace_manager() is manager
