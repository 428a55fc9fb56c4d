"""Tests for evaluation: score normalization, failure tolerance, background handles."""

import asyncio

import pytest

from llm_trace.config import TraceConfig
from llm_trace.evals import exact_match, levenshtein
from llm_trace.evaluation import EvaluationRunner, is_evaluating, normalize_score
from llm_trace.manager import TraceManager
from llm_trace.models import EvaluationResult, TraceLog
from llm_trace.sinks import MemoryLogSink
from llm_trace.tracing import trace


@pytest.fixture
def manager():
    mgr = TraceManager(TraceConfig(sink="memory"), sink=MemoryLogSink(), autostart=False)
    yield mgr
    mgr.shutdown()


def _log(output="Hello Foo", target="Hello Foo", **fields) -> TraceLog:
    return TraceLog(
        trace_id="t1",
        root_trace_id="t1",
        start_timestamp="2024-01-01T00:00:00+00:00",
        output=output,
        target=target,
        **fields,
    )


# ---------------------------------------------------------------------------
# normalize_score
# ---------------------------------------------------------------------------


class TestNormalizeScore:
    def test_number(self):
        assert normalize_score("f", 0.7) == [EvaluationResult(name="f", score=0.7)]

    def test_bool(self):
        assert normalize_score("f", True)[0].score == 1.0
        assert normalize_score("f", False)[0].score == 0.0

    def test_none_opts_out(self):
        assert normalize_score("f", None) == []

    def test_result_keeps_its_name(self):
        result = EvaluationResult(name="custom", score=0.2, reason="close")
        assert normalize_score("f", result) == [result]

    def test_mapping(self):
        [result] = normalize_score("f", {"score": 0.5, "reason": "half"})
        assert (result.name, result.score, result.reason) == ("f", 0.5, "half")

    def test_list_appended_as_is(self):
        results = normalize_score("f", [EvaluationResult(name="a", score=1), EvaluationResult(name="b", score=0)])
        assert [r.name for r in results] == ["a", "b"]

    def test_unsupported_shape(self):
        with pytest.raises(TypeError):
            normalize_score("f", "great")


# ---------------------------------------------------------------------------
# Stock evals
# ---------------------------------------------------------------------------


class TestStockEvals:
    def test_exact_match(self):
        assert exact_match(_log()) == 1.0
        assert exact_match(_log(output="Hi Foo")) == 0.0
        assert exact_match(_log(target=None)) is None

    def test_levenshtein(self):
        assert levenshtein(_log()) == 1.0
        assert levenshtein(_log(output="Hello Fo")) == pytest.approx(1 - 1 / 9)
        assert levenshtein(_log(output="", target="")) == 1.0

    def test_levenshtein_requires_target(self):
        with pytest.raises(ValueError, match="ground truth"):
            levenshtein(_log(target=None))


# ---------------------------------------------------------------------------
# EvaluationRunner
# ---------------------------------------------------------------------------


class TestEvaluationRunner:
    @pytest.mark.asyncio
    async def test_failing_function_is_isolated(self):
        def f1(log):
            raise RuntimeError("scorer crashed")

        def f2(log):
            return 0.7

        record = _log()
        scores = await EvaluationRunner().run(record, [f1, f2])
        assert scores == [EvaluationResult(name="f2", score=0.7)]
        assert "Error occurred calling evaluation function 'f1'" in record.error

    @pytest.mark.asyncio
    async def test_async_functions_and_flag(self):
        seen = []

        async def scorer(log):
            seen.append(is_evaluating())
            return 1

        scores = await EvaluationRunner().run(_log(), [scorer])
        assert scores[0].score == 1.0
        assert seen == [True]
        assert is_evaluating() is False

    @pytest.mark.asyncio
    async def test_projected_output_is_scored(self):
        record = _log(output='{"answer": "Hello Foo"}', output_for_eval_metrics="Hello Foo")
        scores = await EvaluationRunner().run(record, [exact_match])
        assert scores[0].score == 1.0
        assert record.output == '{"answer": "Hello Foo"}'

    @pytest.mark.asyncio
    async def test_dataset_level_never_raises(self):
        def accuracy(logs):
            return sum(1 for log in logs if log.output == log.target) / len(logs)

        def broken(logs):
            raise ZeroDivisionError("nope")

        def bad_shape(logs):
            return "high"

        results = await EvaluationRunner().run_dataset_level(
            [_log(), _log(output="x")], [accuracy, broken, bad_shape]
        )
        assert results == [EvaluationResult(name="accuracy", score=0.5)]


# ---------------------------------------------------------------------------
# Evaluation through the trace wrapper
# ---------------------------------------------------------------------------


class TestTracedEvaluation:
    @pytest.mark.asyncio
    async def test_scores_attached_and_return_unaffected(self, manager):
        def f1(log):
            raise RuntimeError("scorer crashed")

        def f2(log):
            return 0.7

        @trace(eval_funcs=[f1, f2], manager=manager)
        async def answer():
            return "result"

        assert await answer() == "result"
        await manager.flush()
        log = manager.sink.by_name("answer")[0]
        assert [s["name"] for s in log["scores"]] == ["f2"]
        assert log["scores"][0]["score"] == 0.7
        assert "scorer crashed" in str(log["error"])
        assert log["status"] == "success"

    @pytest.mark.asyncio
    async def test_handle_awaitable_before_delivery(self, manager):
        gate = asyncio.Event()

        async def slow_scorer(log):
            await gate.wait()
            return 1.0

        @trace(eval_funcs=[slow_scorer], target="x", manager=manager)
        async def answer():
            return "x"

        await answer()
        await asyncio.sleep(0)
        assert manager.sink.records == []
        gate.set()
        await manager.wait_for_evaluations()
        assert manager.sink.by_name("answer")[0]["scores"][0]["score"] == 1.0

    def test_sync_caller_uses_thread_pool(self, manager):
        @trace(eval_funcs=[exact_match], target="Hello Foo", manager=manager)
        def greet(name):
            return f"Hello {name}"

        greet("Foo")
        manager.flush_sync()
        log = manager.sink.by_name("greet")[0]
        assert log["scores"] == [{"name": "exact_match", "score": 1.0, "reason": None}]

    @pytest.mark.asyncio
    async def test_apply_eval_frac_zero_skips_scoring(self, manager):
        calls = []

        @trace(eval_funcs=[lambda log: calls.append(log) or 1.0], apply_eval_frac=0.0, manager=manager)
        async def answer():
            return "x"

        await answer()
        await manager.flush()
        assert calls == []
        assert manager.sink.by_name("answer")[0]["scores"] is None

    @pytest.mark.asyncio
    async def test_output_projector(self, manager):
        @trace(
            eval_funcs=[exact_match],
            target="Paris",
            output_projector=lambda result: result["city"],
            manager=manager,
        )
        async def locate():
            return {"city": "Paris", "country": "France"}

        await locate()
        await manager.flush()
        log = manager.sink.by_name("locate")[0]
        assert log["output_for_eval_metrics"] == "Paris"
        assert log["scores"][0]["score"] == 1.0

    @pytest.mark.asyncio
    async def test_traced_calls_inside_scorer_are_not_traced(self, manager):
        @trace(manager=manager)
        async def judge(text):
            return len(text)

        async def llm_judge(log):
            return await judge(log.output) / 10

        @trace(eval_funcs=[llm_judge], manager=manager)
        async def answer():
            return "abcde"

        await answer()
        await manager.flush()
        assert manager.sink.by_name("judge") == []
        assert manager.sink.by_name("answer")[0]["scores"][0]["score"] == 0.5
