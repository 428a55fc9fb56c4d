"""Tests for the trace log merge policy and the serialization helpers."""

import pytest

from llm_trace.helpers import extract_inputs, func_name, gen_random_name, serialize_value
from llm_trace.merge import merge_trace_data, merge_values
from llm_trace.models import EvaluationResult, TraceLog


def _record(**fields) -> TraceLog:
    return TraceLog(trace_id="t1", root_trace_id="t1", start_timestamp="2024-01-01T00:00:00+00:00", **fields)


# ---------------------------------------------------------------------------
# merge_values
# ---------------------------------------------------------------------------


class TestMergeValues:
    def test_mappings_union_new_keys_win(self):
        assert merge_values("metadata", {"a": 1, "b": 1}, {"b": 2, "c": 3}) == {"a": 1, "b": 2, "c": 3}

    def test_lists_concatenate(self):
        assert merge_values("images", ["x"], ["y", "x"]) == ["x", "y", "x"]

    def test_tags_deduplicate_in_order(self):
        assert merge_values("tags", ["a", "b"], ["b", "c", "a"]) == ["a", "b", "c"]

    def test_second_error_accumulates(self):
        assert merge_values("error", "first", "second") == ["first", "second"]
        assert merge_values("error", ["first", "second"], "third") == ["first", "second", "third"]

    def test_first_error_is_kept_as_is(self):
        assert merge_values("error", None, "boom") == "boom"

    def test_status_error_is_sticky(self):
        assert merge_values("status", "error", "success") == "error"
        assert merge_values("status", "success", "error") == "error"

    def test_scalar_replaces(self):
        assert merge_values("output", "old", "new") == "new"


# ---------------------------------------------------------------------------
# merge_trace_data
# ---------------------------------------------------------------------------


class TestMergeTraceData:
    def test_metadata_merges_across_inserts(self):
        record = _record(metadata={"a": 1})
        merge_trace_data(record, {"metadata": {"b": 2}})
        merge_trace_data(record, {"metadata": {"a": 3}})
        assert record.metadata == {"a": 3, "b": 2}

    def test_tags_merge_without_duplicates(self):
        record = _record(tags=["prod"])
        merge_trace_data(record, {"tags": ["prod", "beta"]})
        assert record.tags == ["prod", "beta"]

    def test_unknown_field_is_attached(self):
        record = _record()
        merge_trace_data(record, {"images": ["http://img/1.png"]})
        merge_trace_data(record, {"images": ["http://img/2.png"]})
        assert record.to_payload()["images"] == ["http://img/1.png", "http://img/2.png"]

    def test_linkage_fields_are_refused(self, caplog):
        record = _record()
        merge_trace_data(record, {"trace_id": "other", "depth": 5, "children": ["x"], "output": "ok"})
        assert record.trace_id == "t1"
        assert record.depth == 0
        assert record.children == []
        assert record.output == "ok"
        assert "linkage" in caplog.text

    def test_invalid_value_is_skipped(self):
        record = _record()
        merge_trace_data(record, {"input_tokens": "many", "output": "ok"})
        assert record.input_tokens is None
        assert record.output == "ok"

    def test_error_then_status(self):
        record = _record()
        merge_trace_data(record, {"error": "first", "status": "error"})
        merge_trace_data(record, {"error": "second", "status": "success"})
        assert record.error == ["first", "second"]
        assert record.status == "error"

    def test_scores_concatenate(self):
        record = _record(scores=[EvaluationResult(name="a", score=1.0)])
        merge_trace_data(record, {"scores": [{"name": "b", "score": 0.5}]})
        assert [s.name for s in record.scores] == ["a", "b"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestSerializeValue:
    def test_strings_pass_through(self):
        assert serialize_value("hello") == "hello"

    def test_json_for_structures(self):
        assert serialize_value({"a": [1, 2]}) == '{"a": [1, 2]}'

    def test_unserializable_degrades_to_str(self):
        class Opaque:
            def __str__(self):
                return "opaque!"

        assert serialize_value({"obj": Opaque()}) == '{"obj": "opaque!"}'

    def test_pydantic_model(self):
        assert serialize_value(EvaluationResult(name="x", score=1)) == '{"name":"x","score":1.0,"reason":null}'


class TestExtractInputs:
    def test_binds_by_name(self):
        def greet(name, punctuation="!"):
            return name

        assert extract_inputs(greet, ("Ada",), {"punctuation": "?"}) == {"name": "Ada", "punctuation": "?"}

    def test_lists_stay_structured(self):
        def chat(messages):
            return messages

        msgs = [{"role": "user", "content": "hi"}]
        assert extract_inputs(chat, (msgs,), {}) == {"messages": msgs}

    def test_skips_self(self):
        class Bot:
            def ask(self, question):
                return question

        assert extract_inputs(Bot.ask, (Bot(), "why"), {}) == {"question": "why"}

    def test_falls_back_to_positions(self):
        def one(a):
            return a

        assert extract_inputs(one, (1, 2), {}) == {"arg0": "1", "arg1": "2"}

    def test_var_keyword_flattened(self):
        def f(**kwargs):
            return kwargs

        assert extract_inputs(f, (), {"x": 1}) == {"x": "1"}


class TestNames:
    def test_random_name_shape(self):
        name = gen_random_name()
        adjective, noun = name.split("-")
        assert adjective and noun

    def test_func_name_of_partial(self):
        import functools

        def scorer(log, weight):
            return weight

        assert func_name(functools.partial(scorer, weight=2)) == "scorer"

    @pytest.mark.parametrize("value", [1, 1.5, True, None])
    def test_scalars_are_json(self, value):
        import json

        assert json.loads(serialize_value(value)) == value
