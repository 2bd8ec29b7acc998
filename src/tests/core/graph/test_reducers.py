"""Tests for reducers and the merge stage."""

import itertools
import logging
import operator
from typing import Annotated, List, TypedDict

import pytest
from mirascope.core import BaseMessageParam

from relaygraph.core.graph import (
    ERRORS_KEY,
    MessagesState,
    Reducer,
    ReducerRegistry,
    State,
    StateSchema,
    StateTypeError,
    add_messages,
    append,
    merge_dicts,
    reducer,
    union,
)


class MergeState(TypedDict):
    total: Annotated[int, operator.add]
    items: Annotated[List[str], append]
    label: str


@pytest.fixture
def registry() -> ReducerRegistry:
    return ReducerRegistry(StateSchema.from_type(MergeState))


class TestBuiltinReducers:
    """Test the built-in reducer functions."""

    def test_append(self):
        assert append([1], [2, 3]) == [1, 2, 3]
        assert append([1], 2) == [1, 2]
        assert append.initial() == []

    def test_merge_dicts(self):
        assert merge_dicts({"a": 1, "b": 1}, {"b": 2}) == {"a": 1, "b": 2}

    def test_union(self):
        assert union({1}, [2, 1]) == {1, 2}
        assert union(set(), "x") == {"x"}

    def test_add_messages_coerces(self):
        messages = add_messages([], [
            {"role": "system", "content": "be brief"},
            "hello",
            BaseMessageParam(role="assistant", content="hi"),
        ])
        assert all(isinstance(message, BaseMessageParam) for message in messages)
        assert [message.role for message in messages] == ["system", "user", "assistant"]

    def test_add_messages_rejects_garbage(self):
        with pytest.raises(TypeError):
            add_messages([], 42)

    def test_reducer_decorator(self):
        @reducer(initial=lambda: 10)
        def keep_max(current, incoming):
            return max(current, incoming)

        assert isinstance(keep_max, Reducer)
        assert keep_max.__name__ == "keep_max"
        assert keep_max(3, 5) == 5
        assert keep_max.initial() == 10

    def test_messages_state_schema(self):
        schema = StateSchema.from_type(MessagesState)
        assert schema.fields["messages"].reducer is add_messages


class TestMerge:
    """Test merging partial updates into state."""

    def test_last_writer_wins_without_reducer(self, registry: ReducerRegistry):
        merged = registry.merge(State(), [("a", {"label": "first"}), ("b", {"label": "second"})])
        assert merged["label"] == "second"

    def test_parallel_unreduced_write_logs_warning(self, registry: ReducerRegistry, caplog):
        with caplog.at_level(logging.WARNING):
            registry.merge(State(), [("a", {"label": "x"}), ("b", {"label": "y"})])
        assert any("without a reducer" in record.getMessage() for record in caplog.records)

    def test_reduced_writes_are_all_kept(self, registry: ReducerRegistry):
        merged = registry.merge(State({"items": ["seed"]}), [
            ("a", {"items": ["a"]}),
            ("b", {"items": ["b"]}),
            ("c", {"items": ["c"]}),
        ])
        assert merged["items"] == ["seed", "a", "b", "c"]

    def test_first_write_without_initial_is_stored(self, registry: ReducerRegistry):
        merged = registry.merge(State(), [("a", {"total": 4}), ("b", {"total": 6})])
        assert merged["total"] == 10

    def test_first_write_folds_onto_initial(self, registry: ReducerRegistry):
        merged = registry.merge(State(), [("a", {"items": "solo"})])
        assert merged["items"] == ["solo"]

    def test_associative_reducer_is_order_independent(self, registry: ReducerRegistry):
        updates = [("a", {"total": 1}), ("b", {"total": 2}), ("c", {"total": 3})]
        totals = {
            registry.merge(State({"total": 0}), list(order))["total"]
            for order in itertools.permutations(updates)
        }
        assert totals == {6}

    def test_merge_returns_new_state(self, registry: ReducerRegistry):
        before = State({"items": ["x"], "label": "old"})
        after = registry.merge(before, [("a", {"items": ["y"], "label": "new"})])
        assert before == {"items": ["x"], "label": "old"}
        assert after == {"items": ["x", "y"], "label": "new"}

    def test_none_update_is_skipped(self, registry: ReducerRegistry):
        assert registry.merge(State({"label": "x"}), [("a", None)]) == {"label": "x"}

    def test_non_mapping_update(self, registry: ReducerRegistry):
        with pytest.raises(StateTypeError):
            registry.merge(State(), [("a", ["label", "x"])])

    def test_wrong_type(self, registry: ReducerRegistry):
        with pytest.raises(StateTypeError) as exc:
            registry.merge(State(), [("a", {"label": ["not", "a", "string"]})])
        assert exc.value.field == "label"

    def test_reducer_type_error(self, registry: ReducerRegistry):
        with pytest.raises(StateTypeError) as exc:
            registry.merge(State({"total": 1}), [("a", {"total": "two"})])
        assert exc.value.field == "total"

    def test_undeclared_field(self, registry: ReducerRegistry):
        with pytest.raises(StateTypeError):
            registry.merge(State(), [("a", {"unknown": 1})])

    def test_errors_field_appends(self, registry: ReducerRegistry):
        first = registry.merge(State(), [(ERRORS_KEY, {ERRORS_KEY: [{"node": "a"}]})])
        second = registry.merge(first, [(ERRORS_KEY, {ERRORS_KEY: [{"node": "b"}]})])
        assert [error["node"] for error in second[ERRORS_KEY]] == ["a", "b"]

    def test_register_overrides_schema(self, registry: ReducerRegistry):
        registry.register("label", lambda current, incoming: f"{current}+{incoming}")
        merged = registry.merge(State({"label": "a"}), [("x", {"label": "b"})])
        assert merged["label"] == "a+b"
