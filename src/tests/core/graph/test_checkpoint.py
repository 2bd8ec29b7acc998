"""Tests for checkpoint stores and session persistence."""

import asyncio
import threading
from typing import Annotated, List, Set, TypedDict

import pytest
from mirascope.core import BaseMessageParam

from relaygraph.core.graph import (
    CancellationToken,
    Checkpoint,
    CheckpointConflictError,
    Graph,
    InMemoryCheckpointStore,
    InvocationCancelled,
    JsonFileCheckpointStore,
    MessagesState,
    NodeExecutionError,
    union,
)

from .conftest import TextState, clean, format_result, process


class NumberState(TypedDict):
    number: int


class TagState(TypedDict):
    tags: Annotated[Set[str], union]
    count: int


def double(state):
    return {"number": state["number"] * 2}


def add_tags(state):
    return {"tags": ["b", "a"], "count": state["count"] + 1}


def single_node_graph(fn, schema) -> Graph:
    graph = Graph(schema)
    graph.add_node(fn)
    graph.set_entry_point(fn.__name__)
    graph.set_finish_point(fn.__name__)
    return graph


def checkpoint(session_id: str, sequence_number: int, **kwargs) -> Checkpoint:
    return Checkpoint(session_id=session_id, sequence_number=sequence_number, **kwargs)


@pytest.fixture(params=["memory", "jsonl"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCheckpointStore()
    return JsonFileCheckpointStore(tmp_path / "checkpoints")


def reply(state):
    last = state["messages"][-1]
    return {"messages": [{"role": "assistant", "content": f"echo: {last.content}"}]}


def chat_graph() -> Graph:
    graph = Graph(MessagesState)
    graph.add_node("reply", reply)
    graph.set_entry_point("reply")
    graph.set_finish_point("reply")
    return graph


def text_graph_with(process_fn) -> Graph:
    graph = Graph(TextState)
    graph.add_node("clean", clean)
    graph.add_node("process", process_fn)
    graph.add_node("format", format_result)
    graph.chain(["clean", "process", "format"])
    graph.set_finish_point("format")
    return graph


class TestStores:
    """Behavior shared by every checkpoint store."""

    def test_put_and_get(self, any_store):
        any_store.put("s1", checkpoint("s1", 0, state={"n": 1}, pending_nodes=("a",)))
        any_store.put("s1", checkpoint("s1", 1, state={"n": 2}))

        latest = any_store.get_latest("s1")
        assert latest.sequence_number == 1
        assert latest.state == {"n": 2}
        assert latest.is_final
        assert any_store.get("s1", 0).pending_nodes == ("a",)
        assert any_store.get("s1", 7) is None

    def test_list_is_ordered(self, any_store):
        for sequence in [0, 2, 5]:
            any_store.put("s1", checkpoint("s1", sequence))
        assert [c.sequence_number for c in any_store.list("s1")] == [0, 2, 5]

    def test_unknown_session(self, any_store):
        assert any_store.get_latest("nobody") is None
        assert any_store.list("nobody") == []

    def test_sequence_conflict(self, any_store):
        any_store.put("s1", checkpoint("s1", 3))
        with pytest.raises(CheckpointConflictError) as exc:
            any_store.put("s1", checkpoint("s1", 3))
        assert exc.value.latest == 3
        with pytest.raises(CheckpointConflictError):
            any_store.put("s1", checkpoint("s1", 1))
        assert len(any_store.list("s1")) == 1

    def test_session_mismatch(self, any_store):
        with pytest.raises(ValueError):
            any_store.put("s1", checkpoint("s2", 0))

    def test_sessions_are_independent(self, any_store):
        any_store.put("s1", checkpoint("s1", 0))
        any_store.put("s2", checkpoint("s2", 0))
        assert sorted(any_store.sessions()) == ["s1", "s2"]

    def test_concurrent_puts(self, any_store):
        barrier = threading.Barrier(8)
        results: List[str] = []

        def writer():
            barrier.wait()
            try:
                any_store.put("race", checkpoint("race", 1))
                results.append("ok")
            except CheckpointConflictError:
                results.append("conflict")

        threads = [threading.Thread(target=writer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 1
        assert results.count("conflict") == 7

    def test_negative_sequence(self):
        with pytest.raises(ValueError):
            checkpoint("s1", -1)


class TestInMemoryStore:
    """In-memory specifics."""

    def test_stored_state_is_a_copy(self):
        store = InMemoryCheckpointStore()
        items = [1]
        store.put("s1", checkpoint("s1", 0, state={"items": items}))
        items.append(2)
        assert store.get_latest("s1").state == {"items": [1]}

    async def test_resume_does_not_share_values_with_store(self):
        def grow(state):
            state["items"].append("x")
            return {"count": len(state["items"])}

        store = InMemoryCheckpointStore()
        app = single_node_graph(grow, None).compile(checkpointer=store)
        await app.invoke({"items": []}, session_id="s1")
        await app.invoke({"count": 0}, session_id="s1")

        history = app.get_state_history("s1")
        assert history[1].state == {"items": ["x"], "count": 1}
        assert history[-1].state == {"items": ["x", "x"], "count": 2}


class TestJsonFileStore:
    """JSON-lines specifics."""

    def test_session_id_is_quoted(self, tmp_path):
        store = JsonFileCheckpointStore(tmp_path)
        store.put("user/42", checkpoint("user/42", 0, state={"n": 1}))
        assert (tmp_path / "user%2F42.jsonl").exists()
        assert store.sessions() == ["user/42"]
        assert store.get_latest("user/42").state == {"n": 1}

    def test_reopen_directory(self, tmp_path):
        JsonFileCheckpointStore(tmp_path).put("s1", checkpoint("s1", 0, pending_nodes=("a", "b")))
        reopened = JsonFileCheckpointStore(tmp_path)
        assert reopened.get_latest("s1").pending_nodes == ("a", "b")
        with pytest.raises(CheckpointConflictError):
            reopened.put("s1", checkpoint("s1", 0))

    def test_truncated_line_is_skipped(self, tmp_path, caplog):
        JsonFileCheckpointStore(tmp_path).put("s", checkpoint("s", 0, state={"n": 1}))
        with (tmp_path / "s.jsonl").open("a", encoding="utf-8") as handle:
            handle.write('{"session_id": "s", "sequence_')

        reopened = JsonFileCheckpointStore(tmp_path)
        assert reopened.get_latest("s").sequence_number == 0
        assert any("unreadable line 2" in record.getMessage() for record in caplog.records)

        reopened.put("s", checkpoint("s", 1, state={"n": 2}))
        assert [c.sequence_number for c in reopened.list("s")] == [0, 1]
        assert reopened.get_latest("s").state == {"n": 2}

    def test_put_does_not_reread_the_file(self, tmp_path, monkeypatch):
        store = JsonFileCheckpointStore(tmp_path)
        store.put("s", checkpoint("s", 0))

        def fail(session_id):
            raise AssertionError("put must not read the session file again")

        monkeypatch.setattr(store, "list", fail)
        store.put("s", checkpoint("s", 1))
        with pytest.raises(CheckpointConflictError):
            store.put("s", checkpoint("s", 1))


class TestSessionPersistence:
    """Checkpointing during execution."""

    async def test_history(self, text_graph: Graph, store: InMemoryCheckpointStore):
        app = text_graph.compile(checkpointer=store)
        events = [event async for event in app.stream({"text": " Hi "}, session_id="s1")]
        assert [event.checkpoint for event in events] == [1, 2, 3]

        history = app.get_state_history("s1")
        assert [c.sequence_number for c in history] == [0, 1, 2, 3]
        assert history[0].metadata == {"source": "input", "step": 0}
        assert history[0].state == {"text": " Hi "}
        assert history[0].pending_nodes == ("clean",)
        assert [c.pending_nodes for c in history[1:]] == [("process",), ("format",), ()]

        latest = app.get_state("s1")
        assert latest.is_final
        assert latest.metadata == {"source": "step", "step": 3}
        assert latest.state["result"] == "Result: HI (from: hi)"

    async def test_no_session_no_checkpoints(self, text_graph: Graph, store: InMemoryCheckpointStore):
        await text_graph.compile(checkpointer=store).invoke({"text": "x"})
        assert store.sessions() == []

    async def test_no_checkpointer(self, text_graph: Graph):
        app = text_graph.compile()
        await app.invoke({"text": "x"}, session_id="s1")
        assert app.get_state("s1") is None
        assert app.get_state_history("s1") == []

    async def test_resume_after_failure(self, store: InMemoryCheckpointStore):
        attempts = []

        def flaky_process(state):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("temporary outage")
            return process(state)

        app = text_graph_with(flaky_process).compile(checkpointer=store)
        with pytest.raises(NodeExecutionError):
            await app.invoke({"text": "  Hello World  "}, session_id="flaky")

        saved = app.get_state("flaky")
        assert saved.sequence_number == 1
        assert saved.pending_nodes == ("process",)

        resumed = await app.invoke(session_id="flaky")
        expected = await text_graph_with(process).compile().invoke({"text": "  Hello World  "})
        assert resumed == expected
        assert len(attempts) == 2
        assert [c.sequence_number for c in app.get_state_history("flaky")] == [0, 1, 2, 3]

    async def test_resume_after_cancellation(self, store: InMemoryCheckpointStore):
        token = CancellationToken()

        def cancelling_process(state):
            token.cancel()
            return process(state)

        graph = text_graph_with(cancelling_process)
        app = graph.compile(checkpointer=store)
        with pytest.raises(InvocationCancelled) as exc:
            await app.invoke({"text": " Stop "}, session_id="s1", token=token)
        assert exc.value.step == 2
        assert app.get_state("s1").pending_nodes == ("process",)

        final = await app.invoke(session_id="s1")
        assert final["result"] == "Result: STOP (from: stop)"

    async def test_multi_turn_conversation(self, store: InMemoryCheckpointStore):
        app = chat_graph().compile(checkpointer=store)
        await app.invoke({"messages": ["hi"]}, session_id="chat")
        final = await app.invoke({"messages": ["again"]}, session_id="chat")

        assert [m.content for m in final["messages"]] == [
            "hi", "echo: hi", "again", "echo: again",
        ]
        sources = [c.metadata["source"] for c in app.get_state_history("chat")]
        assert sources == ["input", "step", "input", "step"]

    async def test_multi_turn_from_json_files(self, tmp_path):
        app = chat_graph().compile(checkpointer=JsonFileCheckpointStore(tmp_path))
        await app.invoke({"messages": ["hi"]}, session_id="chat")

        reloaded = chat_graph().compile(checkpointer=JsonFileCheckpointStore(tmp_path))
        final = await reloaded.invoke({"messages": ["again"]}, session_id="chat")
        assert all(isinstance(m, BaseMessageParam) for m in final["messages"])
        assert [m.role for m in final["messages"]] == ["user", "assistant", "user", "assistant"]

    async def test_concurrent_sessions(self, text_graph: Graph, store: InMemoryCheckpointStore):
        app = text_graph.compile(checkpointer=store)
        first, second = await asyncio.gather(
            app.invoke({"text": "one"}, session_id="a"),
            app.invoke({"text": "two"}, session_id="b"),
        )
        assert first["processed"] == "ONE"
        assert second["processed"] == "TWO"
        assert sorted(store.sessions()) == ["a", "b"]

    async def test_finished_session_without_input(self, store: InMemoryCheckpointStore):
        app = single_node_graph(double, NumberState).compile(checkpointer=store)
        final = await app.invoke({"number": 5}, session_id="s")
        assert final == {"number": 10}

        assert await app.invoke(None, session_id="s") == final
        assert await app.invoke({}, session_id="s") == final
        assert len(app.get_state_history("s")) == 2

    async def test_set_field_through_json_files(self, tmp_path):
        app = single_node_graph(add_tags, TagState).compile(
            checkpointer=JsonFileCheckpointStore(tmp_path)
        )
        final = await app.invoke({"tags": {"x"}, "count": 0}, session_id="s")
        assert final == {"tags": {"a", "b", "x"}, "count": 1}
        assert isinstance(app.get_state("s").state["tags"], list)

        reloaded = single_node_graph(add_tags, TagState).compile(
            checkpointer=JsonFileCheckpointStore(tmp_path)
        )
        resumed = await reloaded.invoke(session_id="s")
        for name, value in final.items():
            assert resumed[name] == value
        assert isinstance(resumed["tags"], set)
