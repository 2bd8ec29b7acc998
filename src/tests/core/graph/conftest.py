"""Shared fixtures and state schemas for graph tests."""

from typing import TypedDict

import pytest

from relaygraph.core.graph import END, Graph, GraphConfig, InMemoryCheckpointStore


class TextState(TypedDict):
    text: str
    cleaned: str
    processed: str
    result: str


class RetryState(TypedDict):
    attempt: int
    succeeded: bool


def clean(state):
    return {"cleaned": state["text"].strip().lower()}


def process(state):
    return {"processed": state["cleaned"].upper()}


def format_result(state):
    return {"result": f"Result: {state['processed']} (from: {state['cleaned']})"}


@pytest.fixture
def simple_graph() -> Graph:
    """Untyped graph for testing."""
    return Graph()


@pytest.fixture
def store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def text_graph() -> Graph:
    """clean -> process -> format over TextState."""
    graph = Graph(TextState)
    graph.add_node("clean", clean)
    graph.add_node("process", process)
    graph.add_node("format", format_result)
    graph.chain(["clean", "process", "format"])
    graph.set_finish_point("format")
    return graph


@pytest.fixture
def retry_graph() -> Graph:
    """Retry loop whose operation always fails; exits after three attempts."""
    def try_operation(state):
        return {"attempt": state.get("attempt", 0) + 1, "succeeded": False}

    def should_retry(state):
        if state["succeeded"] or state["attempt"] >= 3:
            return END
        return "try_operation"

    graph = Graph(RetryState)
    graph.add_node("try_operation", try_operation)
    graph.set_entry_point("try_operation")
    graph.add_conditional_edges("try_operation", should_retry)
    return graph


@pytest.fixture
def fast_config() -> GraphConfig:
    return GraphConfig(max_steps=10)
