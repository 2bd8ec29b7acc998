"""
Retry Loop With Checkpoints Example

This example demonstrates:
1. A conditional edge that loops until a bounded attempt count
2. Checkpoints written after every superstep
3. Resuming a failed session from its last checkpoint
"""

import asyncio
import tempfile
from typing import TypedDict

from relaygraph.core.graph import END, Graph, JsonFileCheckpointStore, NodeExecutionError
from relaygraph.core.logging import LogComponent, LogLevel, configure_logging, get_logger

# Get workflow logger
logger = get_logger(LogComponent.WORKFLOW)

MAX_ATTEMPTS = 3

###################################################################
# State
###################################################################

class FetchState(TypedDict):
    url: str
    attempt: int
    succeeded: bool
    body: str

###################################################################
# Nodes
###################################################################

class FlakyService:
    """Fails on its first call, then answers."""

    def __init__(self):
        self.calls = 0

    def report(self, state):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("service unavailable")
        return {"body": f"report for {state['url']} after {state['attempt']} attempt(s)"}

def try_fetch(state):
    """Pretend to fetch; succeeds on the last allowed attempt."""
    attempt = state.get("attempt", 0) + 1
    return {"attempt": attempt, "succeeded": attempt >= MAX_ATTEMPTS}

def should_retry(state):
    if state["succeeded"]:
        return "done"
    if state["attempt"] >= MAX_ATTEMPTS:
        return "give_up"
    return "retry"

async def main():
    """Run, fail, then resume from the last checkpoint."""
    configure_logging(default_level=LogLevel.STEP)
    service = FlakyService()

    graph = Graph(FetchState)
    graph.add_node("try_fetch", try_fetch)
    graph.add_node("report", service.report)
    graph.set_entry_point("try_fetch")
    graph.add_conditional_edges(
        "try_fetch",
        should_retry,
        {"retry": "try_fetch", "done": "report", "give_up": END},
    )
    graph.set_finish_point("report")

    with tempfile.TemporaryDirectory() as directory:
        app = graph.compile(checkpointer=JsonFileCheckpointStore(directory))

        try:
            await app.invoke({"url": "https://example.com"}, session_id="fetch-1")
        except NodeExecutionError as e:
            saved = app.get_state("fetch-1")
            logger.warning(f"{e}; resuming from checkpoint {saved.sequence_number}")

        final = await app.invoke(session_id="fetch-1")
        logger.info(final["body"])

        for checkpoint in app.get_state_history("fetch-1"):
            logger.info(
                f"#{checkpoint.sequence_number} {checkpoint.metadata['source']} "
                f"pending={list(checkpoint.pending_nodes)}"
            )

if __name__ == "__main__":
    asyncio.run(main())
