"""
Sequential Text Workflow Example

This example demonstrates:
1. A typed state schema
2. Three nodes chained clean -> process -> format
3. Streaming one event per superstep
"""

import asyncio
from typing import TypedDict

from relaygraph.core.graph import Graph
from relaygraph.core.logging import LogComponent, LogLevel, configure_logging, get_logger

# Get workflow logger
logger = get_logger(LogComponent.WORKFLOW)

###################################################################
# State
###################################################################

class TextState(TypedDict):
    text: str
    cleaned: str
    processed: str
    result: str

###################################################################
# Nodes
###################################################################

def clean(state):
    """Trim and lowercase the input text."""
    return {"cleaned": state["text"].strip().lower()}

def process(state):
    """Uppercase the cleaned text."""
    return {"processed": state["cleaned"].upper()}

def format_result(state):
    """Render the final result."""
    return {"result": f"Result: {state['processed']} (from: {state['cleaned']})"}

async def main():
    """Run the sequential workflow."""
    configure_logging(default_level=LogLevel.STEP)

    graph = Graph(TextState)
    graph.add_node("clean", clean)
    graph.add_node("process", process)
    graph.add_node("format", format_result)
    graph.chain(["clean", "process", "format"])
    graph.set_finish_point("format")

    app = graph.compile()
    logger.info(f"Graph:\n{app.draw_mermaid()}")

    async for event in app.stream({"text": "  Hello World  "}):
        logger.step(f"Step {event.step} {event.nodes}: {event.updates}")

    final = await app.invoke({"text": "  Hello World  "})
    logger.info(final["result"])

if __name__ == "__main__":
    asyncio.run(main())
