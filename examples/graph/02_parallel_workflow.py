"""
Parallel Fan-Out Example

This example demonstrates:
1. Fanning out to several nodes in one superstep
2. A reduced list field collecting every branch's output
3. A fan-in node that runs once, after all branches merged
"""

import asyncio
import operator
import random
from typing import Annotated, List, TypedDict

from relaygraph.core.graph import Graph, GraphConfig
from relaygraph.core.logging import LogComponent, LogLevel, configure_logging, get_logger

# Get workflow logger
logger = get_logger(LogComponent.WORKFLOW)

###################################################################
# State
###################################################################

class ReviewState(TypedDict):
    draft: str
    reviews: Annotated[List[str], operator.add]
    summary: str

###################################################################
# Nodes
###################################################################

def reviewer(focus: str):
    """Build a reviewer node that takes a random amount of time."""
    async def review(state):
        await asyncio.sleep(random.uniform(0.1, 0.5))
        return {"reviews": [f"{focus}: '{state['draft']}' looks fine"]}
    review.__name__ = f"review_{focus}"
    return review

def summarize(state):
    """Join every review; order follows node registration, not timing."""
    return {"summary": "\n".join(state["reviews"])}

async def main():
    """Run the fan-out workflow."""
    configure_logging(default_level=LogLevel.STEP)

    graph = Graph(ReviewState)
    graph.add_node("draft", lambda state: {"draft": state["draft"].strip()})
    for focus in ["grammar", "style", "facts"]:
        graph.add_node(reviewer(focus))
        graph.add_edge("draft", f"review_{focus}")
        graph.add_edge(f"review_{focus}", "summarize")
    graph.add_node("summarize", summarize)
    graph.set_entry_point("draft")
    graph.set_finish_point("summarize")

    app = graph.compile(GraphConfig(max_parallel=3, node_timeout=2))
    final = await app.invoke({"draft": "  Graphs run in supersteps.  "})
    logger.info(f"Summary:\n{final['summary']}")

if __name__ == "__main__":
    asyncio.run(main())
