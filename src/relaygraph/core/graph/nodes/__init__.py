"""Node package initialization.

Exposes node types and helpers for building workflows.
"""

from relaygraph.core.graph.nodes.base.node import (
    Node,
    FunctionNode,
    as_node,
)

__all__ = [
    # Base node types
    "Node",
    "FunctionNode",

    # Helpers
    "as_node",
]
