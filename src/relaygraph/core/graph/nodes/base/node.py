"""Base node class for the graph system.

This module defines the Node abstraction for the Graph framework. A Node is a
named unit of work over state: it reads the state it is given and returns a
partial update (a mapping of the fields it wants to change) or ``None``.

Typical Usage:
    - Register a plain function with ``graph.add_node("name", fn)``; sync
      functions run in a worker thread, coroutine functions on the loop
    - Or subclass Node and override the async ``process`` method
"""

import asyncio
import inspect
import json
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from relaygraph.core.logging import Colors, LogComponent, get_logger
from relaygraph.core.graph.state import State

logger = get_logger(LogComponent.NODES)

PartialState = Optional[Mapping[str, Any]]
NodeFunction = Callable[[State], Any]


class Node(BaseModel):
    """
    Abstract base node for graph operations.

    Attributes:
        id: Unique node identifier
        metadata: Optional node metadata
        timeout: Per-node timeout in seconds, overriding the graph config
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(..., description="Unique identifier for this node")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode='after')
    def validate_node(self) -> 'Node':
        """Validate node configuration."""
        if not self.id:
            raise ValueError("Node must have an ID")
        return self

    async def process(self, state: State) -> PartialState:
        """Process node logic. Must be implemented by subclasses."""
        raise NotImplementedError("Subclasses must implement process()")

    def validate(self) -> bool:
        """
        Validate node configuration.

        Override in subclasses if additional checks are required.

        Returns:
            True if the node is considered valid.
        """
        return True

    def get_metadata(self, key: str, default: Any = None) -> Any:
        """Get metadata value."""
        return self.metadata.get(key, default)

    def log_output(self, update: PartialState) -> None:
        """Log a node's partial update at INFO level."""
        try:
            if hasattr(update, 'model_dump_json'):
                formatted = update.model_dump_json(indent=2)
            elif isinstance(update, Mapping):
                formatted = json.dumps(dict(update), indent=2, default=str)
            else:
                formatted = str(update)
        except (TypeError, ValueError):
            formatted = repr(update)

        logger.info(
            f"\n{Colors.BOLD}Node {self.id} Output:{Colors.RESET}\n"
            f"{Colors.INFO}{formatted}{Colors.RESET}\n"
            f"{Colors.DIM}{'─' * 50}{Colors.RESET}"
        )


class FunctionNode(Node):
    """Node wrapping a plain callable ``State -> PartialState``.

    Coroutine functions are awaited; anything else runs through
    ``asyncio.to_thread`` so blocking calls in sibling nodes overlap.
    """
    fn: NodeFunction = Field(..., description="Callable run against the state")

    @property
    def is_async(self) -> bool:
        fn = self.fn
        return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
            getattr(fn, "__call__", None)
        )

    async def process(self, state: State) -> PartialState:
        if self.is_async:
            return await self.fn(state)
        result = await asyncio.to_thread(self.fn, state)
        if inspect.isawaitable(result):
            result = await result
        return result


def as_node(node: Union[Node, NodeFunction, str], fn: Optional[NodeFunction] = None) -> Node:
    """Coerce the arguments of ``Graph.add_node`` into a Node.

    Accepts a Node instance, a ``(name, callable)`` pair, or a bare named
    callable whose ``__name__`` becomes the node id.
    """
    if isinstance(node, Node):
        if fn is not None:
            raise ValueError(f"Node instance '{node.id}' cannot take a separate function")
        return node
    if isinstance(node, str):
        if fn is None:
            raise ValueError(f"Node '{node}' needs a function")
        if isinstance(fn, Node):
            return fn.model_copy(update={"id": node})
        if not callable(fn):
            raise TypeError(f"Node '{node}' function must be callable, got {fn!r}")
        return FunctionNode(id=node, fn=fn)
    if callable(node):
        name = getattr(node, "__name__", None)
        if not name or name == "<lambda>":
            raise ValueError("Anonymous callables need an explicit node name")
        return FunctionNode(id=name, fn=node)
    raise TypeError(f"Cannot build a node from {node!r}")
