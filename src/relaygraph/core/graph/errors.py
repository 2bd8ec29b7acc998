"""Error taxonomy for graph building and execution."""

import asyncio
from typing import Any, List, Optional


class GraphError(Exception):
    """Base class for every error raised by the graph engine."""


class GraphValidationError(GraphError):
    """Structural problems found while compiling a graph.

    Attributes:
        errors: Every problem found, in the order they were detected
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Graph validation failed: " + "; ".join(self.errors))


class StateTypeError(GraphError, TypeError):
    """A state value does not fit the field's declared type."""

    def __init__(self, field: Optional[str], message: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(f"Field '{field}': {message}" if field else message)


class RoutingError(GraphError):
    """A routing function produced a target the graph does not know."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Routing from '{source}' failed: {message}")


class NodeExecutionError(GraphError):
    """Wraps an exception raised inside a node.

    The original exception is available as ``cause`` and ``__cause__``.
    """

    def __init__(self, node: str, cause: BaseException, step: Optional[int] = None):
        self.node = node
        self.cause = cause
        self.step = step
        detail = str(cause) or type(cause).__name__
        super().__init__(f"Node '{node}' failed: {detail}")


class NodeTimeout(GraphError, asyncio.TimeoutError):
    """A node ran past its timeout.

    A ``TimeoutError`` raised by the node itself is reported as an ordinary
    node failure, not as this error.
    """

    def __init__(self, node: str, timeout: float):
        self.node = node
        self.timeout = timeout
        super().__init__(f"Node '{node}' timed out after {timeout}s")


class MaxStepsExceeded(GraphError):
    """The superstep ceiling was reached with nodes still pending."""

    def __init__(self, max_steps: int, pending: Optional[List[str]] = None):
        self.max_steps = max_steps
        self.pending = list(pending or [])
        super().__init__(
            f"Reached the limit of {max_steps} supersteps with pending nodes: {self.pending}"
        )


class CheckpointConflictError(GraphError):
    """A checkpoint write raced with another writer for the same session."""

    def __init__(self, session_id: str, sequence_number: int, latest: int):
        self.session_id = session_id
        self.sequence_number = sequence_number
        self.latest = latest
        super().__init__(
            f"Checkpoint {sequence_number} for session '{session_id}' "
            f"is not after the latest stored checkpoint {latest}"
        )


class InvocationCancelled(GraphError):
    """The caller cancelled an in-flight invocation."""

    def __init__(self, step: int):
        self.step = step
        super().__init__(f"Invocation cancelled before completing superstep {step}")
