"""Graph package initialization.

Exposes core graph components and helpers for building workflows.
"""

from relaygraph.core.graph.base import Graph
from relaygraph.core.graph.checkpoint import (
    BaseCheckpointStore,
    Checkpoint,
    InMemoryCheckpointStore,
    JsonFileCheckpointStore,
)
from relaygraph.core.graph.compiler import ExecutionPlan
from relaygraph.core.graph.config import FailurePolicy, GraphConfig
from relaygraph.core.graph.edges import START, END
from relaygraph.core.graph.errors import (
    GraphError,
    GraphValidationError,
    StateTypeError,
    RoutingError,
    NodeExecutionError,
    NodeTimeout,
    MaxStepsExceeded,
    CheckpointConflictError,
    InvocationCancelled,
)
from relaygraph.core.graph.executor import (
    CancellationToken,
    CompiledGraph,
    StepEvent,
    StreamMode,
)
from relaygraph.core.graph.nodes.base.node import Node, FunctionNode
from relaygraph.core.graph.reducers import (
    MessagesState,
    Reducer,
    ReducerRegistry,
    add_messages,
    append,
    merge_dicts,
    reducer,
    union,
)
from relaygraph.core.graph.state import ERRORS_KEY, NodeStatus, State, StateSchema

__all__ = [
    # Core classes
    "Graph",
    "CompiledGraph",
    "ExecutionPlan",
    "Node",
    "FunctionNode",
    "State",
    "StateSchema",
    "NodeStatus",
    "MessagesState",
    "StepEvent",
    "StreamMode",
    "CancellationToken",
    "ERRORS_KEY",
    "START",
    "END",

    # Configuration
    "GraphConfig",
    "FailurePolicy",

    # Reducers
    "Reducer",
    "ReducerRegistry",
    "reducer",
    "append",
    "add_messages",
    "merge_dicts",
    "union",

    # Checkpoints
    "BaseCheckpointStore",
    "Checkpoint",
    "InMemoryCheckpointStore",
    "JsonFileCheckpointStore",

    # Errors
    "GraphError",
    "GraphValidationError",
    "StateTypeError",
    "RoutingError",
    "NodeExecutionError",
    "NodeTimeout",
    "MaxStepsExceeded",
    "CheckpointConflictError",
    "InvocationCancelled",
]
