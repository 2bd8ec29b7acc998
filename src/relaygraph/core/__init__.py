"""Core modules for relaygraph."""

from relaygraph.core.logging import configure_logging, LogLevel, LogComponent
from relaygraph.core.graph import (
    Graph,
    CompiledGraph,
    GraphConfig,
    FailurePolicy,
    State,
    START,
    END,
    InMemoryCheckpointStore,
    JsonFileCheckpointStore,
)

__all__ = [
    'Graph',
    'CompiledGraph',
    'GraphConfig',
    'FailurePolicy',
    'State',
    'START',
    'END',
    'InMemoryCheckpointStore',
    'JsonFileCheckpointStore',
    'configure_logging',
    'LogLevel',
    'LogComponent',
]
