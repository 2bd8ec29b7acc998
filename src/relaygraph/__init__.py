"""Relaygraph - state-graph workflow engine."""

from relaygraph.core import (
    Graph,
    CompiledGraph,
    GraphConfig,
    FailurePolicy,
    State,
    START,
    END,
    InMemoryCheckpointStore,
    JsonFileCheckpointStore,
    configure_logging,
    LogLevel,
    LogComponent,
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
