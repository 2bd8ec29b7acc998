"""Execution configuration for compiled graphs.

Defaults can be overridden through environment variables:

    RELAYGRAPH_MAX_STEPS        superstep ceiling (int > 0)
    RELAYGRAPH_NODE_TIMEOUT     per-node timeout in seconds (float > 0)
    RELAYGRAPH_FAILURE_POLICY   "fail_fast" or "best_effort"
    RELAYGRAPH_MAX_PARALLEL     nodes run at once within a superstep (int > 0)

A value that cannot be parsed is ignored and the built-in default is used.
"""

import os
from enum import Enum
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from relaygraph.core.logging import LogComponent, RelayLoggingConfig, get_logger

logger = get_logger(LogComponent.GRAPH)

ENV_PREFIX = "RELAYGRAPH_"
DEFAULT_MAX_STEPS = 25

T = TypeVar("T")


class FailurePolicy(str, Enum):
    """What a node failure does to the rest of the invocation."""
    FAIL_FAST = "fail_fast"
    BEST_EFFORT = "best_effort"


def _from_env(name: str, parse: Callable[[str], T], default: Optional[T]) -> Optional[T]:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = parse(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}; using {default!r}")
        return default
    if isinstance(value, (int, float)) and value <= 0:
        logger.warning(f"Ignoring non-positive {ENV_PREFIX}{name}={raw!r}; using {default!r}")
        return default
    return value


class GraphConfig(BaseModel):
    """Configuration for graph execution.

    Attributes:
        max_steps: Hard ceiling on supersteps per invocation
        node_timeout: Seconds a node may run before it counts as failed
        failure_policy: Fail-fast (default) or best-effort
        max_parallel: Upper bound on nodes running at once in a superstep
        logging_config: Controls logging verbosity
    """
    model_config = ConfigDict(validate_assignment=True)

    max_steps: int = Field(
        default_factory=lambda: _from_env("MAX_STEPS", int, DEFAULT_MAX_STEPS),
        gt=0,
    )
    node_timeout: Optional[float] = Field(
        default_factory=lambda: _from_env("NODE_TIMEOUT", float, None),
        gt=0,
    )
    failure_policy: FailurePolicy = Field(
        default_factory=lambda: _from_env("FAILURE_POLICY", FailurePolicy, FailurePolicy.FAIL_FAST),
    )
    max_parallel: Optional[int] = Field(
        default_factory=lambda: _from_env("MAX_PARALLEL", int, None),
        gt=0,
    )
    logging_config: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
