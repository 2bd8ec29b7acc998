"""Compiler: validates a graph definition and produces an execution plan.

Compilation never runs a node. It snapshots the builder's nodes, edges and
reducers into an immutable :class:`ExecutionPlan`, so the same graph can be
compiled any number of times and later edits to the builder never leak into
an existing plan.
"""

from collections import deque
from typing import TYPE_CHECKING, Dict, Iterable, List, Set, Tuple

from pydantic import BaseModel, ConfigDict

from relaygraph.core.logging import LogComponent, get_logger
from relaygraph.core.graph.edges import END, ConditionalEdge
from relaygraph.core.graph.errors import GraphValidationError
from relaygraph.core.graph.nodes.base.node import Node
from relaygraph.core.graph.reducers import ReducerRegistry
from relaygraph.core.graph.state import StateSchema

if TYPE_CHECKING:
    from relaygraph.core.graph.base import Graph

logger = get_logger(LogComponent.COMPILER)


class ExecutionPlan(BaseModel):
    """Compiled, immutable form of a graph.

    Attributes:
        nodes: Nodes by name, in registration order
        entry_point: First node to run
        edges: Unconditional successors of each node, in declaration order
        branches: Conditional edges leaving each node
        state_schema: The state schema
        registry: Reducer registry used by the merge stage
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    nodes: Dict[str, Node]
    entry_point: str
    edges: Dict[str, Tuple[str, ...]]
    branches: Dict[str, Tuple[ConditionalEdge, ...]]
    state_schema: StateSchema
    registry: ReducerRegistry

    def ordered(self, names: Iterable[str]) -> List[str]:
        """Deduplicate ``names`` and sort them by registration order."""
        order = {name: i for i, name in enumerate(self.nodes)}
        return sorted(set(names), key=lambda name: order[name])

    def successors(self, name: str) -> Tuple[str, ...]:
        return self.edges.get(name, ())


def _static_successors(graph: "Graph") -> Tuple[Dict[str, List[str]], bool]:
    """Successor lists over static edges and path maps.

    The flag is False when some router has no path map, meaning its targets
    are only known at runtime.
    """
    successors: Dict[str, List[str]] = {name: [] for name in graph.nodes}
    fully_static = True
    for edge in graph.edges:
        successors.setdefault(edge.source, []).append(edge.target)
    for branch in graph.branches:
        targets = branch.static_targets()
        if targets is None:
            fully_static = False
            continue
        successors.setdefault(branch.source, []).extend(targets)
    return successors, fully_static


def _reachable(start: str, successors: Dict[str, List[str]]) -> Set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        for target in successors.get(queue.popleft(), []):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def find_problems(graph: "Graph") -> Tuple[List[str], List[str]]:
    """Collect structural errors and advisory warnings for ``graph``.

    Returns:
        ``(errors, warnings)``; compilation fails when ``errors`` is non-empty
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not graph.nodes:
        errors.append("Graph has no nodes")
        return errors, warnings

    for name, node in graph.nodes.items():
        if not node.validate():
            errors.append(f"Node {name} failed validation")

    if graph.entry_point is None:
        errors.append("Entry point is not set")
    elif graph.entry_point not in graph.nodes:
        errors.append(f"Entry point references unknown node: {graph.entry_point}")

    for edge in graph.edges:
        if edge.source not in graph.nodes:
            errors.append(f"Edge {edge.source} -> {edge.target} starts at unknown node: {edge.source}")
        if edge.target != END and edge.target not in graph.nodes:
            errors.append(f"Edge {edge.source} -> {edge.target} references unknown node: {edge.target}")

    for branch in graph.branches:
        if branch.source not in graph.nodes:
            errors.append(f"Router '{branch.name}' starts at unknown node: {branch.source}")
        for target in branch.static_targets() or []:
            if target != END and target not in graph.nodes:
                errors.append(
                    f"Router '{branch.name}' from {branch.source} can route to unknown node: {target}"
                )

    sources = {edge.source for edge in graph.edges} | {branch.source for branch in graph.branches}
    for name in graph.nodes:
        if name not in sources:
            errors.append(f"Node {name} has no outgoing edge; connect it to END to finish there")

    if errors:
        return errors, warnings

    successors, fully_static = _static_successors(graph)
    if fully_static:
        reachable = _reachable(graph.entry_point, successors)
        for name in graph.nodes:
            if name not in reachable:
                warnings.append(f"Node {name} is unreachable from entry point {graph.entry_point}")
            elif END not in _reachable(name, successors):
                warnings.append(f"Node {name} can never reach END; only max_steps will stop it")

    return errors, warnings


def compile_graph(graph: "Graph") -> ExecutionPlan:
    """Validate ``graph`` and build its execution plan.

    Raises:
        GraphValidationError: If the graph has structural errors
    """
    errors, warnings = find_problems(graph)
    for warning in warnings:
        logger.warning(warning)
    if errors:
        for error in errors:
            logger.error(error)
        raise GraphValidationError(errors)

    edges: Dict[str, List[str]] = {}
    for edge in graph.edges:
        targets = edges.setdefault(edge.source, [])
        if edge.target not in targets:
            targets.append(edge.target)

    branches: Dict[str, List[ConditionalEdge]] = {}
    for branch in graph.branches:
        branches.setdefault(branch.source, []).append(branch)

    schema = graph.state_schema
    plan = ExecutionPlan(
        nodes=dict(graph.nodes),
        entry_point=graph.entry_point,
        edges={source: tuple(targets) for source, targets in edges.items()},
        branches={source: tuple(items) for source, items in branches.items()},
        state_schema=schema,
        registry=ReducerRegistry(schema, graph.reducers),
    )
    logger.info(
        f"Compiled graph: {len(plan.nodes)} nodes, entry at {plan.entry_point}, "
        f"{len(graph.edges)} edges, {len(graph.branches)} routers"
    )
    return plan
