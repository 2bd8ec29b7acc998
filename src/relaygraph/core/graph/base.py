"""Graph Base Classes

This module defines the graph builder for orchestrating workflows.
The graph provides a lightweight way to:
1. Register nodes (plain functions or Node subclasses) over a typed state
2. Connect them with static edges and routing functions
3. Declare reducers for fields written by parallel branches
4. Compile into an executable plan that runs in supersteps

Example:
    ```python
    class State(TypedDict):
        text: str
        results: Annotated[List[str], operator.add]

    graph = Graph(State)
    graph.add_node("clean", clean)
    graph.add_node("process", process)
    graph.add_node("format", format_result)
    graph.chain(["clean", "process", "format"])
    graph.set_finish_point("format")

    app = graph.compile()
    final = await app.invoke({"text": "  Hello World  "})
    ```
"""

from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from relaygraph.core.logging import LogComponent, RelayLoggingConfig, get_logger
from relaygraph.core.graph.checkpoint import BaseCheckpointStore
from relaygraph.core.graph.compiler import compile_graph, find_problems
from relaygraph.core.graph.config import GraphConfig
from relaygraph.core.graph.edges import END, RESERVED_NAMES, START, ConditionalEdge, Edge, Router
from relaygraph.core.graph.executor import CompiledGraph
from relaygraph.core.graph.nodes.base.node import Node, NodeFunction, as_node
from relaygraph.core.graph.state import StateSchema


class Graph(BaseModel):
    """A directed graph for orchestrating workflows over shared state.

    The graph manages:
    - Node registration, in order (the order fixes merge and scheduling order)
    - Static and conditional edges
    - The entry point
    - Reducer assignments per state field

    Attributes:
        state_schema: Declared state fields
        nodes: Dictionary mapping node IDs to Node instances
        edges: Unconditional edges in declaration order
        branches: Conditional edges in declaration order
        entry_point: ID of the first node to run
        reducers: Reducers registered on top of the schema's own
        logging_config: Controls logging verbosity
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    state_schema: StateSchema = Field(default_factory=StateSchema.from_type)
    nodes: Dict[str, Node] = Field(default_factory=dict)
    edges: List[Edge] = Field(default_factory=list)
    branches: List[ConditionalEdge] = Field(default_factory=list)
    entry_point: Optional[str] = None
    reducers: Dict[str, Callable[[Any, Any], Any]] = Field(default_factory=dict)
    logging_config: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    _logger: Any = PrivateAttr()

    def __init__(self, state_schema: Any = None, **data):
        super().__init__(state_schema=StateSchema.from_type(state_schema), **data)
        self._logger = get_logger(LogComponent.GRAPH)

    def add_node(self, node: Union[Node, NodeFunction, str], fn: Optional[NodeFunction] = None) -> None:
        """Register a node with the graph.

        Args:
            node: Node instance, node name (with ``fn``), or a named function
            fn: Function run by the node when ``node`` is a name

        Raises:
            ValueError: If the name is reserved, already taken, or fails validation
        """
        node = as_node(node, fn)
        if node.id in RESERVED_NAMES:
            raise ValueError(f"Node name {node.id} is reserved")
        if node.id in self.nodes:
            raise ValueError(f"Node already registered: {node.id}")
        if not node.validate():
            raise ValueError(f"Node {node.id} failed validation")

        self.nodes[node.id] = node
        self._logger.info(f"Added node: {node.id} of type {type(node).__name__}")

    def add_edge(self, from_node_id: str, to_node_id: str) -> None:
        """Add an unconditional edge.

        ``START`` as the source sets the entry point; ``END`` as the target
        marks a finish point. Unknown node names are reported at compile time.

        Raises:
            ValueError: If the edge leaves END or enters START
        """
        if from_node_id == END:
            raise ValueError("END has no outgoing edges")
        if to_node_id == START:
            raise ValueError("START cannot be an edge target")
        if from_node_id == START:
            self.set_entry_point(to_node_id)
            return

        self.edges.append(Edge(source=from_node_id, target=to_node_id))
        self._logger.info(f"Added edge: {from_node_id} --> {to_node_id}")

    def add_conditional_edges(
        self,
        from_node_id: str,
        router: Router,
        path_map: Optional[Union[Mapping[Hashable, str], Sequence[str]]] = None,
    ) -> None:
        """Route from ``from_node_id`` to whatever ``router`` returns.

        Args:
            from_node_id: Source node ID
            router: ``State -> name | [names] | END``, called on the merged state
            path_map: Optional map from router return values to node names;
                a list of names maps each name to itself

        Raises:
            ValueError: If the source is END or the router is not callable
        """
        if from_node_id == END:
            raise ValueError("END has no outgoing edges")
        if not callable(router):
            raise ValueError(f"Router for {from_node_id} must be callable")
        if path_map is not None and not isinstance(path_map, Mapping):
            path_map = {name: name for name in path_map}

        branch = ConditionalEdge(
            source=from_node_id,
            router=router,
            path_map=dict(path_map) if path_map is not None else None,
        )
        self.branches.append(branch)
        self._logger.info(f"Added router: {from_node_id} --[{branch.name}]--> ?")

    def set_entry_point(self, node_id: str) -> None:
        """Set the node the graph starts at."""
        if node_id in RESERVED_NAMES:
            raise ValueError(f"Entry point cannot be {node_id}")
        self.entry_point = node_id
        self._logger.info(f"Set entry point to node: {node_id}")

    def set_finish_point(self, node_id: str) -> None:
        """Finish the branch after ``node_id`` runs."""
        self.add_edge(node_id, END)

    def chain(self, nodes: Sequence[Union[str, Node, NodeFunction]]) -> None:
        """Connect a sequence of nodes in order.

        Items that are names of registered nodes are used as-is; anything
        else is registered first. The first node becomes the entry point if
        none is set.
        """
        names = []
        for item in nodes:
            if isinstance(item, str) and item in self.nodes:
                names.append(item)
            else:
                node = as_node(item)
                self.add_node(node)
                names.append(node.id)

        for i in range(len(names) - 1):
            self.add_edge(names[i], names[i + 1])

        if names and self.entry_point is None:
            self.set_entry_point(names[0])

    def register_reducer(self, field: str, reducer: Callable[[Any, Any], Any]) -> None:
        """Assign a reducer to ``field``, overriding one declared in the schema."""
        if not callable(reducer):
            raise ValueError(f"Reducer for {field} must be callable")
        self.state_schema.check_declared(field)
        self.reducers[field] = reducer
        self._logger.info(f"Registered reducer for field: {field}")

    def validate(self) -> List[str]:
        """Validate the graph configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors, _ = find_problems(self)
        return errors

    def compile(
        self,
        config: Optional[GraphConfig] = None,
        checkpointer: Optional[BaseCheckpointStore] = None,
    ) -> CompiledGraph:
        """Validate and compile the graph.

        Raises:
            GraphValidationError: If the graph has structural errors
        """
        plan = compile_graph(self)
        return CompiledGraph(
            plan=plan,
            config=config or GraphConfig(logging_config=self.logging_config),
            checkpointer=checkpointer,
        )
