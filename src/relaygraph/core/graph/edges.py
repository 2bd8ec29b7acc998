"""Edges, routing functions and the START/END markers."""

from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from relaygraph.core.graph.errors import RoutingError
from relaygraph.core.graph.state import State

START = "__start__"
END = "__end__"

RESERVED_NAMES = frozenset({START, END})

Router = Callable[[State], Any]


class Edge(BaseModel):
    """Unconditional edge from ``source`` to ``target`` (a node or END)."""
    model_config = ConfigDict(frozen=True)

    source: str
    target: str


class Route(BaseModel):
    """A normalized routing decision.

    Attributes:
        targets: Node names to schedule next, without duplicates
        terminal: Whether the router also chose END for this branch
    """
    model_config = ConfigDict(frozen=True)

    targets: Tuple[str, ...] = ()
    terminal: bool = False


class ConditionalEdge(BaseModel):
    """Routes from ``source`` to whatever ``router`` picks from the merged state.

    Attributes:
        source: Node the edge leaves from
        router: ``State -> name | [names] | END`` (or a path_map key)
        path_map: Optional map from router return values to node names
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    source: str
    router: Router
    path_map: Optional[Dict[Hashable, str]] = Field(default=None)

    @property
    def name(self) -> str:
        return getattr(self.router, "__name__", type(self.router).__name__)

    def static_targets(self) -> Optional[List[str]]:
        """Every possible target when known ahead of time, else None."""
        if self.path_map is None:
            return None
        return list(dict.fromkeys(self.path_map.values()))

    def _lookup(self, key: Any) -> str:
        if self.path_map is not None:
            try:
                return self.path_map[key]
            except (KeyError, TypeError):
                raise RoutingError(
                    self.source,
                    f"router '{self.name}' returned {key!r}, which is not in its path map "
                    f"{sorted(map(repr, self.path_map))}",
                ) from None
        if not isinstance(key, str):
            raise RoutingError(
                self.source,
                f"router '{self.name}' returned {key!r}; expected a node name, a list of names or END",
            )
        return key

    def resolve(self, value: Any) -> Route:
        """Normalize a router's return value into a :class:`Route`."""
        if isinstance(value, (list, tuple, set, frozenset)):
            keys = list(value)
        else:
            keys = [value]
        if not keys:
            raise RoutingError(self.source, f"router '{self.name}' returned no targets")

        targets: List[str] = []
        terminal = False
        for key in keys:
            target = self._lookup(key)
            if target == END:
                terminal = True
            elif target not in targets:
                targets.append(target)
        return Route(targets=tuple(targets), terminal=terminal)
