"""State management for the graph system.

This module provides:
1. NodeStatus: An enumeration of node execution statuses
2. State: A read-only mapping of named fields passed between nodes
3. StateField / StateSchema: Declared field types, defaults and reducers

A schema is declared either as a ``TypedDict`` or a pydantic model, with
reducers attached through ``Annotated``:

    ```python
    class ResearchState(TypedDict):
        topic: str
        results: Annotated[List[str], operator.add]
    ```
"""

import copy
import inspect
from collections.abc import Mapping
from enum import Enum
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, TypeAdapter, ValidationError

from relaygraph.core.graph.errors import StateTypeError

# Reserved field collecting node failures under the best-effort policy
ERRORS_KEY = "__errors__"


class NodeStatus(str, Enum):
    """Node execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class State(Mapping):
    """Read-only mapping of field name to value.

    Nodes receive a ``State`` and return a partial update; the merge stage
    builds a new ``State`` rather than changing an existing one. A ``State``
    compares equal to any mapping holding the same items.

    Immutability is shallow: list and dict values are shared with the nodes
    of a superstep, so nodes must return new values instead of mutating the
    ones they were given.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping] = None):
        self._data: Dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"State({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        """Return a shallow copy of the fields as a plain dict."""
        return dict(self._data)


class StateField(BaseModel):
    """A declared state field.

    Attributes:
        name: Field name
        annotation: Declared type, validated with pydantic
        reducer: Optional merge function for concurrent updates
        default_factory: Produces the field's default, if it has one
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    annotation: Any = Field(default=Any)
    reducer: Optional[Callable[[Any, Any], Any]] = None
    default_factory: Optional[Callable[[], Any]] = None

    _adapter: Optional[TypeAdapter] = PrivateAttr(default=None)

    @property
    def has_default(self) -> bool:
        return self.default_factory is not None

    def validate_value(self, value: Any, strict: bool = True) -> Any:
        """Validate ``value`` against the declared type and return it.

        Node updates are checked strictly, so ``"7"`` is not accepted for an
        ``int`` field. Lax mode converts JSON values back, e.g. a list into
        a declared ``Set``.
        """
        if self.annotation is Any:
            return value
        if self._adapter is None:
            self._adapter = TypeAdapter(self.annotation)
        try:
            return self._adapter.validate_python(value, strict=strict)
        except ValidationError as e:
            raise StateTypeError(
                self.name,
                f"value {value!r} is not assignable to {self.annotation!r}: "
                f"{e.errors()[0]['msg']}",
                value,
            ) from e


def _split_annotated(hint: Any):
    """Separate ``Annotated[T, reducer]`` into ``(T, reducer)``."""
    if get_origin(hint) is Annotated:
        base, *extras = get_args(hint)
        reducer = next((extra for extra in extras if callable(extra)), None)
        return base, reducer
    return hint, None


def _constant(value: Any) -> Callable[[], Any]:
    return lambda: copy.deepcopy(value)


class StateSchema(BaseModel):
    """Declared fields of a graph's state.

    A schema without fields and with ``strict=False`` accepts any key with
    any value; that is what graphs built without a schema use.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    fields: Dict[str, StateField] = Field(default_factory=dict)
    strict: bool = Field(default=True)

    @classmethod
    def from_type(cls, schema: Any = None) -> "StateSchema":
        """Build a schema from a TypedDict, a pydantic model or a name->type dict."""
        if schema is None:
            return cls(strict=False)
        if isinstance(schema, StateSchema):
            return schema
        if isinstance(schema, Mapping):
            fields = {}
            for name, hint in schema.items():
                annotation, reducer = _split_annotated(hint)
                fields[name] = StateField(name=name, annotation=annotation, reducer=reducer)
            return cls(fields=fields)
        if not inspect.isclass(schema):
            raise TypeError(f"Unsupported state schema: {schema!r}")

        fields = {}
        if issubclass(schema, BaseModel):
            # pydantic strips Annotated and keeps the extras in ``metadata``
            for name, info in schema.model_fields.items():
                default_factory = None
                if not info.is_required():
                    if info.default_factory is not None:
                        default_factory = info.default_factory
                    else:
                        default_factory = _constant(info.default)
                fields[name] = StateField(
                    name=name,
                    annotation=info.annotation,
                    reducer=next((m for m in info.metadata if callable(m)), None),
                    default_factory=default_factory,
                )
            return cls(fields=fields)

        for name, hint in get_type_hints(schema, include_extras=True).items():
            annotation, reducer = _split_annotated(hint)
            fields[name] = StateField(name=name, annotation=annotation, reducer=reducer)
        return cls(fields=fields)

    def field(self, name: str) -> Optional[StateField]:
        return self.fields.get(name)

    def reducers(self) -> Dict[str, Callable[[Any, Any], Any]]:
        return {name: f.reducer for name, f in self.fields.items() if f.reducer is not None}

    def defaults(self) -> Dict[str, Any]:
        """Default values for every field that declares one."""
        return {
            name: f.default_factory()
            for name, f in self.fields.items()
            if f.has_default
        }

    def check_declared(self, name: str) -> None:
        if name == ERRORS_KEY or not self.strict or name in self.fields:
            return
        raise StateTypeError(
            name, f"not declared in the state schema (known fields: {sorted(self.fields)})"
        )

    def validate_value(self, name: str, value: Any, strict: bool = True) -> Any:
        self.check_declared(name)
        declared = self.fields.get(name)
        if declared is None:
            return value
        return declared.validate_value(value, strict=strict)

    def validate_mapping(self, data: Mapping) -> Dict[str, Any]:
        """Validate every item of ``data`` in lax mode; used when restoring stored state."""
        return {
            name: self.validate_value(name, value, strict=False)
            for name, value in data.items()
        }

    def describe(self) -> List[str]:
        """One line per field, used in debug logging and visualization."""
        lines = []
        for name, f in self.fields.items():
            line = f"{name}: {getattr(f.annotation, '__name__', repr(f.annotation))}"
            if f.reducer is not None:
                line += f" (reducer: {getattr(f.reducer, '__name__', repr(f.reducer))})"
            lines.append(line)
        return lines
