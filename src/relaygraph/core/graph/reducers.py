"""Reducers: how concurrent updates to one state field combine.

Every field without a reducer follows last-writer-wins. A reducer is any
``(current, incoming) -> merged`` callable; wrapping it in :class:`Reducer`
adds an initial value so the first write to an absent field folds onto it
instead of being stored as-is.
"""

from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypedDict,
)

from mirascope.core import BaseMessageParam

from relaygraph.core.logging import get_logger, LogComponent
from relaygraph.core.graph.errors import StateTypeError
from relaygraph.core.graph.state import ERRORS_KEY, State, StateSchema

logger = get_logger(LogComponent.STATE)


class Reducer:
    """A combining function with an optional initial value factory.

    Example:
        ```python
        @reducer(initial=int)
        def total(current: int, incoming: int) -> int:
            return current + incoming
        ```
    """

    def __init__(
        self,
        fn: Callable[[Any, Any], Any],
        initial: Optional[Callable[[], Any]] = None,
        name: Optional[str] = None,
    ):
        self.fn = fn
        self.initial = initial
        self.__name__ = name or getattr(fn, "__name__", type(fn).__name__)

    def __call__(self, current: Any, incoming: Any) -> Any:
        return self.fn(current, incoming)

    def __repr__(self) -> str:
        return f"Reducer({self.__name__})"


def reducer(initial: Optional[Callable[[], Any]] = None):
    """Decorator turning a two-argument function into a :class:`Reducer`."""
    def decorator(fn: Callable[[Any, Any], Any]) -> Reducer:
        return Reducer(fn, initial=initial)
    return decorator


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@reducer(initial=list)
def append(current: List[Any], incoming: Any) -> List[Any]:
    """Concatenate; a non-list incoming value is appended as one item."""
    return list(current) + _as_list(incoming)


@reducer(initial=dict)
def merge_dicts(current: Dict[str, Any], incoming: Mapping) -> Dict[str, Any]:
    """Shallow merge, incoming keys win."""
    return {**current, **incoming}


@reducer(initial=set)
def union(current: Iterable[Any], incoming: Any) -> set:
    """Set union; a single hashable incoming value is added."""
    if isinstance(incoming, (set, frozenset, list, tuple)):
        return set(current) | set(incoming)
    return set(current) | {incoming}


def _to_message(value: Any) -> BaseMessageParam:
    if isinstance(value, BaseMessageParam):
        return value
    if isinstance(value, str):
        return BaseMessageParam(role="user", content=value)
    if isinstance(value, Mapping):
        return BaseMessageParam.model_validate(dict(value))
    raise TypeError(f"Cannot interpret {value!r} as a chat message")


@reducer(initial=list)
def add_messages(current: List[BaseMessageParam], incoming: Any) -> List[BaseMessageParam]:
    """Append chat messages.

    Accepts a message, a ``{"role", "content"}`` dict, a bare string (taken
    as a user message) or a list of any of those.
    """
    return list(current) + [_to_message(message) for message in _as_list(incoming)]


class MessagesState(TypedDict):
    """Prebuilt schema for chat-style graphs."""
    messages: Annotated[List[BaseMessageParam], add_messages]


class ReducerRegistry:
    """Per-field merge functions, applied when updates are merged into state.

    Attributes:
        schema: The state schema whose fields are being merged
    """

    def __init__(
        self,
        schema: StateSchema,
        reducers: Optional[Mapping[str, Callable[[Any, Any], Any]]] = None,
    ):
        self.schema = schema
        self._reducers: Dict[str, Callable[[Any, Any], Any]] = {ERRORS_KEY: append}
        self._reducers.update(schema.reducers())
        for field, fn in (reducers or {}).items():
            self.register(field, fn)

    def register(self, field: str, fn: Callable[[Any, Any], Any]) -> None:
        """Register (or replace) the reducer for ``field``."""
        if not callable(fn):
            raise TypeError(f"Reducer for '{field}' must be callable, got {fn!r}")
        self.schema.check_declared(field)
        self._reducers[field] = fn

    def get(self, field: str) -> Optional[Callable[[Any, Any], Any]]:
        return self._reducers.get(field)

    def as_dict(self) -> Dict[str, Callable[[Any, Any], Any]]:
        return dict(self._reducers)

    def initial_state(self) -> State:
        """State holding only the schema's field defaults."""
        return State(self.schema.defaults())

    def _reduce(self, field: str, present: bool, current: Any, incoming: Any) -> Any:
        fn = self.get(field)
        if fn is None:
            return incoming
        if not present:
            initial = getattr(fn, "initial", None)
            if initial is None:
                return incoming
            current = initial()
        try:
            return fn(current, incoming)
        except (TypeError, ValueError) as e:
            raise StateTypeError(
                field, f"reducer {getattr(fn, '__name__', fn)!r} rejected {incoming!r}: {e}", incoming
            ) from e

    def merge(
        self,
        state: State,
        updates: Sequence[Tuple[str, Optional[Mapping[str, Any]]]],
    ) -> State:
        """Merge ordered ``(writer, partial)`` updates into a new state.

        ``updates`` must already be in the deterministic writer order (node
        registration order within a superstep). ``None`` partials are skipped.
        """
        data = state.to_dict()
        writers: Dict[str, List[str]] = {}

        for writer, update in updates:
            if update is None:
                continue
            if not isinstance(update, Mapping):
                raise StateTypeError(
                    None,
                    f"'{writer}' returned {type(update).__name__}; "
                    "expected a mapping of field updates or None",
                    update,
                )
            for field, value in update.items():
                self.schema.check_declared(field)
                data[field] = self._reduce(field, field in data, data.get(field), value)
                writers.setdefault(field, []).append(writer)

        for field, names in writers.items():
            if len(names) > 1 and self.get(field) is None:
                logger.warning(
                    f"Field '{field}' written by {names} in one step without a reducer; "
                    f"keeping the value from '{names[-1]}'"
                )
            data[field] = self.schema.validate_value(field, data[field])

        return State(data)
