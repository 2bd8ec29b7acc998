"""Executor: runs a compiled plan in supersteps.

One superstep runs every node in the frontier concurrently against the same
pre-step state, merges their partial updates in node registration order,
resolves outgoing edges against the merged state, persists a checkpoint and
moves on to the deduplicated set of next nodes. Execution ends when the
frontier is empty.

Example:
    ```python
    app = graph.compile(checkpointer=InMemoryCheckpointStore())

    final = await app.invoke({"text": "  Hello World  "}, session_id="s1")

    async for event in app.stream({"text": "hi"}, session_id="s2"):
        print(event.step, event.updates)
    ```
"""

import asyncio
import contextlib
import copy
import threading
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from relaygraph.core.logging import LogComponent, get_logger, log_state, log_verbose
from relaygraph.core.graph.checkpoint import BaseCheckpointStore, Checkpoint
from relaygraph.core.graph.compiler import ExecutionPlan
from relaygraph.core.graph.config import FailurePolicy, GraphConfig
from relaygraph.core.graph.edges import END
from relaygraph.core.graph.errors import (
    InvocationCancelled,
    MaxStepsExceeded,
    NodeExecutionError,
    NodeTimeout,
    RoutingError,
)
from relaygraph.core.graph.nodes.base.node import Node
from relaygraph.core.graph.state import ERRORS_KEY, NodeStatus, State

logger = get_logger(LogComponent.EXECUTOR)

INPUT_WRITER = "__input__"


class StreamMode(str, Enum):
    """What each streamed event carries besides the per-node updates."""
    UPDATES = "updates"
    VALUES = "values"


class CancellationToken:
    """Thread-safe flag a caller sets to stop an invocation.

    Attributes:
        abandon_in_flight: Cancel running nodes instead of letting them finish
    """

    def __init__(self, abandon_in_flight: bool = False, poll_interval: float = 0.01):
        self.abandon_in_flight = abandon_in_flight
        self.poll_interval = poll_interval
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        while not self._event.is_set():
            await asyncio.sleep(self.poll_interval)


class StepEvent(BaseModel):
    """One completed superstep, as yielded by ``CompiledGraph.stream``.

    Attributes:
        step: 1-based superstep index within the invocation
        nodes: Nodes that ran in this step, in registration order
        updates: Partial update returned by each successful node
        status: Outcome of each node
        errors: Error message of each failed node (best-effort policy only)
        next_nodes: Frontier of the following step
        checkpoint: Sequence number of the checkpoint written, if any
        state: Full merged state, only in ``StreamMode.VALUES``
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    step: int
    nodes: List[str]
    updates: Dict[str, Optional[Dict[str, Any]]] = Field(default_factory=dict)
    status: Dict[str, NodeStatus] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    next_nodes: List[str] = Field(default_factory=list)
    checkpoint: Optional[int] = None
    state: Optional[Dict[str, Any]] = None


class _Outcome:
    """Result of running one node in a superstep."""

    __slots__ = ("name", "update", "error", "status")

    def __init__(self, name: str, update: Any = None, error: Optional[BaseException] = None,
                 status: NodeStatus = NodeStatus.COMPLETED):
        self.name = name
        self.update = update
        self.error = error
        self.status = status


class _Run:
    """Mutable holder for the state an invocation ends with."""

    def __init__(self):
        self.state: Optional[State] = None
        self.steps = 0


class Executor:
    """Runs an :class:`ExecutionPlan` under a :class:`GraphConfig`."""

    def __init__(
        self,
        plan: ExecutionPlan,
        config: GraphConfig,
        checkpointer: Optional[BaseCheckpointStore] = None,
    ):
        self.plan = plan
        self.config = config
        self.checkpointer = checkpointer
        self._session_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _merge_lock(self, session_id: Optional[str]):
        if session_id is None:
            return contextlib.nullcontext()
        with self._locks_guard:
            return self._session_locks.setdefault(session_id, threading.Lock())

    def _save(
        self,
        session_id: Optional[str],
        sequence_number: int,
        state: State,
        pending: List[str],
        step: int,
        source: str,
    ) -> Optional[int]:
        if self.checkpointer is None or session_id is None:
            return None
        checkpoint = Checkpoint(
            session_id=session_id,
            sequence_number=sequence_number,
            state=state.to_dict(),
            pending_nodes=tuple(pending),
            metadata={"source": source, "step": step},
        )
        self.checkpointer.put(session_id, checkpoint)
        return sequence_number

    @staticmethod
    def _as_update(input: Any) -> Optional[Mapping[str, Any]]:
        if input is None:
            return None
        if isinstance(input, BaseModel):
            return input.model_dump(exclude_unset=True)
        return input

    def _prepare(self, input: Any, session_id: Optional[str]) -> Tuple[State, List[str], int]:
        """Seed the state, frontier and last sequence number for an invocation."""
        registry = self.plan.registry
        update = self._as_update(input)
        latest = None
        if self.checkpointer is not None and session_id is not None:
            latest = self.checkpointer.get_latest(session_id)

        if latest is None:
            state = registry.merge(registry.initial_state(), [(INPUT_WRITER, update)])
            frontier = [self.plan.entry_point]
            sequence = self._save(session_id, 0, state, frontier, 0, "input")
            logger.info(
                f"Starting session '{session_id}' at {self.plan.entry_point}"
                if session_id else f"Starting run at {self.plan.entry_point}"
            )
            return state, frontier, 0 if sequence is None else sequence

        # Copy so nodes cannot reach into the stored checkpoint
        state = State(self.plan.state_schema.validate_mapping(copy.deepcopy(latest.state)))
        unknown = [name for name in latest.pending_nodes if name not in self.plan.nodes]
        if unknown:
            logger.warning(f"Dropping pending nodes unknown to this graph: {unknown}")
        frontier = self.plan.ordered(
            name for name in latest.pending_nodes if name in self.plan.nodes
        )
        if frontier:
            logger.info(
                f"Resuming session '{session_id}' from checkpoint "
                f"{latest.sequence_number} with pending {frontier}"
            )
        elif not update:
            logger.info(
                f"Session '{session_id}' finished at checkpoint {latest.sequence_number}; "
                "nothing to run without new input"
            )
            return state, [], latest.sequence_number
        else:
            frontier = [self.plan.entry_point]
            logger.info(
                f"Session '{session_id}' finished at checkpoint {latest.sequence_number}; "
                f"starting a new run at {self.plan.entry_point}"
            )

        sequence = latest.sequence_number
        if update:
            state = registry.merge(state, [(INPUT_WRITER, update)])
            sequence = self._save(session_id, sequence + 1, state, frontier, 0, "input")
        return state, frontier, sequence

    async def _call(self, node: Node, state: State) -> Any:
        timeout = node.timeout or self.config.node_timeout
        if timeout is None:
            return await node.process(state)

        task = asyncio.ensure_future(node.process(state))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise NodeTimeout(node.id, timeout)

    async def _run_node(self, name: str, state: State, semaphore: Optional[asyncio.Semaphore]) -> _Outcome:
        node = self.plan.nodes[name]
        try:
            if semaphore is None:
                update = await self._call(node, state)
            else:
                async with semaphore:
                    update = await self._call(node, state)
        except NodeTimeout as e:
            logger.error(str(e))
            return _Outcome(name, error=e, status=NodeStatus.TIMEOUT)
        except Exception as e:
            logger.error(f"Error in node {name}: {e!r}")
            return _Outcome(name, error=e, status=NodeStatus.ERROR)

        if self.config.logging_config.show_node_outputs:
            node.log_output(update)
        return _Outcome(name, update=update)

    async def _run_superstep(
        self,
        frontier: List[str],
        state: State,
        step: int,
        token: Optional[CancellationToken],
    ) -> List[_Outcome]:
        semaphore = asyncio.Semaphore(self.config.max_parallel) if self.config.max_parallel else None
        tasks = [asyncio.ensure_future(self._run_node(name, state, semaphore)) for name in frontier]
        gathered = asyncio.gather(*tasks)
        if token is None:
            return list(await gathered)

        watcher = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({gathered, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            watcher.cancel()

        if token.cancelled:
            if token.abandon_in_flight:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                logger.warning(f"Cancelled during step {step}; abandoned nodes {frontier}")
            else:
                await asyncio.gather(*tasks, return_exceptions=True)
                logger.warning(f"Cancelled during step {step}; discarded results of {frontier}")
            raise InvocationCancelled(step)
        return list(gathered.result())

    async def _route(self, outcomes: List[_Outcome], state: State) -> List[str]:
        """Resolve the next frontier from the nodes that succeeded."""
        targets: List[str] = []
        for outcome in outcomes:
            for target in self.plan.successors(outcome.name):
                if target != END:
                    targets.append(target)

            for branch in self.plan.branches.get(outcome.name, ()):
                try:
                    value = branch.router(state)
                    if asyncio.iscoroutine(value):
                        value = await value
                except RoutingError:
                    raise
                except Exception as e:
                    raise RoutingError(outcome.name, f"router '{branch.name}' raised {e!r}") from e

                route = branch.resolve(value)
                for target in route.targets:
                    if target not in self.plan.nodes:
                        raise RoutingError(
                            outcome.name, f"router '{branch.name}' returned unknown node '{target}'"
                        )
                targets.extend(route.targets)
                if route.terminal:
                    logger.debug(f"Branch from {outcome.name} reached END via '{branch.name}'")

        return self.plan.ordered(targets)

    def _failure_update(self, failures: List[_Outcome], step: int) -> Dict[str, Any]:
        return {
            ERRORS_KEY: [
                {
                    "node": outcome.name,
                    "error": str(outcome.error) or type(outcome.error).__name__,
                    "type": type(outcome.error).__name__,
                    "step": step,
                }
                for outcome in failures
            ]
        }

    async def execute(
        self,
        input: Any = None,
        session_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        mode: StreamMode = StreamMode.UPDATES,
        run: Optional[_Run] = None,
    ) -> AsyncIterator[StepEvent]:
        """Run the plan, yielding one :class:`StepEvent` per superstep."""
        mode = StreamMode(mode)
        run = run or _Run()
        registry = self.plan.registry
        with self._merge_lock(session_id):
            state, frontier, sequence = self._prepare(input, session_id)
        log_state(logger, state)

        step = 0
        while frontier:
            if token is not None and token.cancelled:
                logger.warning(f"Cancelled before step {step + 1}")
                raise InvocationCancelled(step + 1)
            if step >= self.config.max_steps:
                logger.error(f"Superstep limit {self.config.max_steps} reached with pending {frontier}")
                raise MaxStepsExceeded(self.config.max_steps, frontier)
            step += 1
            logger.step(f"Step {step}: running {frontier}")

            outcomes = await self._run_superstep(frontier, state, step, token)
            succeeded = [outcome for outcome in outcomes if outcome.error is None]
            failures = [outcome for outcome in outcomes if outcome.error is not None]

            if failures and self.config.failure_policy == FailurePolicy.FAIL_FAST:
                first = failures[0]
                logger.error(
                    f"Aborting at step {step} on failure of {first.name}; "
                    f"last checkpoint for '{session_id}' is {sequence}"
                )
                raise NodeExecutionError(first.name, first.error, step) from first.error

            updates = [(outcome.name, outcome.update) for outcome in succeeded]
            if failures:
                updates.append((ERRORS_KEY, self._failure_update(failures, step)))

            with self._merge_lock(session_id):
                state = registry.merge(state, updates)
            frontier = await self._route(succeeded, state)
            if self.config.logging_config.show_transitions:
                log_verbose(logger, f"Step {step}: {[o.name for o in succeeded]} -> {frontier or [END]}")

            with self._merge_lock(session_id):
                saved = self._save(session_id, sequence + 1, state, frontier, step, "step")
            if saved is not None:
                sequence = saved

            run.state = state
            run.steps = step
            log_state(logger, state)

            yield StepEvent(
                step=step,
                nodes=[outcome.name for outcome in outcomes],
                updates={
                    outcome.name: dict(outcome.update) if outcome.update is not None else None
                    for outcome in succeeded
                },
                status={outcome.name: outcome.status for outcome in outcomes},
                errors={outcome.name: str(outcome.error) for outcome in failures},
                next_nodes=list(frontier),
                checkpoint=saved,
                state=state.to_dict() if mode == StreamMode.VALUES else None,
            )

        run.state = state
        run.steps = step
        logger.info(f"Finished after {step} step(s)")


class CompiledGraph(BaseModel):
    """A compiled graph, ready to invoke or stream.

    Attributes:
        plan: Execution plan produced by the compiler
        config: Execution configuration
        checkpointer: Optional checkpoint store for sessions
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    plan: ExecutionPlan
    config: GraphConfig = Field(default_factory=GraphConfig)
    checkpointer: Optional[BaseCheckpointStore] = None
    _executor: Executor = PrivateAttr()

    def __init__(self, **data):
        super().__init__(**data)
        self._executor = Executor(self.plan, self.config, self.checkpointer)

    async def invoke(
        self,
        input: Any = None,
        session_id: Optional[str] = None,
        *,
        token: Optional[CancellationToken] = None,
    ) -> State:
        """Run to completion and return the final state."""
        run = _Run()
        async for _ in self._executor.execute(input, session_id, token, run=run):
            pass
        return run.state

    async def stream(
        self,
        input: Any = None,
        session_id: Optional[str] = None,
        *,
        mode: StreamMode = StreamMode.UPDATES,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StepEvent]:
        """Yield one event per completed superstep."""
        async for event in self._executor.execute(input, session_id, token, mode):
            yield event

    def invoke_sync(
        self,
        input: Any = None,
        session_id: Optional[str] = None,
        *,
        token: Optional[CancellationToken] = None,
    ) -> State:
        """Blocking wrapper around :meth:`invoke` for code without a running loop."""
        return asyncio.run(self.invoke(input, session_id, token=token))

    def get_state(self, session_id: str) -> Optional[Checkpoint]:
        """Latest checkpoint of a session, or None."""
        if self.checkpointer is None:
            return None
        return self.checkpointer.get_latest(session_id)

    def get_state_history(self, session_id: str) -> List[Checkpoint]:
        """Every checkpoint of a session, oldest first."""
        if self.checkpointer is None:
            return []
        return self.checkpointer.list(session_id)

    def draw_mermaid(self) -> str:
        """Mermaid flowchart of the plan."""
        from relaygraph.core.graph.viz import GraphVisualizer
        return GraphVisualizer(self.plan).render_graph()
