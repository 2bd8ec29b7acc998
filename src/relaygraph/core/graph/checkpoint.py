"""Checkpoint persistence.

A checkpoint is an immutable snapshot of state taken after a superstep,
keyed by session. Stores are append-only: the engine never edits or deletes
a checkpoint; retention is left to the caller.

Example:
    ```python
    store = InMemoryCheckpointStore()
    app = graph.compile(checkpointer=store)
    await app.invoke({"topic": "graphs"}, session_id="lesson-3")
    store.get_latest("lesson-3").state
    ```
"""

import abc
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relaygraph.core.logging import LogComponent, get_logger
from relaygraph.core.graph.errors import CheckpointConflictError

logger = get_logger(LogComponent.CHECKPOINT)


class Checkpoint(BaseModel):
    """Snapshot of one session after a superstep.

    Attributes:
        session_id: Session the snapshot belongs to
        sequence_number: Position in the session's lineage, strictly increasing
        state: Merged state after the superstep
        pending_nodes: Frontier to run next; empty once the run finished
        timestamp: When the snapshot was taken (UTC)
        metadata: ``source`` ("input" or "step") and the invocation's ``step``
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence_number: int = Field(..., ge=0)
    state: Dict[str, Any] = Field(default_factory=dict)
    pending_nodes: Tuple[str, ...] = Field(default_factory=tuple)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return not self.pending_nodes


class BaseCheckpointStore(abc.ABC):
    """Append-only checkpoint storage with per-session write serialization.

    The latest sequence number of each session is cached after the first
    write, so a store instance must be the only writer for its sessions.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Latest sequence number per session, filled on the first put
        self._latest_sequence: Dict[str, int] = {}

    def _lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(session_id, threading.Lock())

    def put(self, session_id: str, checkpoint: Checkpoint) -> None:
        """Append ``checkpoint`` to the session's lineage.

        Raises:
            ValueError: If the checkpoint belongs to another session
            CheckpointConflictError: If its sequence number is not after the latest
        """
        if checkpoint.session_id != session_id:
            raise ValueError(
                f"Checkpoint for session '{checkpoint.session_id}' put under '{session_id}'"
            )
        with self._lock(session_id):
            if session_id not in self._latest_sequence:
                stored = self.get_latest(session_id)
                if stored is not None:
                    self._latest_sequence[session_id] = stored.sequence_number
            latest = self._latest_sequence.get(session_id)
            if latest is not None and checkpoint.sequence_number <= latest:
                logger.error(
                    f"Rejected checkpoint {checkpoint.sequence_number} for session "
                    f"'{session_id}'; latest is {latest}"
                )
                raise CheckpointConflictError(session_id, checkpoint.sequence_number, latest)
            self._append(session_id, checkpoint)
            self._latest_sequence[session_id] = checkpoint.sequence_number
        logger.debug(
            f"Stored checkpoint {checkpoint.sequence_number} for session '{session_id}' "
            f"(pending: {list(checkpoint.pending_nodes)})"
        )

    @abc.abstractmethod
    def _append(self, session_id: str, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint that already passed the sequence check."""

    @abc.abstractmethod
    def get_latest(self, session_id: str) -> Optional[Checkpoint]:
        """Most recent checkpoint for the session, or None if there is none."""

    @abc.abstractmethod
    def list(self, session_id: str) -> List[Checkpoint]:
        """All checkpoints for the session, oldest first."""

    @abc.abstractmethod
    def sessions(self) -> List[str]:
        """Identifiers of every session with at least one checkpoint."""

    def get(self, session_id: str, sequence_number: int) -> Optional[Checkpoint]:
        for checkpoint in self.list(session_id):
            if checkpoint.sequence_number == sequence_number:
                return checkpoint
        return None


class InMemoryCheckpointStore(BaseCheckpointStore):
    """Keeps checkpoints in process memory."""

    def __init__(self):
        super().__init__()
        self._checkpoints: Dict[str, List[Checkpoint]] = {}

    def _append(self, session_id: str, checkpoint: Checkpoint) -> None:
        # Deep copy so later changes to the caller's values cannot leak in
        self._checkpoints.setdefault(session_id, []).append(checkpoint.model_copy(deep=True))

    def get_latest(self, session_id: str) -> Optional[Checkpoint]:
        checkpoints = self._checkpoints.get(session_id)
        return checkpoints[-1] if checkpoints else None

    def list(self, session_id: str) -> List[Checkpoint]:
        return list(self._checkpoints.get(session_id, []))

    def sessions(self) -> List[str]:
        return [session_id for session_id, items in self._checkpoints.items() if items]


class JsonFileCheckpointStore(BaseCheckpointStore):
    """Stores each session as a JSON-lines file in ``directory``.

    State values must be JSON-serializable by pydantic; they come back as
    plain JSON values and are revalidated against the state schema on resume.
    A line left incomplete by an interrupted write is skipped with a warning.
    """

    suffix = ".jsonl"

    def __init__(self, directory: Union[str, Path]):
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{quote(session_id, safe='')}{self.suffix}"

    def _append(self, session_id: str, checkpoint: Checkpoint) -> None:
        path = self._path(session_id)
        line = checkpoint.model_dump_json() + "\n"
        if path.exists() and path.stat().st_size and not self._ends_with_newline(path):
            # Start a fresh line after a write that was cut short
            line = "\n" + line
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())

    @staticmethod
    def _ends_with_newline(path: Path) -> bool:
        with path.open("rb") as handle:
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) == b"\n"

    def list(self, session_id: str) -> List[Checkpoint]:
        path = self._path(session_id)
        if not path.exists():
            return []
        checkpoints = []
        with path.open("r", encoding="utf-8") as handle:
            for number, line in enumerate(handle, 1):
                if not line.strip():
                    continue
                try:
                    checkpoints.append(Checkpoint.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(
                        f"Skipping unreadable line {number} of {path.name}: "
                        f"{e.errors()[0]['msg']}"
                    )
        return checkpoints

    def get_latest(self, session_id: str) -> Optional[Checkpoint]:
        checkpoints = self.list(session_id)
        return checkpoints[-1] if checkpoints else None

    def sessions(self) -> List[str]:
        return sorted(
            unquote(path.name[: -len(self.suffix)])
            for path in self.directory.glob(f"*{self.suffix}")
        )
