"""
State management for tracking materialized resources between runs.

The StateSnapshot is the single mutable shared resource of a run: it is read
at plan time, updated by the executor after every completed step, and
protected by an exclusive lock for the whole plan+apply cycle.

Secrets never reach the snapshot: properties are stored in canonical form
where secret values are replaced by salted digests.
"""

import json
import logging
import os
import socket
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..errors import ConfigurationError, StateLockError, UnknownReferenceError
from ..resources.base import Reference

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class ResourceState(BaseModel):
    """Materialized state of one resource.

    Attributes:
        name: Resource identifier (matches Resource.name)
        kind: Resource kind
        resource_id: Provider-assigned id
        properties: Declared properties in canonical (secret-free) form
        properties_digest: Digest of kind + canonical declared properties
        inputs_digest: Digest of the resolved inputs last sent to the provider
        references: Resolved value of each referenced output ("node.output")
            when the resource was last created or updated
        outputs: Outputs returned by the provider
        dependencies: Names of resources this one depended on when applied
        delete_before_replace: Replace strategy in effect when applied
        updated_at: When the resource was last created or updated
    """

    name: str
    kind: str
    resource_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    properties_digest: str = ""
    inputs_digest: str = ""
    references: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    delete_before_replace: bool = False
    updated_at: datetime = Field(default_factory=datetime.now)


class RetiredResource(BaseModel):
    """An old instance superseded by a create-before-delete replacement.

    It stays here until it is deleted, so an interrupted replacement is
    finished by the next apply.
    """

    name: str
    kind: str
    resource_id: str
    dependencies: list[str] = Field(default_factory=list)
    retired_at: datetime = Field(default_factory=datetime.now)


class StateSnapshot(BaseModel):
    """Last materialized state of a stack."""

    version: int = SNAPSHOT_VERSION
    stack: str = "dev"
    serial: int = 0
    resources: dict[str, ResourceState] = Field(default_factory=dict)
    retired: list[RetiredResource] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None

    def get(self, name: str) -> ResourceState | None:
        return self.resources.get(name)

    def record(self, state: ResourceState) -> None:
        """Record a created or updated resource."""
        self.resources[state.name] = state

    def remove(self, name: str, resource_id: str) -> bool:
        """Forget a deleted instance (live or retired).

        Returns:
            True if an instance with that id was tracked
        """
        current = self.resources.get(name)
        if current is not None and current.resource_id == resource_id:
            del self.resources[name]
            return True
        before = len(self.retired)
        self.retired = [
            r for r in self.retired
            if not (r.name == name and r.resource_id == resource_id)
        ]
        return len(self.retired) != before

    def retire(self, name: str) -> RetiredResource | None:
        """Move the live instance of name to the retired list."""
        current = self.resources.pop(name, None)
        if current is None:
            return None
        retired = RetiredResource(
            name=current.name,
            kind=current.kind,
            resource_id=current.resource_id,
            dependencies=list(current.dependencies),
        )
        self.retired.append(retired)
        return retired

    def tracks(self, name: str, resource_id: str) -> bool:
        """Whether an instance with this id is live or retired in the snapshot."""
        current = self.resources.get(name)
        if current is not None and current.resource_id == resource_id:
            return True
        return any(r.name == name and r.resource_id == resource_id for r in self.retired)

    def lookup(self, ref: Reference) -> Any:
        """Resolve a reference against recorded outputs.

        Raises:
            UnknownReferenceError: If the node or output is not materialized
        """
        state = self.resources.get(ref.node)
        if state is None:
            raise UnknownReferenceError("<state>", ref.node)
        if ref.output not in state.outputs:
            raise UnknownReferenceError("<state>", ref.node, ref.output)
        return state.outputs[ref.output]


class StateStore(ABC):
    """Storage collaborator for state snapshots: load, save and lock."""

    stack_name: str

    @abstractmethod
    def load(self) -> StateSnapshot:
        """Load the snapshot, or an empty one if none was saved yet."""

    @abstractmethod
    def save(self, snapshot: StateSnapshot) -> None:
        """Persist the snapshot."""

    @abstractmethod
    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the exclusive lock for a plan+apply cycle.

        Raises:
            StateLockError: If another run holds the lock
        """


class FileStateStore(StateStore):
    """JSON snapshot on local disk with a lock file next to it.

    Layout inside state_dir:
        {stack}.json       current snapshot
        {stack}.json.bak   previous snapshot
        {stack}.lock       lock file (pid, host, acquired_at)
    """

    def __init__(self, state_dir: Path, stack_name: str = "dev"):
        self.state_dir = Path(state_dir)
        self.stack_name = stack_name
        self._io_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self.state_dir / f"{self.stack_name}.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / f"{self.stack_name}.lock"

    @property
    def backup_path(self) -> Path:
        return self.state_dir / f"{self.stack_name}.json.bak"

    def load(self) -> StateSnapshot:
        with self._io_lock:
            if not self.path.exists():
                logger.info(f"No state for stack '{self.stack_name}', starting empty")
                return StateSnapshot(stack=self.stack_name)
            try:
                snapshot = StateSnapshot.model_validate_json(
                    self.path.read_text(encoding="utf-8")
                )
            except ValidationError as e:
                raise ConfigurationError(f"Corrupt state file {self.path}: {e}") from e

        if snapshot.version != SNAPSHOT_VERSION:
            raise ConfigurationError(
                f"Unsupported state version {snapshot.version} in {self.path}"
            )
        logger.debug(
            f"Loaded state serial {snapshot.serial} with "
            f"{len(snapshot.resources)} resources from {self.path}"
        )
        return snapshot

    def save(self, snapshot: StateSnapshot) -> None:
        with self._io_lock:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            snapshot.serial += 1
            snapshot.updated_at = datetime.now()

            tmp_path = self.path.with_suffix(".json.tmp")
            tmp_path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
            if self.path.exists():
                os.replace(self.path, self.backup_path)
            os.replace(tmp_path, self.path)
        logger.debug(f"Saved state serial {snapshot.serial} to {self.path}")

    @contextmanager
    def lock(self) -> Iterator[None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise StateLockError(
                f"State for stack '{self.stack_name}' is locked ({self._describe_holder()}). "
                f"If no other run is active, remove {self.lock_path}"
            ) from None

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "acquired_at": datetime.now().isoformat(),
            }, f)
        logger.debug(f"Acquired state lock {self.lock_path}")

        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)
            logger.debug(f"Released state lock {self.lock_path}")

    def _describe_holder(self) -> str:
        try:
            holder = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return "holder unknown"
        return (
            f"pid {holder.get('pid')} on {holder.get('host')} "
            f"since {holder.get('acquired_at')}"
        )


class MemoryStateStore(StateStore):
    """In-process state store, useful for tests and embedding."""

    def __init__(self, stack_name: str = "dev", snapshot: StateSnapshot | None = None):
        self.stack_name = stack_name
        self._snapshot = snapshot.model_copy(deep=True) if snapshot else None
        self._lock = threading.Lock()
        self.saves = 0

    def load(self) -> StateSnapshot:
        if self._snapshot is None:
            return StateSnapshot(stack=self.stack_name)
        return self._snapshot.model_copy(deep=True)

    def save(self, snapshot: StateSnapshot) -> None:
        snapshot.serial += 1
        snapshot.updated_at = datetime.now()
        self._snapshot = snapshot.model_copy(deep=True)
        self.saves += 1

    @contextmanager
    def lock(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise StateLockError(f"State for stack '{self.stack_name}' is locked")
        try:
            yield
        finally:
            self._lock.release()
