"""
Lock-guarded IPAM state with write-through YAML persistence.
"""

from __future__ import annotations

import logging
import os
import pathlib
import tempfile
import threading
from typing import Callable, Optional, TypeVar, Union

import yaml

from .errors import PersistenceError
from .models import IpamState

log = logging.getLogger(__name__)

T = TypeVar("T")


class ReadWriteLock:
    """
    Many readers or one writer. Waiting writers block new readers so a steady
    stream of queries cannot starve allocation requests.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


def read_state_file(path: pathlib.Path) -> Optional[IpamState]:
    """Parse a state file, returning None when it does not exist."""
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Failed to read state file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PersistenceError(f"Failed to parse state file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise PersistenceError(f"State file {path} must contain a mapping at the top level")
    try:
        return IpamState.from_dict(data)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise PersistenceError(f"Invalid entry in state file {path}: {exc}") from exc


def write_state_file(path: pathlib.Path, state: IpamState) -> None:
    """Write the whole state next to the target, then rename it into place."""
    text = yaml.safe_dump(state.to_dict(), default_flow_style=False, sort_keys=True)
    directory = path.parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
    except OSError as exc:
        raise PersistenceError(f"Failed to prepare state file {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise PersistenceError(f"Failed to write state file {path}: {exc}") from exc


class StateStore:
    """Owns the in-memory IpamState and mirrors every mutation to disk."""

    def __init__(self, path: Union[str, pathlib.Path], state: Optional[IpamState] = None):
        self.path = pathlib.Path(path)
        self._state = state if state is not None else IpamState()
        self._lock = ReadWriteLock()

    @classmethod
    def open(cls, path: Union[str, pathlib.Path]) -> "StateStore":
        store = cls(path)
        store._state = store.load()
        log.info(
            "Loaded state from %s: %d pool(s), %d lease(s)",
            store.path,
            len(store._state.pools),
            len(store._state.leases),
        )
        return store

    def load(self) -> IpamState:
        state = read_state_file(self.path)
        if state is None:
            log.info("No state file at %s, starting empty", self.path)
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PersistenceError(f"Failed to create state directory {self.path.parent}: {exc}") from exc
            return IpamState()
        return state

    def reload(self) -> None:
        self._lock.acquire_write()
        try:
            self._state = self.load()
        finally:
            self._lock.release_write()
        log.debug("State reloaded from %s", self.path)

    def save(self) -> None:
        """Persist the current state. Callers already hold the write lock."""
        write_state_file(self.path, self._state)
        log.debug("State saved to %s", self.path)

    def with_state(self, fn: Callable[[IpamState], T]) -> T:
        self._lock.acquire_read()
        try:
            return fn(self._state)
        finally:
            self._lock.release_read()

    def with_state_mut(self, fn: Callable[[IpamState], T]) -> T:
        """
        Run fn with exclusive access and save before releasing the lock.

        An exception from fn skips the save. A failed save raises
        PersistenceError even though the in-memory change has been applied.
        """
        self._lock.acquire_write()
        try:
            result = fn(self._state)
            self.save()
            return result
        finally:
            self._lock.release_write()
