"""State persistence.

``FileStateStore`` keeps state as a single JSON document next to a lock file.
Saves are atomic: the new document is written to a temporary file in the same
directory, flushed to disk and renamed over the old one, so a crash mid-save
leaves either the previous or the new state, never a partial one.

``MemoryStateStore`` has the same contract and backs tests and dry runs.
"""

from __future__ import annotations

import json
import os
import socket
import tempfile
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from kubeplan.errors import StateCorruptionError, StateLockError
from kubeplan.models.state import SCHEMA_VERSION, State, StateRecord
from kubeplan.observability.logging import get_logger

_logger = get_logger("state")


class StateStore(ABC):
    """Load, save and lock persisted state."""

    @abstractmethod
    def load(self) -> State:
        """Return the persisted state; empty state if none exists yet.

        Raises:
            StateCorruptionError: the persisted document cannot be read back.
        """

    @abstractmethod
    def save(self, state: State) -> None:
        """Persist *state*, bumping its serial (and fixing its lineage on first save)."""

    @abstractmethod
    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the exclusive writer lock for the duration of the block.

        Raises:
            StateLockError: another writer holds the lock.
        """

    @abstractmethod
    def force_unlock(self) -> bool:
        """Release a stale lock.  Returns whether a lock was held."""


def _stamp(state: State) -> None:
    state.serial += 1
    if not state.lineage:
        state.lineage = str(uuid.uuid4())


def decode_state(raw: str, origin: str) -> State:
    """Parse a serialised state document.  *origin* only names it in errors."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateCorruptionError(origin, f"invalid JSON: {exc.msg} at line {exc.lineno}") from exc
    if not isinstance(data, dict):
        raise StateCorruptionError(origin, "top level must be an object")

    version = data.get("schema_version")
    if version != SCHEMA_VERSION:
        raise StateCorruptionError(origin, f"unsupported schema_version {version!r} (expected {SCHEMA_VERSION})")

    records_raw = data.get("records", {})
    if not isinstance(records_raw, dict):
        raise StateCorruptionError(origin, "records must be an object")

    records: dict[str, StateRecord] = {}
    for key, item in records_raw.items():
        if not isinstance(item, dict):
            raise StateCorruptionError(origin, f"record {key!r} must be an object")
        try:
            records[key] = StateRecord.from_dict(key, item)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateCorruptionError(origin, f"record {key!r}: {exc.__class__.__name__}: {exc}") from exc

    try:
        serial = int(data.get("serial", 0))
    except (TypeError, ValueError) as exc:
        raise StateCorruptionError(origin, "serial must be an integer") from exc

    return State(records=records, serial=serial, lineage=str(data.get("lineage", "")))


def encode_state(state: State) -> str:
    return json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n"


class FileStateStore(StateStore):
    """JSON file state with an ``O_EXCL`` lock file beside it.

    Args:
        path: State document path; the lock lives at ``<path>.lock``.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def load(self) -> State:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            _logger.debug("state_missing", path=str(self.path))
            return State()
        state = decode_state(raw, str(self.path))
        _logger.debug("state_loaded", path=str(self.path), records=len(state), serial=state.serial)
        return state

    def save(self, state: State) -> None:
        _stamp(state)
        payload = encode_state(state)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        _logger.debug("state_saved", path=str(self.path), records=len(state), serial=state.serial)

    @contextmanager
    def lock(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise StateLockError(str(self.path), self._holder()) from None
        info = _lock_info()
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(info, fh)
        _logger.debug("state_locked", path=str(self.path), lock_id=info["id"])
        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)
            _logger.debug("state_unlocked", path=str(self.path), lock_id=info["id"])

    def force_unlock(self) -> bool:
        holder = self._holder()
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return False
        _logger.warning("state_force_unlocked", path=str(self.path), holder=holder)
        return True

    def _holder(self) -> str:
        try:
            info = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return ""
        if not isinstance(info, dict):
            return ""
        return f"pid {info.get('pid')} on {info.get('host')} since {info.get('created')}"


class MemoryStateStore(StateStore):
    """In-process store; saves keep a serialised copy so loads never alias."""

    def __init__(self, state: State | None = None) -> None:
        self._raw: str | None = encode_state(state) if state is not None else None
        self._locked = False
        self.saves = 0

    def load(self) -> State:
        if self._raw is None:
            return State()
        return decode_state(self._raw, "<memory>")

    def save(self, state: State) -> None:
        _stamp(state)
        self._raw = encode_state(state)
        self.saves += 1

    @contextmanager
    def lock(self) -> Iterator[None]:
        if self._locked:
            raise StateLockError("<memory>", "another run in this process")
        self._locked = True
        try:
            yield
        finally:
            self._locked = False

    def force_unlock(self) -> bool:
        held = self._locked
        self._locked = False
        return held

    @property
    def locked(self) -> bool:
        return self._locked


def _lock_info() -> dict[str, Any]:
    return {
        "id": uuid.uuid4().hex,
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "created": datetime.now(tz=UTC).isoformat(),
    }
