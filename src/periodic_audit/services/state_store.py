"""Persistent per-target history used to tell new findings from known ones."""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from ..app import schema_registry
from ..app.schema_registry import SchemaValidationError
from ..domain.models import HistoryRecord, RunSnapshot

_LOG = logging.getLogger(__name__)

STATE_VERSION = 1
STATE_SCHEMA = "state_v1"


class StateStoreError(RuntimeError):
    """Base class for state persistence failures."""


class StateStoreCorruptError(StateStoreError):
    """The history file exists but cannot be trusted."""


class StateLockedError(StateStoreError):
    """Another run holds the state lock."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_json_write(path: Path, payload: Mapping[str, Any]) -> None:
    """Write JSON so that readers see either the old or the new file, never a mix."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_dir(path.parent)


class StateStore:
    """History file guarded by an exclusive, non-blocking lock.

    Use as a context manager; :meth:`load`, :meth:`commit` and :meth:`reset`
    require the lock to be held.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")
        self._lock_fd: int | None = None

    def __enter__(self) -> "StateStore":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    @property
    def locked(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> None:
        """Take the run lock or raise :class:`StateLockedError`."""

        if self._lock_fd is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            if exc.errno in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                raise StateLockedError(
                    f"State '{self.path}' is locked by another periodic-audit run."
                ) from exc
            raise
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        self._lock_fd = fd

    def release(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def _require_lock(self) -> None:
        if self._lock_fd is None:
            raise StateStoreError("State store accessed without holding its lock.")

    def _read_document(self) -> dict[str, Any] | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StateStoreCorruptError(
                f"Unable to read state '{self.path}': {exc}"
            ) from exc
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateStoreCorruptError(
                f"State '{self.path}' is not valid JSON: {exc}"
            ) from exc
        if isinstance(document, dict) and document.get("version") != STATE_VERSION:
            raise StateStoreCorruptError(
                f"State '{self.path}' has unsupported version {document.get('version')!r}."
            )
        try:
            schema_registry.validate(STATE_SCHEMA, document)
        except SchemaValidationError as exc:
            raise StateStoreCorruptError(
                f"State '{self.path}' failed validation: "
                + schema_registry.describe_error(exc)
            ) from exc
        return document

    def load(self) -> dict[str, HistoryRecord]:
        """Return per-target history; an absent file is empty history."""

        self._require_lock()
        document = self._read_document()
        if document is None:
            _LOG.info("No state at %s; starting with empty history", self.path)
            return {}
        return {
            key: HistoryRecord(
                advisories=frozenset(entry["advisories"]),
                recorded_at=entry.get("recorded_at"),
            )
            for key, entry in document["targets"].items()
        }

    def commit(self, snapshot: RunSnapshot) -> int:
        """Record the advisory sets of the snapshot's successful targets.

        Targets that failed in this run, or are no longer configured, keep
        their previous records. Returns the number of targets updated.
        """

        self._require_lock()
        document = self._read_document() or {"version": STATE_VERSION, "targets": {}}
        targets = dict(document["targets"])
        stamp = snapshot.finished_at.astimezone(timezone.utc).isoformat(timespec="seconds")
        updates = snapshot.history_updates()
        for key, advisories in updates.items():
            targets[key] = {"advisories": sorted(advisories), "recorded_at": stamp}

        atomic_json_write(
            self.path,
            {"version": STATE_VERSION, "updated_at": _now(), "targets": targets},
        )
        _LOG.info("Committed history for %d target(s) to %s", len(updates), self.path)
        return len(updates)

    def reset(self) -> Path | None:
        """Move the current state file aside; the next load sees empty history."""

        self._require_lock()
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        backup = self.path.with_name(f"{self.path.name}.reset-{stamp}")
        os.replace(self.path, backup)
        _fsync_dir(self.path.parent)
        _LOG.warning("Moved state %s aside to %s", self.path, backup)
        return backup
