"""Append-only JSONL log of run events, rotated by size.

The log is diagnostic only: failures to write it are reported as
rate-limited warnings and never fail a run. A pipeline run routes events to
its configured ``event_log_path``; without one, as when the services are
used on their own, the location comes from ``PERIODIC_AUDIT_EVENT_DIR``.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

_LOG = logging.getLogger(__name__)
DEFAULT_MAX_EVENT_LOG_BYTES = 1_000_000
DEFAULT_EVENT_DIR = Path("/var/lib/periodic-audit")
EVENT_DIR_ENV = "PERIODIC_AUDIT_EVENT_DIR"
EVENT_MAX_BYTES_ENV = "PERIODIC_AUDIT_EVENT_MAX_BYTES"


def _max_bytes_from(raw: str | None) -> int | None:
    """Parse a size limit; zero or negative disables rotation."""

    try:
        parsed = int(raw) if raw and raw.strip() else DEFAULT_MAX_EVENT_LOG_BYTES
    except ValueError:
        parsed = DEFAULT_MAX_EVENT_LOG_BYTES
    return parsed if parsed > 0 else None


@dataclass(frozen=True)
class EventLogConfig:
    """Where events go and when the file is rotated."""

    event_file: Path
    max_bytes: int | None

    @property
    def rotated_file(self) -> Path:
        return self.event_file.with_name(self.event_file.name + ".1")

    @classmethod
    def from_env(cls) -> "EventLogConfig":
        base_dir = Path(os.getenv(EVENT_DIR_ENV, str(DEFAULT_EVENT_DIR)))
        return cls(
            event_file=base_dir / "events.jsonl",
            max_bytes=_max_bytes_from(os.getenv(EVENT_MAX_BYTES_ENV)),
        )


class _WarningLimiter:
    """Emit at most one warning per key and interval."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._last: dict[str, float] = {}

    def allow(self, key: str) -> bool:
        if self.interval <= 0:
            return True
        now = time.monotonic()
        last = self._last.get(key)
        if last is not None and now - last < self.interval:
            return False
        self._last[key] = now
        return True

    def reset(self) -> None:
        self._last.clear()


_WARNINGS = _WarningLimiter(60.0)
_OVERRIDE: EventLogConfig | None = None


def set_event_log_config(config: EventLogConfig | None) -> None:
    """Route events to ``config``; ``None`` falls back to the environment."""

    global _OVERRIDE
    _OVERRIDE = config


def reset_event_log_config() -> None:
    set_event_log_config(None)


def current_event_log_config() -> EventLogConfig:
    return _OVERRIDE if _OVERRIDE is not None else EventLogConfig.from_env()


def set_event_warning_interval(seconds: float | None) -> None:
    """Adjust the warning rate limit; ``None`` disables limiting."""

    _WARNINGS.interval = 0.0 if seconds is None else max(seconds, 0.0)


def reset_event_warning_state() -> None:
    _WARNINGS.reset()


def _warn(key: str, message: str, *args: object) -> None:
    if _WARNINGS.allow(key):
        _LOG.warning(message, *args)


def _rotate(config: EventLogConfig) -> None:
    path = config.event_file
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return
    except OSError as exc:
        _warn("stat", "Unable to stat event log %s: %s", path, exc)
        return
    if config.max_bytes is None or size < config.max_bytes:
        return
    try:
        os.replace(path, config.rotated_file)
    except OSError as exc:
        _warn("rotate", "Unable to rotate event log %s: %s", path, exc)


def append_event(event: dict[str, object]) -> None:
    """Write ``event`` as one JSON line."""

    config = current_event_log_config()
    path = config.event_file
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _warn("mkdir", "Unable to create event log directory %s: %s", path.parent, exc)
        return

    _rotate(config)

    record = json.dumps(event, ensure_ascii=False, sort_keys=True, default=str)
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(record + "\n")
    except OSError as exc:
        _warn("write", "Unable to write event to %s: %s", path, exc)
