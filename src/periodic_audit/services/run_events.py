"""Structured run events for operators and tests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, MutableSequence, Protocol

from .event_log import append_event

_LOG = logging.getLogger(__name__)
_EVENTS: MutableSequence[dict[str, object]] = []

RUN_STARTED = "RUN_STARTED"
TARGET_FAILED = "TARGET_FAILED"
AUDITOR_UNAVAILABLE = "AUDITOR_UNAVAILABLE"
STATE_UNAVAILABLE = "STATE_UNAVAILABLE"
REPORT_SKIPPED = "REPORT_SKIPPED"
REPORT_DELIVERED = "REPORT_DELIVERED"
DELIVERY_FAILED = "DELIVERY_FAILED"
STATE_COMMITTED = "STATE_COMMITTED"
STATE_COMMIT_SKIPPED = "STATE_COMMIT_SKIPPED"
RUN_FINISHED = "RUN_FINISHED"


class RunEventSink(Protocol):
    """Protocol describing a run event sink."""

    def emit(self, entry: dict[str, object]) -> None:  # pragma: no cover - trivial
        ...


@dataclass
class InMemoryRunEventSink:
    """Simple sink used for tests."""

    events: MutableSequence[dict[str, object]]

    def emit(self, entry: dict[str, object]) -> None:
        self.events.append(dict(entry))


class ProductionRunEventSink:
    """Sink that writes events to the persistent JSONL log."""

    __slots__ = ()

    def emit(self, entry: dict[str, object]) -> None:
        append_event(entry)


_IN_MEMORY_SINK = InMemoryRunEventSink(events=_EVENTS)
_DEFAULT_PRODUCTION_SINK: RunEventSink = ProductionRunEventSink()
_PRODUCTION_SINK: RunEventSink | None = _DEFAULT_PRODUCTION_SINK


def set_production_event_sink(sink: RunEventSink | None) -> None:
    """Override the production event sink (for testing)."""

    global _PRODUCTION_SINK
    _PRODUCTION_SINK = sink


def reset_production_event_sink() -> None:
    set_production_event_sink(_DEFAULT_PRODUCTION_SINK)


def record_run_event(event: str, **fields: object) -> None:
    """Record a credential-free event describing one step of a run."""

    entry: dict[str, object] = {
        "event": event,
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }
    entry.update(fields)
    _LOG.debug("run event %s", entry)
    _IN_MEMORY_SINK.emit(entry)
    if _PRODUCTION_SINK is not None:
        _PRODUCTION_SINK.emit(entry)


def get_run_events(event: str | None = None) -> list[dict[str, object]]:
    """Return a snapshot of recorded events, optionally filtered by name."""

    if event is None:
        return list(_EVENTS)
    return [entry for entry in _EVENTS if entry["event"] == event]


def clear_run_events() -> None:
    """Clear the recorded events (testing aid)."""

    _EVENTS.clear()


def counts_for(mapping: Mapping[str, int]) -> dict[str, int]:
    """Copy a counter mapping into a plain, JSON-safe dict."""

    return {str(key): int(value) for key, value in mapping.items()}
