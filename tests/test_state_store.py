"""History persistence: locking, validation, atomic commits and reset."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from periodic_audit.domain.models import (
    AuditOutcome,
    FailureKind,
    Finding,
    Severity,
    Target,
)
from periodic_audit.services.aggregator import aggregate
from periodic_audit.services.state_store import (
    StateLockedError,
    StateStore,
    StateStoreCorruptError,
    StateStoreError,
)

T0 = datetime(2026, 1, 5, 3, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 5, 3, 5, tzinfo=timezone.utc)


def _snapshot(outcomes: dict[Target, AuditOutcome], history=None):
    targets = list(outcomes)
    return aggregate(
        targets, {t.key: o for t, o in outcomes.items()}, history or {}, T0, T1
    )


def _ok(*ids: str) -> AuditOutcome:
    return AuditOutcome.success(
        tuple(Finding(i, "pkg", "1.0.0", Severity.HIGH) for i in ids)
    )


def test_absent_file_is_empty_history(tmp_path: Path) -> None:
    with StateStore(tmp_path / "state.json") as store:
        assert store.load() == {}


def test_commit_then_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    app = Target(Path("/srv/bin/app"))

    with StateStore(path) as store:
        updated = store.commit(_snapshot({app: _ok("RUSTSEC-0002", "RUSTSEC-0001")}))
        history = store.load()

    assert updated == 1
    assert history[app.key].advisories == frozenset({"RUSTSEC-0001", "RUSTSEC-0002"})
    assert history[app.key].recorded_at == "2026-01-05T03:05:00+00:00"
    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert document["targets"][app.key]["advisories"] == ["RUSTSEC-0001", "RUSTSEC-0002"]


def test_commit_keeps_failed_and_unconfigured_targets(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    app = Target(Path("/srv/bin/app"))
    tool = Target(Path("/srv/bin/tool"))
    retired = Target(Path("/srv/bin/retired"))

    with StateStore(path) as store:
        store.commit(
            _snapshot({app: _ok("RUSTSEC-0001"), tool: _ok("RUSTSEC-0005"), retired: _ok("RUSTSEC-0009")})
        )
        store.commit(
            _snapshot(
                {
                    app: _ok(),
                    tool: AuditOutcome.failed(FailureKind.TIMEOUT, "slow"),
                }
            )
        )
        history = store.load()

    assert history[app.key].advisories == frozenset()
    assert history[tool.key].advisories == frozenset({"RUSTSEC-0005"})
    assert history[retired.key].advisories == frozenset({"RUSTSEC-0009"})


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        '{"version": 2, "targets": {}}',
        '{"version": 1}',
        '{"version": 1, "targets": {"/srv/bin/app": {"advisories": "RUSTSEC-0001"}}}',
    ],
)
def test_corrupt_state_is_reported(tmp_path: Path, content: str) -> None:
    path = tmp_path / "state.json"
    path.write_text(content, encoding="utf-8")

    with StateStore(path) as store:
        with pytest.raises(StateStoreCorruptError):
            store.load()


def test_second_holder_is_refused(tmp_path: Path) -> None:
    path = tmp_path / "state.json"

    with StateStore(path):
        with pytest.raises(StateLockedError):
            StateStore(path).acquire()

    with StateStore(path) as store:
        assert store.locked


def test_access_without_lock_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(StateStoreError, match="without holding its lock"):
        StateStore(tmp_path / "state.json").load()


def test_failed_replace_leaves_previous_state(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "state.json"
    app = Target(Path("/srv/bin/app"))

    with StateStore(path) as store:
        store.commit(_snapshot({app: _ok("RUSTSEC-0001")}))
    before = path.read_bytes()

    def crash(src: object, dst: object) -> None:
        raise OSError("simulated crash before rename")

    monkeypatch.setattr(os, "replace", crash)
    with StateStore(path) as store:
        with pytest.raises(OSError, match="simulated crash"):
            store.commit(_snapshot({app: _ok("RUSTSEC-0002")}))

    assert path.read_bytes() == before
    assert [p.name for p in tmp_path.iterdir() if p.name.endswith(".tmp")] == []


def test_reset_moves_state_aside(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text('{"version": 1, "targets": {}}', encoding="utf-8")

    with StateStore(path) as store:
        backup = store.reset()
        assert store.load() == {}

    assert backup is not None
    assert backup.exists()
    assert backup.name.startswith("state.json.reset-")
    assert not path.exists()


def test_reset_without_state_is_noop(tmp_path: Path) -> None:
    with StateStore(tmp_path / "state.json") as store:
        assert store.reset() is None
