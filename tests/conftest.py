"""Shared fakes: a scriptable auditor, a recording SMTP relay and report payloads."""

from __future__ import annotations

import json
import smtplib
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from periodic_audit.services import run_events
from periodic_audit.services.event_log import (
    EventLogConfig,
    reset_event_log_config,
    set_event_log_config,
)

FAKE_AUDITOR_SCRIPT = """#!/bin/sh
for target; do :; done
name=$(basename "$target")
dir="{responses}"
if [ -f "$dir/$name.sleep" ]; then sleep "$(cat "$dir/$name.sleep")"; fi
if [ -f "$dir/$name.err" ]; then cat "$dir/$name.err" >&2; fi
if [ -f "$dir/$name.json" ]; then cat "$dir/$name.json"; fi
if [ -f "$dir/$name.rc" ]; then exit "$(cat "$dir/$name.rc")"; fi
exit 0
"""


@pytest.fixture(autouse=True)
def isolated_events(tmp_path: Path) -> None:
    """Keep run events in memory and the JSONL log inside the test directory."""

    run_events.clear_run_events()
    set_event_log_config(EventLogConfig(event_file=tmp_path / "events.jsonl", max_bytes=None))
    yield
    run_events.clear_run_events()
    reset_event_log_config()


def cargo_audit_payload(
    vulnerabilities: Iterable[tuple[str, str, str]] = (),
    *,
    cvss: str | None = "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H",
    warnings: dict[str, list[dict[str, Any]]] | None = None,
) -> str:
    """Build a cargo-audit style report for ``(id, package, version)`` triples."""

    entries = [
        {
            "advisory": {
                "id": advisory_id,
                "package": package,
                "title": f"Issue in {package}",
                "description": f"{package} {version} is affected.",
                "cvss": cvss,
                "url": f"https://rustsec.org/advisories/{advisory_id}",
            },
            "versions": {"patched": [">=99.0.0"], "unaffected": []},
            "package": {"name": package, "version": version},
        }
        for advisory_id, package, version in vulnerabilities
    ]
    document = {
        "database": {"advisory-count": 1},
        "vulnerabilities": {"found": bool(entries), "count": len(entries), "list": entries},
        "warnings": warnings or {},
    }
    return json.dumps(document)


class FakeAuditor:
    """Shell script answering per target basename from files in ``responses``."""

    def __init__(self, root: Path) -> None:
        self.responses = root / "responses"
        self.responses.mkdir(parents=True, exist_ok=True)
        self.path = root / "fake-cargo-audit"
        self.path.write_text(
            FAKE_AUDITOR_SCRIPT.format(responses=self.responses), encoding="utf-8"
        )
        self.path.chmod(0o755)

    def respond(
        self,
        name: str,
        stdout: str | None = None,
        *,
        rc: int = 0,
        stderr: str | None = None,
        sleep: float | None = None,
    ) -> None:
        for suffix in (".json", ".rc", ".err", ".sleep"):
            (self.responses / f"{name}{suffix}").unlink(missing_ok=True)
        if stdout is not None:
            (self.responses / f"{name}.json").write_text(stdout, encoding="utf-8")
        (self.responses / f"{name}.rc").write_text(str(rc), encoding="utf-8")
        if stderr is not None:
            (self.responses / f"{name}.err").write_text(stderr, encoding="utf-8")
        if sleep is not None:
            (self.responses / f"{name}.sleep").write_text(f"{sleep:g}", encoding="utf-8")


@pytest.fixture
def fake_auditor(tmp_path: Path) -> FakeAuditor:
    return FakeAuditor(tmp_path / "auditor")


@pytest.fixture
def make_binary(tmp_path: Path) -> Callable[[str], Path]:
    """Create a placeholder binary under ``tmp_path/bin``."""

    bin_dir = tmp_path / "bin"

    def _make(name: str) -> Path:
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_bytes(b"\x7fELF placeholder")
        return path

    return _make


class _FakeClient:
    def __init__(self, relay: "FakeRelay", error: BaseException | None) -> None:
        self.relay = relay
        self.error = error

    def send_message(self, msg, from_addr=None, to_addrs=None) -> dict:
        if self.error is not None:
            raise self.error
        self.relay.outbox.append((msg, from_addr, list(to_addrs or ())))
        return dict(self.relay.refused)

    def quit(self) -> None:
        self.relay.quits += 1

    def close(self) -> None:
        self.relay.closes += 1


class FakeRelay:
    """SMTP client factory that records every connection attempt."""

    def __init__(self) -> None:
        self.attempts = 0
        self.quits = 0
        self.closes = 0
        self.outbox: list[tuple[Any, str | None, list[str]]] = []
        self.fail_with: BaseException | None = None
        self.fail_times: int | None = None
        self.refused: dict[str, tuple[int, bytes]] = {}

    def __call__(self, smtp_config: object) -> _FakeClient:
        self.attempts += 1
        error = None
        if self.fail_with is not None and (
            self.fail_times is None or self.attempts <= self.fail_times
        ):
            error = self.fail_with
        return _FakeClient(self, error)


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def transient_error() -> smtplib.SMTPException:
    return smtplib.SMTPServerDisconnected("Connection unexpectedly closed")


@pytest.fixture
def audit_payload() -> Callable[..., str]:
    return cargo_audit_payload
