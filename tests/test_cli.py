"""Exit statuses and modes of the periodic-audit command."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from periodic_audit.app import cli, exit_codes
from periodic_audit.services.state_store import StateStore


def _write_config(
    tmp_path: Path, auditor: Path, targets: list[Path], extra: str = ""
) -> Path:
    state_dir = tmp_path / "state"
    config = tmp_path / "periodic-audit.conf"
    target_list = ", ".join(f'"{target}"' for target in targets)
    config.write_text(
        f"""
targets = [{target_list}]
auditor_path = "{auditor}"
audit_timeout = 5
state_path = "{state_dir / 'state.json'}"
event_log_path = "{state_dir / 'events.jsonl'}"
commit_on_delivery_failure = false
mail_enabled = false
{extra}
""",
        encoding="utf-8",
    )
    return config


@pytest.fixture
def clean_setup(tmp_path, fake_auditor, make_binary, audit_payload) -> Path:
    binary = make_binary("service")
    fake_auditor.respond("service", audit_payload())
    return _write_config(
        tmp_path,
        fake_auditor.path,
        [binary],
        extra=f'\n[report_file]\npath = "{tmp_path / "report.log"}"\n',
    )


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["--version"]) == exit_codes.OK
    assert capsys.readouterr().out.strip() == f"periodic-audit {cli.VERSION}"


def test_successful_run(clean_setup: Path, tmp_path: Path) -> None:
    assert cli.main(["-c", str(clean_setup)]) == exit_codes.OK
    assert (tmp_path / "report.log").exists()
    assert (tmp_path / "state" / "state.json").exists()


def test_config_path_from_environment(
    clean_setup: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("PERIODIC_AUDIT_CONFIG", str(clean_setup))

    assert cli.main([]) == exit_codes.OK


def test_missing_config(tmp_path: Path) -> None:
    assert cli.main(["-c", str(tmp_path / "absent.conf")]) == exit_codes.CONFIG_INVALID


def test_invalid_config(tmp_path: Path) -> None:
    config = tmp_path / "bad.conf"
    config.write_text('targets = ["/srv/bin/app"]\n', encoding="utf-8")

    assert cli.main(["-c", str(config)]) == exit_codes.CONFIG_INVALID


def test_missing_auditor(tmp_path: Path, make_binary) -> None:
    config = _write_config(tmp_path, tmp_path / "missing-auditor", [make_binary("service")])

    assert cli.main(["-c", str(config)]) == exit_codes.AUDITOR_UNAVAILABLE
    assert not (tmp_path / "state" / "state.json").exists()


def test_delivery_failure(tmp_path: Path, fake_auditor, make_binary, audit_payload) -> None:
    binary = make_binary("service")
    fake_auditor.respond("service", audit_payload())
    command = tmp_path / "forward"
    command.write_text("#!/bin/sh\ncat >/dev/null\nexit 1\n", encoding="utf-8")
    command.chmod(0o755)
    config = _write_config(
        tmp_path,
        fake_auditor.path,
        [binary],
        extra=f'\n[report_command]\nargv = ["{command}"]\n',
    )

    assert cli.main(["-c", str(config)]) == exit_codes.DELIVERY_FAILED


def test_locked_state(clean_setup: Path, tmp_path: Path) -> None:
    with StateStore(tmp_path / "state" / "state.json"):
        assert cli.main(["-c", str(clean_setup)]) == exit_codes.STATE_LOCKED


def test_corrupt_state(clean_setup: Path, tmp_path: Path) -> None:
    state = tmp_path / "state" / "state.json"
    state.parent.mkdir(parents=True)
    state.write_text("not json", encoding="utf-8")

    assert cli.main(["-c", str(clean_setup)]) == exit_codes.STATE_CORRUPT


def test_reset_state_then_run(clean_setup: Path, tmp_path: Path) -> None:
    state = tmp_path / "state" / "state.json"
    state.parent.mkdir(parents=True)
    state.write_text("not json", encoding="utf-8")

    assert cli.main(["-c", str(clean_setup), "--reset-state"]) == exit_codes.OK
    assert not state.exists()
    assert list(state.parent.glob("state.json.reset-*"))
    assert cli.main(["-c", str(clean_setup)]) == exit_codes.OK


def test_check_mode(clean_setup: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["-c", str(clean_setup), "--check"]) == exit_codes.OK
    assert "Configuration OK: 1 target(s)" in capsys.readouterr().out


def test_check_mode_reports_missing_auditor(tmp_path: Path, make_binary) -> None:
    config = _write_config(tmp_path, tmp_path / "missing-auditor", [make_binary("service")])

    assert cli.main(["-c", str(config), "--check"]) == exit_codes.AUDITOR_UNAVAILABLE


def test_dry_run_prints_report(
    clean_setup: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["-c", str(clean_setup), "--dry-run"]) == exit_codes.OK

    out = capsys.readouterr().out
    assert out.startswith("Subject: ")
    assert "service: Ok" in out
    assert not (tmp_path / "state" / "state.json").exists()
    assert not (tmp_path / "report.log").exists()


def test_unexpected_error(clean_setup: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(*args: object, **kwargs: object) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "run_pipeline", explode)

    assert cli.main(["-c", str(clean_setup)]) == exit_codes.UNEXPECTED_ERROR


def test_modes_are_mutually_exclusive(clean_setup: Path) -> None:
    with pytest.raises(SystemExit):
        cli.main(["-c", str(clean_setup), "--check", "--dry-run"])


def test_state_written_by_cli_is_valid_json(clean_setup: Path, tmp_path: Path) -> None:
    cli.main(["-c", str(clean_setup)])

    document = json.loads((tmp_path / "state" / "state.json").read_text(encoding="utf-8"))
    assert document["version"] == 1
