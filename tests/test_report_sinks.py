"""Report file and report command destinations."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from periodic_audit.domain.models import Report, RunSnapshot
from periodic_audit.services.config import ReportCommandConfig, ReportFileConfig
from periodic_audit.services.report_sinks import (
    SEPARATOR,
    ReportSinkError,
    render_plain,
    run_report_command,
    write_report_file,
)

NOW = datetime(2026, 1, 5, 3, 0, tzinfo=timezone.utc)


def _report(body: str = "Summary:\n  /srv/bin/app: Ok\n") -> Report:
    return Report(
        recipients=("ops@example.org",),
        subject="audit",
        body=body,
        snapshot=RunSnapshot(started_at=NOW, finished_at=NOW),
    )


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "forward-report"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_render_plain_prefixes_subject() -> None:
    assert render_plain(_report("body\n")) == "Subject: audit\n\nbody\n"


def test_report_file_appends(tmp_path: Path) -> None:
    path = tmp_path / "reports" / "report.log"
    config = ReportFileConfig(path=path, append=True)

    write_report_file(config, _report("first\n"))
    write_report_file(config, _report("second\n"))

    content = path.read_text(encoding="utf-8")
    assert content.count(SEPARATOR) == 2
    assert content.index("first") < content.index("second")


def test_report_file_overwrites(tmp_path: Path) -> None:
    path = tmp_path / "report.log"
    config = ReportFileConfig(path=path, append=False)

    write_report_file(config, _report("first\n"))
    write_report_file(config, _report("second\n"))

    content = path.read_text(encoding="utf-8")
    assert "first" not in content
    assert "second" in content


def test_report_file_error_is_wrapped(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")

    with pytest.raises(ReportSinkError, match="Write report"):
        write_report_file(ReportFileConfig(path=blocker / "report.log"), _report())


def test_report_command_receives_report_on_stdin(tmp_path: Path) -> None:
    captured = tmp_path / "captured.txt"
    script = _script(tmp_path, f'cat > "{captured}"\n')

    run_report_command(ReportCommandConfig(argv=(str(script),)), _report())

    assert captured.read_text(encoding="utf-8") == render_plain(_report())


def test_report_command_failure_is_reported(tmp_path: Path) -> None:
    script = _script(tmp_path, "cat >/dev/null\necho 'relay down'\nexit 3\n")

    with pytest.raises(ReportSinkError, match="exited with status 3"):
        run_report_command(ReportCommandConfig(argv=(str(script),)), _report())


def test_report_command_timeout(tmp_path: Path) -> None:
    script = _script(tmp_path, "sleep 30\n")

    with pytest.raises(ReportSinkError, match="timed out"):
        run_report_command(ReportCommandConfig(argv=(str(script),), timeout=0.5), _report())


def test_missing_report_command(tmp_path: Path) -> None:
    with pytest.raises(ReportSinkError, match="Spawn report command"):
        run_report_command(
            ReportCommandConfig(argv=(str(tmp_path / "missing"),)), _report()
        )
