"""Secondary report destinations: a local file and an external command."""

from __future__ import annotations

import logging
import os
import signal
import subprocess

from ..domain.models import Report
from .config import ReportCommandConfig, ReportFileConfig
from .sanitizer import sanitize_text

_LOG = logging.getLogger(__name__)

SEPARATOR = "\n\n" + "=" * 58 + "\n\n"


class ReportSinkError(RuntimeError):
    """A configured report destination could not accept the report."""


def render_plain(report: Report) -> str:
    return f"Subject: {report.subject}\n\n{report.body}"


def write_report_file(config: ReportFileConfig, report: Report) -> None:
    """Append (or overwrite) the rendered report at ``config.path``."""

    mode = "a" if config.append else "w"
    try:
        config.path.parent.mkdir(parents=True, exist_ok=True)
        with config.path.open(mode, encoding="utf-8") as handle:
            handle.write(render_plain(report))
            handle.write(SEPARATOR)
    except OSError as exc:
        raise ReportSinkError(f"Write report to '{config.path}': {exc}") from exc
    _LOG.info("Report written to %s", config.path)


def run_report_command(config: ReportCommandConfig, report: Report) -> None:
    """Pipe the rendered report into the configured command's stdin."""

    try:
        proc = subprocess.Popen(
            list(config.argv),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        raise ReportSinkError(f"Spawn report command '{config.argv[0]}': {exc}") from exc

    try:
        output, _ = proc.communicate(
            render_plain(report).encode("utf-8"), timeout=config.timeout
        )
    except subprocess.TimeoutExpired as exc:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()
        raise ReportSinkError(
            f"Report command '{config.argv[0]}' timed out after {config.timeout:g}s"
        ) from exc

    if output:
        _LOG.info("Report command output:\n%s", sanitize_text(output))
    if proc.returncode != 0:
        raise ReportSinkError(
            f"Report command '{config.argv[0]}' exited with status {proc.returncode}"
        )
