"""Run the external auditor against one target and classify the result."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from ..domain.models import AuditOutcome, FailureKind, Target
from .audit_parser import AuditParser, CargoAuditJsonParser, ParseFailureError
from .limits import OutputLimitConfig
from .sanitizer import sanitize_text, strip_control_sequences

_LOG = logging.getLogger(__name__)

DEFAULT_AUDITOR_ARGS = ("audit", "--format", "json", "bin")
DEFAULT_NOT_AUDITABLE_MARKERS = (
    "not built with 'cargo auditable'",
    "No dependency information found",
    "does not contain dependency information",
)
UNAVAILABLE_EXIT_CODES = frozenset({126, 127})
"""Shell conventions for "found but not executable" and "not found"."""

KILL_GRACE_SECONDS = 2.0
MAX_RETRY_DELAY_SECONDS = 120.0

_STRIPPED_ENV = ("TERM", "COLORTERM")


class AuditorUnavailableError(RuntimeError):
    """The auditor executable cannot be run; no target result can be trusted."""


@dataclass(frozen=True)
class AuditorSettings:
    """Invocation contract for the external auditor."""

    path: Path
    args: tuple[str, ...] = DEFAULT_AUDITOR_ARGS
    timeout: float = 600.0
    clean_exit_codes: frozenset[int] = frozenset({0})
    findings_exit_codes: frozenset[int] = frozenset({1})
    not_auditable_markers: tuple[str, ...] = DEFAULT_NOT_AUDITABLE_MARKERS
    retries: int = 0
    debug: bool = False


@dataclass
class _RawRun:
    returncode: int
    stdout: bytes
    stderr: bytes


@dataclass
class AuditorInvoker:
    """Blocking auditor invocation with timeout and process-group cancellation."""

    settings: AuditorSettings
    parser: AuditParser = field(default_factory=CargoAuditJsonParser)
    sleep: Callable[[float], None] = time.sleep
    kill_grace: float = KILL_GRACE_SECONDS

    def executable(self) -> Path:
        """Return the auditor path; a bare command name is looked up on PATH."""

        path = self.settings.path
        if os.sep in str(path):
            return path
        found = shutil.which(str(path))
        return Path(found) if found else path

    def command_for(self, target: Target) -> list[str]:
        return [str(self.executable()), *self.settings.args, str(target.path)]

    def check_available(self) -> None:
        """Raise :class:`AuditorUnavailableError` unless the auditor is executable."""

        path = self.executable()
        if os.sep not in str(path):
            raise AuditorUnavailableError(f"Auditor '{path}' was not found on PATH.")
        if not path.is_file():
            raise AuditorUnavailableError(f"Auditor '{path}' does not exist.")
        if not os.access(path, os.X_OK):
            raise AuditorUnavailableError(f"Auditor '{path}' is not executable.")

    def scan(self, target: Target) -> AuditOutcome:
        """Audit one target, retrying transient failures if configured."""

        attempt = 0
        while True:
            outcome = self._scan_once(target)
            if outcome.failure not in (FailureKind.TIMEOUT, FailureKind.EXECUTION_ERROR):
                return outcome
            if attempt >= self.settings.retries:
                return outcome
            attempt += 1
            delay = min(2.0 * (2 ** (attempt - 1)), MAX_RETRY_DELAY_SECONDS)
            _LOG.warning(
                "Audit of %s failed (%s); retry %d/%d in %.0fs",
                target.key,
                outcome.failure.value,
                attempt,
                self.settings.retries,
                delay,
            )
            self.sleep(delay)

    def _scan_once(self, target: Target) -> AuditOutcome:
        if not target.path.exists():
            return AuditOutcome.failed(
                FailureKind.NOT_AUDITABLE, f"'{target.path}' does not exist."
            )
        if target.path.is_dir():
            return AuditOutcome.failed(
                FailureKind.NOT_AUDITABLE,
                f"'{target.path}' is a directory without auditable files.",
            )

        command = self.command_for(target)
        try:
            raw = self._run(command)
        except subprocess.TimeoutExpired:
            _LOG.warning(
                "Auditor timed out after %.0fs on %s", self.settings.timeout, target.key
            )
            return AuditOutcome.failed(
                FailureKind.TIMEOUT,
                f"Auditor did not finish within {self.settings.timeout:g} seconds.",
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise AuditorUnavailableError(
                f"Unable to execute auditor '{self.settings.path}': {exc.strerror or exc}"
            ) from exc
        except OSError as exc:
            return AuditOutcome.failed(
                FailureKind.EXECUTION_ERROR, f"Unable to start auditor: {exc}"
            )

        return self._classify(target, raw)

    def _run(self, command: Sequence[str]) -> _RawRun:
        env = {k: v for k, v in os.environ.items() if k not in _STRIPPED_ENV}
        proc = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=self.settings.timeout)
        except subprocess.TimeoutExpired:
            self._kill_group(proc)
            raise
        return _RawRun(proc.returncode, stdout or b"", stderr or b"")

    def _kill_group(self, proc: subprocess.Popen) -> None:
        """Terminate the auditor's whole process group, then reap it."""

        for sig, wait in ((signal.SIGTERM, self.kill_grace), (signal.SIGKILL, None)):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                break
            try:
                proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                continue
        # Children that ignored SIGTERM may outlive the leader.
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()

    def _classify(self, target: Target, raw: _RawRun) -> AuditOutcome:
        code = raw.returncode
        full_stderr = strip_control_sequences(raw.stderr.decode("utf-8", errors="replace"))
        stderr_text = sanitize_text(
            raw.stderr, OutputLimitConfig.from_env().max_stderr_chars
        )
        if self.settings.debug:
            _LOG.debug(
                "Auditor exit %s for %s\nstdout:\n%s\nstderr:\n%s",
                code,
                target.key,
                raw.stdout.decode("utf-8", errors="replace"),
                stderr_text,
            )

        if code in UNAVAILABLE_EXIT_CODES:
            raise AuditorUnavailableError(
                f"Auditor '{self.settings.path}' exited with {code}: {stderr_text}"
            )
        if code < 0:
            return AuditOutcome.failed(
                FailureKind.EXECUTION_ERROR,
                self._with_stderr(f"Auditor killed by signal {-code}.", stderr_text),
                exit_code=code,
            )
        if any(marker in full_stderr for marker in self.settings.not_auditable_markers):
            return AuditOutcome.failed(
                FailureKind.NOT_AUDITABLE,
                self._with_stderr(
                    "Binary carries no embedded dependency metadata.", stderr_text
                ),
                exit_code=code,
            )

        in_clean = code in self.settings.clean_exit_codes
        in_findings = code in self.settings.findings_exit_codes
        if not in_clean and not in_findings:
            return AuditOutcome.failed(
                FailureKind.EXECUTION_ERROR,
                self._with_stderr(f"Auditor exited with status {code}.", stderr_text),
                exit_code=code,
            )
        if in_findings and not raw.stdout.strip():
            return AuditOutcome.failed(
                FailureKind.EXECUTION_ERROR,
                self._with_stderr(
                    f"Auditor exited with status {code} without a report.", stderr_text
                ),
                exit_code=code,
            )

        try:
            parsed = self.parser.parse(raw.stdout)
        except ParseFailureError as exc:
            return AuditOutcome.failed(
                FailureKind.PARSE_FAILURE,
                self._with_stderr(str(exc), stderr_text),
                exit_code=code,
            )

        if in_clean and not in_findings and parsed.vulnerable:
            _LOG.info(
                "Auditor reported vulnerabilities for %s with clean exit status %d",
                target.key,
                code,
            )
        return AuditOutcome.success(parsed.findings, exit_code=code)

    @staticmethod
    def _with_stderr(message: str, stderr_text: str) -> str:
        if not stderr_text:
            return message
        return f"{message}\nauditor stderr:\n{stderr_text}"
