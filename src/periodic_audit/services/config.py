"""Typed operator configuration loaded from a TOML file."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ..app import schema_registry
from ..app.schema_registry import SchemaValidationError
from .auditor import DEFAULT_AUDITOR_ARGS, DEFAULT_NOT_AUDITABLE_MARKERS, AuditorSettings

CONFIG_PATH_ENV = "PERIODIC_AUDIT_CONFIG"
SMTP_PASSWORD_ENV = "PERIODIC_AUDIT_SMTP_PASSWORD"
DEFAULT_CONFIG_PATH = Path("/etc/periodic-audit.conf")
CONFIG_SCHEMA = "config_v1"

DEFAULT_SUBJECT = "periodic-audit report"
DEFAULT_EVENT_LOG_MAX_BYTES = 1_000_000


class ConfigError(ValueError):
    """Raised when the configuration file is missing, unreadable or invalid."""


@dataclass(frozen=True)
class TargetConfig:
    path: Path
    name: str | None = None


@dataclass(frozen=True)
class SmtpConfig:
    """Connection parameters for the mail relay."""

    host: str
    port: int = 587
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    use_tls: bool = True
    implicit_tls: bool = False
    timeout: float = 30.0


@dataclass(frozen=True)
class MailConfig:
    enabled: bool
    sender: str | None
    recipients: tuple[str, ...]
    subject: str = DEFAULT_SUBJECT
    smtp: SmtpConfig | None = None
    retry_attempts: int = 3
    retry_backoff: float = 2.0
    retry_max_backoff: float = 120.0


@dataclass(frozen=True)
class ReportFileConfig:
    path: Path
    append: bool = True


@dataclass(frozen=True)
class ReportCommandConfig:
    argv: tuple[str, ...]
    timeout: float = 60.0


@dataclass(frozen=True)
class AppConfig:
    """Everything a run needs, validated and immutable."""

    targets: tuple[TargetConfig, ...]
    auditor: AuditorSettings
    parallelism: int
    include_warnings: bool
    mail: MailConfig
    commit_on_delivery_failure: bool
    report_on_clean_run: bool
    state_path: Path
    event_log_path: Path
    event_log_max_bytes: int | None
    report_file: ReportFileConfig | None = None
    report_command: ReportCommandConfig | None = None
    source: Path | None = None


def default_config_path() -> Path:
    """Return ``$PERIODIC_AUDIT_CONFIG`` or the system-wide default."""

    raw = os.getenv(CONFIG_PATH_ENV)
    if raw and raw.strip():
        return Path(raw.strip())
    return DEFAULT_CONFIG_PATH


def load_config(path: Path | None = None) -> AppConfig:
    """Read, validate and convert the TOML configuration at ``path``."""

    path = path or default_config_path()
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"Unable to read configuration '{path}': {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in '{path}': {exc}") from exc
    return config_from_mapping(raw, source=path)


def _read_password_file(raw: str) -> str:
    path = Path(raw)
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(f"Unable to read SMTP password file '{path}': {exc}") from exc


def _smtp_from(raw: Mapping[str, Any] | None) -> SmtpConfig | None:
    if raw is None:
        return None
    password = os.getenv(SMTP_PASSWORD_ENV) or raw.get("password")
    if not password and raw.get("password_file"):
        password = _read_password_file(raw["password_file"])
    implicit_tls = raw.get("implicit_tls", False)
    return SmtpConfig(
        host=raw["host"],
        port=raw.get("port", 465 if implicit_tls else 587),
        username=raw.get("username"),
        password=password or None,
        use_tls=raw.get("use_tls", True),
        implicit_tls=implicit_tls,
        timeout=float(raw.get("timeout", 30.0)),
    )


def _targets_from(raw: list[Any]) -> tuple[TargetConfig, ...]:
    targets: list[TargetConfig] = []
    seen: set[str] = set()
    for item in raw:
        if isinstance(item, str):
            target = TargetConfig(path=Path(item))
        else:
            target = TargetConfig(path=Path(item["path"]), name=item.get("name"))
        if not target.path.is_absolute():
            raise ConfigError(f"Target path '{target.path}' must be absolute.")
        if str(target.path) in seen:
            raise ConfigError(f"Target '{target.path}' is listed more than once.")
        seen.add(str(target.path))
        targets.append(target)
    return tuple(targets)


def config_from_mapping(raw: Mapping[str, Any], source: Path | None = None) -> AppConfig:
    """Validate an already-decoded configuration mapping."""

    try:
        schema_registry.validate(CONFIG_SCHEMA, raw)
    except SchemaValidationError as exc:
        raise ConfigError(
            "Configuration failed validation: " + schema_registry.describe_error(exc)
        ) from exc

    exit_codes = raw.get("exit_codes") or {}
    clean_codes = frozenset(exit_codes.get("clean", [0]))
    findings_codes = frozenset(exit_codes.get("findings", [1]))
    if clean_codes & findings_codes:
        raise ConfigError("exit_codes.clean and exit_codes.findings must not overlap.")

    debug = raw.get("debug", False)
    auditor = AuditorSettings(
        path=Path(raw["auditor_path"]),
        args=tuple(raw.get("auditor_args", DEFAULT_AUDITOR_ARGS)),
        timeout=float(raw.get("audit_timeout", 600.0)),
        clean_exit_codes=clean_codes,
        findings_exit_codes=findings_codes,
        not_auditable_markers=tuple(
            raw.get("not_auditable_markers", DEFAULT_NOT_AUDITABLE_MARKERS)
        ),
        retries=raw.get("audit_retries", 0),
        debug=debug,
    )

    mail_enabled = raw.get("mail_enabled", True)
    mail = MailConfig(
        enabled=mail_enabled,
        sender=raw.get("sender"),
        recipients=tuple(raw.get("recipients", ())),
        subject=raw.get("subject", DEFAULT_SUBJECT),
        smtp=_smtp_from(raw.get("smtp")),
        retry_attempts=raw.get("retry_attempts", 3),
        retry_backoff=float(raw.get("retry_backoff", 2.0)),
        retry_max_backoff=float(raw.get("retry_max_backoff", 120.0)),
    )
    if mail.enabled:
        if mail.smtp is None:
            raise ConfigError("Mail is enabled but no [smtp] table is configured.")
        if not mail.sender:
            raise ConfigError("Mail is enabled but no sender is configured.")
        if not mail.recipients:
            raise ConfigError("Mail is enabled but no recipients are configured.")

    state_path = Path(raw["state_path"])
    event_log_path = Path(
        raw.get("event_log_path", str(state_path.with_name("events.jsonl")))
    )
    max_bytes = raw.get("event_log_max_bytes", DEFAULT_EVENT_LOG_MAX_BYTES)

    report_file = None
    if "report_file" in raw:
        report_file = ReportFileConfig(
            path=Path(raw["report_file"]["path"]),
            append=raw["report_file"].get("append", True),
        )
    report_command = None
    if "report_command" in raw:
        report_command = ReportCommandConfig(
            argv=tuple(raw["report_command"]["argv"]),
            timeout=float(raw["report_command"].get("timeout", 60.0)),
        )

    return AppConfig(
        targets=_targets_from(raw["targets"]),
        auditor=auditor,
        parallelism=raw.get("parallelism", 1),
        include_warnings=raw.get("include_warnings", True),
        mail=mail,
        commit_on_delivery_failure=raw["commit_on_delivery_failure"],
        report_on_clean_run=raw.get("report_on_clean_run", True),
        state_path=state_path,
        event_log_path=event_log_path,
        event_log_max_bytes=max_bytes if max_bytes > 0 else None,
        report_file=report_file,
        report_command=report_command,
        source=source,
    )
