"""Parser interface and the cargo-audit JSON implementation.

Parsers must satisfy the following invariants:
1. Parsing is pure: identical bytes always produce identical findings, in the
   same order.
2. Unknown fields are ignored; a missing advisory id or package name rejects
   the whole document instead of returning a partial findings set.
3. Oversized or non-UTF-8 output is declined at the parser boundary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from ..app import schema_registry
from ..app.schema_registry import SchemaValidationError
from ..domain.models import Finding, Severity
from . import cvss
from .limits import OutputLimitConfig
from .sanitizer import sanitize_text

OUTPUT_SCHEMA = "cargo_audit_output_v1"

_TITLE_CHARS = 300
_DESCRIPTION_CHARS = 4000


class ParseFailureError(ValueError):
    """Raised when auditor output cannot be turned into a trustworthy findings set."""


@dataclass(frozen=True)
class ParsedAudit:
    """Parser output feeding the invoker's outcome."""

    findings: tuple[Finding, ...]
    parser_version: str
    vulnerable: bool

    @property
    def findings_count(self) -> int:
        return len(self.findings)


class AuditParser(Protocol):
    """Parser contract that auditor drivers must implement."""

    def parse(self, payload: bytes) -> ParsedAudit: ...


def decode_json_safely(payload: bytes, max_bytes: int | None = None) -> Any:
    """Deserialize JSON bytes, raising :class:`ParseFailureError` on any defect."""

    if max_bytes is None:
        max_bytes = OutputLimitConfig.from_env().max_output_bytes
    if len(payload) > max_bytes:
        raise ParseFailureError("Auditor output exceeds the maximum allowed size.")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseFailureError("Auditor output is not valid UTF-8.") from exc

    if not text.strip():
        raise ParseFailureError("Auditor output is empty.")

    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseFailureError(
            f"Malformed JSON in auditor output (line {exc.lineno}, column {exc.colno})."
        ) from exc


def _text(value: Any, max_chars: int) -> str:
    if not isinstance(value, str):
        return ""
    return sanitize_text(value, max_chars)


def _merge(existing: Finding, other: Finding) -> Finding:
    """Collapse two findings sharing one advisory id into one."""

    versions = sorted({*existing.version.split(", "), *other.version.split(", ")} - {""})
    patched = tuple(sorted({*existing.patched, *other.patched}))
    severity = max(existing.severity, other.severity, key=lambda s: s.rank)
    return Finding(
        advisory_id=existing.advisory_id,
        package=min(existing.package, other.package),
        version=", ".join(versions),
        severity=severity,
        title=existing.title or other.title,
        description=existing.description or other.description,
        kind=existing.kind,
        patched=patched,
        url=existing.url or other.url,
        cvss=existing.cvss or other.cvss,
    )


class CargoAuditJsonParser(AuditParser):
    """Parser for ``cargo audit --format json`` reports."""

    VERSION = "cargo-audit-json-1"

    def __init__(self, include_warnings: bool = True, max_bytes: int | None = None) -> None:
        self.include_warnings = include_warnings
        self.max_bytes = max_bytes

    def parse(self, payload: bytes) -> ParsedAudit:
        document = decode_json_safely(payload, self.max_bytes)
        if not isinstance(document, dict):
            raise ParseFailureError("Auditor output is not a JSON object.")
        try:
            schema_registry.validate(OUTPUT_SCHEMA, document)
        except SchemaValidationError as exc:
            raise ParseFailureError(
                "Auditor output failed validation: "
                + schema_registry.describe_error(exc)
            ) from exc

        collected: dict[str, Finding] = {}
        for entry in document["vulnerabilities"]["list"]:
            self._collect(collected, self._vulnerability(entry))

        if self.include_warnings:
            warnings = document.get("warnings") or {}
            for group in sorted(warnings):
                for entry in warnings[group]:
                    self._collect(collected, self._warning(group, entry))

        findings = tuple(collected[key] for key in sorted(collected))
        vulnerable = any(f.kind == "vulnerability" for f in findings)
        return ParsedAudit(
            findings=findings, parser_version=self.VERSION, vulnerable=vulnerable
        )

    @staticmethod
    def _collect(collected: dict[str, Finding], finding: Finding) -> None:
        existing = collected.get(finding.advisory_id)
        collected[finding.advisory_id] = (
            finding if existing is None else _merge(existing, finding)
        )

    @staticmethod
    def _patched(entry: Mapping[str, Any]) -> tuple[str, ...]:
        versions = entry.get("versions") or {}
        return tuple(sorted(str(v) for v in versions.get("patched") or ()))

    def _vulnerability(self, entry: Mapping[str, Any]) -> Finding:
        advisory = entry["advisory"]
        package = entry["package"]
        vector = advisory.get("cvss")
        return Finding(
            advisory_id=advisory["id"],
            package=package["name"],
            version=str(package.get("version") or ""),
            severity=Severity.from_score(cvss.base_score(vector)),
            title=_text(advisory.get("title"), _TITLE_CHARS),
            description=_text(advisory.get("description"), _DESCRIPTION_CHARS),
            kind="vulnerability",
            patched=self._patched(entry),
            url=advisory.get("url") or None,
            cvss=vector or None,
        )

    def _warning(self, group: str, entry: Mapping[str, Any]) -> Finding:
        advisory = entry.get("advisory")
        package = entry["package"]
        version = str(package.get("version") or "")
        kind = str(entry.get("kind") or group)
        if advisory is None:
            if kind != "yanked":
                raise ParseFailureError(
                    f"Auditor warning of kind '{kind}' carries no advisory id."
                )
            advisory_id = f"YANKED:{package['name']}@{version}"
            title = f"{package['name']} {version} was yanked from the registry"
            advisory = {}
        else:
            advisory_id = advisory["id"]
            title = _text(advisory.get("title"), _TITLE_CHARS)
        return Finding(
            advisory_id=advisory_id,
            package=package["name"],
            version=version,
            severity=Severity.INFORMATIONAL,
            title=title,
            description=_text(advisory.get("description"), _DESCRIPTION_CHARS),
            kind=kind,
            patched=self._patched(entry),
            url=advisory.get("url") or None,
            cvss=advisory.get("cvss") or None,
        )
