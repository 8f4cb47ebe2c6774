"""Core entities without I/O for periodic-audit."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Mapping


class Severity(Enum):
    """Severity classification, ordered by :attr:`rank` for reporting."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    UNKNOWN = "unknown"
    LOW = "low"
    NONE = "none"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def from_score(cls, score: float | None) -> "Severity":
        """Bucket a CVSS base score."""

        if score is None:
            return cls.UNKNOWN
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        if score > 0.0:
            return cls.LOW
        return cls.NONE


_SEVERITY_RANK = {
    Severity.CRITICAL: 6,
    Severity.HIGH: 5,
    Severity.MEDIUM: 4,
    Severity.UNKNOWN: 3,
    Severity.LOW: 2,
    Severity.NONE: 1,
    Severity.INFORMATIONAL: 0,
}


class FailureKind(Enum):
    """Classified reasons an audit of one target produced no findings set."""

    AUDITOR_UNAVAILABLE = "auditor_unavailable"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    PARSE_FAILURE = "parse_failure"
    NOT_AUDITABLE = "not_auditable"


class FindingStatus(Enum):
    """Comparison of a finding against the target's history."""

    NEW = "new"
    KNOWN = "known"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Target:
    """A binary configured for periodic scanning."""

    path: Path
    name: str | None = None

    @property
    def key(self) -> str:
        """Stable identifier used for history lookups."""

        return str(self.path)

    @property
    def display_name(self) -> str:
        if self.name:
            return f"{self.name} ({self.path})"
        return str(self.path)


@dataclass(frozen=True)
class Finding:
    """One advisory reported by the auditor for one target."""

    advisory_id: str
    package: str
    version: str
    severity: Severity
    title: str = ""
    description: str = ""
    kind: str = "vulnerability"
    patched: tuple[str, ...] = ()
    url: str | None = None
    cvss: str | None = None


@dataclass(frozen=True)
class AuditOutcome:
    """Result of auditing a single target: findings or a classified failure."""

    findings: tuple[Finding, ...] = ()
    failure: FailureKind | None = None
    detail: str = ""
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def advisory_ids(self) -> frozenset[str]:
        return frozenset(finding.advisory_id for finding in self.findings)

    @classmethod
    def success(
        cls, findings: tuple[Finding, ...], exit_code: int | None = None
    ) -> "AuditOutcome":
        return cls(findings=findings, exit_code=exit_code)

    @classmethod
    def failed(
        cls, kind: FailureKind, detail: str, exit_code: int | None = None
    ) -> "AuditOutcome":
        return cls(failure=kind, detail=detail, exit_code=exit_code)


@dataclass(frozen=True)
class HistoryRecord:
    """Advisory ids seen in the last successful audit of a target."""

    advisories: frozenset[str]
    recorded_at: str | None = None


@dataclass(frozen=True)
class TaggedFinding:
    """Finding annotated with its status relative to history."""

    status: FindingStatus
    advisory_id: str
    finding: Finding | None = None

    @property
    def severity(self) -> Severity:
        if self.finding is None:
            return Severity.UNKNOWN
        return self.finding.severity


@dataclass(frozen=True)
class TargetResult:
    """Aggregated view of one target inside a run."""

    target: Target
    outcome: AuditOutcome
    findings: tuple[TaggedFinding, ...] = ()
    resolved: tuple[TaggedFinding, ...] = ()

    @property
    def failed(self) -> bool:
        return not self.outcome.ok

    @property
    def new_findings(self) -> tuple[TaggedFinding, ...]:
        return tuple(f for f in self.findings if f.status is FindingStatus.NEW)

    @property
    def known_findings(self) -> tuple[TaggedFinding, ...]:
        return tuple(f for f in self.findings if f.status is FindingStatus.KNOWN)

    @property
    def vulnerable(self) -> bool:
        return any(
            f.finding is not None and f.finding.kind == "vulnerability"
            for f in self.findings
        )


@dataclass(frozen=True)
class RunSnapshot:
    """Every target's result for one pipeline invocation."""

    started_at: datetime
    finished_at: datetime
    results: tuple[TargetResult, ...] = field(default_factory=tuple)

    @property
    def failures(self) -> tuple[TargetResult, ...]:
        return tuple(result for result in self.results if result.failed)

    @property
    def successes(self) -> tuple[TargetResult, ...]:
        return tuple(result for result in self.results if not result.failed)

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    @property
    def new_count(self) -> int:
        return sum(len(result.new_findings) for result in self.results)

    @property
    def known_count(self) -> int:
        return sum(len(result.known_findings) for result in self.results)

    @property
    def resolved_count(self) -> int:
        return sum(len(result.resolved) for result in self.results)

    @property
    def has_new(self) -> bool:
        return self.new_count > 0

    @property
    def vulnerable(self) -> bool:
        return any(result.vulnerable for result in self.results)

    @property
    def is_clean(self) -> bool:
        """True when nothing new appeared and no target failed."""

        return not self.has_new and not self.has_failures

    def history_updates(self) -> Mapping[str, frozenset[str]]:
        """Advisory sets to record; failed targets are never included."""

        return {
            result.target.key: result.outcome.advisory_ids
            for result in self.successes
        }


@dataclass(frozen=True)
class Report:
    """Rendered report ready for delivery."""

    recipients: tuple[str, ...]
    subject: str
    body: str
    snapshot: RunSnapshot
