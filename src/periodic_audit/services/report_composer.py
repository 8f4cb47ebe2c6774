"""Render a run snapshot into a deterministic plain-text report."""

from __future__ import annotations

import textwrap
from datetime import timezone
from itertools import groupby

from ..domain.models import (
    FindingStatus,
    Report,
    RunSnapshot,
    TaggedFinding,
    TargetResult,
)
from .config import AppConfig

FAILED_PREFIX = "[AUDIT FAILED] "
NEW_PREFIX = "[NEW VULNERABILITIES] "
VULNERABLE_PREFIX = "[VULNERABILITIES FOUND] "

_STATUS_MARKERS = {
    FindingStatus.NEW: "NEW  ",
    FindingStatus.KNOWN: "known",
}
_WRAP_WIDTH = 76
_RULE = "=" * 72


def compose_subject(snapshot: RunSnapshot, subject: str) -> str:
    if snapshot.has_failures:
        prefix = FAILED_PREFIX
    elif snapshot.has_new:
        prefix = NEW_PREFIX
    elif snapshot.vulnerable:
        prefix = VULNERABLE_PREFIX
    else:
        prefix = ""
    return f"{prefix}{subject}"


def _target_status(result: TargetResult) -> str:
    if result.failed:
        return f"FAILED ({result.outcome.failure.value})"
    if not result.findings:
        return "Ok"
    label = "VULNERABLE" if result.vulnerable else "WARNINGS"
    counts = []
    if result.new_findings:
        counts.append(f"{len(result.new_findings)} new")
    if result.known_findings:
        counts.append(f"{len(result.known_findings)} known")
    return f"{label} ({', '.join(counts)})"


def _indent(text: str, prefix: str) -> list[str]:
    lines: list[str] = []
    for paragraph in text.splitlines():
        if not paragraph.strip():
            continue
        lines.extend(
            textwrap.wrap(
                paragraph,
                width=_WRAP_WIDTH,
                initial_indent=prefix,
                subsequent_indent=prefix,
                break_on_hyphens=False,
            )
        )
    return lines


def _finding_lines(tagged: TaggedFinding) -> list[str]:
    finding = tagged.finding
    if finding is None:
        raise ValueError(f"{tagged.advisory_id} has no finding to render.")
    marker = _STATUS_MARKERS[tagged.status]
    package = f"{finding.package} {finding.version}".strip()
    kind = "" if finding.kind == "vulnerability" else f" [{finding.kind}]"
    lines = [f"    * {marker} {finding.advisory_id}{kind}  {package}"]
    if finding.title:
        lines.extend(_indent(finding.title, "          "))
    if finding.patched:
        lines.append(f"          Patched: {', '.join(finding.patched)}")
    else:
        lines.append("          Patched: no fixed release")
    if finding.url:
        lines.append(f"          {finding.url}")
    if finding.description:
        lines.extend(_indent(finding.description, "          | "))
    return lines


def _sort_key(tagged: TaggedFinding) -> tuple[int, int, str]:
    is_known = 0 if tagged.status is FindingStatus.NEW else 1
    return (-tagged.severity.rank, is_known, tagged.advisory_id)


def _target_section(result: TargetResult) -> list[str]:
    lines = ["", _RULE, result.target.display_name, _RULE]
    if not result.findings:
        lines.append("  No findings.")
    ordered = sorted(result.findings, key=_sort_key)
    for severity, group in groupby(ordered, key=lambda t: t.severity):
        lines.append("")
        lines.append(f"  [{severity.name}]")
        for tagged in group:
            lines.extend(_finding_lines(tagged))
    if result.resolved:
        lines.append("")
        lines.append("  Resolved since last run:")
        for tagged in result.resolved:
            lines.append(f"    - {tagged.advisory_id}")
    return lines


def _failure_section(snapshot: RunSnapshot) -> list[str]:
    lines = ["", _RULE, "Failed audits", _RULE]
    for result in snapshot.failures:
        outcome = result.outcome
        lines.append(f"  {result.target.display_name}: {outcome.failure.value}")
        if outcome.exit_code is not None:
            lines.append(f"    exit status: {outcome.exit_code}")
        for detail_line in outcome.detail.splitlines():
            lines.append(f"    {detail_line}".rstrip())
    lines.append("")
    lines.append("  Previously known findings of failed targets are kept unchanged.")
    return lines


def render_body(snapshot: RunSnapshot) -> str:
    """Render the body; output depends only on the snapshot."""

    stamp = snapshot.started_at.astimezone(timezone.utc).isoformat(timespec="seconds")
    total = len(snapshot.results)
    failed = len(snapshot.failures)
    lines = [
        f"[{stamp}] periodic-audit results",
        f"Targets audited: {total} ({total - failed} ok, {failed} failed)",
        (
            f"Findings: {snapshot.new_count} new, {snapshot.known_count} known, "
            f"{snapshot.resolved_count} resolved"
        ),
        "",
        "Summary:",
    ]
    for result in snapshot.results:
        lines.append(f"  {result.target.display_name}: {_target_status(result)}")

    for result in snapshot.successes:
        if result.findings or result.resolved:
            lines.extend(_target_section(result))

    if snapshot.has_failures:
        lines.extend(_failure_section(snapshot))

    return "\n".join(lines) + "\n"


def compose(snapshot: RunSnapshot, config: AppConfig) -> Report:
    """Build the immutable report for ``snapshot``."""

    return Report(
        recipients=config.mail.recipients,
        subject=compose_subject(snapshot, config.mail.subject),
        body=render_body(snapshot),
        snapshot=snapshot,
    )
