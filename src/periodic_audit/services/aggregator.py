"""Combine per-target outcomes with history into a tagged run snapshot.

Everything here is pure: no I/O, no clock reads, no logging side effects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Sequence

from ..domain.models import (
    AuditOutcome,
    FindingStatus,
    HistoryRecord,
    RunSnapshot,
    TaggedFinding,
    Target,
    TargetResult,
)


def _tag_target(
    target: Target, outcome: AuditOutcome, record: HistoryRecord | None
) -> TargetResult:
    if not outcome.ok:
        return TargetResult(target=target, outcome=outcome)

    known_ids = record.advisories if record is not None else frozenset()
    tagged = tuple(
        TaggedFinding(
            status=FindingStatus.KNOWN
            if finding.advisory_id in known_ids
            else FindingStatus.NEW,
            advisory_id=finding.advisory_id,
            finding=finding,
        )
        for finding in sorted(outcome.findings, key=lambda f: f.advisory_id)
    )
    resolved = tuple(
        TaggedFinding(status=FindingStatus.RESOLVED, advisory_id=advisory_id)
        for advisory_id in sorted(known_ids - outcome.advisory_ids)
    )
    return TargetResult(target=target, outcome=outcome, findings=tagged, resolved=resolved)


def aggregate(
    targets: Sequence[Target],
    outcomes: Mapping[str, AuditOutcome],
    history: Mapping[str, HistoryRecord],
    started_at: datetime,
    finished_at: datetime,
) -> RunSnapshot:
    """Build the run snapshot in target order.

    Raises:
        ValueError: when a target is listed twice, lacks an outcome, or an
            outcome belongs to no listed target.
    """

    keys = [target.key for target in targets]
    if len(set(keys)) != len(keys):
        raise ValueError("Duplicate target in run.")
    missing = [key for key in keys if key not in outcomes]
    if missing:
        raise ValueError(f"No audit outcome for target(s): {', '.join(missing)}")
    extra = sorted(set(outcomes) - set(keys))
    if extra:
        raise ValueError(f"Audit outcome for unknown target(s): {', '.join(extra)}")

    results = tuple(
        _tag_target(target, outcomes[target.key], history.get(target.key))
        for target in targets
    )
    return RunSnapshot(started_at=started_at, finished_at=finished_at, results=results)
