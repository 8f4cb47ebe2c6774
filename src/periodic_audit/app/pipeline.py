"""One audit-and-report run, from configured targets to committed history."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence, TextIO

from ..domain.models import AuditOutcome, FailureKind, Report, RunSnapshot, Target
from ..services import run_events
from ..services.aggregator import aggregate
from ..services.audit_parser import CargoAuditJsonParser
from ..services.auditor import AuditorInvoker, AuditorUnavailableError
from ..services.config import AppConfig, TargetConfig
from ..services.event_log import EventLogConfig, set_event_log_config
from ..services.mailer import DeliveryFailure, MailDispatcher
from ..services.report_composer import compose
from ..services.report_sinks import (
    ReportSinkError,
    render_plain,
    run_report_command,
    write_report_file,
)
from ..services.state_store import StateStore, StateStoreError
from . import exit_codes

_LOG = logging.getLogger(__name__)

DELIVERED = "delivered"
SKIPPED_CLEAN = "skipped-clean"
DELIVERY_FAILED = "failed"
DRY_RUN = "dry-run"


@dataclass(frozen=True)
class RunResult:
    """What happened to one run after auditing finished."""

    snapshot: RunSnapshot
    report: Report
    delivery: str
    committed: bool
    problems: tuple[str, ...] = ()

    @property
    def exit_code(self) -> int:
        if self.delivery == DELIVERY_FAILED:
            return exit_codes.DELIVERY_FAILED
        return exit_codes.OK


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expand_targets(configured: Sequence[TargetConfig]) -> list[Target]:
    """Resolve configured paths; directories expand to the regular files they hold.

    A directory that cannot be listed or holds no files stays a single
    target so that it is still accounted for in the report.
    """

    targets: list[Target] = []
    seen: set[str] = set()

    def add(target: Target) -> None:
        if target.key in seen:
            _LOG.debug("Skipping duplicate target %s", target.key)
            return
        seen.add(target.key)
        targets.append(target)

    for item in configured:
        path = Path(os.path.abspath(item.path))
        if not path.is_dir():
            add(Target(path=path, name=item.name))
            continue
        try:
            entries = sorted(entry for entry in path.iterdir() if entry.is_file())
        except OSError as exc:
            _LOG.warning("Unable to list directory %s: %s", path, exc)
            entries = []
        if not entries:
            add(Target(path=path, name=item.name))
            continue
        for entry in entries:
            name = f"{item.name}: {entry.name}" if item.name else None
            add(Target(path=entry, name=name))
    return targets


def _scan_isolated(invoker: AuditorInvoker, target: Target) -> AuditOutcome:
    try:
        return invoker.scan(target)
    except AuditorUnavailableError:
        raise
    except Exception as exc:
        _LOG.exception("Unexpected error while auditing %s", target.key)
        return AuditOutcome.failed(FailureKind.EXECUTION_ERROR, f"Internal error: {exc}")


def scan_targets(
    invoker: AuditorInvoker, targets: Sequence[Target], parallelism: int
) -> dict[str, AuditOutcome]:
    """Audit every target on a bounded worker pool; one outcome per target."""

    outcomes: dict[str, AuditOutcome] = {}
    if parallelism <= 1 or len(targets) <= 1:
        for target in targets:
            outcomes[target.key] = _scan_isolated(invoker, target)
        return outcomes

    executor = ThreadPoolExecutor(
        max_workers=min(parallelism, len(targets)), thread_name_prefix="audit"
    )
    try:
        futures = {
            executor.submit(_scan_isolated, invoker, target): target for target in targets
        }
        for future in as_completed(futures):
            outcomes[futures[future].key] = future.result()
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
    return outcomes


def deliver_report(
    report: Report, config: AppConfig, dispatcher: MailDispatcher | None
) -> list[str]:
    """Send the report to every enabled destination; return the problems."""

    problems: list[str] = []
    if config.mail.enabled:
        dispatcher = dispatcher or MailDispatcher(config.mail)
        result = dispatcher.send(report)
        if isinstance(result, DeliveryFailure):
            problems.append(f"mail: {result.reason} (after {result.attempts} attempt(s))")
    else:
        _LOG.info("Mail sending is disabled; not sending report e-mail.")

    if config.report_file is not None:
        try:
            write_report_file(config.report_file, report)
        except ReportSinkError as exc:
            _LOG.error("%s", exc)
            problems.append(f"report file: {exc}")

    if config.report_command is not None:
        try:
            run_report_command(config.report_command, report)
        except ReportSinkError as exc:
            _LOG.error("%s", exc)
            problems.append(f"report command: {exc}")
    return problems


def _record_failures(snapshot: RunSnapshot) -> None:
    for result in snapshot.failures:
        _LOG.warning(
            "Audit of %s failed: %s",
            result.target.key,
            result.outcome.failure.value,
        )
        run_events.record_run_event(
            run_events.TARGET_FAILED,
            target=result.target.key,
            failure=result.outcome.failure.value,
            exit_code=result.outcome.exit_code,
        )


def run_pipeline(
    config: AppConfig,
    *,
    invoker: AuditorInvoker | None = None,
    dispatcher: MailDispatcher | None = None,
    clock: Callable[[], datetime] = _utcnow,
    dry_run: bool = False,
    out: TextIO | None = None,
) -> RunResult:
    """Run audit, aggregation, reporting, delivery and commit once.

    Raises:
        StateLockedError: another run holds the state lock.
        StateStoreCorruptError: the history file cannot be trusted.
        AuditorUnavailableError: the auditor cannot be executed.
    """

    set_event_log_config(
        EventLogConfig(event_file=config.event_log_path, max_bytes=config.event_log_max_bytes)
    )
    targets = expand_targets(config.targets)
    run_events.record_run_event(
        run_events.RUN_STARTED, targets=len(targets), dry_run=dry_run
    )
    invoker = invoker or AuditorInvoker(
        config.auditor,
        parser=CargoAuditJsonParser(include_warnings=config.include_warnings),
    )

    try:
        with StateStore(config.state_path) as store:
            history = store.load()
            started_at = clock()
            try:
                invoker.check_available()
                outcomes = scan_targets(invoker, targets, config.parallelism)
            except AuditorUnavailableError as exc:
                _LOG.error("%s", exc)
                run_events.record_run_event(run_events.AUDITOR_UNAVAILABLE, detail=str(exc))
                raise

            snapshot = aggregate(targets, outcomes, history, started_at, clock())
            _record_failures(snapshot)
            report = compose(snapshot, config)

            if dry_run:
                if out is not None:
                    out.write(render_plain(report))
                return RunResult(snapshot, report, DRY_RUN, committed=False)

            problems: list[str] = []
            if snapshot.is_clean and not config.report_on_clean_run:
                delivery = SKIPPED_CLEAN
                _LOG.info("Clean run; report not sent (report_on_clean_run = false)")
                run_events.record_run_event(run_events.REPORT_SKIPPED)
            else:
                problems = deliver_report(report, config, dispatcher)
                if problems:
                    delivery = DELIVERY_FAILED
                    run_events.record_run_event(
                        run_events.DELIVERY_FAILED, problems=list(problems)
                    )
                else:
                    delivery = DELIVERED
                    run_events.record_run_event(
                        run_events.REPORT_DELIVERED, subject=report.subject
                    )

            committed = False
            if delivery != DELIVERY_FAILED or config.commit_on_delivery_failure:
                updated = store.commit(snapshot)
                committed = True
                run_events.record_run_event(
                    run_events.STATE_COMMITTED, targets_updated=updated
                )
            else:
                _LOG.warning(
                    "Report delivery failed; history left unchanged "
                    "(commit_on_delivery_failure = false)"
                )
                run_events.record_run_event(run_events.STATE_COMMIT_SKIPPED)
    except StateStoreError as exc:
        run_events.record_run_event(
            run_events.STATE_UNAVAILABLE, error=type(exc).__name__, detail=str(exc)
        )
        raise

    result = RunResult(snapshot, report, delivery, committed, tuple(problems))
    run_events.record_run_event(
        run_events.RUN_FINISHED,
        delivery=delivery,
        committed=committed,
        counts=run_events.counts_for(
            {
                "targets": len(snapshot.results),
                "failed": len(snapshot.failures),
                "new": snapshot.new_count,
                "known": snapshot.known_count,
                "resolved": snapshot.resolved_count,
            }
        ),
    )
    return result
