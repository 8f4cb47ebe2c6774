"""Command-line entry point invoked by the scheduler."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from ..services.auditor import AuditorInvoker, AuditorUnavailableError
from ..services.config import AppConfig, ConfigError, load_config
from ..services.state_store import StateLockedError, StateStore, StateStoreCorruptError
from . import exit_codes
from .pipeline import run_pipeline

VERSION = "0.1.0"

_LOG = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="periodic-audit",
        description="Audit Rust binaries for vulnerable dependencies and report the changes.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: $PERIODIC_AUDIT_CONFIG or /etc/periodic-audit.conf).",
    )
    parser.add_argument("-v", "--version", action="store_true", help="Print the version and exit.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--check",
        action="store_true",
        help="Validate the configuration, auditor and state file, then exit.",
    )
    mode.add_argument(
        "--dry-run",
        action="store_true",
        help="Audit and print the report; do not deliver it or update history.",
    )
    mode.add_argument(
        "--reset-state",
        action="store_true",
        help="Move the history file aside so the next run starts from empty history.",
    )
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _check(config: AppConfig) -> int:
    AuditorInvoker(config.auditor).check_available()
    with StateStore(config.state_path) as store:
        history = store.load()
    sys.stdout.write(
        f"Configuration OK: {len(config.targets)} target(s), "
        f"{len(history)} target(s) with history.\n"
    )
    return exit_codes.OK


def _reset_state(config: AppConfig) -> int:
    with StateStore(config.state_path) as store:
        backup = store.reset()
    if backup is None:
        sys.stdout.write(f"No state at {config.state_path}; nothing to reset.\n")
    else:
        sys.stdout.write(f"State moved to {backup}.\n")
    return exit_codes.OK


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.version:
        sys.stdout.write(f"periodic-audit {VERSION}\n")
        return exit_codes.OK

    configure_logging(args.verbose)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        _LOG.error("%s", exc)
        return exit_codes.CONFIG_INVALID
    if config.auditor.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.check:
            return _check(config)
        if args.reset_state:
            return _reset_state(config)
        result = run_pipeline(config, dry_run=args.dry_run, out=sys.stdout)
    except AuditorUnavailableError as exc:
        _LOG.error("%s", exc)
        return exit_codes.AUDITOR_UNAVAILABLE
    except StateLockedError as exc:
        _LOG.error("%s", exc)
        return exit_codes.STATE_LOCKED
    except StateStoreCorruptError as exc:
        _LOG.error("%s Run with --reset-state to start from empty history.", exc)
        return exit_codes.STATE_CORRUPT
    except Exception:
        _LOG.exception("Unexpected error")
        return exit_codes.UNEXPECTED_ERROR

    if result.problems:
        _LOG.error("Report delivery failed: %s", "; ".join(result.problems))
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
