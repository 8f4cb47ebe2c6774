"""LOCAL-only CLI to parse saved auditor output without touching history."""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from pathlib import Path

ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT.parent / "src"))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Parse a saved cargo-audit JSON report and print a summary.",
    )
    parser.add_argument(
        "json_path",
        type=Path,
        help="Path to the auditor JSON output to evaluate locally.",
    )
    parser.add_argument(
        "--no-warnings",
        action="store_true",
        help="Ignore informational warnings (unmaintained, yanked, ...).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    payload = args.json_path.read_bytes()

    from periodic_audit.services.audit_parser import CargoAuditJsonParser, ParseFailureError

    parser = CargoAuditJsonParser(include_warnings=not args.no_warnings)
    try:
        parsed = parser.parse(payload)
    except ParseFailureError as exc:
        sys.stdout.write(json.dumps({"error": str(exc)}, ensure_ascii=False))
        return 1

    severities = Counter(finding.severity.value for finding in parsed.findings)
    summary: dict[str, object] = {
        "parser_version": parsed.parser_version,
        "vulnerable": parsed.vulnerable,
        "findings_count": parsed.findings_count,
        "severities": dict(sorted(severities.items())),
        "advisories": [finding.advisory_id for finding in parsed.findings],
    }
    sys.stdout.write(json.dumps(summary, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
