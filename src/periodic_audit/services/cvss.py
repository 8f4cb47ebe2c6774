"""CVSS v3.x base score calculation for advisory severity buckets."""

from __future__ import annotations

import math

_ATTACK_VECTOR = {"N": 0.85, "A": 0.62, "L": 0.55, "P": 0.2}
_ATTACK_COMPLEXITY = {"L": 0.77, "H": 0.44}
_PRIVILEGES_UNCHANGED = {"N": 0.85, "L": 0.62, "H": 0.27}
_PRIVILEGES_CHANGED = {"N": 0.85, "L": 0.68, "H": 0.5}
_USER_INTERACTION = {"N": 0.85, "R": 0.62}
_IMPACT = {"H": 0.56, "L": 0.22, "N": 0.0}

_REQUIRED_METRICS = ("AV", "AC", "PR", "UI", "S", "C", "I", "A")


def _roundup(value: float) -> float:
    """CVSS v3.1 Roundup: smallest one-decimal number >= value."""

    int_input = round(value * 100_000)
    if int_input % 10_000 == 0:
        return int_input / 100_000.0
    return (math.floor(int_input / 10_000) + 1) / 10.0


def parse_vector(vector: str) -> dict[str, str] | None:
    """Split a ``CVSS:3.x/AV:N/...`` vector into its metrics.

    Returns ``None`` for anything that is not a complete v3.0/v3.1 vector.
    """

    parts = vector.strip().split("/")
    if not parts or parts[0] not in ("CVSS:3.0", "CVSS:3.1"):
        return None
    metrics: dict[str, str] = {}
    for part in parts[1:]:
        key, sep, value = part.partition(":")
        if not sep or key in metrics:
            return None
        metrics[key] = value
    if any(name not in metrics for name in _REQUIRED_METRICS):
        return None
    return metrics


def base_score(vector: str | None) -> float | None:
    """Return the base score for a CVSS v3 vector, or ``None`` if unscorable."""

    if not vector:
        return None
    metrics = parse_vector(vector)
    if metrics is None:
        return None
    try:
        scope_changed = {"U": False, "C": True}[metrics["S"]]
        av = _ATTACK_VECTOR[metrics["AV"]]
        ac = _ATTACK_COMPLEXITY[metrics["AC"]]
        pr_table = _PRIVILEGES_CHANGED if scope_changed else _PRIVILEGES_UNCHANGED
        pr = pr_table[metrics["PR"]]
        ui = _USER_INTERACTION[metrics["UI"]]
        conf = _IMPACT[metrics["C"]]
        integ = _IMPACT[metrics["I"]]
        avail = _IMPACT[metrics["A"]]
    except KeyError:
        return None

    iss = 1 - ((1 - conf) * (1 - integ) * (1 - avail))
    if scope_changed:
        impact = 7.52 * (iss - 0.029) - 3.25 * (iss - 0.02) ** 15
    else:
        impact = 6.42 * iss
    exploitability = 8.22 * av * ac * pr * ui

    if impact <= 0:
        return 0.0
    if scope_changed:
        return _roundup(min(1.08 * (impact + exploitability), 10.0))
    return _roundup(min(impact + exploitability, 10.0))
