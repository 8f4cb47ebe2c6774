"""Configurable bounds applied to auditor output."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_MAX_OUTPUT_BYTES = 16 * 1024 * 1024
"""Largest auditor stdout accepted for parsing."""

DEFAULT_MAX_STDERR_CHARS = 2000
"""Longest stderr excerpt attached to a failure detail."""

MAX_OUTPUT_BYTES_ENV = "PERIODIC_AUDIT_MAX_OUTPUT_BYTES"
MAX_STDERR_CHARS_ENV = "PERIODIC_AUDIT_MAX_STDERR_CHARS"


def _env_int(
    name: str,
    default: int,
    *,
    min_value: int = 0,
    max_value: int | None = None,
) -> int:
    """Return a bounded integer limit sourced from the environment."""

    raw = os.getenv(name)
    if not raw or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    if parsed < min_value:
        return default
    if max_value is not None and parsed > max_value:
        return max_value
    return parsed


@dataclass(frozen=True)
class OutputLimitConfig:
    """Container describing every configurable output limit."""

    max_output_bytes: int
    max_stderr_chars: int

    @classmethod
    def from_env(cls) -> "OutputLimitConfig":
        """Return a limit set using the configured environment variables."""

        return cls(
            max_output_bytes=_env_int(
                MAX_OUTPUT_BYTES_ENV,
                DEFAULT_MAX_OUTPUT_BYTES,
                min_value=1,
            ),
            max_stderr_chars=_env_int(
                MAX_STDERR_CHARS_ENV,
                DEFAULT_MAX_STDERR_CHARS,
                min_value=80,
                max_value=100_000,
            ),
        )
