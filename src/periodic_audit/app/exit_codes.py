"""Process exit statuses consumed by the external scheduler."""

from __future__ import annotations

OK = 0
"""Run completed and its report was delivered, or a clean run was not sent by policy."""

UNEXPECTED_ERROR = 1
"""An error outside the classified taxonomy aborted the run."""

CONFIG_INVALID = 2
"""Configuration could not be read or failed validation."""

AUDITOR_UNAVAILABLE = 3
"""The auditor executable is missing or not executable; nothing was audited."""

DELIVERY_FAILED = 4
"""Auditing finished but the report could not be delivered."""

STATE_LOCKED = 5
"""Another run holds the state lock."""

STATE_CORRUPT = 6
"""The history file is unreadable; recover it or run with --reset-state."""
