"""Centralised clock helpers — single source of truth for 'now'.

Deadlines and rate-limit windows use the monotonic clock; anything that is
reported to a caller (reset timestamps, fallback commit dates) uses wall-clock
UTC. Tests patch these functions or inject their own clock callables.

Usage:
    from latex_service.utils.clock import monotonic, epoch_seconds, now_utc
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """ISO 8601 timestamp: '2026-02-23T10:15:00.123456+00:00'"""
    return now_utc().isoformat()


def monotonic() -> float:
    """Seconds on a clock that never goes backwards."""
    return time.monotonic()


def epoch_seconds() -> float:
    """Wall-clock seconds since the Unix epoch."""
    return time.time()
