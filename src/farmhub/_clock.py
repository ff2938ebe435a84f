"""Clock port and system adapter.

Provides ClockPort (Protocol) and SystemClock.  The port exposes two
time sources:

- ``now()`` — monotonic seconds, for measuring elapsed durations
  (uptime).  Immune to NTP adjustments; only differences matter.
- ``epoch_ms()`` — wall-clock epoch milliseconds, for the timestamps
  carried on the wire (``receivedAt``, ``savedAt``, ``at``).

Tests inject :class:`~farmhub.testing.FakeClock` so both are
deterministic.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Time source used by the broker components."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        ...

    def epoch_ms(self) -> int:
        """Return wall-clock time as integer epoch milliseconds."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()`` and ``time.time_ns()``.

    Satisfies :class:`ClockPort` via structural subtyping (PEP 544).
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()

    def epoch_ms(self) -> int:
        """Return wall-clock epoch milliseconds."""
        return time.time_ns() // 1_000_000
