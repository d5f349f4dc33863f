"""Clock sources consumed by the codec and the service."""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now_wall_millis(self) -> int:
        """Milliseconds since the Unix epoch, as the (possibly wrong) wall clock says."""

    def now_uptime_millis(self) -> int:
        """Monotonic milliseconds, unaffected by wall-clock adjustments."""


class SystemClock:
    """Clock backed by the host's wall clock and monotonic counter."""

    def now_wall_millis(self) -> int:
        return time.time_ns() // 1_000_000

    def now_uptime_millis(self) -> int:
        return time.monotonic_ns() // 1_000_000
