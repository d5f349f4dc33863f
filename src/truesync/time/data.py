"""Calibration sample produced by one successful SNTP exchange."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TimeData:
    """One calibration point.

    ``reference_uptime_millis`` is the monotonic tick captured when the
    response arrived and ``reference_wall_millis`` is what the local wall
    clock read at that same tick. Adding ``reference_offset_millis`` to the
    latter gives true time at the tick; later instants are projected forward
    with the uptime delta so a user changing the wall clock after the sync
    does not move the estimate.
    """

    round_trip_delay_millis: int
    reference_uptime_millis: int
    reference_offset_millis: int
    reference_wall_millis: int

    def true_time_millis(self, now_uptime_millis: int) -> int:
        """Project true time (Unix epoch millis) to the given uptime tick."""

        elapsed = now_uptime_millis - self.reference_uptime_millis
        return self.reference_offset_millis + self.reference_wall_millis + elapsed
