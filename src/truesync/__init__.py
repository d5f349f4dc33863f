"""True-time estimation over SNTP.

Queries public NTP pools, keeps a running median of the best sample per
server address, and persists the calibration so the estimate survives
process restarts.
"""

from truesync.errors import (
    InvalidServerResponseError,
    MissingCalibrationError,
    NetworkFailureError,
    TrueSyncError,
)
from truesync.ntp.service import TimeSyncConfig, TimeSyncService
from truesync.time.data import TimeData

__version__ = "0.3.0"

__all__ = [
    "InvalidServerResponseError",
    "MissingCalibrationError",
    "NetworkFailureError",
    "TimeData",
    "TimeSyncConfig",
    "TimeSyncService",
    "TrueSyncError",
]
