"""Error taxonomy for time synchronization."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ResponseRejection(str, Enum):
    ROOT_DELAY = "root_delay"
    ROOT_DISPERSION = "root_dispersion"
    UNTRUSTED_MODE = "untrusted_mode"
    UNTRUSTED_STRATUM = "untrusted_stratum"
    UNSYNCHRONIZED_LEAP = "unsynchronized_leap"
    SERVER_RESPONSE_DELAY = "server_response_delay"
    STALE_RESPONSE = "stale_response"
    MALFORMED_PACKET = "malformed_packet"


class NetworkFailureKind(str, Enum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    DNS_FAILURE = "dns_failure"


class TrueSyncError(RuntimeError):
    """Base class for every error raised by truesync."""


class MissingCalibrationError(TrueSyncError):
    """Raised when no complete calibration has ever been stored."""

    def __init__(self, message: str = "no calibration stored; has a sync ever succeeded?") -> None:
        super().__init__(message)


class InvalidServerResponseError(TrueSyncError):
    """Raised when an NTP response fails protocol validation."""

    def __init__(
        self,
        reason: ResponseRejection,
        detail: str = "",
        *,
        actual: Optional[float] = None,
        limit: Optional[float] = None,
    ) -> None:
        self.reason = reason
        self.actual = actual
        self.limit = limit
        message = f"invalid response from NTP server: {reason.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class NetworkFailureError(TrueSyncError):
    """Raised for timeouts, unreachable hosts and DNS failures."""

    def __init__(self, kind: NetworkFailureKind, host: str, detail: str = "") -> None:
        self.kind = kind
        self.host = host
        message = f"{kind.value} talking to {host}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
