"""SNTP (NTP v3 client subset) wire codec and single-exchange client.

Packet layout (48 bytes, big endian)::

    0      LI(2) | VN(3) | Mode(3)
    1      stratum
    4-7    root delay        (NTP short format, 16.16)
    8-11   root dispersion   (NTP short format, 16.16)
    24-31  originate timestamp
    32-39  receive timestamp
    40-47  transmit timestamp

Timestamps are 32-bit seconds since 1900-01-01 followed by a 32-bit binary
fraction of a second. All clock math below is done in integer milliseconds
since the Unix epoch.
"""

from __future__ import annotations

import random
import socket
import struct
from dataclasses import dataclass
from typing import Optional

import structlog

from truesync.errors import (
    InvalidServerResponseError,
    NetworkFailureError,
    NetworkFailureKind,
    ResponseRejection,
)
from truesync.time.clock import Clock, SystemClock
from truesync.time.data import TimeData

logger = structlog.get_logger(__name__)

NTP_PORT = 123
NTP_PACKET_SIZE = 48
NTP_MODE_CLIENT = 3
NTP_VERSION = 3

INDEX_VERSION = 0
INDEX_STRATUM = 1
INDEX_ROOT_DELAY = 4
INDEX_ROOT_DISPERSION = 8
INDEX_ORIGINATE_TIME = 24
INDEX_RECEIVE_TIME = 32
INDEX_TRANSMIT_TIME = 40

# 70 years plus 17 leap days
OFFSET_1900_TO_1970 = ((365 * 70) + 17) * 24 * 60 * 60

TRUSTED_MODES = (4, 5)  # server, broadcast
MIN_STRATUM = 1
MAX_STRATUM = 15
LEAP_UNSYNCHRONIZED = 3
STALE_RESPONSE_MILLIS = 10_000

_FRACTION_SCALE = 0x100000000


@dataclass
class Thresholds:
    """Acceptance limits for a server response, in milliseconds."""

    root_delay_max: float = 100.0
    root_dispersion_max: float = 100.0
    server_response_delay_max: int = 750


# ---------------------------------------------------------------------------
# Timestamp encoding
# ---------------------------------------------------------------------------

def write_timestamp(buffer: bytearray, offset: int, millis: int, rng: Optional[random.Random] = None) -> None:
    """Write Unix-epoch milliseconds as an NTP timestamp at ``offset``.

    The low-order fraction byte is filled with random data so that two
    requests sent within the same millisecond do not look identical.
    """
    seconds = millis // 1000
    milliseconds = millis - seconds * 1000
    seconds += OFFSET_1900_TO_1970
    fraction = milliseconds * _FRACTION_SCALE // 1000

    struct.pack_into("!II", buffer, offset, seconds & 0xFFFFFFFF, fraction)
    buffer[offset + 7] = (rng or random).randrange(256)


def read_timestamp(buffer: bytes, offset: int) -> int:
    """Read an NTP timestamp at ``offset`` as Unix-epoch milliseconds."""
    seconds, fraction = struct.unpack_from("!II", buffer, offset)
    return (seconds - OFFSET_1900_TO_1970) * 1000 + (fraction * 1000) // _FRACTION_SCALE


def short_to_millis(raw: int) -> float:
    """Convert an NTP short-format (16.16) value to milliseconds."""
    return raw / 65.536


# ---------------------------------------------------------------------------
# Clock math
# ---------------------------------------------------------------------------

def round_trip_delay(t0: int, t1: int, t2: int, t3: int) -> int:
    """(T3 - T0) - (T2 - T1): time on the wire, minus server processing time."""
    return (t3 - t0) - (t2 - t1)


def clock_offset(t0: int, t1: int, t2: int, t3: int) -> int:
    """((T1 - T0) + (T2 - T3)) / 2, truncated toward zero."""
    total = (t1 - t0) + (t2 - t3)
    half = abs(total) // 2
    return half if total >= 0 else -half


def build_request(wall_millis: int, rng: Optional[random.Random] = None) -> bytearray:
    """Build a 48-byte client request carrying ``wall_millis`` as transmit time."""
    buffer = bytearray(NTP_PACKET_SIZE)
    buffer[INDEX_VERSION] = NTP_MODE_CLIENT | (NTP_VERSION << 3)
    write_timestamp(buffer, INDEX_TRANSMIT_TIME, wall_millis, rng)
    return buffer


@dataclass(frozen=True)
class ServerResponse:
    leap: int
    version: int
    mode: int
    stratum: int
    root_delay_raw: int
    root_dispersion_raw: int
    originate_time: int
    receive_time: int
    transmit_time: int

    @property
    def root_delay_millis(self) -> float:
        return short_to_millis(self.root_delay_raw)

    @property
    def root_dispersion_millis(self) -> float:
        return short_to_millis(self.root_dispersion_raw)

    @classmethod
    def parse(cls, buffer: bytes) -> "ServerResponse":
        if len(buffer) < NTP_PACKET_SIZE:
            raise InvalidServerResponseError(
                ResponseRejection.MALFORMED_PACKET,
                f"expected {NTP_PACKET_SIZE} bytes, got {len(buffer)}",
                actual=len(buffer),
                limit=NTP_PACKET_SIZE,
            )
        first = buffer[INDEX_VERSION]
        root_delay, root_dispersion = struct.unpack_from("!II", buffer, INDEX_ROOT_DELAY)
        return cls(
            leap=(first >> 6) & 0x3,
            version=(first >> 3) & 0x7,
            mode=first & 0x7,
            stratum=buffer[INDEX_STRATUM],
            root_delay_raw=root_delay,
            root_dispersion_raw=root_dispersion,
            originate_time=read_timestamp(buffer, INDEX_ORIGINATE_TIME),
            receive_time=read_timestamp(buffer, INDEX_RECEIVE_TIME),
            transmit_time=read_timestamp(buffer, INDEX_TRANSMIT_TIME),
        )


def validate_response(
    response: ServerResponse,
    response_time: int,
    now_wall_millis: int,
    thresholds: Thresholds,
) -> None:
    """Raise :class:`InvalidServerResponseError` for the first violated rule."""
    root_delay = response.root_delay_millis
    if root_delay > thresholds.root_delay_max:
        raise InvalidServerResponseError(
            ResponseRejection.ROOT_DELAY,
            f"{root_delay:.3f} [actual] > {thresholds.root_delay_max:.3f} [expected]",
            actual=root_delay,
            limit=thresholds.root_delay_max,
        )

    root_dispersion = response.root_dispersion_millis
    if root_dispersion > thresholds.root_dispersion_max:
        raise InvalidServerResponseError(
            ResponseRejection.ROOT_DISPERSION,
            f"{root_dispersion:.3f} [actual] > {thresholds.root_dispersion_max:.3f} [expected]",
            actual=root_dispersion,
            limit=thresholds.root_dispersion_max,
        )

    if response.mode not in TRUSTED_MODES:
        raise InvalidServerResponseError(
            ResponseRejection.UNTRUSTED_MODE, f"mode={response.mode}", actual=response.mode
        )

    if not MIN_STRATUM <= response.stratum <= MAX_STRATUM:
        raise InvalidServerResponseError(
            ResponseRejection.UNTRUSTED_STRATUM, f"stratum={response.stratum}", actual=response.stratum
        )

    if response.leap == LEAP_UNSYNCHRONIZED:
        raise InvalidServerResponseError(ResponseRejection.UNSYNCHRONIZED_LEAP, "server clock not synchronized")

    delay = abs(round_trip_delay(
        response.originate_time, response.receive_time, response.transmit_time, response_time
    ))
    if delay >= thresholds.server_response_delay_max:
        raise InvalidServerResponseError(
            ResponseRejection.SERVER_RESPONSE_DELAY,
            f"{delay} [actual] >= {thresholds.server_response_delay_max} [expected]",
            actual=delay,
            limit=thresholds.server_response_delay_max,
        )

    elapsed = abs(response.originate_time - now_wall_millis)
    if elapsed >= STALE_RESPONSE_MILLIS:
        raise InvalidServerResponseError(
            ResponseRejection.STALE_RESPONSE,
            f"request was sent {elapsed} ms ago",
            actual=elapsed,
            limit=STALE_RESPONSE_MILLIS,
        )


def to_time_data(response: ServerResponse, response_time: int, response_ticks: int) -> TimeData:
    t0, t1, t2 = response.originate_time, response.receive_time, response.transmit_time
    return TimeData(
        round_trip_delay_millis=round_trip_delay(t0, t1, t2, response_time),
        reference_uptime_millis=response_ticks,
        reference_offset_millis=clock_offset(t0, t1, t2, response_time),
        reference_wall_millis=response_time,
    )


class SntpClient:
    """Performs single SNTP request/response round trips.

    Stateless apart from its clock and random source, so one instance can be
    shared by any number of worker threads; every exchange opens and closes
    its own socket.
    """

    def __init__(self, clock: Optional[Clock] = None, rng: Optional[random.Random] = None):
        self.clock = clock or SystemClock()
        self._rng = rng or random.Random()

    def exchange(
        self,
        host: str,
        timeout: float,
        thresholds: Thresholds,
        port: int = NTP_PORT,
    ) -> TimeData:
        """Query ``host`` once and return the resulting calibration sample.

        Raises :class:`NetworkFailureError` on DNS, socket or timeout errors
        and :class:`InvalidServerResponseError` when validation fails.
        """
        try:
            family, _, _, _, sockaddr = socket.getaddrinfo(host, port, 0, socket.SOCK_DGRAM)[0]
        except socket.gaierror as e:
            raise NetworkFailureError(NetworkFailureKind.DNS_FAILURE, host, str(e)) from e

        request_time = self.clock.now_wall_millis()
        request_ticks = self.clock.now_uptime_millis()
        request = build_request(request_time, self._rng)

        logger.debug("Sending SNTP request", host=host, port=port)
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.settimeout(timeout)
                sock.sendto(request, sockaddr)
                data, _ = sock.recvfrom(NTP_PACKET_SIZE)
                response_ticks = self.clock.now_uptime_millis()
        except socket.timeout as e:
            raise NetworkFailureError(NetworkFailureKind.TIMEOUT, host, f"no response within {timeout}s") from e
        except OSError as e:
            raise NetworkFailureError(NetworkFailureKind.UNREACHABLE, host, str(e)) from e

        # T3 is derived from the monotonic delta, not a second wall-clock read
        response_time = request_time + (response_ticks - request_ticks)

        response = ServerResponse.parse(data)
        validate_response(response, response_time, self.clock.now_wall_millis(), thresholds)
        result = to_time_data(response, response_time, response_ticks)

        logger.info(
            "SNTP exchange succeeded",
            host=host,
            stratum=response.stratum,
            round_trip_ms=result.round_trip_delay_millis,
            offset_ms=result.reference_offset_millis,
        )
        return result
