"""Durable calibration cache: the only state that outlives a process."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import structlog

from truesync.errors import MissingCalibrationError
from truesync.time.data import TimeData

from .storage import KeyValueStore

logger = structlog.get_logger(__name__)

KEY_ROUND_TRIP_DELAY = "round_trip_delay_millis"
KEY_REFERENCE_UPTIME = "reference_uptime_millis"
KEY_REFERENCE_OFFSET = "reference_offset_millis"
KEY_REFERENCE_WALL = "reference_wall_millis"

ALL_KEYS = (KEY_ROUND_TRIP_DELAY, KEY_REFERENCE_UPTIME, KEY_REFERENCE_OFFSET, KEY_REFERENCE_WALL)


class CalibrationCache:
    """Holds at most one :class:`TimeData`; each save overwrites the last.

    ``save`` is synchronous. ``publish`` queues a save on a single background
    writer thread and returns immediately, which lets network workers hand
    off running-median updates without waiting on storage. The writer is
    FIFO, so the last value published is the last value written.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._writer: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None
        self._lock = threading.Lock()

    def save(self, data: TimeData) -> None:
        self.store.put_many({
            KEY_ROUND_TRIP_DELAY: data.round_trip_delay_millis,
            KEY_REFERENCE_UPTIME: data.reference_uptime_millis,
            KEY_REFERENCE_OFFSET: data.reference_offset_millis,
            KEY_REFERENCE_WALL: data.reference_wall_millis,
        })
        logger.debug("Calibration saved", offset_ms=data.reference_offset_millis)

    def load(self) -> TimeData:
        # one read, so all four fields come from the same save
        values = self.store.get_many(ALL_KEYS)
        missing = [key for key in ALL_KEYS if key not in values]
        if missing:
            raise MissingCalibrationError(f"calibration incomplete, missing: {', '.join(missing)}")
        return TimeData(
            round_trip_delay_millis=values[KEY_ROUND_TRIP_DELAY],
            reference_uptime_millis=values[KEY_REFERENCE_UPTIME],
            reference_offset_millis=values[KEY_REFERENCE_OFFSET],
            reference_wall_millis=values[KEY_REFERENCE_WALL],
        )

    def exists(self) -> bool:
        return len(self.store.get_many(ALL_KEYS)) == len(ALL_KEYS)

    def clear(self) -> None:
        for key in ALL_KEYS:
            self.store.delete(key)

    def publish(self, data: TimeData) -> Future:
        """Save ``data`` in the background."""
        with self._lock:
            if self._writer is None:
                self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="calibration-writer")
            future = self._writer.submit(self.save, data)
            self._pending = future
        future.add_done_callback(self._log_failure)
        return future

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every published value has been written (or failed)."""
        with self._lock:
            pending = self._pending
        if pending is not None:
            # FIFO writer: the newest future completes last
            pending.exception(timeout=timeout)

    def close(self) -> None:
        with self._lock:
            writer, self._writer = self._writer, None
        if writer is not None:
            writer.shutdown(wait=True)

    @staticmethod
    def _log_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error("Background calibration write failed", error=str(error))
