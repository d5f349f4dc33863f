"""Sample selection: best sample per address, running median across addresses."""

from __future__ import annotations

import bisect
import threading
from typing import Callable, Iterable, List, Optional

from truesync.time.data import TimeData


def best_by_round_trip(samples: Iterable[Optional[TimeData]]) -> Optional[TimeData]:
    """Return the sample with the strictly lowest round-trip delay.

    Empty slots are skipped; on a tie the first one seen wins. Returns
    ``None`` when there is no sample at all.
    """
    best: Optional[TimeData] = None
    for sample in samples:
        if sample is None:
            continue
        if best is None or sample.round_trip_delay_millis < best.round_trip_delay_millis:
            best = sample
    return best


def median_by_offset(samples: List[TimeData]) -> TimeData:
    """Element at index ``len // 2`` once sorted by offset.

    For an even count this is the upper-middle sample; nothing is averaged,
    so the result is always a real measurement.
    """
    if not samples:
        raise ValueError("median of an empty sample set")
    ordered = sorted(samples, key=lambda s: s.reference_offset_millis)
    return ordered[len(ordered) // 2]


class OffsetSampleSet:
    """Thread-safe collection of samples kept sorted by clock offset.

    Equal offsets from different addresses are all kept. ``add`` inserts and
    recomputes the running median under one lock, and hands the median to
    ``on_median`` before releasing it, so consumers observe medians in
    insertion order and the last one delivered covers every sample.
    """

    def __init__(self, on_median: Optional[Callable[[TimeData], None]] = None):
        self._samples: List[TimeData] = []
        self._lock = threading.Lock()
        self._on_median = on_median

    def add(self, sample: TimeData) -> TimeData:
        with self._lock:
            bisect.insort_right(self._samples, sample, key=lambda s: s.reference_offset_millis)
            median = self._samples[len(self._samples) // 2]
            if self._on_median is not None:
                self._on_median(median)
            return median

    def median(self) -> Optional[TimeData]:
        with self._lock:
            if not self._samples:
                return None
            return self._samples[len(self._samples) // 2]

    def snapshot(self) -> List[TimeData]:
        with self._lock:
            return list(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
