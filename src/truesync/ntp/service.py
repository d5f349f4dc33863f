"""Resolution/consensus engine and the public true-time service.

A batch queries every server address ``repeat_count`` times, keeps each
address's lowest-delay sample, and feeds those into a shared sample set.
Every insertion produces a new running median which is published to the
calibration cache; once all addresses have finished, the last median
published is the batch result.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, List, Optional, Sequence

import structlog

from truesync.database.calibration import CalibrationCache
from truesync.database.storage import build_store
from truesync.errors import NetworkFailureError, NetworkFailureKind
from truesync.ntp.codec import NTP_PORT, SntpClient, Thresholds
from truesync.ntp.consensus import OffsetSampleSet, best_by_round_trip
from truesync.ntp.resolver import PoolResolver
from truesync.time.clock import Clock, SystemClock
from truesync.time.data import TimeData
from truesync.utils.parallel import DEFAULT_MAX_WORKERS, run_all

logger = structlog.get_logger(__name__)

UpdateListener = Callable[[TimeData], None]


@dataclass
class TimeSyncConfig:
    """Runtime configuration for :class:`TimeSyncService`."""

    pool_hosts: List[str] = field(default_factory=lambda: ["time.google.com"])
    repeat_count: int = 5
    retry_count: int = 20
    retry_backoff_s: float = 1.0
    thresholds: Thresholds = field(default_factory=Thresholds)
    exchange_timeout_s: float = 30.0
    ntp_port: int = NTP_PORT
    probe_timeout_s: float = 5.0
    probe_port: int = 80
    probe_enabled: bool = True
    max_workers: int = DEFAULT_MAX_WORKERS

    @classmethod
    def from_settings(cls, settings) -> "TimeSyncConfig":
        return cls(
            pool_hosts=list(settings.NTP_POOL_HOSTS),
            repeat_count=settings.REPEAT_COUNT,
            retry_count=settings.RETRY_COUNT,
            retry_backoff_s=settings.RETRY_BACKOFF_S,
            thresholds=Thresholds(
                root_delay_max=settings.ROOT_DELAY_MAX_MS,
                root_dispersion_max=settings.ROOT_DISPERSION_MAX_MS,
                server_response_delay_max=settings.SERVER_RESPONSE_DELAY_MAX_MS,
            ),
            exchange_timeout_s=settings.EXCHANGE_TIMEOUT_S,
            probe_timeout_s=settings.PROBE_TIMEOUT_S,
            probe_port=settings.PROBE_PORT,
            probe_enabled=settings.PROBE_ENABLED,
            max_workers=settings.MAX_WORKERS,
        )


class BatchState(Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    QUERYING = "querying"
    AGGREGATING = "aggregating"
    DONE = "done"


class ResolutionBatch:
    """One run of the resolve/query/aggregate pipeline.

    Intermediate running medians are put on :attr:`updates` (terminated by
    ``None``) in the order they were computed, and optionally passed to a
    listener; :meth:`result` returns the final consensus, or ``None`` when no
    address produced a sample. A batch cannot be cancelled; slow hosts are
    bounded by the exchange timeout.

    The listener runs on its own dispatcher thread, never while the sample set
    is locked, so it may read :attr:`samples` and a slow listener does not hold
    up the network workers. It sees medians in the same order as the queue,
    and every call has returned before the batch result is set.
    """

    def __init__(
        self,
        service: "TimeSyncService",
        addresses: Optional[Sequence[str]] = None,
        hostnames: Optional[Sequence[str]] = None,
        listener: Optional[UpdateListener] = None,
    ):
        self._service = service
        self._addresses = list(addresses) if addresses is not None else None
        self._hostnames = list(hostnames or ())
        self._listener = listener
        self._dispatcher: Optional[ThreadPoolExecutor] = None
        self._future: Future = Future()
        self._thread: Optional[threading.Thread] = None
        self.state = BatchState.PENDING
        self.updates: "queue.Queue[Optional[TimeData]]" = queue.Queue()
        self.samples = OffsetSampleSet(on_median=self._on_median)
        self.addresses_queried = 0

    def start(self) -> "ResolutionBatch":
        self._thread = threading.Thread(target=self.run, name="resolution-batch", daemon=True)
        self._thread.start()
        return self

    def run(self) -> Optional[TimeData]:
        """Execute the batch on the calling thread."""
        try:
            result = self._run()
        except BaseException as e:
            self.state = BatchState.DONE
            self.updates.put(None)
            self._future.set_exception(e)
            raise
        self.state = BatchState.DONE
        self.updates.put(None)
        self._future.set_result(result)
        return result

    def _run(self) -> Optional[TimeData]:
        service = self._service

        self.state = BatchState.RESOLVING
        if self._addresses is None:
            self._addresses = service.resolve_multiple_hosts(*self._hostnames)
        addresses = self._addresses

        self.state = BatchState.QUERYING
        self.addresses_queried = len(addresses)
        if self._listener is not None:
            self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="batch-listener")
        try:
            run_all(addresses, self._query_address, max_workers=service.config.max_workers, name="address")
        finally:
            if self._dispatcher is not None:
                self._dispatcher.shutdown(wait=True)

        self.state = BatchState.AGGREGATING
        final = self.samples.median()
        service.cache.flush()
        if final is None:
            logger.warning("Batch produced no samples", addresses=len(addresses))
        else:
            logger.info(
                "Batch complete",
                addresses=len(addresses),
                answered=len(self.samples),
                offset_ms=final.reference_offset_millis,
                round_trip_ms=final.round_trip_delay_millis,
            )
        return final

    def _query_address(self, address: str) -> Optional[TimeData]:
        best = self._service.best_response_against_single_ip(address)
        if best is not None:
            self.samples.add(best)
        return best

    def _on_median(self, median: TimeData) -> None:
        # Runs under the sample-set lock, so pushes happen in insertion order.
        self._service.cache.publish(median)
        self.updates.put(median)
        logger.info("Running median updated", offset_ms=median.reference_offset_millis)
        if self._dispatcher is not None:
            self._dispatcher.submit(self._notify, median)

    def _notify(self, median: TimeData) -> None:
        try:
            self._listener(median)
        except Exception as e:
            logger.warning("Update listener failed", error=str(e))

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> Optional[TimeData]:
        return self._future.result(timeout=timeout)

    def iter_updates(self) -> Iterator[TimeData]:
        """Yield running medians as they arrive, until the batch finishes."""
        while True:
            update = self.updates.get()
            if update is None:
                return
            yield update


class TimeSyncService:
    """Network-synchronized time for a host whose wall clock may be wrong."""

    def __init__(
        self,
        config: TimeSyncConfig,
        cache: CalibrationCache,
        clock: Optional[Clock] = None,
        client: Optional[SntpClient] = None,
        resolver: Optional[PoolResolver] = None,
    ):
        self.config = config
        self.cache = cache
        self.clock = clock or SystemClock()
        self.client = client or SntpClient(self.clock)
        self.resolver = resolver or PoolResolver(
            probe_port=config.probe_port,
            probe_timeout=config.probe_timeout_s,
            probe_enabled=config.probe_enabled,
            max_workers=config.max_workers,
        )

    @classmethod
    def from_settings(cls, settings) -> "TimeSyncService":
        """Build a service, and its cache backend, from application settings."""
        return cls(TimeSyncConfig.from_settings(settings), CalibrationCache(build_store(settings)))

    def resolve_pool_to_addresses(self, hostname: str) -> List[str]:
        return self.resolver.resolve_pool(hostname)

    def resolve_multiple_hosts(self, *hostnames: str) -> List[str]:
        return self.resolver.resolve_all(hostnames)

    def request_time(self, host: str) -> TimeData:
        """One exchange with ``host`` using the configured limits."""
        return self.client.exchange(
            host,
            self.config.exchange_timeout_s,
            self.config.thresholds,
            port=self.config.ntp_port,
        )

    def best_response_against_single_ip(self, address: str) -> Optional[TimeData]:
        """Query ``address`` repeat_count times; keep the lowest round trip."""
        attempts = [address] * self.config.repeat_count
        responses = run_all(attempts, self.request_time, max_workers=self.config.max_workers, name="exchange")
        best = best_by_round_trip(responses)
        if best is None:
            logger.warning("No valid response from address", address=address, attempts=len(attempts))
        return best

    def start_resolution(
        self,
        addresses: Sequence[str],
        listener: Optional[UpdateListener] = None,
    ) -> ResolutionBatch:
        return ResolutionBatch(self, addresses=addresses, listener=listener).start()

    def perform_resolution(
        self,
        addresses: Sequence[str],
        listener: Optional[UpdateListener] = None,
    ) -> Optional[TimeData]:
        """Run a batch against ``addresses`` and wait for the final consensus.

        Returns ``None`` (leaving any earlier calibration in place) if no
        address produced a valid sample.
        """
        return ResolutionBatch(self, addresses=addresses, listener=listener).run()

    def sync(
        self,
        hostnames: Optional[Sequence[str]] = None,
        listener: Optional[UpdateListener] = None,
    ) -> TimeData:
        """Resolve pools and run batches until one yields a calibration.

        Makes at most ``retry_count`` attempts and raises
        :class:`NetworkFailureError` if none succeeds.
        """
        hosts = list(hostnames) if hostnames else list(self.config.pool_hosts)
        attempts = max(1, self.config.retry_count)
        for attempt in range(1, attempts + 1):
            batch = ResolutionBatch(self, hostnames=hosts, listener=listener)
            result = batch.run()
            if result is not None:
                return result
            logger.warning("Sync attempt failed", attempt=attempt, attempts=attempts, hosts=hosts)
            if attempt < attempts and self.config.retry_backoff_s > 0:
                time.sleep(self.config.retry_backoff_s)
        raise NetworkFailureError(
            NetworkFailureKind.UNREACHABLE,
            ", ".join(hosts),
            f"no valid NTP response after {attempts} attempts",
        )

    def has_calibration(self) -> bool:
        return self.cache.exists()

    def true_time_now(self) -> int:
        """True time as Unix-epoch milliseconds.

        Raises :class:`MissingCalibrationError` until a batch has succeeded.
        """
        data = self.cache.load()
        return data.true_time_millis(self.clock.now_uptime_millis())

    def true_datetime_now(self) -> datetime:
        return datetime.fromtimestamp(self.true_time_now() / 1000, tz=timezone.utc)
