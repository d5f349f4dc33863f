"""Resolve NTP pool hostnames to individual, reachable server addresses.

Querying every address behind a pool name (rather than letting DNS pick one)
is what gives the consensus step several independent servers to compare.
"""

from __future__ import annotations

import socket
from typing import Callable, List, Optional, Sequence

import structlog

from truesync.errors import NetworkFailureError, NetworkFailureKind
from truesync.utils.parallel import DEFAULT_MAX_WORKERS, run_all

logger = structlog.get_logger(__name__)

DEFAULT_PROBE_PORT = 80
DEFAULT_PROBE_TIMEOUT = 5.0


def lookup_addresses(hostname: str) -> List[str]:
    """DNS-resolve ``hostname`` to its distinct IP addresses, in answer order."""
    try:
        infos = socket.getaddrinfo(hostname, None, 0, socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise NetworkFailureError(NetworkFailureKind.DNS_FAILURE, hostname, str(e)) from e
    addresses: List[str] = []
    for _, _, _, _, sockaddr in infos:
        address = sockaddr[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_reachable(address: str, port: int = DEFAULT_PROBE_PORT, timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
    """TCP connect probe.

    Only a liveness heuristic: success says the host is up, not that it
    answers on the NTP port.
    """
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


class PoolResolver:
    def __init__(
        self,
        probe_port: int = DEFAULT_PROBE_PORT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        probe_enabled: bool = True,
        max_workers: int = DEFAULT_MAX_WORKERS,
        lookup: Callable[[str], List[str]] = lookup_addresses,
        probe: Optional[Callable[[str, int, float], bool]] = None,
    ):
        self.probe_port = probe_port
        self.probe_timeout = probe_timeout
        self.probe_enabled = probe_enabled
        self.max_workers = max_workers
        self._lookup = lookup
        self._probe = probe or is_reachable

    def resolve_pool(self, hostname: str) -> List[str]:
        """Resolve one pool hostname, keeping only addresses that pass the probe."""
        candidates = self._lookup(hostname)
        if not self.probe_enabled:
            logger.info("Resolved pool", hostname=hostname, addresses=len(candidates))
            return candidates

        reachable = [a for a in candidates if self._probe(a, self.probe_port, self.probe_timeout)]
        logger.info(
            "Resolved pool",
            hostname=hostname,
            candidates=len(candidates),
            reachable=len(reachable),
        )
        return reachable

    def resolve_all(self, hostnames: Sequence[str]) -> List[str]:
        """Resolve several pools concurrently and union the results.

        A hostname that fails to resolve contributes nothing. The result is
        deduplicated and no longer records which pool an address came from.
        """
        per_host = run_all(list(hostnames), self.resolve_pool, max_workers=self.max_workers, name="resolve")
        merged: List[str] = []
        seen = set()
        for addresses in per_host:
            for address in addresses or ():
                if address not in seen:
                    seen.add(address)
                    merged.append(address)
        return merged
