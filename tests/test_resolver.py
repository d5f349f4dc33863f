"""Tests for pool resolution and the reachability probe."""

import socket
import threading

import pytest

from truesync.errors import NetworkFailureError, NetworkFailureKind
from truesync.ntp import resolver as resolver_module
from truesync.ntp.resolver import PoolResolver, is_reachable, lookup_addresses


POOLS = {
    "a.pool.test": ["10.0.0.1", "10.0.0.2", "10.0.0.3"],
    "b.pool.test": ["10.0.0.3", "10.0.0.4"],
}


def fake_lookup(hostname):
    if hostname not in POOLS:
        raise NetworkFailureError(NetworkFailureKind.DNS_FAILURE, hostname)
    return list(POOLS[hostname])


class TestLookup:
    def test_deduplicates_addresses(self, monkeypatch):
        infos = [
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("192.0.2.1", 0)),
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("192.0.2.2", 0)),
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("192.0.2.1", 0)),
            (socket.AF_INET6, socket.SOCK_DGRAM, 17, "", ("2001:db8::1", 0, 0, 0)),
        ]
        monkeypatch.setattr(resolver_module.socket, "getaddrinfo", lambda *a, **kw: infos)
        assert lookup_addresses("pool.test") == ["192.0.2.1", "192.0.2.2", "2001:db8::1"]

    def test_dns_failure(self, monkeypatch):
        def fail(*args, **kwargs):
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

        monkeypatch.setattr(resolver_module.socket, "getaddrinfo", fail)
        with pytest.raises(NetworkFailureError) as exc_info:
            lookup_addresses("missing.invalid")
        assert exc_info.value.kind == NetworkFailureKind.DNS_FAILURE

    def test_localhost_resolves(self):
        assert "127.0.0.1" in lookup_addresses("127.0.0.1")


class TestReachability:
    def test_listening_port_is_reachable(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]
        try:
            assert is_reachable("127.0.0.1", port, timeout=1.0)
        finally:
            listener.close()

    def test_closed_port_is_unreachable(self):
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()
        assert not is_reachable("127.0.0.1", port, timeout=1.0)


class TestPoolResolver:
    def test_resolve_pool_filters_unreachable(self):
        probed = []

        def probe(address, port, timeout):
            probed.append((address, port, timeout))
            return address != "10.0.0.2"

        resolver = PoolResolver(probe_port=8080, probe_timeout=0.5, lookup=fake_lookup, probe=probe)
        assert resolver.resolve_pool("a.pool.test") == ["10.0.0.1", "10.0.0.3"]
        assert ("10.0.0.2", 8080, 0.5) in probed

    def test_probe_can_be_disabled(self):
        def probe(address, port, timeout):
            raise AssertionError("probe should not run")

        resolver = PoolResolver(probe_enabled=False, lookup=fake_lookup, probe=probe)
        assert resolver.resolve_pool("b.pool.test") == ["10.0.0.3", "10.0.0.4"]

    def test_resolve_pool_propagates_dns_failure(self):
        resolver = PoolResolver(probe_enabled=False, lookup=fake_lookup)
        with pytest.raises(NetworkFailureError):
            resolver.resolve_pool("unknown.pool.test")

    def test_resolve_all_unions_and_deduplicates(self):
        resolver = PoolResolver(probe_enabled=False, lookup=fake_lookup)
        addresses = resolver.resolve_all(["a.pool.test", "b.pool.test"])
        assert sorted(addresses) == ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"]
        assert len(addresses) == len(set(addresses))

    def test_resolve_all_skips_failed_hosts(self):
        resolver = PoolResolver(probe_enabled=False, lookup=fake_lookup)
        addresses = resolver.resolve_all(["unknown.pool.test", "b.pool.test"])
        assert sorted(addresses) == ["10.0.0.3", "10.0.0.4"]

    def test_resolve_all_runs_hosts_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)

        def lookup(hostname):
            barrier.wait()
            return fake_lookup(hostname)

        resolver = PoolResolver(probe_enabled=False, lookup=lookup)
        assert len(resolver.resolve_all(["a.pool.test", "b.pool.test"])) == 4
