from __future__ import annotations

import socket
from collections import namedtuple

import pytest

from lantern.peers import (
    REACHABLE_BUCKETS,
    Direction,
    PeerDiscovery,
    PeerProber,
    PeerRecord,
    ProbeState,
    RttBucket,
    classify_rtt,
    dedup_peers,
    split_connections,
    tcp_rtt,
)

Conn = namedtuple("Conn", "laddr raddr status")

NODE_PORT = 3001
PROM_PORT = 12798


def _conn(local_port: int, remote_ip: str, remote_port: int, status: str = "ESTABLISHED") -> Conn:
    return Conn(("10.0.0.1", local_port), (remote_ip, remote_port), status)


def _outbound(*ips: str) -> list[Conn]:
    return [_conn(40000 + i, ip, 3001) for i, ip in enumerate(ips)]


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeProbe:
    def __init__(self, rtts: dict[str, int | None]) -> None:
        self.rtts = rtts
        self.calls: list[str] = []

    def __call__(self, ip: str, port: int) -> int | None:
        self.calls.append(ip)
        return self.rtts.get(ip)


def _peers(*ips: str) -> list[PeerRecord]:
    return [PeerRecord(ip, 3001, Direction.OUT) for ip in ips]


def test_split_connections_by_local_port() -> None:
    connections = [
        _conn(NODE_PORT, "1.1.1.1", 50000),
        _conn(41000, "2.2.2.2", 3001),
        _conn(PROM_PORT, "127.0.0.1", 60000),
        _conn(12788, "127.0.0.1", 60001),
        _conn(42000, "3.3.3.3", 3001, status="TIME_WAIT"),
        Conn(("0.0.0.0", NODE_PORT), (), "LISTEN"),
    ]

    inbound, outbound = split_connections(connections, NODE_PORT, PROM_PORT)

    assert inbound == [("1.1.1.1", 50000)]
    assert outbound == [("2.2.2.2", 3001)]


def test_both_directions_collapse_to_one_duplex_peer() -> None:
    inbound = [("10.0.0.5", 3001), ("127.0.0.1", 50000)]
    outbound = [("10.0.0.5", 4001)]

    peers = dedup_peers(inbound, outbound)

    assert peers == [PeerRecord("10.0.0.5", 4001, Direction.DUPLEX)]


def test_dedup_keeps_one_record_per_ip() -> None:
    inbound = [("1.1.1.1", 1000), ("1.1.1.1", 1001), ("2.2.2.2", 2000)]
    outbound = [("3.3.3.3", 3001), ("3.3.3.3", 3002)]

    peers = dedup_peers(inbound, outbound)

    assert [p.ip for p in peers] == ["1.1.1.1", "2.2.2.2", "3.3.3.3"]
    assert {p.ip: p.direction for p in peers} == {
        "1.1.1.1": Direction.IN,
        "2.2.2.2": Direction.IN,
        "3.3.3.3": Direction.OUT,
    }
    assert {p.ip: p.port for p in peers}["3.3.3.3"] == 3002
    assert dedup_peers(inbound, outbound) == peers


def test_dedup_excludes_self_connections() -> None:
    inbound = [("203.0.113.7", 3001), ("::1", 4000)]
    outbound = [("203.0.113.7", 6000), ("127.0.0.1", 3001)]

    peers = dedup_peers(inbound, outbound, public_ip="203.0.113.7", node_port=3001)

    assert peers == [PeerRecord("203.0.113.7", 6000, Direction.OUT)]


def test_dedup_unwraps_ipv4_mapped_addresses() -> None:
    peers = dedup_peers([("::ffff:10.0.0.5", 1000)], [("10.0.0.5", 3001)])

    assert peers == [PeerRecord("10.0.0.5", 3001, Direction.DUPLEX)]


@pytest.mark.parametrize(
    "rtt, bucket",
    [
        (0, RttBucket.UNDER_50),
        (49, RttBucket.UNDER_50),
        (50, RttBucket.UNDER_100),
        (99, RttBucket.UNDER_100),
        (100, RttBucket.UNDER_200),
        (199, RttBucket.UNDER_200),
        (200, RttBucket.OVER_200),
        (99998, RttBucket.OVER_200),
        (99999, RttBucket.UNREACHABLE),
        (None, RttBucket.UNREACHABLE),
    ],
)
def test_classify_rtt(rtt, bucket) -> None:
    assert classify_rtt(rtt) is bucket


def test_discovery_publishes_only_on_cardinality_change() -> None:
    discovery = PeerDiscovery(NODE_PORT, PROM_PORT)

    assert discovery.refresh(_outbound("1.1.1.1", "2.2.2.2")) is True
    assert [p.ip for p in discovery.peers] == ["1.1.1.1", "2.2.2.2"]
    assert discovery.outbound_count == 2

    # Same size, different membership: not detected
    assert discovery.refresh(_outbound("1.1.1.1", "9.9.9.9")) is False
    assert [p.ip for p in discovery.peers] == ["1.1.1.1", "2.2.2.2"]

    assert discovery.refresh(_outbound("1.1.1.1", "2.2.2.2", "3.3.3.3")) is True
    assert len(discovery.peers) == 3


def test_discovery_keeps_peers_when_no_connections() -> None:
    discovery = PeerDiscovery(NODE_PORT, PROM_PORT)
    discovery.refresh(_outbound("1.1.1.1"))

    assert discovery.refresh([]) is False
    assert [p.ip for p in discovery.peers] == ["1.1.1.1"]
    assert discovery.outbound_count == 0

    discovery.clear()
    assert discovery.peers == ()


def test_tcp_rtt_refused_port_is_unreachable() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    rtt = tcp_rtt("127.0.0.1", port, timeout=1.0)

    assert rtt is None
    assert classify_rtt(rtt) is RttBucket.UNREACHABLE


def test_tcp_rtt_open_port() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]

        rtt = tcp_rtt("127.0.0.1", port, timeout=1.0)

    assert isinstance(rtt, int)
    assert classify_rtt(rtt) is RttBucket.UNDER_50


def test_probe_pass_aggregates_and_orders() -> None:
    probe = FakeProbe({"1.1.1.1": 120, "2.2.2.2": 30, "3.3.3.3": None, "4.4.4.4": 75, "5.5.5.5": 250})
    prober = PeerProber(probe=probe, clock=FakeClock())
    peers = _peers("1.1.1.1", "2.2.2.2", "3.3.3.3", "4.4.4.4", "5.5.5.5")

    snapshot = prober.run_pass(peers)

    assert prober.state is ProbeState.DONE
    assert snapshot.total == 5
    assert snapshot.unreachable == 1
    assert snapshot.counts[RttBucket.UNDER_50] == 1
    assert snapshot.counts[RttBucket.UNDER_100] == 1
    assert snapshot.counts[RttBucket.UNDER_200] == 1
    assert snapshot.counts[RttBucket.OVER_200] == 1
    assert snapshot.average_rtt_ms == (120 + 30 + 75 + 250) // 4
    assert sum(snapshot.percentages[b] for b in REACHABLE_BUCKETS) == pytest.approx(100.0)
    assert [p.ip for p in prober.peers()] == ["2.2.2.2", "4.4.4.4", "1.1.1.1", "5.5.5.5", "3.3.3.3"]
    assert prober.progress() == (5, 5)


def test_counts_always_sum_to_peers_checked() -> None:
    rtts = {f"10.1.0.{i}": (None if i % 3 == 0 else i * 17) for i in range(1, 30)}
    prober = PeerProber(probe=FakeProbe(rtts), clock=FakeClock())

    snapshot = prober.run_pass(_peers(*rtts))

    assert sum(snapshot.counts.values()) == len(rtts)
    assert snapshot.reachable + snapshot.unreachable == snapshot.total


def test_all_unreachable_has_no_average() -> None:
    prober = PeerProber(probe=FakeProbe({}), clock=FakeClock())

    snapshot = prober.run_pass(_peers("1.1.1.1", "2.2.2.2"))

    assert prober.state is ProbeState.DONE
    assert snapshot.average_rtt_ms is None
    assert snapshot.percentages == {}
    assert snapshot.unreachable == 2


def test_no_peers_never_completes() -> None:
    prober = PeerProber(probe=FakeProbe({}), clock=FakeClock())

    prober.run_pass([])

    assert prober.state is ProbeState.PROBING


def test_done_cycle_is_not_reprobed() -> None:
    probe = FakeProbe({"1.1.1.1": 10})
    prober = PeerProber(probe=probe, clock=FakeClock())
    prober.run_pass(_peers("1.1.1.1"))

    prober.run_pass(_peers("1.1.1.1", "2.2.2.2"))

    assert probe.calls == ["1.1.1.1"]


def test_fresh_results_are_reused_after_reset() -> None:
    clock = FakeClock()
    probe = FakeProbe({"1.1.1.1": 10, "2.2.2.2": None})
    prober = PeerProber(probe=probe, clock=clock)
    peers = _peers("1.1.1.1", "2.2.2.2")
    prober.run_pass(peers)

    prober.reset()
    clock.now += 60
    prober.run_pass(peers)

    assert sorted(probe.calls) == ["1.1.1.1", "2.2.2.2"]
    assert prober.snapshot().unreachable == 1
    assert prober.snapshot().average_rtt_ms == 10


def test_stale_rtt_is_reprobed() -> None:
    clock = FakeClock()
    probe = FakeProbe({"1.1.1.1": 10})
    prober = PeerProber(probe=probe, clock=clock)
    prober.run_pass(_peers("1.1.1.1"))

    prober.reset()
    clock.now += 601
    prober.run_pass(_peers("1.1.1.1"))

    assert probe.calls == ["1.1.1.1", "1.1.1.1"]


def test_forced_reset_reprobes_everything_but_keeps_locations() -> None:
    lookups: list[str] = []

    def locate(ip: str) -> str:
        lookups.append(ip)
        return "Berlin, DE"

    probe = FakeProbe({"1.1.1.1": 10})
    prober = PeerProber(probe=probe, locate=locate, clock=FakeClock())
    prober.run_pass(_peers("1.1.1.1"))

    prober.reset(forget_rtt=True)
    prober.run_pass(_peers("1.1.1.1"))

    assert probe.calls == ["1.1.1.1", "1.1.1.1"]
    assert lookups == ["1.1.1.1"]
    assert prober.peers()[0].location == "Berlin, DE"


def test_reset_discards_results_of_an_in_flight_pass() -> None:
    prober: PeerProber

    def probe(ip: str, port: int) -> int:
        prober.reset()
        return 10

    prober = PeerProber(probe=probe, max_workers=1, clock=FakeClock())

    prober.run_pass(_peers("1.1.1.1", "2.2.2.2"))

    assert prober.state is ProbeState.IDLE
    assert prober.peers() == []
    assert prober.progress() == (0, 0)
    assert prober.snapshot().total == 0
