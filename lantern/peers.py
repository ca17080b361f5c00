"""Peer discovery, de-duplication and round-trip-time analysis."""

import bisect
import ipaddress
import logging
import socket
import struct
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

logger = logging.getLogger(__name__)

# Display threshold kept from the node tooling: anything at or above is "---"
UNREACHABLE_RTT_MS = 99999
UNKNOWN_LOCATION = "---"
PEER_FRESHNESS_SECONDS = 600
PROBE_CONNECT_TIMEOUT = 3.0
PROBE_WORKERS = 8
EKG_PORT = 12788
ESTABLISHED = "ESTABLISHED"

# Linux struct tcp_info: 8 single-byte fields then u32 fields; tcpi_rtt is the 16th u32 (usec)
_TCP_INFO = struct.Struct("8B24I")
_TCP_INFO_RTT = 8 + 15


class Direction(Enum):
    IN = "i"
    OUT = "o"
    DUPLEX = "i+o"

    def merge(self, other: "Direction") -> "Direction":
        return self if self is other else Direction.DUPLEX


@dataclass
class PeerRecord:
    ip: str
    port: int
    direction: Direction
    rtt_ms: int | None = None
    location: str = UNKNOWN_LOCATION
    last_updated: float = 0.0

    @property
    def reachable(self) -> bool:
        return self.rtt_ms is not None and self.rtt_ms < UNREACHABLE_RTT_MS


class RttBucket(Enum):
    UNDER_50 = "0-50ms"
    UNDER_100 = "50-100ms"
    UNDER_200 = "100-200ms"
    OVER_200 = "200ms <"
    UNREACHABLE = "undetermined"


REACHABLE_BUCKETS = (RttBucket.UNDER_50, RttBucket.UNDER_100, RttBucket.UNDER_200, RttBucket.OVER_200)


def classify_rtt(rtt_ms: int | None) -> RttBucket:
    if rtt_ms is None or rtt_ms >= UNREACHABLE_RTT_MS:
        return RttBucket.UNREACHABLE
    if rtt_ms < 50:
        return RttBucket.UNDER_50
    if rtt_ms < 100:
        return RttBucket.UNDER_100
    if rtt_ms < 200:
        return RttBucket.UNDER_200
    return RttBucket.OVER_200


def _zero_counts() -> dict[RttBucket, int]:
    return {bucket: 0 for bucket in RttBucket}


@dataclass(frozen=True)
class PeerStatSnapshot:
    counts: dict[RttBucket, int] = field(default_factory=_zero_counts)
    percentages: dict[RttBucket, float] = field(default_factory=dict)
    average_rtt_ms: int | None = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def unreachable(self) -> int:
        return self.counts[RttBucket.UNREACHABLE]

    @property
    def reachable(self) -> int:
        return self.total - self.unreachable


def _normalize_ip(ip: str) -> str:
    ip = ip.strip().strip("[]")
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return ip
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped:
        return str(parsed.ipv4_mapped)
    return str(parsed)


def is_self_connection(ip: str, port: int, public_ip: str | None, node_port: int) -> bool:
    """Loopback peers and our own public address on the node port are never peers."""
    try:
        if ipaddress.ip_address(ip).is_loopback:
            return True
    except ValueError:
        pass
    return public_ip is not None and ip == public_ip and port == node_port


def split_connections(
    connections: Iterable[Any],
    node_port: int,
    prometheus_port: int,
    ekg_port: int = EKG_PORT,
) -> tuple[list[tuple[str, int]], list[tuple[str, int]]]:
    """Partition established TCP connections into inbound and outbound remote addresses.

    Inbound connections arrive on the node port. Everything else established
    is outbound, except connections on the two monitoring ports.
    """
    inbound: list[tuple[str, int]] = []
    outbound: list[tuple[str, int]] = []
    for conn in connections:
        if conn.status != ESTABLISHED or not conn.raddr:
            continue
        local_port = conn.laddr[1]
        remote = (conn.raddr[0], int(conn.raddr[1]))
        if local_port == node_port:
            inbound.append(remote)
        elif local_port not in (ekg_port, prometheus_port):
            outbound.append(remote)
    return inbound, outbound


def dedup_peers(
    inbound: Iterable[tuple[str, int]],
    outbound: Iterable[tuple[str, int]],
    public_ip: str | None = None,
    node_port: int = 3001,
) -> list[PeerRecord]:
    """Collapse connections to one record per remote IP.

    An IP seen in both directions becomes DUPLEX and keeps the port seen last.
    The scan is linear per insert; a node has tens of connections, not thousands.
    """
    peers: list[PeerRecord] = []
    for direction, remotes in ((Direction.IN, inbound), (Direction.OUT, outbound)):
        for raw_ip, port in remotes:
            ip = _normalize_ip(raw_ip)
            if is_self_connection(ip, port, public_ip, node_port):
                continue
            for index, existing in enumerate(peers):
                if existing.ip == ip:
                    del peers[index]
                    peers.append(PeerRecord(ip, port, existing.direction.merge(direction)))
                    break
            else:
                peers.append(PeerRecord(ip, port, direction))
    return peers


class PeerDiscovery:
    """Holds the de-duplicated peer working set built from the connection table."""

    def __init__(self, node_port: int, prometheus_port: int, ekg_port: int = EKG_PORT) -> None:
        self.node_port = node_port
        self.prometheus_port = prometheus_port
        self.ekg_port = ekg_port
        self.public_ip: str | None = None
        self.inbound_count = 0
        self.outbound_count = 0
        self._lock = threading.Lock()
        self._peers: tuple[PeerRecord, ...] = ()

    @property
    def peers(self) -> tuple[PeerRecord, ...]:
        # Swapped as a whole; readers never see a partially built set
        return self._peers

    def refresh(self, connections: Iterable[Any]) -> bool:
        """Rebuild the working set. Returns True when the published set changed.

        Only a change in the number of peers replaces the published set; a
        same-size change of membership is not detected.
        """
        inbound, outbound = split_connections(
            connections, self.node_port, self.prometheus_port, self.ekg_port
        )
        with self._lock:
            self.inbound_count = len(inbound)
            self.outbound_count = len(outbound)
        if not inbound and not outbound:
            return False
        peers = dedup_peers(inbound, outbound, self.public_ip, self.node_port)
        with self._lock:
            if len(peers) == len(self._peers):
                return False
            self._peers = tuple(peers)
        logger.debug("Peer set changed: %d peers (%d in, %d out)", len(peers), len(inbound), len(outbound))
        return True

    def clear(self) -> None:
        with self._lock:
            self._peers = ()


def tcp_rtt(ip: str, port: int, timeout: float = PROBE_CONNECT_TIMEOUT) -> int | None:
    """Kernel-measured round trip time to ip:port in milliseconds, None if unreachable.

    Falls back to the connect time on platforms without TCP_INFO.
    """
    started = time.perf_counter()
    try:
        sock = socket.create_connection((ip, port), timeout=timeout)
    except OSError:
        return None
    with sock:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        tcp_info = getattr(socket, "TCP_INFO", None)
        if tcp_info is None:
            return elapsed_ms
        try:
            raw = sock.getsockopt(socket.IPPROTO_TCP, tcp_info, _TCP_INFO.size)
        except OSError:
            return None
    if len(raw) < _TCP_INFO.size:
        return None
    return _TCP_INFO.unpack_from(raw)[_TCP_INFO_RTT] // 1000


class ProbeState(Enum):
    IDLE = "idle"
    PROBING = "probing"
    DONE = "done"


def _rank(record: PeerRecord) -> tuple[bool, int]:
    return (not record.reachable, record.rtt_ms or 0)


class PeerProber:
    """Runs RTT analysis cycles over the discovered peers.

    A cycle goes IDLE -> PROBING -> DONE. It completes once every discovered
    peer has a result; reset() starts a new one. Results from a probe that was
    in flight across a reset are discarded.
    """

    def __init__(
        self,
        probe: Callable[[str, int], int | None] = tcp_rtt,
        locate: Callable[[str], str] | None = None,
        freshness: float = PEER_FRESHNESS_SECONDS,
        max_workers: int = PROBE_WORKERS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._probe = probe
        self._locate = locate
        self._freshness = freshness
        self._max_workers = max_workers
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, PeerRecord] = {}
        self._results: list[PeerRecord] = []
        self._counts = _zero_counts()
        self._rtt_sum = 0
        self._expected = 0
        self._cycle = 0
        self._snapshot = PeerStatSnapshot()
        self.state = ProbeState.IDLE

    def reset(self, forget_rtt: bool = False) -> None:
        """Return to IDLE and clear the aggregate counters.

        With forget_rtt every cached RTT is considered stale, so the next cycle
        probes all peers again. Resolved locations are kept.
        """
        with self._lock:
            self._cycle += 1
            self._results = []
            self._counts = _zero_counts()
            self._rtt_sum = 0
            self._expected = 0
            self._snapshot = PeerStatSnapshot()
            self.state = ProbeState.IDLE
            if forget_rtt:
                for cached in self._cache.values():
                    cached.last_updated = 0.0

    def snapshot(self) -> PeerStatSnapshot:
        return self._snapshot

    def peers(self) -> list[PeerRecord]:
        """Checked peers of the current cycle, ascending by RTT, unreachable last."""
        with self._lock:
            return list(self._results)

    def progress(self) -> tuple[int, int]:
        with self._lock:
            return len(self._results), self._expected

    def run_pass(self, peers: Sequence[PeerRecord]) -> PeerStatSnapshot:
        with self._lock:
            if self.state is ProbeState.DONE:
                return self._snapshot
            self.state = ProbeState.PROBING
            self._expected = len(peers)
            cycle = self._cycle
            checked = {record.ip for record in self._results}
        pending = [peer for peer in peers if peer.ip not in checked]
        if pending:
            workers = max(1, min(self._max_workers, len(pending)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="peer-probe") as pool:
                for record in pool.map(self._check_peer, pending):
                    self._record(record, cycle)
        with self._lock:
            if cycle == self._cycle and self._results and len(self._results) >= self._expected:
                self._finish()
            return self._snapshot

    def _check_peer(self, peer: PeerRecord) -> PeerRecord:
        """Result for one peer, reusing any cached result younger than the freshness window.

        A fresh result is reused whether or not the peer was reachable. A resolved
        location skips only the location lookup; the peer still gets an RTT result.
        """
        now = self._clock()
        with self._lock:
            cached = self._cache.get(peer.ip)
        if (
            cached is not None
            and cached.last_updated
            and now - cached.last_updated < self._freshness
        ):
            rtt_ms = cached.rtt_ms
            updated = cached.last_updated
        else:
            rtt_ms = self._probe(peer.ip, peer.port)
            updated = now
        if cached is not None and cached.location != UNKNOWN_LOCATION:
            location = cached.location
        elif self._locate is not None:
            location = self._locate(peer.ip)
        else:
            location = UNKNOWN_LOCATION
        return PeerRecord(peer.ip, peer.port, peer.direction, rtt_ms, location, updated)

    def _record(self, record: PeerRecord, cycle: int) -> None:
        with self._lock:
            if cycle != self._cycle:
                return
            if any(existing.ip == record.ip for existing in self._results):
                return
            self._counts[classify_rtt(record.rtt_ms)] += 1
            if record.reachable:
                self._rtt_sum += record.rtt_ms
            self._cache[record.ip] = record
            bisect.insort(self._results, record, key=_rank)

    def _finish(self) -> None:
        reachable = len(self._results) - self._counts[RttBucket.UNREACHABLE]
        percentages: dict[RttBucket, float] = {}
        average: int | None = None
        if reachable > 0:
            average = self._rtt_sum // reachable
            percentages = {
                bucket: self._counts[bucket] / reachable * 100 for bucket in REACHABLE_BUCKETS
            }
        self._snapshot = PeerStatSnapshot(dict(self._counts), percentages, average)
        self.state = ProbeState.DONE
        logger.info(
            "Peer analysis done: %d peers, %d unreachable, average RTT %s ms",
            len(self._results),
            self._counts[RttBucket.UNREACHABLE],
            average if average is not None else "---",
        )
