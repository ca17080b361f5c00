"""The dashboard's periodic background tasks.

Every task is a plain blocking method, scheduled on its own interval by the
app and run in a worker thread. A task catches its own per-cycle failures,
counts them on the shared state and leaves the last good value in place.
"""

import logging

import psutil

from lantern.config import Config
from lantern.epoch import current_epoch
from lantern.errors import MetricsError, ProcessLookupFailed
from lantern.genesis import GenesisModel
from lantern.peers import PeerDiscovery, PeerProber, ProbeState
from lantern.services.geolocation import GeoCache
from lantern.services.prometheus import MetricsClient
from lantern.services.system import SystemClient
from lantern.state import DashboardState

logger = logging.getLogger(__name__)

PROCESS_INTERVAL = 1
DISCOVERY_INTERVAL = 1
PROBE_INTERVAL = 10
EPOCH_INTERVAL = 20


class Poller:
    def __init__(
        self,
        config: Config,
        genesis: GenesisModel,
        state: DashboardState,
        metrics_client: MetricsClient,
        system: SystemClient,
        geo: GeoCache,
        discovery: PeerDiscovery | None = None,
        prober: PeerProber | None = None,
    ) -> None:
        self.config = config
        self.genesis = genesis
        self.state = state
        self.metrics_client = metrics_client
        self.system = system
        self.geo = geo
        self.discovery = discovery or PeerDiscovery(config.node.port, config.prometheus.port)
        self.prober = prober or PeerProber(locate=geo.locate)

    def startup(self) -> None:
        """One-off lookups made before the periodic tasks start."""
        self.state.public_ip = self.geo.public_ip()
        self.discovery.public_ip = self.state.public_ip
        self.state.node_version = self.system.node_version()
        self.update_role()

    def update_role(self) -> None:
        metrics = self.state.metrics
        if self.config.node.block_producer or (metrics is not None and metrics.about_to_lead > 0):
            role = "Core"
        else:
            role = "Relay"
        if role != self.state.role:
            logger.info("Node role is now %s", role)
            self.state.role = role

    def poll_metrics(self) -> None:
        try:
            metrics = self.metrics_client.fetch()
        except MetricsError as exc:
            self.state.record_failure("Metrics fetch", exc)
            return
        self.state.metrics = metrics
        self.state.record_success()
        self.update_role()

    def poll_process(self) -> None:
        try:
            proc = self.system.find_process()
            current = self.state.process
            # Keep the same Process object so cpu_percent measures between calls
            if current is not None and current.pid == proc.pid:
                proc = current
            stats = self.system.process_stats(proc)
        except (ProcessLookupFailed, psutil.Error) as exc:
            self.state.record_failure("Process lookup", exc)
            return
        if self.state.process is not proc:
            logger.info("Monitoring node process %d", proc.pid)
            self.state.p2p = self.system.detect_p2p(proc, self.genesis.network, self.state.p2p)
        self.state.process = proc
        self.state.process_stats = stats
        self.state.record_success()

    def discover_peers(self) -> None:
        proc = self.state.process
        if proc is None:
            return
        try:
            connections = self.system.connections(proc)
        except psutil.Error as exc:
            self.state.record_failure("Connection table read", exc)
            return
        # A pass in flight picks up the new set on its next run_pass
        if self.discovery.refresh(connections) and self.prober.state is not ProbeState.PROBING:
            self.prober.reset()
        self.state.record_success()

    def probe_peers(self) -> None:
        if self.state.process is None:
            return
        try:
            self.prober.run_pass(self.discovery.peers)
        except Exception as exc:
            self.state.record_failure("Peer probe", exc)
            return
        self.state.record_success()

    def refresh_epoch(self) -> None:
        metrics = self.state.metrics
        if metrics is not None and metrics.slot_num > 0:
            self.state.current_epoch = metrics.epoch_num
        else:
            self.state.current_epoch = current_epoch(self.genesis)

    def restart_peer_analysis(self) -> None:
        """Operator-requested re-check: forget the peer set and every cached RTT."""
        self.discovery.clear()
        self.prober.reset(forget_rtt=True)
        logger.info("Peer analysis restarted")
