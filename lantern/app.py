import argparse
import asyncio
import logging
import sys
from typing import Any, Callable

from rich.console import Group
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import Footer, Static

from lantern import __version__ as LANTERN_VERSION
from lantern.config import Config, configure_logging, load_config
from lantern.epoch import (
    SyncStatus,
    current_slot_estimate,
    diagnose_sync,
    epoch_progress_percent,
    format_time_left,
    slot_interval_threshold,
    time_until_next_epoch,
)
from lantern.errors import ConfigError, RetryLimitExceeded
from lantern.genesis import GenesisModel, resolve_genesis
from lantern.peers import (
    REACHABLE_BUCKETS,
    PeerRecord,
    PeerStatSnapshot,
    ProbeState,
    RttBucket,
    classify_rtt,
)
from lantern.poller import (
    DISCOVERY_INTERVAL,
    EPOCH_INTERVAL,
    PROBE_INTERVAL,
    PROCESS_INTERVAL,
    Poller,
)
from lantern.services.geolocation import GeoCache
from lantern.services.prometheus import MetricsClient
from lantern.services.system import SystemClient
from lantern.state import DashboardState

logger = logging.getLogger(__name__)

GIB = 1073741824
EPOCH_BAR_WIDTH = 68
PEER_BAR_WIDTH = EPOCH_BAR_WIDTH // 2
CHAR_MARKED = "▌"
CHAR_UNMARKED = "▖"

BUCKET_COLORS = {
    RttBucket.UNDER_50: "green",
    RttBucket.UNDER_100: "yellow",
    RttBucket.UNDER_200: "red",
    RttBucket.OVER_200: "magenta",
    RttBucket.UNREACHABLE: "magenta",
}


def _bar(percent: float, width: int, color: str) -> str:
    marked = int(percent) * width // 100
    return f"[{color}]{CHAR_MARKED * marked}[/][white]{CHAR_UNMARKED * (width - marked)}[/]"


def _row(label: str, value: object) -> str:
    return f"[green]{label:<11}:[/] [white]{value}[/]"


def node_lines(config: Config, genesis: GenesisModel, state: DashboardState) -> list[str]:
    version, revision = state.node_version
    uptime = state.process_stats["uptime"] if state.process_stats else 0
    return [
        _row("Name", config.app.node_name),
        _row("Role", state.role),
        _row("Network", genesis.network.capitalize()),
        _row("Version", f"{version} [blue]\\[[/]{revision}[blue]][/]"),
        _row("Public IP", state.public_ip or "N/A"),
        _row("Uptime", format_time_left(uptime)),
    ]


def resource_lines(state: DashboardState) -> list[str]:
    metrics, stats = state.metrics, state.process_stats
    if metrics is None or stats is None:
        return []
    return [
        _row("CPU (sys)", f"{stats['cpu_percent']:.2f}%"),
        _row("Mem (Live)", f"{metrics.mem_live / GIB:.1f}[blue]G[/]"),
        _row("Mem (RSS)", f"{stats['rss'] / GIB:.1f}[blue]G[/]"),
        _row("Mem (Heap)", f"{metrics.mem_heap / GIB:.1f}[blue]G[/]"),
        _row("GC Minor", metrics.gc_minor),
        _row("GC Major", metrics.gc_major),
    ]


def connection_lines(state: DashboardState, poller: Poller) -> list[str]:
    if state.p2p:
        metrics = state.metrics
        if metrics is None:
            return []
        return [
            _row("P2P", "enabled"),
            _row("Incoming", metrics.conn_incoming),
            _row("Outgoing", metrics.conn_outgoing),
            _row("Cold Peers", metrics.peers_cold),
            _row("Warm Peers", metrics.peers_warm),
            _row("Hot Peers", metrics.peers_hot),
            _row("Uni-Dir", metrics.conn_unidirectional),
            _row("Duplex", metrics.conn_duplex),
            _row("Prunable", metrics.conn_prunable),
        ]
    if state.process is None:
        return []
    return [
        _row("P2P", "[yellow]disabled[/]"),
        _row("Incoming", poller.discovery.inbound_count),
        _row("Outgoing", poller.discovery.outbound_count),
    ]


def core_lines(state: DashboardState) -> list[str]:
    metrics = state.metrics
    if metrics is None:
        return []
    if state.role != "Core":
        return [f"{'N/A':>18}"]
    adopted_color = "yellow" if metrics.is_leader != metrics.adopted else "white"
    invalid_color = "red" if metrics.didnt_adopt else "white"
    missed_pct = 0.0
    if metrics.about_to_lead > 0:
        missed_pct = metrics.missed_slots / (metrics.about_to_lead + metrics.missed_slots) * 100
    return [
        _row("Leader", metrics.is_leader),
        _row("Adopted", f"[{adopted_color}]{metrics.adopted}[/]"),
        _row("Invalid", f"[{invalid_color}]{metrics.didnt_adopt}[/]"),
        _row("Missed", f"{metrics.missed_slots} [blue]([/]{missed_pct:.2f} %[blue])[/]"),
        "",
        _row("KES period", metrics.kes_period),
        _row("KES remain", metrics.remaining_kes_periods),
    ]


def chain_lines(genesis: GenesisModel, state: DashboardState, now: float | None = None) -> list[str]:
    metrics = state.metrics
    progress = 0.0
    if metrics is not None:
        progress = epoch_progress_percent(genesis, metrics.epoch_num, metrics.slot_in_epoch)
    epoch = state.current_epoch if state.current_epoch is not None else "-"
    remaining = time_until_next_epoch(genesis, now)
    remaining_text = format_time_left(remaining) if remaining is not None else "-"
    lines = [
        f"[green]Epoch:[/] [white]{epoch}[/] [blue]\\[[/]{progress:.1f}%[blue]][/] "
        f"[white]{remaining_text}[/] remaining",
        _bar(progress, EPOCH_BAR_WIDTH, "blue"),
    ]
    if metrics is None:
        return lines

    tip_ref = current_slot_estimate(genesis, now)
    diagnosis = diagnose_sync(tip_ref, metrics.slot_num)
    if diagnosis.status is SyncStatus.STARTING:
        status = _row("Status", "starting")
    elif diagnosis.status is SyncStatus.HEALTHY:
        status = _row("Tip (diff)", f"{diagnosis.tip_diff} :)")
    elif diagnosis.status is SyncStatus.BEHIND:
        status = _row("Tip (diff)", f"[yellow]{diagnosis.tip_diff} :|[/]")
    elif diagnosis.status is SyncStatus.SYNCING:
        status = _row("Syncing", f"[yellow]{diagnosis.progress:2.1f}%[/]")
    else:
        status = _row("Status", "N/A")
    interval = slot_interval_threshold(genesis.modern) / 1000
    lines += [
        _row("Block", metrics.block_num) + "  " + _row("Tip (ref)", tip_ref if tip_ref is not None else "N/A"),
        _row("Slot", metrics.slot_num) + "  " + status,
        _row("Slot epoch", metrics.slot_in_epoch) + "  " + _row("Density", f"{metrics.density * 100:3.5f}"),
        _row("Total Tx", metrics.tx_processed)
        + "  "
        + _row("Pending Tx", f"{metrics.mempool_tx}[blue]/[/]{metrics.mempool_bytes // 1024}[blue]K[/]"),
        _row("Forks", metrics.forks) + "  " + _row("Blk interval", f"~{interval:.0f}s"),
    ]
    return lines


def block_lines(state: DashboardState) -> list[str]:
    metrics = state.metrics
    if metrics is None:
        return []
    return [
        _row("Last Delay", f"{metrics.block_delay:.2f}[blue]s[/]")
        + "  "
        + _row("Served", metrics.blocks_served)
        + "  "
        + _row("Late (>5s)", metrics.blocks_late),
        _row("Within 1s", f"{metrics.blocks_within_1s * 100:.2f}%")
        + "  "
        + _row("Within 3s", f"{metrics.blocks_within_3s * 100:.2f}%")
        + "  "
        + _row("Within 5s", f"{metrics.blocks_within_5s * 100:.2f}%"),
    ]


def _average_color(average: int) -> str:
    if average >= 200:
        return "magenta"
    if average >= 100:
        return "red"
    if average >= 50:
        return "yellow"
    return "green"


def _peer_row(number: int, peer: PeerRecord) -> str:
    ip = peer.ip
    if ":" in ip and len(ip) > 19:
        parts = ip.split(":")
        ip = f"{parts[0]}...{parts[-2]}:{parts[-1]}"
    color = BUCKET_COLORS[classify_rtt(peer.rtt_ms)]
    rtt = str(peer.rtt_ms) if peer.reachable else "---"
    return f"{number:>3} {ip:>19}:{peer.port:<5} {peer.direction.value:<3} [{color}]{rtt:<5}[/] {peer.location}"


def peer_lines(
    snapshot: PeerStatSnapshot,
    peers: list[PeerRecord],
    state: ProbeState,
    progress: tuple[int, int],
) -> list[str]:
    if state is not ProbeState.DONE:
        checked, expected = progress
        return [f"[yellow]Peer analysis started... please wait![/] [blue]{checked}[/]/[green]{expected}[/]"]
    lines = ["[green]       RTT : Peers / Percent[/]"]
    for bucket in REACHABLE_BUCKETS:
        pct = snapshot.percentages.get(bucket, 0.0)
        lines.append(
            f"[green]{bucket.value:>10} :[/] {snapshot.counts[bucket]:>5}   {pct:>3.0f}%   "
            + _bar(pct, PEER_BAR_WIDTH, BUCKET_COLORS[bucket])
        )
    lines.append("-" * 70)
    unreachable = snapshot.unreachable
    unreachable_text = f"[magenta]{unreachable}[/]" if unreachable else "[blue]0[/]"
    average = snapshot.average_rtt_ms
    if average is None:
        average_text = "[red]---[/]"
    else:
        average_text = f"[{_average_color(average)}]{average}[/]"
    lines.append(
        f"[green]Total / Undetermined :[/] {snapshot.total} / {unreachable_text}"
        f"   Average RTT : {average_text} ms"
    )
    lines.append("-" * 70)
    lines.append(f"[green]  # {'REMOTE PEER':>24}  I/O RTT   Geolocation[/]")
    lines += [_peer_row(number, peer) for number, peer in enumerate(peers, start=1)]
    return lines


class CardPanel(Static):
    def __init__(self, title: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.border_title = title
        self.lines: list[str] = []
        self.add_class("card")

    def update_lines(self, lines: list[str]) -> None:
        # Keep showing the last good content while a source is failing
        if not lines or lines == self.lines:
            return
        self.lines = lines
        self.update(self.render())

    def render(self) -> str | Group:
        if not self.lines:
            return "... loading"
        return Group(*(Text.from_markup(line) for line in self.lines))


class PeerPanel(VerticalScroll):
    def __init__(self, title: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.border_title = title
        self.add_class("card")
        self._content = CardPanel("", classes="peer-content")
        self._was_done = False

    def compose(self) -> ComposeResult:
        yield self._content

    def update_lines(self, lines: list[str], done: bool) -> None:
        self._content.update_lines(lines)
        # Jump back to the top once when an analysis finishes
        if done and not self._was_done:
            self.scroll_home(animate=False)
        self._was_done = done


class LanternApp(App):
    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
        ("r", "refresh_all", "Refresh"),
        ("p", "peer_analysis", "Peer Analysis"),
    ]

    CSS = """
    Screen {
        layout: vertical;
    }
    #body {
        height: 1fr;
    }
    #left {
        width: 40;
    }
    #right {
        width: 1fr;
    }
    .card {
        border: round $accent;
        border-title-color: $text;
        padding: 0 1;
    }
    .peer-content {
        border: none;
        padding: 0;
    }
    #node, #resources {
        height: 8;
    }
    #connections {
        height: 11;
    }
    #core {
        height: 1fr;
    }
    #chain {
        height: 9;
    }
    #block {
        height: 4;
    }
    #peers {
        height: 1fr;
    }
    #header {
        dock: top;
        height: 1;
        background: $boost;
    }
    """

    def __init__(self, config: Config, genesis: GenesisModel) -> None:
        super().__init__()
        self.config = config
        self.genesis = genesis
        self.state = DashboardState(config.app.retries)
        self.system = SystemClient(config.node)
        self.geo = GeoCache()
        self.poller = Poller(
            config,
            genesis,
            self.state,
            MetricsClient(config.prometheus),
            self.system,
            self.geo,
        )
        self.title = f"lantern - {LANTERN_VERSION}"
        self._in_flight: set[str] = set()

        self.header = Static(f" > {self.title}", id="header")
        self.node_card = CardPanel("Node", id="node")
        self.resource_card = CardPanel("Resources", id="resources")
        self.connection_card = CardPanel("Connections", id="connections")
        self.core_card = CardPanel("Core", id="core")
        self.chain_card = CardPanel("Chain", id="chain")
        self.block_card = CardPanel("Block Propagation", id="block")
        self.peer_panel = PeerPanel("Peers", id="peers")

    def compose(self) -> ComposeResult:
        yield self.header
        with Horizontal(id="body"):
            with Vertical(id="left"):
                yield self.node_card
                yield self.resource_card
                yield self.connection_card
                yield self.core_card
            with Vertical(id="right"):
                yield self.chain_card
                yield self.block_card
                yield self.peer_panel
        yield Footer()

    def on_mount(self) -> None:
        self.set_timer(0.1, self.startup)
        self.set_timer(0.1, self.poll_metrics)
        self.set_timer(0.1, self.poll_process)
        self.set_timer(0.2, self.refresh_epoch)
        self.set_interval(self.config.prometheus.refresh, self.poll_metrics)
        self.set_interval(PROCESS_INTERVAL, self.poll_process)
        self.set_timer(0.5, lambda: self.set_interval(DISCOVERY_INTERVAL, self.discover_peers))
        self.set_timer(1.0, lambda: self.set_interval(PROBE_INTERVAL, self.probe_peers))
        self.set_interval(EPOCH_INTERVAL, self.refresh_epoch)
        self.set_interval(self.config.app.refresh, self.render_all)

    async def startup(self) -> None:
        await self._run_task("startup", self.poller.startup)
        self.render_all()

    async def _run_task(self, name: str, func: Callable[[], None]) -> None:
        """Run a blocking task in a worker thread, skipping it while the previous run is in flight."""
        if name in self._in_flight:
            return
        self._in_flight.add(name)
        try:
            await asyncio.get_event_loop().run_in_executor(None, func)
        finally:
            self._in_flight.discard(name)

    async def poll_metrics(self) -> None:
        await self._run_task("metrics", self.poller.poll_metrics)

    async def poll_process(self) -> None:
        await self._run_task("process", self.poller.poll_process)

    async def discover_peers(self) -> None:
        await self._run_task("discovery", self.poller.discover_peers)

    async def probe_peers(self) -> None:
        await self._run_task("probe", self.poller.probe_peers)

    async def refresh_epoch(self) -> None:
        await self._run_task("epoch", self.poller.refresh_epoch)

    def render_all(self) -> None:
        try:
            self.state.check_retry_limit()
        except RetryLimitExceeded as exc:
            self.exit(return_code=1, message=str(exc))
            return
        self.poller.update_role()
        self.node_card.update_lines(node_lines(self.config, self.genesis, self.state))
        self.resource_card.update_lines(resource_lines(self.state))
        self.connection_card.update_lines(connection_lines(self.state, self.poller))
        self.core_card.display = self.state.role == "Core"
        self.core_card.update_lines(core_lines(self.state))
        self.chain_card.update_lines(chain_lines(self.genesis, self.state))
        self.block_card.update_lines(block_lines(self.state))
        self._render_peers()

    def _render_peers(self) -> None:
        if self.state.process is None:
            return
        prober = self.poller.prober
        done = prober.state is ProbeState.DONE
        lines = peer_lines(
            prober.snapshot(),
            prober.peers(),
            prober.state,
            prober.progress(),
        )
        self.peer_panel.update_lines(lines, done)

    async def action_refresh_all(self) -> None:
        self.poller.restart_peer_analysis()
        await asyncio.gather(self.poll_metrics(), self.poll_process(), self.refresh_epoch())
        self.render_all()

    def action_peer_analysis(self) -> None:
        self.poller.restart_peer_analysis()
        self._render_peers()


def run(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="lantern", description="Terminal dashboard for a Cardano node")
    parser.add_argument("-config", "--config", dest="config", default="", help="path to config file to load")
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
        configure_logging(config)
        genesis = resolve_genesis(config)
    except ConfigError as exc:
        print(f"Failed to load config: {exc}", file=sys.stderr)
        sys.exit(1)
    logger.info("Starting lantern %s on %s", LANTERN_VERSION, genesis.network)
    app = LanternApp(config, genesis)
    app.run()
    if app.return_code:
        logger.error("Exited with status %d", app.return_code)
    sys.exit(app.return_code or 0)
