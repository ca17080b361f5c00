import logging
from dataclasses import dataclass, field, fields
from typing import Any

import requests
from prometheus_client.parser import text_string_to_metric_families

from lantern.config import PrometheusConfig
from lantern.errors import MetricsError

logger = logging.getLogger(__name__)

_PREFIX = "cardano_node_metrics_"


def _metric(name: str, kind: type = int) -> Any:
    return field(default=kind(), metadata={"metric": _PREFIX + name, "kind": kind})


@dataclass
class NodeMetrics:
    """Typed view of the node's metrics. Missing series read as zero."""

    block_num: int = _metric("blockNum_int")
    epoch_num: int = _metric("epoch_int")
    slot_in_epoch: int = _metric("slotInEpoch_int")
    slot_num: int = _metric("slotNum_int")
    density: float = _metric("density_real", float)
    tx_processed: int = _metric("txsProcessedNum_int")
    mempool_tx: int = _metric("txsInMempool_int")
    mempool_bytes: int = _metric("mempoolBytes_int")
    kes_period: int = _metric("currentKESPeriod_int")
    remaining_kes_periods: int = _metric("remainingKESPeriods_int")
    is_leader: int = _metric("Forge_node_is_leader_int")
    adopted: int = _metric("Forge_adopted_int")
    didnt_adopt: int = _metric("Forge_didnt_adopt_int")
    about_to_lead: int = _metric("Forge_forge_about_to_lead_int")
    missed_slots: int = _metric("slotsMissedNum_int")
    mem_live: int = _metric("RTS_gcLiveBytes_int")
    mem_heap: int = _metric("RTS_gcHeapBytes_int")
    gc_minor: int = _metric("RTS_gcMinorNum_int")
    gc_major: int = _metric("RTS_gcMajorNum_int")
    forks: int = _metric("forks_int")
    block_delay: float = _metric("blockfetchclient_blockdelay_s", float)
    blocks_served: int = _metric("served_block_count_int")
    blocks_late: int = _metric("blockfetchclient_lateblocks")
    blocks_within_1s: float = _metric("blockfetchclient_blockdelay_cdfOne", float)
    blocks_within_3s: float = _metric("blockfetchclient_blockdelay_cdfThree", float)
    blocks_within_5s: float = _metric("blockfetchclient_blockdelay_cdfFive", float)
    peers_cold: int = _metric("peerSelection_cold")
    peers_warm: int = _metric("peerSelection_warm")
    peers_hot: int = _metric("peerSelection_hot")
    conn_incoming: int = _metric("connectionManager_incomingConns")
    conn_outgoing: int = _metric("connectionManager_outgoingConns")
    conn_unidirectional: int = _metric("connectionManager_unidirectionalConns")
    conn_duplex: int = _metric("connectionManager_duplexConns")
    conn_prunable: int = _metric("connectionManager_prunableConns")

    @classmethod
    def from_samples(cls, samples: dict[str, float]) -> "NodeMetrics":
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = samples.get(f.metadata["metric"])
            if raw is None:
                continue
            try:
                values[f.name] = f.metadata["kind"](raw)
            except (ValueError, OverflowError):
                # NaN or Inf in an integer series
                continue
        return cls(**values)


def parse_exposition(text: str) -> dict[str, float]:
    """Flatten Prometheus text exposition into {sample name: value}."""
    samples: dict[str, float] = {}
    try:
        for family in text_string_to_metric_families(text):
            for sample in family.samples:
                samples[sample.name] = sample.value
    except ValueError as exc:
        raise MetricsError(f"Failed to parse metrics: {exc}") from exc
    return samples


class MetricsClient:
    def __init__(self, config: PrometheusConfig) -> None:
        self.url = config.url
        self.timeout = config.timeout

    def fetch(self) -> NodeMetrics:
        try:
            response = requests.get(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise MetricsError(f"Failed to fetch node metrics: {exc}") from exc
        if response.status_code != 200:
            raise MetricsError(f"Failed HTTP: {response.status_code}")
        samples = parse_exposition(response.text)
        logger.debug("Fetched %d metric samples from %s", len(samples), self.url)
        return NodeMetrics.from_samples(samples)
