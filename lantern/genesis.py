"""Protocol timing constants for the legacy (Byron) and modern (Shelley) eras.

Values come from a fixed table of named networks. Any explicitly configured
value wins over the table for that one field.
"""

import logging
from dataclasses import dataclass

from lantern.config import Config
from lantern.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "mainnet"

# Identical on every supported network
BYRON_SLOT_LENGTH_MS = 20000
SHELLEY_SLOT_LENGTH_MS = 1000
SLOTS_PER_KES_PERIOD = 129600


@dataclass(frozen=True)
class NetworkProfile:
    name: str
    magic: int
    byron_start_time: int
    byron_k: int
    shelley_epoch_length: int
    transition_epoch: int


NETWORKS: dict[str, NetworkProfile] = {
    "mainnet": NetworkProfile("mainnet", 764824073, 1506203091, 2160, 432000, 208),
    "preprod": NetworkProfile("preprod", 1, 1654041600, 2160, 432000, 4),
    "preview": NetworkProfile("preview", 2, 1666656000, 432, 86400, 0),
    "sancho": NetworkProfile("sancho", 4, 1686789000, 432, 86400, 0),
}


@dataclass(frozen=True)
class GenesisParameters:
    start_time: int
    slot_length_ms: int
    epoch_length: int
    security_param: int | None = None
    slots_per_kes_period: int | None = None

    def __post_init__(self) -> None:
        if self.slot_length_ms <= 0:
            raise ConfigError(f"slot length must be positive, got {self.slot_length_ms}")
        if self.epoch_length <= 0:
            raise ConfigError(f"epoch length must be positive, got {self.epoch_length}")

    @property
    def epoch_duration_ms(self) -> int:
        return self.epoch_length * self.slot_length_ms


@dataclass(frozen=True)
class EraTransition:
    """First epoch of the modern era. None while unresolved; 0 means always modern."""

    epoch: int | None

    @property
    def resolved(self) -> bool:
        return self.epoch is not None and self.epoch >= 0


@dataclass(frozen=True)
class GenesisModel:
    network: str
    network_magic: int
    legacy: GenesisParameters
    modern: GenesisParameters
    transition: EraTransition

    @property
    def legacy_end_time(self) -> int:
        """Unix second at which the legacy era ends (start of the transition epoch)."""
        epochs = self.transition.epoch if self.transition.resolved else 0
        return self.legacy.start_time + (epochs * self.legacy.epoch_duration_ms) // 1000

    @property
    def legacy_slots(self) -> int:
        epochs = self.transition.epoch if self.transition.resolved else 0
        return epochs * self.legacy.epoch_length


def _pick(explicit: int | None, default: int) -> int:
    if explicit is not None and explicit > 0:
        return explicit
    return default


def lookup_network(name: str) -> NetworkProfile:
    try:
        return NETWORKS[name]
    except KeyError:
        raise ConfigError(f"unknown network: {name}") from None


def resolve_genesis(cfg: Config) -> GenesisModel:
    """Build the era model from the configured network name and overrides.

    Raises ConfigError for an unknown network name. With no network name at
    all, the mainnet profile is used.
    """
    name = cfg.network_name
    if not name:
        logger.info("No network configured, defaulting to %s", DEFAULT_NETWORK)
        name = DEFAULT_NETWORK
    profile = lookup_network(name)

    byron = cfg.node.byron
    k = _pick(byron.k, profile.byron_k)
    legacy = GenesisParameters(
        start_time=_pick(byron.start_time, profile.byron_start_time),
        slot_length_ms=_pick(byron.slot_length, BYRON_SLOT_LENGTH_MS),
        epoch_length=_pick(byron.epoch_length, 10 * k),
        security_param=k,
    )

    trans_epoch = cfg.node.shelley_trans_epoch
    if trans_epoch is None or trans_epoch < 0:
        trans_epoch = profile.transition_epoch
    transition = EraTransition(trans_epoch)

    shelley = cfg.node.shelley
    modern = GenesisParameters(
        start_time=legacy.start_time + (trans_epoch * legacy.epoch_duration_ms) // 1000,
        slot_length_ms=_pick(shelley.slot_length, SHELLEY_SLOT_LENGTH_MS),
        epoch_length=_pick(shelley.epoch_length, profile.shelley_epoch_length),
        slots_per_kes_period=_pick(shelley.slots_per_kes_period, SLOTS_PER_KES_PERIOD),
    )

    magic = cfg.node.network_magic or profile.magic
    logger.info(
        "Resolved %s genesis: transition epoch %d, legacy epoch %d slots, modern epoch %d slots",
        name,
        trans_epoch,
        legacy.epoch_length,
        modern.epoch_length,
    )
    return GenesisModel(
        network=name,
        network_magic=magic,
        legacy=legacy,
        modern=modern,
        transition=transition,
    )
