from __future__ import annotations

import pytest

from lantern.config import Config
from lantern.errors import ConfigError
from lantern.genesis import NETWORKS, GenesisParameters, resolve_genesis


def test_mainnet_profile_is_the_default(mainnet) -> None:
    assert mainnet.network == "mainnet"
    assert mainnet.network_magic == 764824073
    assert mainnet.legacy.start_time == 1506203091
    assert mainnet.legacy.slot_length_ms == 20000
    assert mainnet.legacy.epoch_length == 21600
    assert mainnet.transition.epoch == 208
    assert mainnet.modern.slot_length_ms == 1000
    assert mainnet.modern.epoch_length == 432000
    assert mainnet.modern.slots_per_kes_period == 129600


def test_modern_era_starts_where_legacy_ends(mainnet) -> None:
    # 208 legacy epochs of 21600 slots at 20s each
    assert mainnet.legacy_end_time == 1506203091 + 208 * 21600 * 20
    assert mainnet.modern.start_time == mainnet.legacy_end_time
    assert mainnet.legacy_slots == 208 * 21600


def test_network_without_legacy_era(preview) -> None:
    assert preview.transition.epoch == 0
    assert preview.legacy.epoch_length == 4320
    assert preview.modern.epoch_length == 86400
    assert preview.modern.start_time == preview.legacy.start_time
    assert preview.legacy_slots == 0


def test_app_network_wins_over_node_network() -> None:
    cfg = Config()
    cfg.app.network = "PreProd"
    cfg.node.network = "preview"

    genesis = resolve_genesis(cfg)

    assert genesis.network == "preprod"
    assert genesis.transition.epoch == NETWORKS["preprod"].transition_epoch


def test_empty_network_name_falls_back_to_mainnet() -> None:
    cfg = Config()
    cfg.node.network = ""

    assert resolve_genesis(cfg).network == "mainnet"


def test_unknown_network_is_rejected() -> None:
    cfg = Config()
    cfg.node.network = "testnet-42"

    with pytest.raises(ConfigError, match="unknown network"):
        resolve_genesis(cfg)


def test_explicit_values_override_single_fields() -> None:
    cfg = Config()
    cfg.node.network = "preprod"
    cfg.node.shelley.epoch_length = 1000
    cfg.node.byron.k = 10
    cfg.node.network_magic = 99

    genesis = resolve_genesis(cfg)

    assert genesis.modern.epoch_length == 1000
    assert genesis.modern.slot_length_ms == 1000
    assert genesis.legacy.epoch_length == 100
    assert genesis.legacy.start_time == NETWORKS["preprod"].byron_start_time
    assert genesis.network_magic == 99


def test_negative_transition_epoch_means_not_given() -> None:
    cfg = Config()
    cfg.node.shelley_trans_epoch = -1

    assert resolve_genesis(cfg).transition.epoch == 208

    cfg.node.shelley_trans_epoch = 300
    assert resolve_genesis(cfg).transition.epoch == 300


@pytest.mark.parametrize("slot_length, epoch_length", [(0, 10), (1000, 0), (-5, 10)])
def test_non_positive_lengths_are_rejected(slot_length: int, epoch_length: int) -> None:
    with pytest.raises(ConfigError):
        GenesisParameters(start_time=0, slot_length_ms=slot_length, epoch_length=epoch_length)
