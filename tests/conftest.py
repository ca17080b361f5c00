from __future__ import annotations

import pytest

from lantern.config import Config
from lantern.genesis import GenesisModel, resolve_genesis


@pytest.fixture
def mainnet() -> GenesisModel:
    return resolve_genesis(Config())


@pytest.fixture
def preview() -> GenesisModel:
    cfg = Config()
    cfg.node.network = "preview"
    return resolve_genesis(cfg)
