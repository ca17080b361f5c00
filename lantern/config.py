"""Layered configuration: built-in defaults, then a YAML file, then the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from lantern.errors import ConfigError

logger = logging.getLogger(__name__)

MAX_NODE_NAME_LENGTH = 19


@dataclass
class AppConfig:
    node_name: str = "Cardano Node"
    network: str = ""
    refresh: int = 1
    retries: int = 3
    log_file: str = ""
    log_level: str = "INFO"


@dataclass
class ByronGenesisConfig:
    # None means "not given"; genesis resolution fills these from the named network
    start_time: int | None = None
    epoch_length: int | None = None
    k: int | None = None
    slot_length: int | None = None


@dataclass
class ShelleyGenesisConfig:
    epoch_length: int | None = None
    slot_length: int | None = None
    slots_per_kes_period: int | None = None


@dataclass
class NodeConfig:
    binary: str = "cardano-node"
    pid: int = 0
    pid_file: str = ""
    network: str = "mainnet"
    network_magic: int = 0
    port: int = 3001
    block_producer: bool = False
    shelley_trans_epoch: int | None = None
    byron: ByronGenesisConfig = field(default_factory=ByronGenesisConfig)
    shelley: ShelleyGenesisConfig = field(default_factory=ShelleyGenesisConfig)


@dataclass
class PrometheusConfig:
    host: str = "127.0.0.1"
    port: int = 12798
    refresh: int = 3
    timeout: int = 3

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/metrics"


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    node: NodeConfig = field(default_factory=NodeConfig)
    prometheus: PrometheusConfig = field(default_factory=PrometheusConfig)

    @property
    def network_name(self) -> str:
        """The named network in effect; app.network wins over node.network."""
        return (self.app.network or self.node.network or "").strip().lower()


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "t", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "f", "false", "no", "n", "off", ""}:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid integer: {value!r}")
    return int(str(value).strip())


# (section path, attribute, YAML key, environment variable, coercion)
_FIELDS: list[tuple[tuple[str, ...], str, str, str, Callable[[Any], Any]]] = [
    (("app",), "node_name", "nodeName", "NODE_NAME", str),
    (("app",), "network", "network", "NETWORK", str),
    (("app",), "refresh", "refresh", "REFRESH", _to_int),
    (("app",), "retries", "retries", "RETRIES", _to_int),
    (("app",), "log_file", "logFile", "LOG_FILE", str),
    (("app",), "log_level", "logLevel", "LOG_LEVEL", str),
    (("node",), "binary", "binary", "CARDANO_NODE_BINARY", str),
    (("node",), "pid", "pid", "CARDANO_NODE_PID", _to_int),
    (("node",), "pid_file", "pidFile", "CARDANO_NODE_PID_FILE", str),
    (("node",), "network", "network", "CARDANO_NETWORK", str),
    (("node",), "network_magic", "networkMagic", "CARDANO_NODE_NETWORK_MAGIC", _to_int),
    (("node",), "port", "port", "CARDANO_PORT", _to_int),
    (("node",), "block_producer", "blockProducer", "CARDANO_BLOCK_PRODUCER", _to_bool),
    (("node",), "shelley_trans_epoch", "shelleyTransEpoch", "SHELLEY_TRANS_EPOCH", _to_int),
    (("node", "byron"), "start_time", "startTime", "BYRON_GENESIS_START_SEC", _to_int),
    (("node", "byron"), "epoch_length", "epochLength", "BYRON_EPOCH_LENGTH", _to_int),
    (("node", "byron"), "k", "k", "BYRON_K", _to_int),
    (("node", "byron"), "slot_length", "slotLength", "BYRON_SLOT_LENGTH", _to_int),
    (("node", "shelley"), "epoch_length", "epochLength", "SHELLEY_EPOCH_LENGTH", _to_int),
    (("node", "shelley"), "slot_length", "slotLength", "SHELLEY_SLOT_LENGTH", _to_int),
    (
        ("node", "shelley"),
        "slots_per_kes_period",
        "slotsPerKESPeriod",
        "SHELLEY_SLOTS_PER_KES_PERIOD",
        _to_int,
    ),
    (("prometheus",), "host", "host", "PROM_HOST", str),
    (("prometheus",), "port", "port", "PROM_PORT", _to_int),
    (("prometheus",), "refresh", "refresh", "PROM_REFRESH", _to_int),
    (("prometheus",), "timeout", "timeout", "PROM_TIMEOUT", _to_int),
]


def _section(cfg: Config, path: tuple[str, ...]) -> Any:
    target: Any = cfg
    for name in path:
        target = getattr(target, name)
    return target


def _set(cfg: Config, path: tuple[str, ...], attr: str, raw: Any, coerce: Callable[[Any], Any], source: str) -> None:
    try:
        value = coerce(raw)
    except (TypeError, ValueError) as exc:
        dotted = ".".join(path + (attr,))
        raise ConfigError(f"invalid value for {dotted} from {source}: {raw!r}") from exc
    setattr(_section(cfg, path), attr, value)


def _apply_yaml(cfg: Config, data: dict[str, Any]) -> None:
    for path, attr, key, _env, coerce in _FIELDS:
        node: Any = data
        for name in path:
            node = node.get(name) if isinstance(node, dict) else None
        if not isinstance(node, dict) or node.get(key) is None:
            continue
        _set(cfg, path, attr, node[key], coerce, "config file")


def _apply_env(cfg: Config, environ: Mapping[str, str]) -> None:
    for path, attr, _key, env, coerce in _FIELDS:
        raw = environ.get(env)
        if raw is None:
            continue
        _set(cfg, path, attr, raw, coerce, env)


def load_config(config_file: str | None = None, environ: Mapping[str, str] | None = None) -> Config:
    """Load configuration. Environment variables take precedence over file values."""
    cfg = Config()
    if config_file:
        path = Path(config_file)
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except OSError as exc:
            raise ConfigError(f"error reading config file: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"error parsing config file: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("error parsing config file: top level must be a mapping")
        _apply_yaml(cfg, data)
        logger.debug("Loaded config file %s", path)
    _apply_env(cfg, os.environ if environ is None else environ)

    if len(cfg.app.node_name) > MAX_NODE_NAME_LENGTH:
        raise ConfigError(
            f"Please keep node name at or below {MAX_NODE_NAME_LENGTH} characters in length!"
        )
    if cfg.app.retries < 1:
        raise ConfigError("app.retries must be at least 1")
    return cfg


def configure_logging(cfg: Config) -> None:
    """Send log records to app.log_file; the terminal belongs to the dashboard."""
    root = logging.getLogger("lantern")
    root.handlers.clear()
    if not cfg.app.log_file:
        root.addHandler(logging.NullHandler())
        return
    path = Path(cfg.app.log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    level = logging.getLevelName(cfg.app.log_level.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)
