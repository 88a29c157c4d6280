import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

COMETBFT_RPC_URL = "http://localhost:26657"
HEALTH_STREAM_KEY = "cometHealthEvents"

ENV_OVERRIDES = {
    "COMET_MONITOR_NODE_URL": "node_url",
    "REFERENCE_NODE_ADDRESS": "reference_node_address",
    "COMET_MONITOR_REDIS_URL": "redis_url",
    "COMET_MONITOR_LOG_LEVEL": "log_level",
}


@dataclass
class MonitorConfig:
    node_url: str = COMETBFT_RPC_URL
    reference_node_address: Optional[str] = None
    refresh_interval: float = 5.0
    consensus_refresh_interval: float = 1.0
    enable_consensus_realtime: bool = True
    request_timeout: float = 10.0
    divergence_debounce: float = 5.0
    history_size: int = 50
    mempool_limit: int = 100
    redis_url: Optional[str] = None
    stream_key: str = HEALTH_STREAM_KEY
    listen_host: str = "0.0.0.0"
    listen_port: int = 5000
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.reference_node_address:
            self.reference_node_address = self.node_url
        if self.refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        if self.consensus_refresh_interval < 0:
            raise ValueError("consensus_refresh_interval must not be negative")
        if self.history_size <= 0:
            raise ValueError("history_size must be positive")


def normalize_config(raw) -> dict:
    """
    Flatten the YAML layout into MonitorConfig keyword arguments.

    Accepted layout:
      node:
        url: http://127.0.0.1:26657
        reference: https://rpc.example.org
      polling:
        refresh_interval: 5
        consensus_refresh_interval: 1
      redis:
        url: redis://localhost:6379/0
    """
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValueError("config root must be a mapping")
    normalized = {}
    node = raw.get("node", {})
    if isinstance(node, str):
        normalized["node_url"] = node
    elif isinstance(node, dict):
        if "url" in node:
            normalized["node_url"] = node["url"]
        if "reference" in node:
            normalized["reference_node_address"] = node["reference"]

    for section in ("polling", "divergence", "history", "http", "logging"):
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            raise ValueError(f"config section '{section}' must be a mapping")
        normalized.update(values)

    redis_section = raw.get("redis") or {}
    if isinstance(redis_section, dict):
        if "url" in redis_section:
            normalized["redis_url"] = redis_section["url"]
        if "stream_key" in redis_section:
            normalized["stream_key"] = redis_section["stream_key"]

    known = {f.name for f in fields(MonitorConfig)}
    for key, value in raw.items():
        if key in known:
            normalized[key] = value

    unknown = set(normalized) - known
    if unknown:
        logger.warning(f"[Config] Ignoring unknown settings: {sorted(unknown)}")
        for key in unknown:
            normalized.pop(key)
    return normalized


def load_config(path=None, environ=None) -> MonitorConfig:
    environ = os.environ if environ is None else environ
    settings = {}
    if path:
        with open(path, "r") as f:
            settings = normalize_config(yaml.safe_load(f))
        logger.info(f"[Config] Loaded settings from {path}")

    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value and value.strip():
            settings[key] = value.strip()
    return MonitorConfig(**settings)
