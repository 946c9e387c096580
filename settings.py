"""
Settings for the validator node (JSON file + environment) and the hub (environment).
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import List

from errors import FatalConfigError
from geo import GEO_LOOKUP_URL
from transport import parse_endpoint

DEFAULT_CONFIG_PATH = os.path.join("config", "config.json")
DEFAULT_PRIVATE_KEY_PATH = os.path.join("config", "privateKey.txt")
DEFAULT_HUB_SERVER = "tcp://localhost:8081"
DEFAULT_PING_INTERVAL_MS = 10000
DEFAULT_HUB_PORT = 8081
DEFAULT_STATS_INTERVAL = 30
DEFAULT_DISPATCH_INTERVAL = 60
RECONNECT_DELAY = 5.0  # seconds, fixed

logger = logging.getLogger("uptime-settings")


@dataclass
class ValidatorSettings:
    hub_server: str = DEFAULT_HUB_SERVER
    private_key_path: str = DEFAULT_PRIVATE_KEY_PATH
    ping_interval_ms: int = DEFAULT_PING_INTERVAL_MS
    geo_url: str = GEO_LOOKUP_URL
    reconnect_delay: float = RECONNECT_DELAY

    @property
    def status_interval(self) -> float:
        return self.ping_interval_ms / 1000.0


@dataclass
class HubSettings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_HUB_PORT
    stats_interval: int = DEFAULT_STATS_INTERVAL
    targets: List[str] = field(default_factory=list)
    dispatch_interval: int = DEFAULT_DISPATCH_INTERVAL


def _safe_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a valid integer, using default {default}")
        return default


def _write_default_config(path: str):
    default = {"hubServer": DEFAULT_HUB_SERVER, "pingInterval": DEFAULT_PING_INTERVAL_MS}
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(default, f, ensure_ascii=False, indent=2)
    except OSError as exc:
        raise FatalConfigError(f"Failed to create default config {path}: {exc}") from exc
    logger.info(f"Created default config at: {path}")


def load_config_file(path: str) -> dict:
    if not os.path.exists(path):
        _write_default_config(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise FatalConfigError(f"Failed to load config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise FatalConfigError(f"Config {path} must hold a JSON object")
    return data


def load_validator_settings(path: str = None) -> ValidatorSettings:
    path = path or os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    data = load_config_file(path)
    cfg = ValidatorSettings()
    cfg.hub_server = os.environ.get("HUB_SERVER") or data.get("hubServer") or DEFAULT_HUB_SERVER
    try:
        parse_endpoint(cfg.hub_server)
    except ValueError as exc:
        raise FatalConfigError(f"Invalid hubServer: {exc}") from exc
    cfg.private_key_path = (
        os.environ.get("PRIVATE_KEY_PATH") or data.get("privateKeyPath") or DEFAULT_PRIVATE_KEY_PATH
    )
    cfg.geo_url = os.environ.get("GEO_LOOKUP_URL") or data.get("geoLookupUrl") or GEO_LOOKUP_URL
    interval = data.get("pingInterval", DEFAULT_PING_INTERVAL_MS)
    if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
        raise FatalConfigError(f"pingInterval must be a positive integer, got {interval!r}")
    cfg.ping_interval_ms = interval
    return cfg


def load_hub_settings() -> HubSettings:
    return HubSettings(
        host=os.environ.get("HUB_HOST", "0.0.0.0"),
        port=_safe_int_env("PORT", DEFAULT_HUB_PORT),
        stats_interval=_safe_int_env("HUB_STATS_INTERVAL", DEFAULT_STATS_INTERVAL),
        targets=[u.strip() for u in os.environ.get("HUB_TARGETS", "").split(",") if u.strip()],
        dispatch_interval=_safe_int_env("HUB_DISPATCH_INTERVAL", DEFAULT_DISPATCH_INTERVAL),
    )
