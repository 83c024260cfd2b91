"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides for secrets
  - Between-tick reload of the trade sizing fields
  - Subsystem configs: trade, network, engine, insight, observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from mirrorbot.models import MonitoringMode
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Env var -> (section, field). Secrets never need to live in YAML.
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "MIRROR_TARGET_WALLET": ("trade", "target_wallet"),
    "MIRROR_PRIVATE_KEY": ("trade", "private_key"),
    "MIRROR_RPC_URL": ("trade", "rpc_url"),
    "POLYMARKET_API_KEY": ("trade", "api_key"),
    "POLYMARKET_API_SECRET": ("trade", "api_secret"),
    "POLYMARKET_API_PASSPHRASE": ("trade", "api_passphrase"),
}


class TradeConfig(BaseModel):
    """Inputs the operator sets for one mirroring run."""
    target_wallet: str = ""

    # Execution credentials
    execution_method: Literal["PRIVATE_KEY", "POLYMARKET_API"] = "PRIVATE_KEY"
    private_key: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    # Trading parameters
    max_bet_amount: float = 100.0
    min_order_amount: float = 5.0
    stop_loss_percentage: float = 15.0
    simulation_mode: bool = False
    rpc_url: str = "https://polygon-rpc.com"

    # Advanced
    monitoring_mode: MonitoringMode = MonitoringMode.POLLING
    gas_priority: Literal["STANDARD", "FAST", "INSTANT", "CUSTOM"] = "FAST"
    custom_gas_gwei: float = 30.0
    copy_multiplier: float = 1.0
    retry_attempts: int = 3
    slippage: float = 1.0
    limit_price: float = 0.55

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.api_key)


class NetworkConfig(BaseModel):
    direct_timeout_secs: float = 5.0
    proxy_timeout_secs: float = 8.0
    use_proxies: bool = True
    gamma_api_url: str = "https://gamma-api.polymarket.com"
    clob_api_url: str = "https://clob.polymarket.com"
    subgraph_urls: list[str] = Field(default_factory=lambda: [
        "https://gateway.thegraph.com/api/subgraphs/id/7fu2DWYK93ePfzB24c2wrP94S3x4LGHUrQxphhoEypyY",
        "https://subgraph-matic.poly.market/subgraphs/name/polymarket/matic-markets-6",
    ])
    # Queried with GET when POST is blocked
    subgraph_get_url: str = "https://api.thegraph.com/subgraphs/name/tokenunion/polymarket-matic"


class EngineConfig(BaseModel):
    tick_interval_secs: float = 2.0
    poll_grace_secs: int = 30
    heartbeat_interval_secs: float = 4.0
    seen_capacity: int = 1000
    simulation_delay_secs: float = 0.8
    max_events: int = 500


class InsightConfig(BaseModel):
    enabled: bool = True
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.2
    llm_max_tokens: int = 512
    max_trades: int = 25


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/mirrorbot.log"


class BotConfig(BaseModel):
    trade: TradeConfig = Field(default_factory=TradeConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    insight: InsightConfig = Field(default_factory=InsightConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            raw.setdefault(section, {})[key] = value
    return raw


def config_path(path: str | Path | None = None) -> Path:
    return Path(path) if path else _PROJECT_ROOT / "config.yaml"


def load_config(path: str | Path | None = None) -> BotConfig:
    """Load config from YAML file, falling back to defaults."""
    path = config_path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return BotConfig(**_apply_env_overrides(raw))


# Trade fields a running engine picks up without a restart
HOT_RELOAD_FIELDS = ("min_order_amount", "copy_multiplier", "limit_price")


class ConfigWatcher:
    """Re-read the config file between ticks and apply sizing changes.

    Only ``HOT_RELOAD_FIELDS`` are written onto the live ``TradeConfig``;
    target, credentials and monitoring mode still need a restart.
    """

    def __init__(self, path: str | Path | None, trade: TradeConfig):
        self._path = config_path(path)
        self._trade = trade
        self._mtime = self._stat()

    def _stat(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except OSError:
            return None

    def poll(self) -> dict[str, Any]:
        """Apply edited sizing fields. Returns the ones that changed."""
        mtime = self._stat()
        if mtime is None or mtime == self._mtime:
            return {}
        self._mtime = mtime
        try:
            fresh = load_config(self._path).trade
        except (OSError, ValueError, yaml.YAMLError) as e:
            log.warning("config.reload_failed", path=str(self._path), error=str(e))
            return {}

        changed: dict[str, Any] = {}
        for name in HOT_RELOAD_FIELDS:
            value = getattr(fresh, name)
            if value != getattr(self._trade, name):
                setattr(self._trade, name, value)
                changed[name] = value
        if changed:
            log.info("config.reloaded", **changed)
        return changed
