#!/usr/bin/env python3
"""
Configuration for the gravity allocator.

YAML-first: gravity.yaml is merged over DEFAULTS, then the whitelisted
GRAVITY_* env overrides are applied (config_env). Components read typed
settings through EngineSettings, or single values through get_param().
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from config_env import apply_env_overrides
from env_utils import GRAVITY_CONFIG_FILE, runtime_path
from retry import RetryPolicy
from venues import LAMPORTS_PER_SOL, VenueId, parse_enabled_venues


class ConfigError(ValueError):
    """Raised when configuration cannot be loaded or fails validation."""


MODE_SINGLE = "single"
MODE_MULTI = "multi"
VALID_MODES = (MODE_SINGLE, MODE_MULTI)

STRATEGY_EQUAL = "equal"
STRATEGY_YIELD_WEIGHTED = "yield-weighted"
STRATEGY_RISK_WEIGHTED = "risk-weighted"
VALID_STRATEGIES = (STRATEGY_EQUAL, STRATEGY_YIELD_WEIGHTED, STRATEGY_RISK_WEIGHTED)


DEFAULTS: Dict[str, Any] = {
    "mode": MODE_SINGLE,
    "dry_run": True,
    "venues": {
        "enabled": ["raydium_cpmm", "marinade", "jito"],
    },
    "cycle": {
        "interval_seconds": 300.0,
        "timeout_seconds": 120.0,
    },
    "history": {
        "retention_points": 288,
    },
    "trading": {
        "min_rebalance_improvement_bps": 100,
        "min_hold_seconds": 3600,
        "max_position_lamports": 1 * LAMPORTS_PER_SOL,
        "min_trade_lamports": LAMPORTS_PER_SOL // 10,
        "max_risk_score": 70,
        "fault_auto_retry": True,
        "trade_on_simulated": False,
    },
    "retry": {
        "max_attempts": 3,
        "delay_seconds": 5.0,
    },
    "multi_position": {
        "max_positions": 3,
        "min_position_lamports": LAMPORTS_PER_SOL // 10,
        "rebalance_threshold_pct": 10.0,
        "strategy": STRATEGY_YIELD_WEIGHTED,
        "capital_cap_lamports": 1 * LAMPORTS_PER_SOL,
        "fee_reserve_lamports": LAMPORTS_PER_SOL // 100,
    },
    "ledger": {
        "enabled": True,
        "backend": "file",
        "authority": "gravity-agent",
        "min_improvement_bps": 50,
        "stale_seconds": 3600,
    },
    "data_source": {
        "freshness_seconds": 900,
        "http_timeout_seconds": 10.0,
        "cache_ttl_seconds": 30.0,
        "simulate_when_unavailable": True,
        "seed": None,
    },
    "venue": {
        "backend": "paper",
        "wallet_backend": "",
        "slippage_bps": 50,
        "quote_url": "https://lite-api.jup.ag/swap/v1/quote",
        "swap_url": "https://lite-api.jup.ag/swap/v1/swap",
        "http_timeout_seconds": 15.0,
        "paper_balance_lamports": 2 * LAMPORTS_PER_SOL,
        "paper_rates": {
            "marinade": 0.92,
            "jito": 0.89,
        },
        "paper_fee_bps": 10,
    },
    "paths": {
        "history_file": "",
        "state_file": "",
        "db_path": "",
        "ledger_file": "",
        "log_file": "",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = deepcopy(value)
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load gravity.yaml (if present) merged over DEFAULTS plus env overrides."""
    cfg_path = Path(path or GRAVITY_CONFIG_FILE)
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            raw = yaml.safe_load(cfg_path.read_text()) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to read config {cfg_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Config {cfg_path} must be a mapping")
    return apply_env_overrides(_deep_merge(DEFAULTS, raw))


_CFG: Optional[Dict[str, Any]] = None


def _cached_cfg() -> Dict[str, Any]:
    global _CFG
    if _CFG is None:
        _CFG = load_config()
    return _CFG


def reset_config_cache() -> None:
    global _CFG
    _CFG = None


def get_param(section: str, key: str, cfg: Optional[Dict[str, Any]] = None) -> Any:
    """Get one config value; KeyError for names DEFAULTS does not know."""
    if section not in DEFAULTS or not isinstance(DEFAULTS[section], dict):
        raise KeyError(f"Unknown config section '{section}'")
    if key not in DEFAULTS[section]:
        raise KeyError(f"Unknown param '{section}.{key}'")
    source = cfg if cfg is not None else _cached_cfg()
    value = (source.get(section) or {}).get(key)
    return deepcopy(DEFAULTS[section][key]) if value is None else value


# ------------------------------
# Typed settings
# ------------------------------

def _int(section: Dict[str, Any], key: str, name: str) -> int:
    try:
        return int(section[key])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"{name}.{key} must be an integer") from exc


def _float(section: Dict[str, Any], key: str, name: str) -> float:
    try:
        return float(section[key])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"{name}.{key} must be a number") from exc


@dataclass
class TradingSettings:
    min_rebalance_improvement_bps: int = 100
    min_hold_seconds: int = 3600
    max_position_lamports: int = LAMPORTS_PER_SOL
    min_trade_lamports: int = LAMPORTS_PER_SOL // 10
    max_risk_score: int = 70
    fault_auto_retry: bool = True
    trade_on_simulated: bool = False


@dataclass
class MultiPositionSettings:
    max_positions: int = 3
    min_position_lamports: int = LAMPORTS_PER_SOL // 10
    rebalance_threshold_pct: float = 10.0
    strategy: str = STRATEGY_YIELD_WEIGHTED
    capital_cap_lamports: int = LAMPORTS_PER_SOL
    fee_reserve_lamports: int = LAMPORTS_PER_SOL // 100


@dataclass
class LedgerSettings:
    enabled: bool = True
    backend: str = "file"
    authority: str = "gravity-agent"
    min_improvement_bps: int = 50
    stale_seconds: int = 3600


@dataclass
class DataSourceSettings:
    freshness_seconds: float = 900.0
    http_timeout_seconds: float = 10.0
    cache_ttl_seconds: float = 30.0
    simulate_when_unavailable: bool = True
    seed: Optional[int] = None


@dataclass
class VenueSettings:
    backend: str = "paper"
    wallet_backend: str = ""
    slippage_bps: int = 50
    quote_url: str = "https://lite-api.jup.ag/swap/v1/quote"
    swap_url: str = "https://lite-api.jup.ag/swap/v1/swap"
    http_timeout_seconds: float = 15.0
    paper_balance_lamports: int = 2 * LAMPORTS_PER_SOL
    paper_rates: Dict[str, float] = field(default_factory=dict)
    paper_fee_bps: int = 10


@dataclass
class PathSettings:
    history_file: str = ""
    state_file: str = ""
    db_path: str = ""
    ledger_file: str = ""
    log_file: str = ""

    def resolved(self) -> "PathSettings":
        return PathSettings(
            history_file=self.history_file or runtime_path("yield_history.json"),
            state_file=self.state_file or runtime_path("engine_state.json"),
            db_path=self.db_path or runtime_path("decisions.db"),
            ledger_file=self.ledger_file or runtime_path("oracle.bin"),
            log_file=self.log_file,
        )


@dataclass
class EngineSettings:
    mode: str = MODE_SINGLE
    dry_run: bool = True
    enabled_venues: List[VenueId] = field(
        default_factory=lambda: [VenueId.RAYDIUM_CPMM, VenueId.MARINADE, VenueId.JITO]
    )
    interval_seconds: float = 300.0
    timeout_seconds: float = 120.0
    retention_points: int = 288
    trading: TradingSettings = field(default_factory=TradingSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    multi: MultiPositionSettings = field(default_factory=MultiPositionSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    data_source: DataSourceSettings = field(default_factory=DataSourceSettings)
    venue: VenueSettings = field(default_factory=VenueSettings)
    paths: PathSettings = field(default_factory=PathSettings)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "EngineSettings":
        """Build validated settings from a merged config dict."""
        merged = _deep_merge(DEFAULTS, cfg or {})

        mode = str(merged.get("mode") or MODE_SINGLE).strip().lower()
        if mode not in VALID_MODES:
            raise ConfigError(f"mode must be one of {VALID_MODES}, got {mode!r}")

        enabled = parse_enabled_venues((merged.get("venues") or {}).get("enabled") or [])
        if not enabled:
            raise ConfigError("venues.enabled must name at least one known venue")

        cycle = merged["cycle"]
        interval = _float(cycle, "interval_seconds", "cycle")
        timeout = _float(cycle, "timeout_seconds", "cycle")
        if interval <= 0 or timeout <= 0:
            raise ConfigError("cycle.interval_seconds and cycle.timeout_seconds must be > 0")

        retention = _int(merged["history"], "retention_points", "history")
        if retention < 1:
            raise ConfigError("history.retention_points must be >= 1")

        t = merged["trading"]
        trading = TradingSettings(
            min_rebalance_improvement_bps=_int(t, "min_rebalance_improvement_bps", "trading"),
            min_hold_seconds=_int(t, "min_hold_seconds", "trading"),
            max_position_lamports=_int(t, "max_position_lamports", "trading"),
            min_trade_lamports=_int(t, "min_trade_lamports", "trading"),
            max_risk_score=_int(t, "max_risk_score", "trading"),
            fault_auto_retry=bool(t.get("fault_auto_retry")),
            trade_on_simulated=bool(t.get("trade_on_simulated")),
        )
        if trading.min_trade_lamports < 0 or trading.max_position_lamports <= 0:
            raise ConfigError("trading position limits must be positive")

        r = merged["retry"]
        try:
            retry = RetryPolicy(
                max_attempts=_int(r, "max_attempts", "retry"),
                delay_seconds=_float(r, "delay_seconds", "retry"),
            )
        except ValueError as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(f"retry: {exc}") from exc

        m = merged["multi_position"]
        strategy = str(m.get("strategy") or STRATEGY_YIELD_WEIGHTED).strip().lower()
        if strategy not in VALID_STRATEGIES:
            raise ConfigError(f"multi_position.strategy must be one of {VALID_STRATEGIES}")
        multi = MultiPositionSettings(
            max_positions=_int(m, "max_positions", "multi_position"),
            min_position_lamports=_int(m, "min_position_lamports", "multi_position"),
            rebalance_threshold_pct=_float(m, "rebalance_threshold_pct", "multi_position"),
            strategy=strategy,
            capital_cap_lamports=_int(m, "capital_cap_lamports", "multi_position"),
            fee_reserve_lamports=_int(m, "fee_reserve_lamports", "multi_position"),
        )
        if multi.max_positions < 1:
            raise ConfigError("multi_position.max_positions must be >= 1")

        lg = merged["ledger"]
        ledger = LedgerSettings(
            enabled=bool(lg.get("enabled")),
            backend=str(lg.get("backend") or "file").strip().lower(),
            authority=str(lg.get("authority") or ""),
            min_improvement_bps=_int(lg, "min_improvement_bps", "ledger"),
            stale_seconds=_int(lg, "stale_seconds", "ledger"),
        )

        ds = merged["data_source"]
        seed = ds.get("seed")
        data_source = DataSourceSettings(
            freshness_seconds=_float(ds, "freshness_seconds", "data_source"),
            http_timeout_seconds=_float(ds, "http_timeout_seconds", "data_source"),
            cache_ttl_seconds=_float(ds, "cache_ttl_seconds", "data_source"),
            simulate_when_unavailable=bool(ds.get("simulate_when_unavailable")),
            seed=int(seed) if seed is not None else None,
        )

        v = merged["venue"]
        venue = VenueSettings(
            backend=str(v.get("backend") or "paper").strip().lower(),
            wallet_backend=str(v.get("wallet_backend") or ""),
            slippage_bps=_int(v, "slippage_bps", "venue"),
            quote_url=str(v.get("quote_url") or ""),
            swap_url=str(v.get("swap_url") or ""),
            http_timeout_seconds=_float(v, "http_timeout_seconds", "venue"),
            paper_balance_lamports=_int(v, "paper_balance_lamports", "venue"),
            paper_rates={str(k): float(x) for k, x in (v.get("paper_rates") or {}).items()},
            paper_fee_bps=_int(v, "paper_fee_bps", "venue"),
        )
        if venue.backend not in ("paper", "jupiter"):
            raise ConfigError(f"venue.backend must be 'paper' or 'jupiter', got {venue.backend!r}")

        p = merged["paths"]
        paths = PathSettings(
            history_file=str(p.get("history_file") or ""),
            state_file=str(p.get("state_file") or ""),
            db_path=str(p.get("db_path") or ""),
            ledger_file=str(p.get("ledger_file") or ""),
            log_file=str(p.get("log_file") or ""),
        ).resolved()

        return cls(
            mode=mode,
            dry_run=bool(merged.get("dry_run")),
            enabled_venues=enabled,
            interval_seconds=interval,
            timeout_seconds=timeout,
            retention_points=retention,
            trading=trading,
            retry=retry,
            multi=multi,
            ledger=ledger,
            data_source=data_source,
            venue=venue,
            paths=paths,
        )


def load_settings(path: Optional[str] = None) -> EngineSettings:
    return EngineSettings.from_config(load_config(path))
