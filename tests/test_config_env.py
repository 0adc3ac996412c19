#!/usr/bin/env python3
"""config_env YAML-first guard regressions."""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import apply_env_overrides


def _set_env(updates: dict) -> dict:
    prev: dict = {}
    for key, value in updates.items():
        prev[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return prev


def _restore_env(prev: dict) -> None:
    for key, value in prev.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_dry_run_and_interval_overrides_are_typed() -> None:
    cfg = {"dry_run": True, "cycle": {"interval_seconds": 300.0}}
    prev = _set_env({"GRAVITY_DRY_RUN": "false", "GRAVITY_INTERVAL_SECONDS": "60"})
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["dry_run"] is False
    assert out["cycle"]["interval_seconds"] == 60.0
    assert cfg["dry_run"] is True


def test_enabled_venues_env_drops_unknown_names() -> None:
    cfg = {"venues": {"enabled": ["raydium_cpmm"]}}
    prev = _set_env({"GRAVITY_ENABLED_VENUES": "jito, bogus, msol, jito"})
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["venues"]["enabled"] == ["jito", "marinade"]


def test_enabled_venues_env_with_no_known_names_keeps_yaml() -> None:
    cfg = {"venues": {"enabled": ["raydium_cpmm"]}}
    prev = _set_env({"GRAVITY_ENABLED_VENUES": "bogus"})
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["venues"]["enabled"] == ["raydium_cpmm"]


def test_path_overrides_create_missing_sections() -> None:
    prev = _set_env({"GRAVITY_STATE_FILE": "/tmp/gravity_state.json", "GRAVITY_SIM_SEED": "7"})
    try:
        out = apply_env_overrides({})
    finally:
        _restore_env(prev)

    assert out["paths"]["state_file"] == "/tmp/gravity_state.json"
    assert out["data_source"]["seed"] == 7


def test_tuning_params_are_not_env_overridable() -> None:
    cfg = {"trading": {"min_rebalance_improvement_bps": 100}}
    prev = _set_env({"GRAVITY_MIN_REBALANCE_IMPROVEMENT_BPS": "1"})
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["trading"]["min_rebalance_improvement_bps"] == 100
