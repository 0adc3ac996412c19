"""Apply env overrides to gravity.yaml config."""

from __future__ import annotations

from copy import deepcopy
import os
from typing import Any, Dict, Tuple

from env_utils import (
    env_bool,
    env_float,
    env_int,
    env_list,
    env_present,
    env_str,
)
from venues import parse_enabled_venues


PathKey = Tuple[str, ...]

# Keep env overrides focused on runtime plumbing.
# Strategy/tuning params come from gravity.yaml.
_OVERRIDES: Tuple[Tuple[str, PathKey, str], ...] = (
    ("GRAVITY_MODE", ("mode",), "str"),
    ("GRAVITY_DRY_RUN", ("dry_run",), "bool"),
    ("GRAVITY_INTERVAL_SECONDS", ("cycle", "interval_seconds"), "float"),
    ("GRAVITY_VENUE_BACKEND", ("venue", "backend"), "str"),
    ("GRAVITY_WALLET_BACKEND", ("venue", "wallet_backend"), "str"),
    ("GRAVITY_LEDGER_BACKEND", ("ledger", "backend"), "str"),
    ("GRAVITY_LEDGER_AUTHORITY", ("ledger", "authority"), "str"),
    ("GRAVITY_HISTORY_FILE", ("paths", "history_file"), "str"),
    ("GRAVITY_STATE_FILE", ("paths", "state_file"), "str"),
    ("GRAVITY_DB_PATH", ("paths", "db_path"), "str"),
    ("GRAVITY_LEDGER_PATH", ("paths", "ledger_file"), "str"),
    ("GRAVITY_LOG_FILE", ("paths", "log_file"), "str"),
    ("GRAVITY_SIM_SEED", ("data_source", "seed"), "int"),
)

ALLOWED_ENV_OVERRIDES = {name for name, _, _ in _OVERRIDES} | {"GRAVITY_ENABLED_VENUES"}

# Names that look like overrides but are read elsewhere.
_NON_OVERRIDE_NAMES = {
    "GRAVITY_ROOT",
    "GRAVITY_RUNTIME_DIR",
    "GRAVITY_CONFIG_FILE",
    "GRAVITY_LOG_LEVEL",
}

_WARNED_IGNORED_ENV_OVERRIDES = False


def _warn_ignored_env_overrides_once(names: set) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    sorted_names = sorted(names)
    preview = ", ".join(sorted_names[:12])
    extra = len(sorted_names) - 12
    if extra > 0:
        preview = f"{preview}, +{extra} more"
    print(
        "Config warning: ignoring non-whitelisted GRAVITY env overrides "
        f"(tuning lives in gravity.yaml). Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def _typed(env_name: str, kind: str, default: Any) -> Any:
    if kind == "int":
        return env_int(env_name, default if isinstance(default, int) else 0)
    if kind == "float":
        return env_float(env_name, float(default) if default is not None else 0.0)
    if kind == "bool":
        return env_bool(env_name, bool(default) if default is not None else False)
    return env_str(env_name, default if default is not None else "")


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of config with whitelisted GRAVITY_* values applied."""
    cfg = deepcopy(config) if config else {}

    for env_name, path, kind in _OVERRIDES:
        if env_present(env_name):
            _set_path(cfg, path, _typed(env_name, kind, _get_path(cfg, path)))

    enabled = parse_enabled_venues(env_list("GRAVITY_ENABLED_VENUES"))
    if enabled:
        _set_path(cfg, ("venues", "enabled"), [v.name.lower() for v in enabled])

    ignored = {
        name for name in os.environ
        if name.startswith("GRAVITY_")
        and name not in ALLOWED_ENV_OVERRIDES
        and name not in _NON_OVERRIDE_NAMES
    }
    _warn_ignored_env_overrides_once(ignored)

    return cfg
