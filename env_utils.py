"""Environment helpers for the gravity allocator (loads .env + typed accessors)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Optional

from dotenv import load_dotenv


# Load .env early for any module importing env_utils; real env wins.
load_dotenv(Path(__file__).parent / ".env", override=False)


_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def env_present(name: str) -> bool:
    value = os.getenv(name)
    return value is not None and value.strip() != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return os.environ[name].strip()


def env_int(name: str, default: int) -> int:
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = env_str(name)
    if raw is None:
        return default
    value = raw.lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def env_list(name: str, default: Iterable[str] = ()) -> List[str]:
    """Comma-delimited list; blank items dropped."""
    raw = env_str(name)
    if raw is None:
        return list(default)
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts if parts else list(default)


# ------------------------------
# Runtime layout
# ------------------------------

_DEFAULT_ROOT = Path(__file__).resolve().parent
_ROOT_PATH = Path(env_str("GRAVITY_ROOT", str(_DEFAULT_ROOT)) or str(_DEFAULT_ROOT)).expanduser()
if not _ROOT_PATH.is_absolute():
    _ROOT_PATH = (_DEFAULT_ROOT / _ROOT_PATH).resolve()

GRAVITY_ROOT = str(_ROOT_PATH)
GRAVITY_RUNTIME_DIR = env_str("GRAVITY_RUNTIME_DIR", str(_ROOT_PATH / "state"))
GRAVITY_CONFIG_FILE = env_str("GRAVITY_CONFIG_FILE", str(_ROOT_PATH / "gravity.yaml"))


def runtime_path(filename: str) -> str:
    """Resolve a file inside the runtime directory (created on first write)."""
    return str(Path(GRAVITY_RUNTIME_DIR) / filename)
