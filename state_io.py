#!/usr/bin/env python3
"""Atomic JSON state file helpers shared by the persisted stores."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional


class PersistenceError(RuntimeError):
    """Raised when durable state cannot be written or read back.

    Fatal for the cycle driver: the process must not continue with state it
    cannot later recover.
    """


class CorruptStateError(PersistenceError):
    """Raised when a state file exists but does not parse."""


def ensure_dir(path: str) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: str, data: Dict[str, Any]) -> None:
    """Write JSON via tmp file + replace so readers never see a partial file."""
    target = Path(path)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except (OSError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Failed to write {path}: {exc}") from exc


def load_json_file(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON object; None when the file does not exist."""
    target = Path(path)
    if not target.exists():
        return None
    try:
        payload = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CorruptStateError(f"Unreadable state file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise CorruptStateError(f"State file {path} does not contain a JSON object")
    return payload
