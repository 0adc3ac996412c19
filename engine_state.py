#!/usr/bin/env python3
"""
Persisted engine state: open positions, stranded proceeds, P&L and counters.

Written atomically after every successful execution step and at the end of
every cycle. A file lock serializes writers (the running loop and one-shot
CLI commands such as clear-fault). A state file that exists but cannot be
parsed is fatal: the engine must not trade against state it cannot read.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import fcntl

from logging_utils import get_logger
from state_io import CorruptStateError, PersistenceError, load_json_file, write_json_atomic
from venues import VenueId, normalize_venue

STATE_VERSION = 1


@dataclass
class Position:
    """An open yield position. Amounts are integer base units."""
    venue: VenueId
    held_amount: int
    entry_price: float  # settlement per token, informational
    cost_basis: int
    entry_timestamp: int
    entry_apy_bps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": int(self.venue),
            "held_amount": str(int(self.held_amount)),
            "entry_price": float(self.entry_price),
            "cost_basis": str(int(self.cost_basis)),
            "entry_timestamp": int(self.entry_timestamp),
            "entry_apy_bps": int(self.entry_apy_bps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        venue = normalize_venue(data.get("venue"))
        if venue is None:
            raise CorruptStateError(f"Position has unknown venue: {data.get('venue')!r}")
        try:
            return cls(
                venue=venue,
                held_amount=int(data["held_amount"]),
                entry_price=float(data.get("entry_price") or 0.0),
                cost_basis=int(data["cost_basis"]),
                entry_timestamp=int(data["entry_timestamp"]),
                entry_apy_bps=int(data.get("entry_apy_bps") or 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptStateError(f"Malformed position record: {exc}") from exc


@dataclass
class StrandedFunds:
    """Exit succeeded but the follow-up entry failed; proceeds are unallocated."""
    amount: int
    from_venue: VenueId
    target_venue: VenueId
    since: int
    cost_basis: int
    reason: str = ""
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(int(self.amount)),
            "from_venue": int(self.from_venue),
            "target_venue": int(self.target_venue),
            "since": int(self.since),
            "cost_basis": str(int(self.cost_basis)),
            "reason": self.reason,
            "attempts": int(self.attempts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrandedFunds":
        from_venue = normalize_venue(data.get("from_venue"))
        target_venue = normalize_venue(data.get("target_venue"))
        if from_venue is None or target_venue is None:
            raise CorruptStateError("Stranded record has unknown venue")
        try:
            return cls(
                amount=int(data["amount"]),
                from_venue=from_venue,
                target_venue=target_venue,
                since=int(data["since"]),
                cost_basis=int(data.get("cost_basis") or 0),
                reason=str(data.get("reason") or ""),
                attempts=int(data.get("attempts") or 0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptStateError(f"Malformed stranded record: {exc}") from exc


@dataclass
class EngineState:
    positions: Dict[VenueId, Position] = field(default_factory=dict)
    stranded: Optional[StrandedFunds] = None
    total_pnl: int = 0
    total_trades: int = 0
    total_checks: int = 0
    errors: int = 0
    last_check: int = 0
    last_trade: int = 0
    started_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def is_stranded(self) -> bool:
        return self.stranded is not None

    def invested(self) -> int:
        return sum(p.cost_basis for p in self.positions.values())

    def single_position(self) -> Optional[Position]:
        if not self.positions:
            return None
        return next(iter(self.positions.values()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "positions": [p.to_dict() for p in sorted(self.positions.values(), key=lambda p: int(p.venue))],
            "stranded": self.stranded.to_dict() if self.stranded else None,
            "total_pnl": str(int(self.total_pnl)),
            "total_trades": int(self.total_trades),
            "total_checks": int(self.total_checks),
            "errors": int(self.errors),
            "last_check": int(self.last_check),
            "last_trade": int(self.last_trade),
            "started_at": int(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineState":
        positions: Dict[VenueId, Position] = {}
        for raw in data.get("positions") or []:
            if not isinstance(raw, dict):
                raise CorruptStateError("Position entry is not an object")
            position = Position.from_dict(raw)
            if position.venue in positions:
                raise CorruptStateError(f"Duplicate position for venue {position.venue.name}")
            positions[position.venue] = position
        stranded_raw = data.get("stranded")
        try:
            return cls(
                positions=positions,
                stranded=StrandedFunds.from_dict(stranded_raw) if isinstance(stranded_raw, dict) else None,
                total_pnl=int(data.get("total_pnl") or 0),
                total_trades=int(data.get("total_trades") or 0),
                total_checks=int(data.get("total_checks") or 0),
                errors=int(data.get("errors") or 0),
                last_check=int(data.get("last_check") or 0),
                last_trade=int(data.get("last_trade") or 0),
                started_at=int(data.get("started_at") or time.time()),
            )
        except (TypeError, ValueError) as exc:
            raise CorruptStateError(f"Malformed engine state: {exc}") from exc


class EngineStateStore:
    """Owns the engine state file and its lock."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self.log = get_logger("engine_state")

    @contextmanager
    def _state_lock(self):
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_fp = open(self.lock_path, "a+")
        except OSError as exc:
            raise PersistenceError(f"Cannot open state lock {self.lock_path}: {exc}") from exc
        with lock_fp:
            fcntl.flock(lock_fp, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_fp, fcntl.LOCK_UN)

    def load(self) -> EngineState:
        """Load state; fresh state when missing, CorruptStateError when unreadable."""
        with self._state_lock():
            payload = load_json_file(str(self.path))
        if payload is None:
            self.log.info(f"No engine state at {self.path}, starting fresh")
            return EngineState()
        state = EngineState.from_dict(payload)
        self.log.info(
            f"Loaded engine state: {len(state.positions)} positions, "
            f"stranded={'yes' if state.stranded else 'no'}, trades={state.total_trades}"
        )
        return state

    def save(self, state: EngineState) -> None:
        """Atomic write. Raises PersistenceError."""
        with self._state_lock():
            write_json_atomic(str(self.path), state.to_dict())
