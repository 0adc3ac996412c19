#!/usr/bin/env python3
"""
Decision ledger: fixed-layout oracle account and the record-decision write.

Account layout (69 bytes, little endian):
    initialized u8 | authority [32] | best_venue u8 | current_apy_bps u16 |
    risk_score u8 | last_update i64 | total_value_managed u64 |
    decisions_count u64 | cumulative_pnl i64

Record-decision instruction (13 bytes):
    discriminator u8 (=1) | venue u8 | apy_bps u16 | risk_score u8 | timestamp i64

FileLedger keeps the account in a local file and applies instructions with
the same checks the settlement program enforces (initialized, authority,
risk <= 100). The engine pushes an update when the best venue improves on
the stored one by min_improvement_bps or the record is stale.
"""

from __future__ import annotations

import abc
import hashlib
import os
import struct
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from logging_utils import get_logger
from venues import VenueId, adjusted_apy_bps, venue_name

ACCOUNT_FORMAT = "<B32sBHBqQQq"
ACCOUNT_LEN = struct.calcsize(ACCOUNT_FORMAT)  # 69
INSTRUCTION_FORMAT = "<BBHBq"
INSTRUCTION_LEN = struct.calcsize(INSTRUCTION_FORMAT)  # 13

DISCRIMINATOR_INITIALIZE = 0
DISCRIMINATOR_MONITOR_YIELDS = 1

U16_MAX = 0xFFFF
U64_MAX = 0xFFFF_FFFF_FFFF_FFFF
I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1

DEFAULT_MIN_IMPROVEMENT_BPS = 50
DEFAULT_STALE_SECONDS = 3600


class LedgerError(Exception):
    """Raised when the ledger cannot be read or rejects a write."""


def authority_key(name: str) -> bytes:
    """32-byte authority derived from a configured identity string."""
    return hashlib.sha256(str(name).encode("utf-8")).digest()


@dataclass(frozen=True)
class OracleState:
    initialized: bool = False
    authority: bytes = b"\x00" * 32
    best_venue: int = 0
    current_apy_bps: int = 0
    risk_score: int = 0
    last_update: int = 0
    total_value_managed: int = 0
    decisions_count: int = 0
    cumulative_pnl: int = 0

    def encode(self) -> bytes:
        if len(self.authority) != 32:
            raise LedgerError("authority must be 32 bytes")
        return struct.pack(
            ACCOUNT_FORMAT,
            1 if self.initialized else 0,
            self.authority,
            int(self.best_venue),
            int(self.current_apy_bps),
            int(self.risk_score),
            int(self.last_update),
            int(self.total_value_managed),
            int(self.decisions_count),
            int(self.cumulative_pnl),
        )

    @classmethod
    def decode(cls, data: bytes) -> "OracleState":
        if len(data) < ACCOUNT_LEN:
            raise LedgerError(f"Oracle account too short: {len(data)} < {ACCOUNT_LEN} bytes")
        fields = struct.unpack_from(ACCOUNT_FORMAT, data)
        return cls(
            initialized=fields[0] != 0,
            authority=fields[1],
            best_venue=fields[2],
            current_apy_bps=fields[3],
            risk_score=fields[4],
            last_update=fields[5],
            total_value_managed=fields[6],
            decisions_count=fields[7],
            cumulative_pnl=fields[8],
        )

    @property
    def adjusted_apy_bps(self) -> int:
        return adjusted_apy_bps(self.current_apy_bps, self.risk_score)


@dataclass(frozen=True)
class RecordDecision:
    venue: int
    apy_bps: int
    risk_score: int
    timestamp: int

    def encode(self) -> bytes:
        if not 0 <= int(self.risk_score) <= 100:
            raise LedgerError(f"Invalid risk score {self.risk_score}")
        apy = max(0, min(U16_MAX, int(self.apy_bps)))
        return struct.pack(
            INSTRUCTION_FORMAT,
            DISCRIMINATOR_MONITOR_YIELDS,
            int(self.venue),
            apy,
            int(self.risk_score),
            int(self.timestamp),
        )

    @classmethod
    def decode(cls, data: bytes) -> "RecordDecision":
        if len(data) < INSTRUCTION_LEN:
            raise LedgerError("Record-decision instruction too short")
        disc, venue, apy, risk, ts = struct.unpack_from(INSTRUCTION_FORMAT, data)
        if disc != DISCRIMINATOR_MONITOR_YIELDS:
            raise LedgerError(f"Unexpected discriminator {disc}")
        if risk > 100:
            raise LedgerError(f"Invalid risk score {risk}")
        return cls(venue=venue, apy_bps=apy, risk_score=risk, timestamp=ts)


def should_update(
    state: OracleState,
    best_adjusted_apy_bps: int,
    now: int,
    min_improvement_bps: int = DEFAULT_MIN_IMPROVEMENT_BPS,
    stale_seconds: int = DEFAULT_STALE_SECONDS,
) -> bool:
    """Push when the best venue beats the stored one or the record is stale."""
    improvement = int(best_adjusted_apy_bps) - state.adjusted_apy_bps
    is_stale = int(now) - state.last_update > stale_seconds
    return improvement >= min_improvement_bps or is_stale


class LedgerClient(abc.ABC):
    """Write side of the settlement layer used by the engine."""

    @abc.abstractmethod
    async def read(self) -> OracleState:
        raise NotImplementedError

    @abc.abstractmethod
    async def record_decision(self, venue: VenueId, apy_bps: int, risk: int, timestamp: int) -> str:
        """Record a best-venue decision; returns a settlement reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def record_portfolio(self, total_value_managed: int, pnl_delta: int) -> None:
        raise NotImplementedError


class FileLedger(LedgerClient):
    """Oracle account stored as a 69-byte file."""

    def __init__(self, path: str, authority: str):
        self.path = Path(path)
        self.authority = authority_key(authority)
        self.log = get_logger("ledger")

    def _load(self) -> Optional[OracleState]:
        if not self.path.exists():
            return None
        try:
            data = self.path.read_bytes()
        except OSError as exc:
            raise LedgerError(f"Cannot read oracle account {self.path}: {exc}") from exc
        return OracleState.decode(data)

    def _store(self, state: OracleState) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(state.encode())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            raise LedgerError(f"Cannot write oracle account {self.path}: {exc}") from exc

    def _checked(self) -> OracleState:
        state = self._load()
        if state is None or not state.initialized:
            raise LedgerError("Oracle not initialized")
        if state.authority != self.authority:
            raise LedgerError("Invalid authority for oracle account")
        return state

    def initialize(self) -> OracleState:
        """Create the account if missing; refuses to take over another authority."""
        state = self._load()
        if state is not None and state.initialized:
            if state.authority != self.authority:
                raise LedgerError("Oracle already initialized by a different authority")
            return state
        state = OracleState(initialized=True, authority=self.authority)
        self._store(state)
        self.log.info(f"Initialized oracle account at {self.path}")
        return state

    async def read(self) -> OracleState:
        state = self._load()
        return state if state is not None else OracleState()

    async def record_decision(self, venue: VenueId, apy_bps: int, risk: int, timestamp: int) -> str:
        instruction = RecordDecision(int(venue), int(apy_bps), int(risk), int(timestamp))
        payload = instruction.encode()
        decoded = RecordDecision.decode(payload)
        state = self._checked()
        updated = replace(
            state,
            best_venue=decoded.venue,
            current_apy_bps=decoded.apy_bps,
            risk_score=decoded.risk_score,
            last_update=decoded.timestamp,
            decisions_count=min(U64_MAX, state.decisions_count + 1),
        )
        self._store(updated)
        ref = f"ledger_{updated.decisions_count}_{hashlib.sha256(payload).hexdigest()[:12]}"
        self.log.info(
            f"Recorded decision: {venue_name(VenueId(venue))} @ {decoded.apy_bps}bps "
            f"risk={decoded.risk_score} ({ref})"
        )
        return ref

    async def record_portfolio(self, total_value_managed: int, pnl_delta: int) -> None:
        state = self._checked()
        pnl = max(I64_MIN, min(I64_MAX, state.cumulative_pnl + int(pnl_delta)))
        self._store(replace(
            state,
            total_value_managed=max(0, min(U64_MAX, int(total_value_managed))),
            cumulative_pnl=pnl,
        ))


def build_ledger(backend: str, path: str, authority: str) -> Optional[LedgerClient]:
    """Ledger for the configured backend; None disables ledger writes."""
    backend = str(backend or "").strip().lower()
    if backend in ("", "none", "disabled"):
        return None
    if backend == "file":
        ledger = FileLedger(path, authority)
        ledger.initialize()
        return ledger
    raise LedgerError(f"Unknown ledger backend: {backend}")


def format_oracle(state: OracleState, now: Optional[int] = None) -> str:
    now = int(time.time()) if now is None else int(now)
    if not state.initialized:
        return "Oracle: not initialized"
    try:
        name = venue_name(VenueId(state.best_venue))
    except ValueError:
        name = f"Venue {state.best_venue}"
    age = now - state.last_update if state.last_update else None
    age_str = f"{age // 60}m ago" if age is not None else "never"
    return (
        f"Oracle: {name} @ {state.current_apy_bps / 100:.2f}% (risk {state.risk_score}) | "
        f"decisions={state.decisions_count} | updated {age_str} | "
        f"value={state.total_value_managed} pnl={state.cumulative_pnl}"
    )
