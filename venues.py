#!/usr/bin/env python3
"""Yield venue registry, normalization and risk adjustment helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, List, Optional


class VenueId(IntEnum):
    """Yield venues. Values match the ledger's u8 protocol field."""
    RAYDIUM_CPMM = 0
    JUPITER_ROUTE = 1
    KAMINO = 2
    MARINADE = 3
    JITO = 4


# Settlement asset (wrapped SOL) and yield-bearing token mints.
SETTLEMENT_ASSET = "So11111111111111111111111111111111111111112"
SETTLEMENT_SYMBOL = "SOL"
MSOL_MINT = "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So"
JITOSOL_MINT = "J1toso1uCk3RLmjorhTtrVwY9HJ7X8V9yYac6Y7kGCPn"

LAMPORTS_PER_SOL = 1_000_000_000


@dataclass(frozen=True)
class VenueInfo:
    venue: VenueId
    name: str
    risk_score: int  # 0-100, lower is safer
    yield_asset: Optional[str] = None  # mint; None = no execution path
    symbol: str = ""
    base_apy_bps: int = 0  # simulated fallback centre


VENUES: Dict[VenueId, VenueInfo] = {
    VenueId.RAYDIUM_CPMM: VenueInfo(VenueId.RAYDIUM_CPMM, "Raydium CPMM", 35, None, "SOL-USDC", 1200),
    VenueId.JUPITER_ROUTE: VenueInfo(VenueId.JUPITER_ROUTE, "Jupiter Route", 30, None, "", 0),
    VenueId.KAMINO: VenueInfo(VenueId.KAMINO, "Kamino", 25, None, "", 0),
    VenueId.MARINADE: VenueInfo(VenueId.MARINADE, "Marinade", 15, MSOL_MINT, "mSOL", 650),
    VenueId.JITO: VenueInfo(VenueId.JITO, "Jito", 18, JITOSOL_MINT, "jitoSOL", 780),
}

_ALIASES = {
    "raydium": VenueId.RAYDIUM_CPMM,
    "raydium_cpmm": VenueId.RAYDIUM_CPMM,
    "jupiter": VenueId.JUPITER_ROUTE,
    "jupiter_route": VenueId.JUPITER_ROUTE,
    "kamino": VenueId.KAMINO,
    "marinade": VenueId.MARINADE,
    "msol": VenueId.MARINADE,
    "jito": VenueId.JITO,
    "jitosol": VenueId.JITO,
}


def normalize_venue(value) -> Optional[VenueId]:
    """Normalize names, aliases and integer ids to a VenueId."""
    if isinstance(value, VenueId):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return VenueId(value)
        except ValueError:
            return None
    raw = str(value or "").strip().lower()
    if not raw:
        return None
    if raw.isdigit():
        return normalize_venue(int(raw))
    if raw in _ALIASES:
        return _ALIASES[raw]
    try:
        return VenueId[raw.upper()]
    except KeyError:
        return None


def parse_enabled_venues(values: Iterable) -> List[VenueId]:
    """Parse a list (or comma-delimited string) of venues, dropping unknowns."""
    if isinstance(values, str):
        values = [p.strip() for p in values.split(",") if p.strip()]
    out: List[VenueId] = []
    seen = set()
    for part in values or []:
        venue = normalize_venue(part)
        if venue is None or venue in seen:
            continue
        seen.add(venue)
        out.append(venue)
    return out


def venue_info(venue: VenueId) -> VenueInfo:
    return VENUES[VenueId(venue)]


def venue_name(venue: VenueId) -> str:
    info = VENUES.get(venue)
    return info.name if info else f"Venue {int(venue)}"


def risk_score(venue: VenueId) -> int:
    return venue_info(venue).risk_score


def yield_asset(venue: VenueId) -> Optional[str]:
    return venue_info(venue).yield_asset


def has_execution_path(venue: VenueId) -> bool:
    return yield_asset(venue) is not None


def adjusted_apy_bps(apy_bps: int, risk: int) -> int:
    """Risk-adjusted APY: apy * (100 - risk) / 100, rounded half up.

    Integer-only so the same inputs always produce the same bps.
    """
    numerator = int(apy_bps) * (100 - int(risk))
    if numerator >= 0:
        return (numerator + 50) // 100
    return -((-numerator + 49) // 100)


def format_bps(bps: float) -> str:
    return f"{bps / 100:.2f}%"


def format_lamports(amount: int) -> str:
    return f"{amount / LAMPORTS_PER_SOL:.4f} {SETTLEMENT_SYMBOL}"
