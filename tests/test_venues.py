#!/usr/bin/env python3
"""Venue registry and risk adjustment."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from venues import (
    MSOL_MINT,
    VenueId,
    adjusted_apy_bps,
    format_bps,
    format_lamports,
    has_execution_path,
    normalize_venue,
    parse_enabled_venues,
    risk_score,
    yield_asset,
)


def test_venue_ids_match_ledger_protocol_values() -> None:
    assert int(VenueId.RAYDIUM_CPMM) == 0
    assert int(VenueId.JUPITER_ROUTE) == 1
    assert int(VenueId.KAMINO) == 2
    assert int(VenueId.MARINADE) == 3
    assert int(VenueId.JITO) == 4


def test_adjusted_apy_scenario_1500_at_risk_35() -> None:
    assert adjusted_apy_bps(1500, 35) == 975


def test_adjusted_apy_rounds_half_up() -> None:
    # 701 * 85 / 100 = 595.85
    assert adjusted_apy_bps(701, 85) == 596
    # 10 * 95 / 100 = 9.5
    assert adjusted_apy_bps(10, 95) == 10
    assert adjusted_apy_bps(0, 15) == 0


def test_normalize_venue_accepts_names_aliases_and_ids() -> None:
    assert normalize_venue("marinade") == VenueId.MARINADE
    assert normalize_venue("mSOL") == VenueId.MARINADE
    assert normalize_venue("RAYDIUM") == VenueId.RAYDIUM_CPMM
    assert normalize_venue(4) == VenueId.JITO
    assert normalize_venue("4") == VenueId.JITO
    assert normalize_venue(99) is None
    assert normalize_venue("orca") is None
    assert normalize_venue(True) is None


def test_parse_enabled_venues_dedups_and_drops_unknown() -> None:
    assert parse_enabled_venues("jito, marinade,jito,orca") == [VenueId.JITO, VenueId.MARINADE]
    assert parse_enabled_venues([]) == []


def test_execution_paths_only_for_staking_venues() -> None:
    assert yield_asset(VenueId.MARINADE) == MSOL_MINT
    assert has_execution_path(VenueId.JITO)
    assert not has_execution_path(VenueId.RAYDIUM_CPMM)
    assert risk_score(VenueId.RAYDIUM_CPMM) == 35


def test_formatting_helpers() -> None:
    assert format_bps(975) == "9.75%"
    assert format_lamports(1_500_000_000) == "1.5000 SOL"
