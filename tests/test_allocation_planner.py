#!/usr/bin/env python3
"""AllocationPlanner strategies and rebalance drift."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from allocation_planner import AllocationPlanner
from gravity import GravityAnalyzer
from signal_history import SignalHistory, YieldSample
from venues import LAMPORTS_PER_SOL, VenueId

SOL = LAMPORTS_PER_SOL


def _analysis(venue: VenueId, apy: int):
    return GravityAnalyzer(SignalHistory()).analyze_venue(YieldSample(venue, 1000, apy))


def _analyses(marinade: int = 700, jito: int = 780, raydium: int = 1500):
    return [
        _analysis(VenueId.RAYDIUM_CPMM, raydium),
        _analysis(VenueId.JITO, jito),
        _analysis(VenueId.MARINADE, marinade),
    ]


def test_yield_weighted_sums_within_capital() -> None:
    planner = AllocationPlanner(strategy="yield-weighted", min_position=SOL // 10)
    plan = planner.plan(_analyses(), SOL)
    # adjusted: jito 640, marinade 595
    assert plan == {
        VenueId.JITO: SOL * 640 // 1235,
        VenueId.MARINADE: SOL * 595 // 1235,
    }
    assert sum(plan.values()) <= SOL


def test_yield_weighted_drops_shares_below_minimum() -> None:
    planner = AllocationPlanner(strategy="yield-weighted", min_position=SOL // 2)
    plan = planner.plan(_analyses(), SOL)
    assert list(plan) == [VenueId.JITO]


def test_equal_split() -> None:
    planner = AllocationPlanner(strategy="equal", min_position=SOL // 10)
    assert planner.plan(_analyses(), SOL) == {VenueId.JITO: SOL // 2, VenueId.MARINADE: SOL // 2}


def test_equal_split_below_minimum_is_empty() -> None:
    planner = AllocationPlanner(strategy="equal", min_position=SOL)
    assert planner.plan(_analyses(), SOL) == {}


def test_risk_weighted_uses_inverse_risk() -> None:
    planner = AllocationPlanner(strategy="risk-weighted", min_position=SOL // 10)
    plan = planner.plan(_analyses(), SOL)
    # marinade risk 15 -> 85, jito risk 18 -> 82
    assert plan[VenueId.MARINADE] == SOL * 85 // 167
    assert plan[VenueId.JITO] == SOL * 82 // 167


def test_yield_weighted_falls_back_to_equal_when_weights_are_zero() -> None:
    planner = AllocationPlanner(strategy="yield-weighted", min_position=SOL // 10)
    plan = planner.plan(_analyses(marinade=0, jito=0), SOL)
    assert plan == {VenueId.JITO: SOL // 2, VenueId.MARINADE: SOL // 2}


def test_only_executable_venues_are_candidates() -> None:
    planner = AllocationPlanner()
    venues = [a.venue for a in planner.candidates(_analyses())]
    assert VenueId.RAYDIUM_CPMM not in venues


def test_max_positions_limits_to_top_adjusted() -> None:
    planner = AllocationPlanner(max_positions=1, min_position=SOL // 10)
    assert planner.plan(_analyses(), SOL) == {VenueId.JITO: SOL}


def test_no_capital_means_no_plan() -> None:
    assert AllocationPlanner().plan(_analyses(), 0) == {}


def test_unknown_strategy_rejected() -> None:
    with pytest.raises(ValueError):
        AllocationPlanner(strategy="momentum")


def test_needs_rebalancing_on_drift_and_removed_venues() -> None:
    planner = AllocationPlanner(rebalance_threshold_pct=10.0)
    target = {VenueId.JITO: 600, VenueId.MARINADE: 400}
    assert not planner.needs_rebalancing({VenueId.JITO: 550, VenueId.MARINADE: 450}, target, 1000)
    assert planner.needs_rebalancing({VenueId.JITO: 450, VenueId.MARINADE: 550}, target, 1000)
    assert planner.needs_rebalancing({VenueId.JITO: 1000}, {VenueId.JITO: 1000, VenueId.MARINADE: 0}, 1000) is False
    assert planner.needs_rebalancing({VenueId.KAMINO: 10}, {}, 1000)
    assert not planner.needs_rebalancing({VenueId.JITO: 5}, target, 0)
