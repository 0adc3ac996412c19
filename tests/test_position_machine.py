#!/usr/bin/env python3
"""Position state machine: entry sizing, hysteresis, stranded fault, portfolio mode."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from allocation_planner import AllocationPlanner
from engine_config import TradingSettings
from engine_state import EngineState, StrandedFunds
from gravity import GravityAnalyzer
from position_machine import (
    Action,
    PositionStateMachine,
    StateTransitionError,
    portfolio_capital,
    portfolio_decisions,
)
from signal_history import SignalHistory, YieldSample
from venues import LAMPORTS_PER_SOL, VenueId

SOL = LAMPORTS_PER_SOL
NOW = 2_000_000
HOUR = 3600


def _analyses(marinade: int = 700, jito: int = 780, raydium: int = 1500):
    history = SignalHistory()
    samples = []
    if raydium is not None:
        samples.append(YieldSample(VenueId.RAYDIUM_CPMM, NOW, raydium))
    if jito is not None:
        samples.append(YieldSample(VenueId.JITO, NOW, jito))
    if marinade is not None:
        samples.append(YieldSample(VenueId.MARINADE, NOW, marinade))
    return GravityAnalyzer(history).analyze_all(samples)


def _holding(venue: VenueId = VenueId.MARINADE, entered: int = NOW - 2 * HOUR) -> EngineState:
    state = EngineState()
    PositionStateMachine.open_position(state, venue, SOL, int(SOL / 0.92), entered, apy_bps=700)
    return state


def _machine(**overrides) -> PositionStateMachine:
    return PositionStateMachine(TradingSettings(**overrides))


# ------------------------------
# Empty -> Holding
# ------------------------------

def test_entry_sizes_at_half_balance_capped_by_max_position() -> None:
    decision = _machine().evaluate(EngineState(), _analyses(), 2 * SOL, NOW)
    assert decision.action == Action.ENTER
    assert decision.target_venue == VenueId.JITO
    assert decision.amount == SOL

    decision = _machine().evaluate(EngineState(), _analyses(), SOL, NOW)
    assert decision.amount == SOL // 2


def test_no_entry_below_min_trade_size() -> None:
    decision = _machine().evaluate(EngineState(), _analyses(), SOL // 5 - 2, NOW)
    assert decision.action == Action.NOOP
    assert "Insufficient balance" in decision.reason


def test_entry_at_exactly_min_trade_size() -> None:
    decision = _machine().evaluate(EngineState(), _analyses(), SOL // 5, NOW)
    assert decision.action == Action.ENTER
    assert decision.amount == SOL // 10


def test_no_entry_without_executable_venue() -> None:
    decision = _machine().evaluate(EngineState(), _analyses(marinade=None, jito=None), 2 * SOL, NOW)
    assert decision.action == Action.NOOP


def test_risk_cap_excludes_venues() -> None:
    decision = _machine(max_risk_score=16).evaluate(EngineState(), _analyses(), 2 * SOL, NOW)
    assert decision.target_venue == VenueId.MARINADE


# ------------------------------
# Holding
# ------------------------------

def test_no_rebalance_before_min_hold() -> None:
    state = _holding(entered=NOW - HOUR + 1)
    decision = _machine(min_rebalance_improvement_bps=1).evaluate(state, _analyses(), 0, NOW)
    assert decision.action == Action.NOOP
    assert decision.reason.startswith("Cooling down")


def test_rebalance_at_exactly_min_improvement() -> None:
    # jito adjusted 640 vs marinade adjusted 595 -> +45
    state = _holding()
    decision = _machine(min_rebalance_improvement_bps=45).evaluate(state, _analyses(), 0, NOW)
    assert decision.action == Action.REBALANCE
    assert decision.source_venue == VenueId.MARINADE
    assert decision.target_venue == VenueId.JITO
    assert decision.improvement_bps == 45
    assert decision.amount == state.positions[VenueId.MARINADE].held_amount


def test_no_rebalance_one_bps_below_threshold() -> None:
    decision = _machine(min_rebalance_improvement_bps=46).evaluate(_holding(), _analyses(), 0, NOW)
    assert decision.action == Action.NOOP
    assert "below" in decision.reason


def test_hold_when_already_in_best_venue() -> None:
    decision = _machine().evaluate(_holding(VenueId.JITO), _analyses(), 0, NOW)
    assert decision.action == Action.NOOP
    assert "best" in decision.reason


def test_held_venue_missing_falls_back_to_history() -> None:
    history = SignalHistory()
    history.record(YieldSample(VenueId.MARINADE, NOW - 600, 500))
    decision = _machine(min_rebalance_improvement_bps=100).evaluate(
        _holding(), _analyses(marinade=None), 0, NOW, history,
    )
    # jito 640 vs marinade 500 * 85 / 100 = 425
    assert decision.action == Action.REBALANCE
    assert decision.improvement_bps == 215


def test_held_venue_without_any_data_holds() -> None:
    decision = _machine().evaluate(_holding(), _analyses(marinade=None), 0, NOW, SignalHistory())
    assert decision.action == Action.NOOP
    assert "No yield data" in decision.reason


# ------------------------------
# Stranded
# ------------------------------

def _stranded_state() -> EngineState:
    state = EngineState()
    state.stranded = StrandedFunds(
        amount=SOL, from_venue=VenueId.MARINADE, target_venue=VenueId.JITO,
        since=NOW - 300, cost_basis=SOL, reason="boom", attempts=1,
    )
    return state


def test_stranded_retries_entry_with_proceeds() -> None:
    decision = _machine().evaluate(_stranded_state(), _analyses(), 5 * SOL, NOW)
    assert decision.action == Action.ENTER
    assert decision.from_stranded
    assert decision.amount == SOL
    assert decision.target_venue == VenueId.JITO


def test_stranded_waits_for_operator_without_auto_retry() -> None:
    decision = _machine(fault_auto_retry=False).evaluate(_stranded_state(), _analyses(), 5 * SOL, NOW)
    assert decision.action == Action.NOOP
    assert "clear-fault" in decision.reason


# ------------------------------
# Transitions
# ------------------------------

def test_open_position_twice_is_rejected() -> None:
    state = _holding()
    with pytest.raises(StateTransitionError):
        PositionStateMachine.open_position(state, VenueId.MARINADE, SOL, SOL, NOW)


def test_top_up_adds_to_position() -> None:
    state = EngineState()
    PositionStateMachine.open_position(state, VenueId.JITO, 100, 90, NOW)
    PositionStateMachine.open_position(state, VenueId.JITO, 100, 80, NOW, top_up=True)
    position = state.positions[VenueId.JITO]
    assert position.cost_basis == 200
    assert position.held_amount == 170


def test_close_position_realizes_pnl() -> None:
    state = EngineState()
    PositionStateMachine.open_position(state, VenueId.JITO, 1000, 900, NOW)
    pnl = PositionStateMachine.close_position(state, VenueId.JITO, 900, 1010)
    assert pnl == 10
    assert state.total_pnl == 10
    assert not state.positions


def test_partial_close_uses_proportional_cost() -> None:
    state = EngineState()
    PositionStateMachine.open_position(state, VenueId.JITO, 1000, 900, NOW)
    pnl = PositionStateMachine.close_position(state, VenueId.JITO, 300, 320)
    assert pnl == 320 - 333
    position = state.positions[VenueId.JITO]
    assert position.held_amount == 600
    assert position.cost_basis == 667


def test_close_rejects_missing_or_oversized_exit() -> None:
    state = EngineState()
    with pytest.raises(StateTransitionError):
        PositionStateMachine.close_position(state, VenueId.JITO, 1, 1)
    PositionStateMachine.open_position(state, VenueId.JITO, 1000, 900, NOW)
    with pytest.raises(StateTransitionError):
        PositionStateMachine.close_position(state, VenueId.JITO, 901, 1)


def test_strand_again_counts_attempts() -> None:
    state = EngineState()
    PositionStateMachine.strand(state, SOL, VenueId.MARINADE, VenueId.JITO, NOW, SOL, "first")
    stranded = PositionStateMachine.strand(state, SOL, VenueId.MARINADE, VenueId.JITO, NOW + 5, SOL, "second")
    assert stranded.attempts == 2
    assert stranded.since == NOW
    assert stranded.reason == "second"
    assert PositionStateMachine.clear_stranded(state) is stranded
    assert state.stranded is None


# ------------------------------
# Portfolio mode
# ------------------------------

def test_portfolio_capital_is_capped() -> None:
    state = _holding()
    assert portfolio_capital(state, SOL, 10 * SOL, SOL // 100) == 2 * SOL - SOL // 100
    assert portfolio_capital(state, SOL, SOL, 0) == SOL


def test_portfolio_enters_all_targets_from_empty() -> None:
    planner = AllocationPlanner(min_position=SOL // 10)
    decisions = portfolio_decisions(
        EngineState(), _analyses(), planner, 2 * SOL, NOW,
        capital_cap=SOL, fee_reserve=SOL // 100, min_hold_seconds=HOUR,
    )
    assert [d.action for d in decisions] == [Action.ENTER, Action.ENTER]
    assert {d.target_venue for d in decisions} == {VenueId.JITO, VenueId.MARINADE}
    assert sum(d.amount for d in decisions) <= SOL


def test_portfolio_exits_dropped_venue_before_entering() -> None:
    planner = AllocationPlanner(max_positions=1, min_position=SOL // 10)
    decisions = portfolio_decisions(
        _holding(VenueId.MARINADE), _analyses(), planner, 0, NOW,
        capital_cap=SOL, fee_reserve=0, min_hold_seconds=HOUR,
    )
    assert decisions[0].action == Action.EXIT
    assert decisions[0].source_venue == VenueId.MARINADE
    assert decisions[1].action == Action.ENTER
    assert decisions[1].target_venue == VenueId.JITO


def test_portfolio_respects_min_hold() -> None:
    planner = AllocationPlanner(max_positions=1, min_position=SOL // 10)
    decisions = portfolio_decisions(
        _holding(VenueId.MARINADE, entered=NOW - 60), _analyses(), planner, 0, NOW,
        capital_cap=SOL, fee_reserve=0, min_hold_seconds=HOUR,
    )
    assert all(d.action != Action.EXIT for d in decisions)


def test_portfolio_no_decisions_when_balanced() -> None:
    planner = AllocationPlanner(max_positions=1, min_position=SOL // 10)
    decisions = portfolio_decisions(
        _holding(VenueId.JITO), _analyses(), planner, 0, NOW,
        capital_cap=SOL, fee_reserve=0, min_hold_seconds=HOUR,
    )
    assert decisions == []
