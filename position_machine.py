#!/usr/bin/env python3
"""
Position decision state machine.

Single-position mode has two states, Empty and Holding(Position), plus the
Stranded fault (an exit settled but the follow-up entry failed, so proceeds
sit unallocated). evaluate() is pure: it reads the engine state and this
cycle's analyses and returns one Decision. The open/close/strand helpers are
the only code that mutates positions, and they refuse transitions that would
break the one-position-per-venue rule.

Multi-position mode (portfolio_decisions) turns an AllocationPlanner target
into an ordered list of exits, trims and entries.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from allocation_planner import AllocationPlanner
from engine_config import TradingSettings
from engine_state import EngineState, Position, StrandedFunds
from gravity import GravityAnalysis, GravityAnalyzer
from logging_utils import get_logger
from signal_history import SignalHistory
from venues import (
    VenueId,
    adjusted_apy_bps,
    format_bps,
    format_lamports,
    has_execution_path,
    risk_score,
    venue_name,
)


class Action(str, Enum):
    NOOP = "noop"
    ENTER = "enter"
    EXIT = "exit"
    REBALANCE = "rebalance"


class StateTransitionError(RuntimeError):
    """Raised when a transition would violate the position invariants."""


@dataclass
class Decision:
    """One action for the executor.

    amount is settlement units for ENTER and token units for EXIT/REBALANCE.
    """
    action: Action
    reason: str
    target_venue: Optional[VenueId] = None
    source_venue: Optional[VenueId] = None
    amount: int = 0
    improvement_bps: int = 0
    target_apy_bps: int = 0
    from_stranded: bool = False
    top_up: bool = False

    @property
    def is_noop(self) -> bool:
        return self.action == Action.NOOP


def _noop(reason: str) -> Decision:
    return Decision(Action.NOOP, reason)


class PositionStateMachine:
    def __init__(self, settings: Optional[TradingSettings] = None):
        self.settings = settings or TradingSettings()
        self.log = get_logger("position_machine")

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def candidates(self, analyses: Sequence[GravityAnalysis]) -> List[GravityAnalysis]:
        """Executable venues within the risk cap, in rank order."""
        return [
            a for a in analyses
            if has_execution_path(a.venue) and a.risk_score <= self.settings.max_risk_score
        ]

    def best_venue(self, analyses: Sequence[GravityAnalysis]) -> Optional[GravityAnalysis]:
        return GravityAnalyzer.best_by_gravity(GravityAnalyzer.rank(self.candidates(analyses)))

    @staticmethod
    def held_adjusted_apy(
        venue: VenueId,
        analyses: Sequence[GravityAnalysis],
        history: Optional[SignalHistory] = None,
    ) -> Optional[int]:
        """Adjusted APY of the held venue this cycle, else its last recorded sample."""
        for analysis in analyses:
            if analysis.venue == venue:
                return analysis.adjusted_apy_bps
        if history is not None:
            last = history.last(venue)
            if last is not None:
                return adjusted_apy_bps(last.apy_bps, risk_score(venue))
        return None

    # ------------------------------------------------------------------
    # Single-position evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        state: EngineState,
        analyses: Sequence[GravityAnalysis],
        balance: int,
        now: int,
        history: Optional[SignalHistory] = None,
    ) -> Decision:
        if state.stranded is not None:
            return self._evaluate_stranded(state.stranded, analyses)

        best = self.best_venue(analyses)
        position = state.single_position()
        if position is None:
            return self._evaluate_entry(best, int(balance))
        return self._evaluate_rebalance(position, best, analyses, now, history)

    def _evaluate_stranded(
        self,
        stranded: StrandedFunds,
        analyses: Sequence[GravityAnalysis],
    ) -> Decision:
        if not self.settings.fault_auto_retry:
            return _noop(
                f"Stranded {format_lamports(stranded.amount)} since {stranded.since}; "
                "waiting for operator (clear-fault)"
            )
        best = self.best_venue(analyses)
        target = best.venue if best is not None else stranded.target_venue
        apy = best.current_apy_bps if best is not None else 0
        return Decision(
            Action.ENTER,
            f"Retry entry with stranded proceeds into {venue_name(target)}",
            target_venue=target,
            source_venue=stranded.from_venue,
            amount=stranded.amount,
            target_apy_bps=apy,
            from_stranded=True,
        )

    def _evaluate_entry(self, best: Optional[GravityAnalysis], balance: int) -> Decision:
        if best is None:
            return _noop("No executable venue available")
        size = min(self.settings.max_position_lamports, balance // 2)
        if size < self.settings.min_trade_lamports:
            return _noop(
                f"Insufficient balance for trade ({format_lamports(size)} < "
                f"{format_lamports(self.settings.min_trade_lamports)})"
            )
        return Decision(
            Action.ENTER,
            f"Best yield: {best.venue_name} @ {format_bps(best.current_apy_bps)}",
            target_venue=best.venue,
            amount=size,
            target_apy_bps=best.current_apy_bps,
        )

    def _evaluate_rebalance(
        self,
        position: Position,
        best: Optional[GravityAnalysis],
        analyses: Sequence[GravityAnalysis],
        now: int,
        history: Optional[SignalHistory],
    ) -> Decision:
        held_for = int(now) - position.entry_timestamp
        if held_for < self.settings.min_hold_seconds:
            remaining = (self.settings.min_hold_seconds - held_for) // 60
            return _noop(f"Cooling down: held {held_for // 60}m ({remaining}m remaining)")

        if best is None or best.venue == position.venue:
            return _noop("Already in best reachable venue")

        current = self.held_adjusted_apy(position.venue, analyses, history)
        if current is None:
            return _noop(f"No yield data for held venue {venue_name(position.venue)}")

        improvement = best.adjusted_apy_bps - current
        if improvement < self.settings.min_rebalance_improvement_bps:
            return _noop(
                f"Improvement {format_bps(improvement)} below "
                f"{format_bps(self.settings.min_rebalance_improvement_bps)}"
            )
        return Decision(
            Action.REBALANCE,
            f"Rebalance: +{format_bps(improvement)} improvement",
            target_venue=best.venue,
            source_venue=position.venue,
            amount=position.held_amount,
            improvement_bps=improvement,
            target_apy_bps=best.current_apy_bps,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def open_position(
        state: EngineState,
        venue: VenueId,
        cost_basis: int,
        held_amount: int,
        now: int,
        apy_bps: int = 0,
        top_up: bool = False,
    ) -> Position:
        """Create the position for venue, or add to it when top_up is set."""
        cost_basis = int(cost_basis)
        held_amount = int(held_amount)
        if held_amount <= 0 or cost_basis <= 0:
            raise StateTransitionError("Cannot open a position with a non-positive amount")
        existing = state.positions.get(venue)
        if existing is not None:
            if not top_up:
                raise StateTransitionError(f"Position already open for {venue_name(venue)}")
            existing.held_amount += held_amount
            existing.cost_basis += cost_basis
            existing.entry_price = existing.cost_basis / existing.held_amount
            return existing
        position = Position(
            venue=venue,
            held_amount=held_amount,
            entry_price=cost_basis / held_amount,
            cost_basis=cost_basis,
            entry_timestamp=int(now),
            entry_apy_bps=int(apy_bps),
        )
        state.positions[venue] = position
        return position

    @staticmethod
    def close_position(state: EngineState, venue: VenueId, sold_amount: int, proceeds: int) -> int:
        """Reduce or remove the position; returns realized P&L for the sold part."""
        position = state.positions.get(venue)
        if position is None:
            raise StateTransitionError(f"No open position for {venue_name(venue)}")
        sold_amount = int(sold_amount)
        if sold_amount <= 0 or sold_amount > position.held_amount:
            raise StateTransitionError(
                f"Invalid exit amount {sold_amount} for position of {position.held_amount}"
            )
        if sold_amount == position.held_amount:
            cost = position.cost_basis
            del state.positions[venue]
        else:
            cost = position.cost_basis * sold_amount // position.held_amount
            position.held_amount -= sold_amount
            position.cost_basis -= cost
        pnl = int(proceeds) - cost
        state.total_pnl += pnl
        return pnl

    @staticmethod
    def strand(
        state: EngineState,
        amount: int,
        from_venue: VenueId,
        target_venue: VenueId,
        now: int,
        cost_basis: int,
        reason: str,
    ) -> StrandedFunds:
        if state.stranded is not None:
            state.stranded.attempts += 1
            state.stranded.reason = reason
            return state.stranded
        state.stranded = StrandedFunds(
            amount=int(amount),
            from_venue=from_venue,
            target_venue=target_venue,
            since=int(now),
            cost_basis=int(cost_basis),
            reason=reason,
            attempts=1,
        )
        return state.stranded

    @staticmethod
    def clear_stranded(state: EngineState) -> Optional[StrandedFunds]:
        stranded, state.stranded = state.stranded, None
        return stranded


# ----------------------------------------------------------------------
# Multi-position mode
# ----------------------------------------------------------------------

def portfolio_capital(state: EngineState, balance: int, cap: int, fee_reserve: int) -> int:
    """Capital the planner may allocate: invested + free balance, capped."""
    return max(0, min(int(cap), state.invested() + int(balance) - int(fee_reserve)))


def portfolio_decisions(
    state: EngineState,
    analyses: Sequence[GravityAnalysis],
    planner: AllocationPlanner,
    balance: int,
    now: int,
    *,
    capital_cap: int,
    fee_reserve: int,
    min_hold_seconds: int,
    max_risk_score: int = 100,
) -> List[Decision]:
    """Exits first, then trims, then entries/top-ups in target order."""
    eligible = [a for a in analyses if a.risk_score <= max_risk_score]
    capital = portfolio_capital(state, balance, capital_cap, fee_reserve)
    target = planner.plan(eligible, capital)
    current: Dict[VenueId, int] = {v: p.cost_basis for v, p in state.positions.items()}
    if not planner.needs_rebalancing(current, target, state.invested() + max(0, int(balance))):
        return []

    apy_by_venue = {a.venue: a.current_apy_bps for a in eligible}
    decisions: List[Decision] = []
    freed = 0
    for venue, position in sorted(state.positions.items()):
        if int(now) - position.entry_timestamp < min_hold_seconds:
            continue
        goal = target.get(venue, 0)
        if goal <= 0:
            decisions.append(Decision(
                Action.EXIT,
                f"{venue_name(venue)} no longer in target allocation",
                source_venue=venue,
                amount=position.held_amount,
            ))
            freed += position.cost_basis
            continue
        excess = position.cost_basis - goal
        if excess >= planner.min_position:
            sell = position.held_amount * excess // position.cost_basis
            if sell > 0:
                decisions.append(Decision(
                    Action.EXIT,
                    f"Trim {venue_name(venue)} by {format_lamports(excess)} toward target",
                    source_venue=venue,
                    amount=sell,
                ))
                freed += excess

    available = max(0, int(balance) - int(fee_reserve)) + freed
    for venue, goal in target.items():
        held = current.get(venue, 0)
        need = goal - held
        if need < planner.min_position or need > available:
            continue
        decisions.append(Decision(
            Action.ENTER,
            f"Allocate {format_lamports(need)} to {venue_name(venue)} (target {format_lamports(goal)})",
            target_venue=venue,
            amount=need,
            target_apy_bps=apy_by_venue.get(venue, 0),
            top_up=held > 0,
        ))
        available -= need
    return decisions
