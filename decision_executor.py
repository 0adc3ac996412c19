#!/usr/bin/env python3
"""
Decision executor.

Turns a Decision into quote/execute calls against the execution venue.
Every venue call goes through the RetryPolicy; a step that still fails is
reported, never retried further, and leaves the engine state as it was
before the step. State is persisted right after each successful step, and
every executed action is appended to the audit trail whatever its outcome.

A rebalance marks its exit proceeds stranded before the entry leg starts.
The mark is cleared once the entry settles. An entry that fails or is
cancelled leaves the engine in the persisted Stranded fault, written to the
audit trail as a "fault" record.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from audit_trail import AuditTrail, DecisionRecord
from engine_state import EngineState, StrandedFunds
from exchanges.base import ExecutionError, ExecutionResult, ExecutionVenue, Quote
from logging_utils import get_logger
from position_machine import Action, Decision, PositionStateMachine, StateTransitionError
from retry import RetryExhaustedError, RetryPolicy, with_retry
from venues import SETTLEMENT_ASSET, VenueId, format_lamports, venue_name, yield_asset

ACTION_FAULT = "fault"


@dataclass
class StepResult:
    success: bool
    in_amount: int = 0
    out_amount: int = 0
    settlement_ref: Optional[str] = None
    error: str = ""


@dataclass
class ExecutionOutcome:
    decision: Decision
    success: bool
    settlement_refs: List[str] = field(default_factory=list)
    pnl: int = 0
    stranded: bool = False
    error: str = ""


class DecisionExecutor:
    def __init__(
        self,
        venue: ExecutionVenue,
        audit: AuditTrail,
        retry_policy: RetryPolicy,
        persist: Callable[[], None],
        slippage_bps: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.venue = venue
        self.audit = audit
        self.retry_policy = retry_policy
        self.persist = persist
        self.slippage_bps = slippage_bps
        self.clock = clock
        self.log = get_logger("decision_executor")

    # ------------------------------------------------------------------
    # Venue calls
    # ------------------------------------------------------------------

    async def swap(self, from_asset: str, to_asset: str, amount: int, label: str) -> StepResult:
        """Quote then execute, each under the retry policy."""
        try:
            quote: Quote = await with_retry(
                lambda: self.venue.quote(from_asset, to_asset, amount, self.slippage_bps),
                self.retry_policy,
                label=f"{label} quote",
                log=self.log,
                retry_on=(ExecutionError, OSError),
            )
            result: ExecutionResult = await with_retry(
                lambda: self.venue.execute(quote),
                self.retry_policy,
                label=f"{label} execute",
                log=self.log,
                retry_on=(ExecutionError, OSError),
            )
        except RetryExhaustedError as exc:
            return StepResult(success=False, in_amount=int(amount), error=str(exc))
        if not result.success:
            return StepResult(success=False, in_amount=int(amount), error=result.error or "swap rejected")
        return StepResult(
            success=True,
            in_amount=int(result.in_amount or quote.in_amount),
            out_amount=int(result.out_amount),
            settlement_ref=result.settlement_ref,
        )

    async def enter(self, venue: VenueId, amount: int) -> StepResult:
        asset = yield_asset(venue)
        if asset is None:
            return StepResult(success=False, error=f"No execution path for {venue_name(venue)}")
        return await self.swap(SETTLEMENT_ASSET, asset, amount, f"enter {venue_name(venue)}")

    async def exit(self, venue: VenueId, amount: int) -> StepResult:
        asset = yield_asset(venue)
        if asset is None:
            return StepResult(success=False, error=f"No execution path for {venue_name(venue)}")
        return await self.swap(asset, SETTLEMENT_ASSET, amount, f"exit {venue_name(venue)}")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def execute(self, decision: Decision, state: EngineState, data_source: str = "live") -> ExecutionOutcome:
        if decision.action == Action.NOOP:
            return ExecutionOutcome(decision, success=True)
        if decision.action == Action.ENTER:
            return await self._execute_enter(decision, state, data_source)
        if decision.action == Action.EXIT:
            return await self._execute_exit(decision, state, data_source)
        if decision.action == Action.REBALANCE:
            return await self._execute_rebalance(decision, state, data_source)
        raise ValueError(f"Unknown action: {decision.action}")

    def _now(self) -> int:
        return int(self.clock())

    def _record(
        self,
        action: str,
        venues: List[Optional[VenueId]],
        amounts: dict,
        ref: Optional[str],
        reason: str,
        success: bool,
        data_source: str,
    ) -> None:
        self.audit.append(DecisionRecord(
            timestamp=self._now(),
            action=action,
            venues=[venue_name(v) for v in venues if v is not None],
            amounts=amounts,
            settlement_ref=ref,
            reason=reason,
            success=success,
            data_source=data_source,
        ))

    async def _execute_enter(self, decision: Decision, state: EngineState, data_source: str) -> ExecutionOutcome:
        target = decision.target_venue
        if target is None:
            raise StateTransitionError("Enter decision without a target venue")
        if target in state.positions and not decision.top_up:
            raise StateTransitionError(f"Position already open for {venue_name(target)}")

        self.log.info(f"ENTERING {venue_name(target)}: {format_lamports(decision.amount)} ({decision.reason})")
        step = await self.enter(target, decision.amount)
        if not step.success:
            reason = f"{decision.reason}; entry failed: {step.error}"
            if decision.from_stranded and state.stranded is not None:
                PositionStateMachine.strand(
                    state, state.stranded.amount, state.stranded.from_venue, target,
                    self._now(), state.stranded.cost_basis, step.error,
                )
                self.persist()
            self.log.error(f"Entry into {venue_name(target)} failed: {step.error}")
            self._record(Action.ENTER.value, [target], {"in": decision.amount}, None, reason, False, data_source)
            return ExecutionOutcome(decision, success=False, error=step.error)

        now = self._now()
        PositionStateMachine.open_position(
            state, target, step.in_amount, step.out_amount, now,
            apy_bps=decision.target_apy_bps, top_up=decision.top_up,
        )
        if decision.from_stranded:
            PositionStateMachine.clear_stranded(state)
        state.total_trades += 1
        state.last_trade = now
        self.persist()
        self.log.info(f"TRADE EXECUTED: {step.settlement_ref}")
        self._record(
            Action.ENTER.value, [target],
            {"in": step.in_amount, "out": step.out_amount},
            step.settlement_ref, decision.reason, True, data_source,
        )
        return ExecutionOutcome(decision, success=True, settlement_refs=[step.settlement_ref or ""])

    async def _execute_exit(self, decision: Decision, state: EngineState, data_source: str) -> ExecutionOutcome:
        source = decision.source_venue
        if source is None or source not in state.positions:
            raise StateTransitionError("Exit decision without an open position")

        self.log.info(f"EXITING {venue_name(source)}: {decision.amount} units ({decision.reason})")
        step = await self.exit(source, decision.amount)
        if not step.success:
            self.log.error(f"Exit from {venue_name(source)} failed: {step.error}")
            self._record(
                Action.EXIT.value, [source], {"in": decision.amount}, None,
                f"{decision.reason}; exit failed: {step.error}", False, data_source,
            )
            return ExecutionOutcome(decision, success=False, error=step.error)

        now = self._now()
        pnl = PositionStateMachine.close_position(state, source, step.in_amount, step.out_amount)
        state.total_trades += 1
        state.last_trade = now
        self.persist()
        self._record(
            Action.EXIT.value, [source],
            {"in": step.in_amount, "out": step.out_amount, "pnl": pnl},
            step.settlement_ref, decision.reason, True, data_source,
        )
        return ExecutionOutcome(decision, success=True, settlement_refs=[step.settlement_ref or ""], pnl=pnl)

    async def _execute_rebalance(self, decision: Decision, state: EngineState, data_source: str) -> ExecutionOutcome:
        source, target = decision.source_venue, decision.target_venue
        if source is None or target is None:
            raise StateTransitionError("Rebalance decision needs source and target venues")
        position = state.positions.get(source)
        if position is None:
            raise StateTransitionError(f"No open position for {venue_name(source)}")

        self.log.info(f"REBALANCING {venue_name(source)} -> {venue_name(target)} ({decision.reason})")
        exit_step = await self.exit(source, position.held_amount)
        if not exit_step.success:
            self.log.error(f"Exit failed: {exit_step.error}")
            self._record(
                Action.REBALANCE.value, [source, target], {"in": position.held_amount}, None,
                f"{decision.reason}; exit failed: {exit_step.error}", False, data_source,
            )
            return ExecutionOutcome(decision, success=False, error=exit_step.error)

        cost_basis = position.cost_basis
        now = self._now()
        pnl = PositionStateMachine.close_position(state, source, exit_step.in_amount, exit_step.out_amount)
        state.total_trades += 1
        state.last_trade = now
        # Proceeds stay marked stranded until the entry settles.
        stranded = PositionStateMachine.strand(
            state, exit_step.out_amount, source, target, now, cost_basis, "entry pending",
        )
        self.persist()
        self.log.info(f"Exited: {exit_step.settlement_ref} ({format_lamports(exit_step.out_amount)}, pnl {pnl})")

        try:
            entry_step = await self.enter(target, exit_step.out_amount)
        except asyncio.CancelledError:
            stranded.reason = "entry interrupted"
            self.persist()
            self.log.error(f"Entry interrupted after exit. STRANDED {format_lamports(stranded.amount)} unallocated")
            self._record_stranded(decision, exit_step, pnl, stranded, "entry interrupted", data_source)
            raise

        if not entry_step.success:
            stranded.reason = entry_step.error
            self.persist()
            self.log.error(
                f"Entry failed after exit: {entry_step.error}. "
                f"STRANDED {format_lamports(stranded.amount)} unallocated"
            )
            self._record_stranded(decision, exit_step, pnl, stranded, entry_step.error, data_source)
            return ExecutionOutcome(
                decision, success=False, settlement_refs=[exit_step.settlement_ref or ""],
                pnl=pnl, stranded=True, error=entry_step.error,
            )

        now = self._now()
        PositionStateMachine.clear_stranded(state)
        PositionStateMachine.open_position(
            state, target, entry_step.in_amount, entry_step.out_amount, now,
            apy_bps=decision.target_apy_bps,
        )
        state.total_trades += 1
        state.last_trade = now
        self.persist()
        self.log.info(f"REBALANCE COMPLETE: {entry_step.settlement_ref}")
        self._record(
            Action.REBALANCE.value, [source, target],
            {"in": exit_step.in_amount, "out": entry_step.out_amount, "pnl": pnl},
            entry_step.settlement_ref, decision.reason, True, data_source,
        )
        refs = [exit_step.settlement_ref or "", entry_step.settlement_ref or ""]
        return ExecutionOutcome(decision, success=True, settlement_refs=refs, pnl=pnl)

    def _record_stranded(
        self,
        decision: Decision,
        exit_step: StepResult,
        pnl: int,
        stranded: StrandedFunds,
        error: str,
        data_source: str,
    ) -> None:
        venues = [decision.source_venue, decision.target_venue]
        self._record(
            Action.REBALANCE.value, venues,
            {"in": exit_step.in_amount, "out": exit_step.out_amount, "pnl": pnl},
            exit_step.settlement_ref,
            f"{decision.reason}; exit ok, entry failed: {error}", False, data_source,
        )
        self._record(
            ACTION_FAULT, venues, {"stranded": stranded.amount},
            exit_step.settlement_ref, f"Stranded proceeds: {error}", False, data_source,
        )
