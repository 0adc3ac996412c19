#!/usr/bin/env python3
"""
Cycle driver: fetch -> analyze -> decide -> execute -> persist, once per interval.

Single asyncio task, cycles never overlap. stop() wakes the inter-cycle sleep
and ends the loop after the in-flight cycle completes. PersistenceError is
fatal and propagates; every other cycle failure is logged and counted in
EngineState.errors.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from allocation_planner import AllocationPlanner
from audit_trail import AuditTrail
from decision_executor import DecisionExecutor, ExecutionOutcome
from engine_config import MODE_MULTI, ConfigError, EngineSettings
from engine_state import EngineState, EngineStateStore
from exchanges.base import ExecutionError, ExecutionVenue
from exchanges.jupiter_adapter import JupiterAdapter, load_wallet_backend
from exchanges.paper_adapter import PaperAdapter, default_rates
from gravity import GravityAnalysis, GravityAnalyzer, format_analysis
from ledger import LedgerClient, LedgerError, build_ledger, should_update
from logging_utils import get_logger
from position_machine import Decision, PositionStateMachine, portfolio_decisions
from retry import with_retry
from signal_history import SOURCE_CACHED, SOURCE_LIVE, SOURCE_SIMULATED, SignalHistory
from state_io import PersistenceError
from venues import SETTLEMENT_ASSET, format_lamports
from yield_source import YieldFetcher


@dataclass
class CycleReport:
    timestamp: int
    data_source: str = SOURCE_LIVE
    analyses: List[GravityAnalysis] = field(default_factory=list)
    decisions: List[Decision] = field(default_factory=list)
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    balance: int = 0
    ledger_ref: Optional[str] = None
    note: str = ""

    @property
    def trades(self) -> int:
        return sum(1 for o in self.outcomes if o.success and not o.decision.is_noop)


def summarize_source(analyses: List[GravityAnalysis]) -> str:
    """Worst source among the cycle's analyses (simulated > cached > live)."""
    sources = {a.source for a in analyses}
    if SOURCE_SIMULATED in sources:
        return SOURCE_SIMULATED
    if SOURCE_CACHED in sources:
        return SOURCE_CACHED
    return SOURCE_LIVE


# ------------------------------
# Builders
# ------------------------------

def build_venue(settings: EngineSettings) -> ExecutionVenue:
    log = get_logger("venue")
    vs = settings.venue
    if vs.backend == "paper" or settings.dry_run:
        if vs.backend != "paper":
            log.info(f"dry_run enabled: using paper venue instead of {vs.backend}")
        return PaperAdapter(
            log,
            balance=vs.paper_balance_lamports,
            rates=default_rates(vs.paper_rates),
            fee_bps=vs.paper_fee_bps,
        )
    if not vs.wallet_backend:
        raise ConfigError("venue.wallet_backend is required for the jupiter backend")
    wallet = load_wallet_backend(vs.wallet_backend)
    return JupiterAdapter(
        log,
        wallet,
        quote_url=vs.quote_url,
        swap_url=vs.swap_url,
        slippage_bps=vs.slippage_bps,
        timeout_seconds=vs.http_timeout_seconds,
    )


def build_fetcher(settings: EngineSettings, history: SignalHistory) -> YieldFetcher:
    ds = settings.data_source
    return YieldFetcher(
        settings.enabled_venues,
        timeout_seconds=ds.http_timeout_seconds,
        freshness_seconds=ds.freshness_seconds,
        cache_ttl_seconds=ds.cache_ttl_seconds,
        simulate_when_unavailable=ds.simulate_when_unavailable,
        seed=ds.seed,
        history=history,
    )


def build_ledger_client(settings: EngineSettings) -> Optional[LedgerClient]:
    if not settings.ledger.enabled:
        return None
    return build_ledger(settings.ledger.backend, settings.paths.ledger_file, settings.ledger.authority)


class CycleDriver:
    def __init__(
        self,
        settings: EngineSettings,
        *,
        fetcher: YieldFetcher,
        venue: ExecutionVenue,
        audit: AuditTrail,
        history: SignalHistory,
        state_store: EngineStateStore,
        ledger: Optional[LedgerClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.venue = venue
        self.audit = audit
        self.history = history
        self.state_store = state_store
        self.ledger = ledger
        self.clock = clock
        self.log = get_logger("cycle_driver")

        self.state: EngineState = state_store.load()
        self.analyzer = GravityAnalyzer(history, settings.retention_points)
        self.machine = PositionStateMachine(settings.trading)
        self.planner = AllocationPlanner(
            strategy=settings.multi.strategy,
            max_positions=settings.multi.max_positions,
            min_position=settings.multi.min_position_lamports,
            rebalance_threshold_pct=settings.multi.rebalance_threshold_pct,
        )
        self.executor = DecisionExecutor(
            venue,
            audit,
            settings.retry,
            self.save_state,
            slippage_bps=settings.venue.slippage_bps,
            clock=clock,
        )
        self._stop_event: Optional[asyncio.Event] = None
        self._stopping = False

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "CycleDriver":
        paths = settings.paths
        history = SignalHistory.load(paths.history_file, settings.retention_points)
        return cls(
            settings,
            fetcher=build_fetcher(settings, history),
            venue=build_venue(settings),
            audit=AuditTrail(paths.db_path),
            history=history,
            state_store=EngineStateStore(paths.state_file),
            ledger=build_ledger_client(settings),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        ok = await self.venue.initialize()
        if not ok:
            raise ExecutionError(f"Failed to initialize venue {self.venue.name}")
        mode = "DRY RUN" if self.venue.dry_run else "LIVE"
        self.log.info(
            f"Gravity allocator ready: mode={self.settings.mode} venue={self.venue.name} ({mode}) "
            f"history={self.history.total_points()} points"
        )

    async def close(self) -> None:
        await self.fetcher.close()
        await self.venue.close()

    def save_state(self) -> None:
        self.state_store.save(self.state)

    def stop(self) -> None:
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """One full cycle bounded by cycle.timeout_seconds."""
        return await asyncio.wait_for(self._cycle(), timeout=self.settings.timeout_seconds)

    async def _cycle(self) -> CycleReport:
        now = int(self.clock())
        report = CycleReport(timestamp=now)
        self._refresh_fault()
        self.state.total_checks += 1
        self.state.last_check = now

        samples = await self.fetcher.fetch_all()
        if not samples:
            report.note = "No yield data available"
            self.log.warning(report.note)
            self._persist()
            return report

        analyses = self.analyzer.analyze_all(samples)
        report.analyses = analyses
        report.data_source = summarize_source(analyses)
        for analysis in analyses:
            self.log.info(format_analysis(analysis))

        tradable = self._tradable(analyses)
        if len(tradable) < len(analyses):
            report.note = "Simulated samples excluded from trading"
            self.log.warning(f"{report.note} ({len(analyses) - len(tradable)} venues)")

        report.balance = await with_retry(
            lambda: self.venue.get_balance(SETTLEMENT_ASSET),
            self.settings.retry,
            label="balance",
            log=self.log,
            retry_on=(ExecutionError, OSError),
        )
        self.log.info(f"Balance: {format_lamports(report.balance)}")

        report.decisions = self._decide(tradable, report.balance, now)
        for decision in report.decisions:
            if decision.is_noop:
                self.log.info(f"Holding: {decision.reason}")
                continue
            outcome = await self.executor.execute(decision, self.state, report.data_source)
            report.outcomes.append(outcome)

        report.ledger_ref = await self._update_ledger(tradable, report, now)
        self._persist()
        return report

    def _refresh_fault(self) -> None:
        """Adopt the stored Stranded fault so an operator clear-fault sticks."""
        stored = self.state_store.load().stranded
        if self.state.stranded is not None and stored is None:
            self.log.warning("Stranded fault cleared by operator")
        self.state.stranded = stored

    def _tradable(self, analyses: List[GravityAnalysis]) -> List[GravityAnalysis]:
        if self.settings.trading.trade_on_simulated or self.settings.dry_run:
            return list(analyses)
        return [a for a in analyses if a.source != SOURCE_SIMULATED]

    def _decide(self, analyses: List[GravityAnalysis], balance: int, now: int) -> List[Decision]:
        if self.settings.mode == MODE_MULTI and self.state.stranded is None:
            multi = self.settings.multi
            return portfolio_decisions(
                self.state,
                analyses,
                self.planner,
                balance,
                now,
                capital_cap=multi.capital_cap_lamports,
                fee_reserve=multi.fee_reserve_lamports,
                min_hold_seconds=self.settings.trading.min_hold_seconds,
                max_risk_score=self.settings.trading.max_risk_score,
            )
        return [self.machine.evaluate(self.state, analyses, balance, now, self.history)]

    async def _update_ledger(
        self,
        analyses: List[GravityAnalysis],
        report: CycleReport,
        now: int,
    ) -> Optional[str]:
        """Push the best venue when it improved or the record is stale.

        A failed write is logged and tried again next cycle.
        """
        if self.ledger is None or not analyses:
            return None
        best = GravityAnalyzer.best_by_gravity(analyses)
        if best is None:
            return None
        ref: Optional[str] = None
        try:
            oracle = await self.ledger.read()
            if should_update(
                oracle,
                best.adjusted_apy_bps,
                now,
                min_improvement_bps=self.settings.ledger.min_improvement_bps,
                stale_seconds=self.settings.ledger.stale_seconds,
            ):
                ref = await self.ledger.record_decision(best.venue, best.current_apy_bps, best.risk_score, now)
            if report.trades:
                pnl = sum(o.pnl for o in report.outcomes)
                await self.ledger.record_portfolio(self.state.invested(), pnl)
        except LedgerError as exc:
            self.log.warning(f"Ledger update failed, will retry next cycle: {exc}")
            return None
        return ref

    def _persist(self) -> None:
        self.history.save(self.settings.paths.history_file)
        self.save_state()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Run cycles until stop(); PersistenceError propagates."""
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()
        interval = self.settings.interval_seconds
        self.log.info(f"Starting gravity loop (interval {interval:.0f}s)")
        while not self._stop_event.is_set():
            try:
                report = await self.run_cycle()
                self.log.info(
                    f"Cycle done: {len(report.analyses)} venues, {report.trades} trades, "
                    f"source={report.data_source}"
                )
            except PersistenceError as exc:
                self.log.critical(f"Persistence failure, stopping: {exc}")
                raise
            except asyncio.TimeoutError:
                self.state.errors += 1
                self.log.error(f"Cycle exceeded {self.settings.timeout_seconds:.0f}s timeout")
                self.save_state()
            except Exception as exc:
                self.state.errors += 1
                self.log.error(f"Cycle failed: {exc}", exc_info=True)
                self.save_state()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        self.log.info("Gravity loop stopped")
