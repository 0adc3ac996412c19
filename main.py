#!/usr/bin/env python3
"""
Entrypoint for the gravity allocator.

    python3 main.py run            # loop until SIGINT/SIGTERM
    python3 main.py once           # a single cycle
    python3 main.py status         # state, positions, ledger, history stats
    python3 main.py history -n 20  # recent audit records
    python3 main.py clear-fault    # release stranded proceeds after manual recovery
"""

import argparse
import asyncio
import signal
import sys
import time
from typing import List, Optional

from audit_trail import AuditTrail, DecisionRecord, format_record
from cycle_driver import CycleDriver, CycleReport
from engine_config import MODE_MULTI, ConfigError, EngineSettings, load_settings
from engine_state import EngineStateStore
from exchanges.base import ExecutionError
from gravity import format_analysis
from ledger import FileLedger, LedgerError, format_oracle
from logging_utils import setup_logging
from position_machine import PositionStateMachine
from signal_history import SignalHistory
from state_io import PersistenceError
from venues import format_bps, format_lamports, venue_name


def print_report(report: CycleReport) -> None:
    print(f"\nCycle @ {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(report.timestamp))} "
          f"[{report.data_source}]")
    for analysis in report.analyses:
        print(f"  {format_analysis(analysis)}")
        for sig in analysis.signals:
            print(f"      {sig.type}: {sig.message} ({sig.impact_bps:+.0f}bps)")
    if report.note:
        print(f"  note: {report.note}")
    for decision in report.decisions:
        print(f"  decision: {decision.action.value} - {decision.reason}")
    for outcome in report.outcomes:
        status = "ok" if outcome.success else f"FAILED ({outcome.error})"
        refs = ", ".join(r for r in outcome.settlement_refs if r) or "-"
        print(f"  executed: {outcome.decision.action.value} {status} refs={refs}")
    if report.ledger_ref:
        print(f"  ledger: {report.ledger_ref}")


async def _run(settings: EngineSettings, once: bool) -> int:
    driver = CycleDriver.from_settings(settings)
    try:
        await driver.initialize()
        if once:
            print_report(await driver.run_cycle())
            return 0

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, driver.stop)
            except NotImplementedError:
                pass
        await driver.run_forever()
        return 0
    finally:
        await driver.close()


def cmd_status(settings: EngineSettings) -> int:
    paths = settings.paths
    state = EngineStateStore(paths.state_file).load()
    now = int(time.time())

    print("=" * 60)
    print("GRAVITY ALLOCATOR STATUS")
    print("=" * 60)
    print(f"Mode: {settings.mode} | dry_run={settings.dry_run} | venue={settings.venue.backend}")
    print(f"Checks: {state.total_checks} | Trades: {state.total_trades} | Errors: {state.errors}")
    print(f"Total P&L: {format_lamports(state.total_pnl)}")
    if state.last_check:
        print(f"Last check: {(now - state.last_check) // 60}m ago")

    if not state.positions:
        print("Positions: none")
    for position in state.positions.values():
        held_hours = (now - position.entry_timestamp) / 3600
        print(
            f"Position: {venue_name(position.venue)} held={position.held_amount} "
            f"cost={format_lamports(position.cost_basis)} entry_apy={format_bps(position.entry_apy_bps)} "
            f"({held_hours:.1f}h)"
        )
    if state.positions and settings.mode == MODE_MULTI:
        print(f"Invested: {format_lamports(state.invested())} across {len(state.positions)} venues")
    if state.stranded:
        s = state.stranded
        print(
            f"FAULT: stranded {format_lamports(s.amount)} from {venue_name(s.from_venue)} "
            f"-> {venue_name(s.target_venue)} (attempts={s.attempts}): {s.reason}"
        )

    if settings.ledger.enabled:
        ledger = FileLedger(paths.ledger_file, settings.ledger.authority)
        try:
            print(format_oracle(asyncio.run(ledger.read()), now))
        except LedgerError as exc:
            print(f"Oracle: unreadable ({exc})")

    history = SignalHistory.load(paths.history_file, settings.retention_points)
    print(f"History: {history.total_points()} points")
    for row in history.stats(now):
        print(f"  {row['venue']}: {row['points']} points, oldest {row['oldest_hours']}h")
    return 0


def cmd_history(settings: EngineSettings, limit: int) -> int:
    records = AuditTrail(settings.paths.db_path).recent(limit)
    if not records:
        print("No decisions recorded")
        return 0
    for record in records:
        print(format_record(record))
    return 0


def cmd_clear_fault(settings: EngineSettings) -> int:
    store = EngineStateStore(settings.paths.state_file)
    state = store.load()
    stranded = PositionStateMachine.clear_stranded(state)
    if stranded is None:
        print("No fault to clear")
        return 0
    store.save(state)
    AuditTrail(settings.paths.db_path).append(DecisionRecord(
        timestamp=int(time.time()),
        action="clear_fault",
        venues=[venue_name(stranded.from_venue), venue_name(stranded.target_venue)],
        amounts={"stranded": stranded.amount},
        reason=f"Operator cleared fault after {stranded.attempts} attempts: {stranded.reason}",
        success=True,
    ))
    print(f"Cleared stranded {format_lamports(stranded.amount)}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Gravity yield allocator")
    parser.add_argument("--config", default=None, help="Path to gravity.yaml")
    parser.add_argument("--verbose", "-v", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run cycles until interrupted")
    subparsers.add_parser("once", help="Run a single cycle and print the report")
    subparsers.add_parser("status", help="Show state, positions, ledger and history stats")
    history = subparsers.add_parser("history", help="Show recent audit records")
    history.add_argument("-n", "--limit", type=int, default=20)
    subparsers.add_parser("clear-fault", help="Clear the stranded-funds fault")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    log = setup_logging(log_file=settings.paths.log_file or None, verbose=args.verbose)

    try:
        if args.command in ("run", "once"):
            return asyncio.run(_run(settings, once=args.command == "once"))
        if args.command == "status":
            return cmd_status(settings)
        if args.command == "history":
            return cmd_history(settings, args.limit)
        if args.command == "clear-fault":
            return cmd_clear_fault(settings)
    except PersistenceError as exc:
        log.critical(f"Persistence failure: {exc}")
        return 1
    except (ConfigError, ExecutionError, LedgerError) as exc:
        log.error(f"{args.command} failed: {exc}")
        return 1
    except KeyboardInterrupt:
        print("Shutting down...")
        return 0
    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
