#!/usr/bin/env python3
"""Append-only audit trail."""

import sqlite3
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from audit_trail import AuditTrail, DecisionRecord, format_record


def _record(ts: int, action: str = "enter", success: bool = True) -> DecisionRecord:
    return DecisionRecord(
        timestamp=ts,
        action=action,
        venues=["Jito"],
        amounts={"in": 10**18, "out": 5},
        settlement_ref="dry_run_1",
        reason="best yield",
        success=success,
        data_source="live",
    )


def test_append_and_recent_newest_first(tmp_path) -> None:
    trail = AuditTrail(str(tmp_path / "decisions.db"))
    first = trail.append(_record(100))
    second = trail.append(_record(200, action="rebalance", success=False))
    assert second > first

    records = trail.recent(10)
    assert [r.id for r in records] == [second, first]
    assert records[0].action == "rebalance"
    assert not records[0].success
    assert records[1].amounts == {"in": 10**18, "out": 5}
    assert records[1].venues == ["Jito"]


def test_count_filters(tmp_path) -> None:
    trail = AuditTrail(str(tmp_path / "decisions.db"))
    trail.append(_record(1))
    trail.append(_record(2, success=False))
    trail.append(_record(3, action="fault", success=False))
    assert trail.count() == 3
    assert trail.count(action="enter") == 2
    assert trail.count(success=False) == 2
    assert trail.count(action="fault", success=True) == 0


def test_records_are_write_once(tmp_path) -> None:
    path = tmp_path / "decisions.db"
    trail = AuditTrail(str(path))
    trail.append(_record(1))
    conn = sqlite3.connect(str(path))
    try:
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            conn.execute("UPDATE decisions SET success = 0")
    finally:
        conn.close()
    assert trail.recent(1)[0].success


def test_reopen_keeps_records(tmp_path) -> None:
    path = str(tmp_path / "decisions.db")
    AuditTrail(path).append(_record(1))
    assert AuditTrail(path).count() == 1


def test_format_record() -> None:
    text = format_record(_record(0, success=False))
    assert "FAILED" in text
    assert "Jito" in text
    assert "ref=dry_run_1" in text
