#!/usr/bin/env python3
"""
Append-only decision audit trail (SQLite, WAL).

Every executed action lands here exactly once, successful or not, with the
data source it was decided on. Rows are write-once: a trigger aborts any
UPDATE so history cannot be rewritten after the fact.
"""

import json
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from logging_utils import get_logger
from state_io import PersistenceError

SCHEMA_VERSION = 1


@dataclass
class DecisionRecord:
    """A write-once audit entry. Amounts are integer base units."""
    timestamp: int
    action: str
    venues: List[str] = field(default_factory=list)
    amounts: Dict[str, int] = field(default_factory=dict)
    settlement_ref: Optional[str] = None
    reason: str = ""
    success: bool = True
    data_source: str = "live"
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "action": self.action,
            "venues": list(self.venues),
            "amounts": {k: int(v) for k, v in self.amounts.items()},
            "settlement_ref": self.settlement_ref,
            "reason": self.reason,
            "success": self.success,
            "data_source": self.data_source,
        }


class AuditTrail:
    """SQLite-backed append-only store for DecisionRecord."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.log = get_logger("audit_trail")
        self._init_db()

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _init_db(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with closing(self._open_connection()) as conn, conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS decisions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        timestamp INTEGER NOT NULL,
                        action TEXT NOT NULL,
                        venues TEXT NOT NULL,
                        amounts TEXT NOT NULL,
                        settlement_ref TEXT,
                        reason TEXT NOT NULL DEFAULT '',
                        success INTEGER NOT NULL,
                        data_source TEXT NOT NULL DEFAULT 'live'
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_decisions_timestamp ON decisions(timestamp)"
                )
                conn.execute("""
                    CREATE TRIGGER IF NOT EXISTS decisions_no_update
                    BEFORE UPDATE ON decisions
                    BEGIN
                        SELECT RAISE(ABORT, 'decisions are append-only');
                    END
                """)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(f"Cannot initialize audit trail {self.db_path}: {exc}") from exc

    def append(self, record: DecisionRecord) -> int:
        """Insert a record; returns its row id. Raises PersistenceError."""
        try:
            with closing(self._open_connection()) as conn, conn:
                cursor = conn.execute(
                    """
                    INSERT INTO decisions
                        (timestamp, action, venues, amounts, settlement_ref, reason, success, data_source)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(record.timestamp or time.time()),
                        record.action,
                        json.dumps(list(record.venues)),
                        json.dumps({k: str(int(v)) for k, v in record.amounts.items()}),
                        record.settlement_ref,
                        record.reason,
                        1 if record.success else 0,
                        record.data_source,
                    ),
                )
                record.id = int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to append decision record: {exc}") from exc
        return record.id

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DecisionRecord:
        amounts = json.loads(row["amounts"] or "{}")
        return DecisionRecord(
            id=int(row["id"]),
            timestamp=int(row["timestamp"]),
            action=row["action"],
            venues=list(json.loads(row["venues"] or "[]")),
            amounts={k: int(v) for k, v in amounts.items()},
            settlement_ref=row["settlement_ref"],
            reason=row["reason"] or "",
            success=bool(row["success"]),
            data_source=row["data_source"] or "live",
        )

    def recent(self, limit: int = 20) -> List[DecisionRecord]:
        """Most recent records, newest first."""
        try:
            with closing(self._open_connection()) as conn:
                rows = conn.execute(
                    "SELECT * FROM decisions ORDER BY id DESC LIMIT ?",
                    (max(0, int(limit)),),
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read decision records: {exc}") from exc
        return [self._row_to_record(r) for r in rows]

    def count(self, action: Optional[str] = None, success: Optional[bool] = None) -> int:
        query = "SELECT COUNT(*) FROM decisions WHERE 1=1"
        params: List[Any] = []
        if action is not None:
            query += " AND action = ?"
            params.append(action)
        if success is not None:
            query += " AND success = ?"
            params.append(1 if success else 0)
        try:
            with closing(self._open_connection()) as conn:
                return int(conn.execute(query, params).fetchone()[0])
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to count decision records: {exc}") from exc


def format_record(record: DecisionRecord) -> str:
    when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.timestamp))
    status = "ok" if record.success else "FAILED"
    venues = " -> ".join(record.venues) or "-"
    ref = record.settlement_ref or "-"
    return f"{when} {record.action:<9} {status:<6} {venues} [{record.data_source}] ref={ref} | {record.reason}"
