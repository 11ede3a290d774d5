"""
Cycle Outcome Store: append-only record of how every aggregation cycle ended.

Behavioral Contract:
- Append-only, one row per cycle id. A cycle is committed once its row is.
- Each row is hashed and chained to the previous one (tamper-evident).
- Raw deltas are never stored; only per-producer digests and weights.
"""

import hashlib
import sqlite3
from typing import List, Optional

from econ_kernel.models.aggregation import CycleOutcome


class OutcomeStore:
    """
    Prototype: SQLite. Survives restart when given a file path, and tells
    the coordinator which cycle id to resume from.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS cycle_outcomes (
                cycle_id INTEGER PRIMARY KEY,
                state TEXT NOT NULL,
                reason TEXT,
                reference TEXT,
                validation_score REAL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcome_state ON cycle_outcomes(state)
        """)
        self._conn.commit()

    @staticmethod
    def _sign(record_json: str, prior_hash: Optional[str]) -> str:
        return hashlib.sha256(f"{prior_hash or ''}|{record_json}".encode()).hexdigest()

    def append(self, outcome: CycleOutcome) -> str:
        """Durably record a cycle outcome. Returns its signature."""
        prior_hash = self._get_latest_hash()
        record_json = outcome.model_dump_json()
        signature = self._sign(record_json, prior_hash)
        try:
            self._conn.execute(
                """
                INSERT INTO cycle_outcomes (
                    cycle_id, state, reason, reference, validation_score,
                    signature, prior_record_hash, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.cycle_id,
                    outcome.state.value,
                    outcome.reason.value if outcome.reason else None,
                    outcome.reference,
                    outcome.validation_score,
                    signature,
                    prior_hash,
                    record_json,
                ),
            )
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return signature

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM cycle_outcomes ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def get(self, cycle_id: int) -> Optional[CycleOutcome]:
        row = self._conn.execute(
            "SELECT record_json FROM cycle_outcomes WHERE cycle_id = ?", (cycle_id,)
        ).fetchone()
        return CycleOutcome.model_validate_json(row["record_json"]) if row else None

    def last_cycle_id(self) -> int:
        """Highest recorded cycle id, 0 when empty."""
        row = self._conn.execute("SELECT MAX(cycle_id) AS last FROM cycle_outcomes").fetchone()
        return row["last"] or 0

    def latest_published(self) -> Optional[CycleOutcome]:
        row = self._conn.execute(
            "SELECT record_json FROM cycle_outcomes WHERE state = 'published' "
            "ORDER BY cycle_id DESC LIMIT 1"
        ).fetchone()
        return CycleOutcome.model_validate_json(row["record_json"]) if row else None

    def query_recent(self, limit: int = 50) -> List[CycleOutcome]:
        rows = self._conn.execute(
            "SELECT record_json FROM cycle_outcomes ORDER BY cycle_id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [CycleOutcome.model_validate_json(r["record_json"]) for r in reversed(rows)]

    def verify_chain_integrity(self) -> bool:
        """Verify no outcome has been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature, prior_record_hash FROM cycle_outcomes ORDER BY rowid"
        ).fetchall()
        prior = None
        for row in rows:
            if row["prior_record_hash"] != prior:
                return False
            if self._sign(row["record_json"], prior) != row["signature"]:
                return False
            prior = row["signature"]
        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS cnt FROM cycle_outcomes").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
