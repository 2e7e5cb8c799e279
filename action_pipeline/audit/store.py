"""
Action Audit Store — append-only, cryptographically chained record of pipeline runs.

Every processed main action produces one PipelineRunRecord.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Each record is hashed and chained to the previous record (tamper-evident ledger).
- Every record answers: Which action? What did each stage decide and why?
  What was written? Which side effects stand although their parent was cancelled?
- Queryable by action, opportunity, final status, and inconsistency presence.
"""

import hashlib
import json
import sqlite3
from typing import List, Optional

from action_pipeline.models.results import PipelineRunRecord


class ActionAuditStore:
    """
    Append-only pipeline run store.
    Prototype: SQLite. Production: PostgreSQL with row-level security.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the runs table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                id TEXT PRIMARY KEY,
                action_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                opportunity_id TEXT NOT NULL,
                final_status TEXT NOT NULL,
                final_state TEXT NOT NULL,
                inconsistency_count INTEGER NOT NULL DEFAULT 0,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_action_id ON pipeline_runs(action_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_opportunity_id ON pipeline_runs(opportunity_id)
        """)
        self._conn.commit()

    @staticmethod
    def _compute_signature(record: PipelineRunRecord) -> str:
        record_dict = record.model_dump(mode="json")
        # Zero out signature before hashing (it's what we're computing)
        record_dict["signature"] = ""
        record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
        return hashlib.sha256(record_bytes).hexdigest()

    def append(self, record: PipelineRunRecord) -> PipelineRunRecord:
        """Append a run record, chained to the previous one. Returns the signed copy."""
        signed = record.model_copy(update={"prior_record_hash": self._get_latest_hash()})
        signed.signature = self._compute_signature(signed)

        self._conn.execute(
            """
            INSERT INTO pipeline_runs (
                id, action_id, action_type, opportunity_id, final_status,
                final_state, inconsistency_count, signature, prior_record_hash,
                record_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                signed.id,
                signed.action.id,
                signed.action.type,
                signed.action.opportunity_id,
                signed.main.status.value,
                signed.main.state.value,
                len(signed.inconsistencies),
                signed.signature,
                signed.prior_record_hash,
                signed.model_dump_json(),
            ),
        )
        self._conn.commit()
        return signed

    def _get_latest_hash(self) -> Optional[str]:
        """Get the signature of the most recent record."""
        row = self._conn.execute(
            "SELECT signature FROM pipeline_runs ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> PipelineRunRecord:
        return PipelineRunRecord.model_validate_json(row["record_json"])

    def get_by_id(self, run_id: str) -> Optional[PipelineRunRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM pipeline_runs WHERE id = ?", (run_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_action(self, action_id: str) -> List[PipelineRunRecord]:
        """All runs of a given main action."""
        rows = self._conn.execute(
            "SELECT record_json FROM pipeline_runs WHERE action_id = ? ORDER BY rowid",
            (action_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_opportunity(self, opportunity_id: str) -> List[PipelineRunRecord]:
        rows = self._conn.execute(
            "SELECT record_json FROM pipeline_runs WHERE opportunity_id = ? ORDER BY rowid",
            (opportunity_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_status(self, final_status: str) -> List[PipelineRunRecord]:
        rows = self._conn.execute(
            "SELECT record_json FROM pipeline_runs WHERE final_status = ? ORDER BY rowid",
            (final_status,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_inconsistent(self) -> List[PipelineRunRecord]:
        """Runs where an executed sub-action outlived its cancelled main action."""
        rows = self._conn.execute(
            "SELECT record_json FROM pipeline_runs WHERE inconsistency_count > 0 ORDER BY rowid"
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[PipelineRunRecord]:
        rows = self._conn.execute(
            "SELECT record_json FROM pipeline_runs ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def verify_chain_integrity(self) -> bool:
        """Verify no records have been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature FROM pipeline_runs ORDER BY rowid"
        ).fetchall()

        for i, row in enumerate(rows):
            record = self._deserialize(row)
            if record.signature != row["signature"]:
                return False
            if self._compute_signature(record) != record.signature:
                return False
            if i > 0 and record.prior_record_hash != rows[i - 1]["signature"]:
                return False

        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM pipeline_runs").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
