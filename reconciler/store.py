"""SQLite persistence for vote tallies, pending subjects and commit failures."""

from __future__ import annotations

import os
import sqlite3
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from reconciler.errors import StoreUnavailableError
from reconciler.models import SUBJECT_KINDS, CommitResult, PendingSubject, VoteRecord

STATE_PENDING = "pending"


class ReconcilerStore:
    """Tally store, deadline source and error sink over one SQLite file.

    Votes are kept one row per ``(kind, subject_id, voter_id)``. Every write to a
    subject pushes the expiry of all of that subject's rows forward by the
    retention window; reads never see expired rows.
    """

    def __init__(
        self,
        db_path: str,
        logger: Optional[Callable[[str, str], None]] = None,
        retention_days: int = 7,
        time_fn: Callable[[], float] = time.time,
    ):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self.retention_seconds = max(1, int(retention_days)) * 86400
        self._time_fn = time_fn
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._local.conn = conn
        return conn

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tally_votes (
                kind TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                voter_id TEXT NOT NULL,
                choice TEXT NOT NULL,
                cast_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                PRIMARY KEY (kind, subject_id, voter_id)
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_tally_votes_expiry
            ON tally_votes(kind, expires_at)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_subjects (
                subject_id TEXT PRIMARY KEY,
                state TEXT NOT NULL DEFAULT 'pending',
                ready_at INTEGER,
                default_decision TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_pending_subjects_state_ready
            ON pending_subjects(state, ready_at)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS commit_failures (
                failure_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                subject TEXT NOT NULL,
                error_kind TEXT NOT NULL,
                message TEXT,
                tx_ref TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at REAL NOT NULL,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_commit_failures_created
            ON commit_failures(created_at DESC)
            """
        )

        conn.execute("PRAGMA optimize;")

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ------------------------------------------------------------------
    # Tally store
    # ------------------------------------------------------------------

    def record_vote(
        self,
        kind: str,
        subject_id: str,
        voter_id: str,
        choice: str,
        cast_at: Optional[int] = None,
    ) -> None:
        """Write a vote; a later vote from the same voter replaces the earlier one."""
        if kind not in SUBJECT_KINDS:
            raise ValueError(f"unknown subject kind: {kind}")
        now_ts = self._now()
        cast_at = now_ts if cast_at is None else int(cast_at)
        expires_at = now_ts + self.retention_seconds

        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            # an expired subject is gone; a new vote must not revive its old rows
            conn.execute(
                "DELETE FROM tally_votes WHERE kind = ? AND subject_id = ? AND expires_at <= ?",
                (kind, subject_id, now_ts),
            )
            conn.execute(
                """
                INSERT INTO tally_votes (
                    kind, subject_id, voter_id, choice, cast_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(kind, subject_id, voter_id) DO UPDATE SET
                    choice = excluded.choice,
                    cast_at = excluded.cast_at,
                    expires_at = excluded.expires_at
                """,
                (kind, subject_id, voter_id, choice, cast_at, expires_at),
            )
            conn.execute(
                "UPDATE tally_votes SET expires_at = ? WHERE kind = ? AND subject_id = ?",
                (expires_at, kind, subject_id),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

    def get_all_subjects(self, kind: str) -> List[str]:
        try:
            conn = self._get_connection()
            rows = conn.execute(
                "SELECT DISTINCT subject_id FROM tally_votes WHERE kind = ? AND expires_at > ?",
                (kind, self._now()),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"tally store unavailable: {exc}") from exc
        return [str(row["subject_id"]) for row in rows]

    def get_tally(self, kind: str, subject_id: str) -> Dict[str, str]:
        try:
            conn = self._get_connection()
            rows = conn.execute(
                """
                SELECT voter_id, choice FROM tally_votes
                WHERE kind = ? AND subject_id = ? AND expires_at > ?
                """,
                (kind, subject_id, self._now()),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"tally store unavailable: {exc}") from exc
        return {str(row["voter_id"]): str(row["choice"]) for row in rows}

    def list_votes(self, kind: str, subject_id: str) -> List[VoteRecord]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM tally_votes
            WHERE kind = ? AND subject_id = ? AND expires_at > ?
            ORDER BY cast_at ASC, voter_id ASC
            """,
            (kind, subject_id, self._now()),
        ).fetchall()
        return [
            VoteRecord(
                kind=row["kind"],
                subject_id=row["subject_id"],
                voter=row["voter_id"],
                choice=row["choice"],
                cast_at=int(row["cast_at"]),
            )
            for row in rows
        ]

    def clear_tally(self, kind: str, subject_id: str) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM tally_votes WHERE kind = ? AND subject_id = ?",
            (kind, subject_id),
        )
        return cursor.rowcount

    def purge_expired_votes(self) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM tally_votes WHERE expires_at <= ?",
            (self._now(),),
        )
        if cursor.rowcount:
            self._log(f"reconciler: purged {cursor.rowcount} expired vote(s)", "debug")
        return cursor.rowcount

    def count_pending_votes(self) -> Dict[str, int]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT kind, COUNT(DISTINCT subject_id) AS subjects, COUNT(*) AS votes
            FROM tally_votes
            WHERE expires_at > ?
            GROUP BY kind
            """,
            (self._now(),),
        ).fetchall()
        stats = {"proposal_subjects": 0, "dispute_subjects": 0, "total_votes": 0}
        for row in rows:
            stats[f"{row['kind']}_subjects"] = int(row["subjects"] or 0)
            stats["total_votes"] += int(row["votes"] or 0)
        return stats

    # ------------------------------------------------------------------
    # Deadline source
    # ------------------------------------------------------------------

    def add_pending_subject(
        self,
        subject_id: str,
        ready_at: Optional[int],
        default_decision: str,
    ) -> None:
        """Register a subject waiting out its off-chain period.

        Re-registering keeps the later ``ready_at``; it never moves backwards.
        """
        now_ts = self._now()
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO pending_subjects (
                subject_id, state, ready_at, default_decision, created_at, updated_at
            ) VALUES (?, 'pending', ?, ?, ?, ?)
            ON CONFLICT(subject_id) DO UPDATE SET
                ready_at = CASE
                    WHEN pending_subjects.ready_at IS NULL THEN excluded.ready_at
                    WHEN excluded.ready_at IS NULL THEN pending_subjects.ready_at
                    ELSE MAX(pending_subjects.ready_at, excluded.ready_at)
                END,
                default_decision = excluded.default_decision,
                updated_at = excluded.updated_at
            """,
            (subject_id, ready_at, default_decision, now_ts, now_ts),
        )

    def set_subject_state(self, subject_id: str, state: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE pending_subjects SET state = ?, updated_at = ? WHERE subject_id = ?",
            (state, self._now(), subject_id),
        )
        return cursor.rowcount > 0

    def get_pending_subject(self, subject_id: str) -> Optional[PendingSubject]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM pending_subjects WHERE subject_id = ?",
            (subject_id,),
        ).fetchone()
        return self._row_to_subject(row) if row else None

    def find_ready(self, cutoff: int, limit: int = 10) -> List[PendingSubject]:
        """Pending subjects whose wait started at or before ``cutoff``, oldest first."""
        try:
            conn = self._get_connection()
            rows = conn.execute(
                """
                SELECT * FROM pending_subjects
                WHERE state = ? AND ready_at IS NOT NULL AND ready_at <= ?
                ORDER BY ready_at ASC, subject_id ASC
                LIMIT ?
                """,
                (STATE_PENDING, int(cutoff), int(limit)),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"deadline source unavailable: {exc}") from exc
        return [self._row_to_subject(row) for row in rows]

    @staticmethod
    def _row_to_subject(row: sqlite3.Row) -> PendingSubject:
        return PendingSubject(
            subject_id=row["subject_id"],
            ready_at=row["ready_at"],
            default_decision=row["default_decision"],
            state=row["state"],
        )

    # ------------------------------------------------------------------
    # Error sink
    # ------------------------------------------------------------------

    def append_failure(self, run_id: str, kind: str, result: CommitResult) -> str:
        failure_id = str(uuid.uuid4())
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO commit_failures (
                failure_id, run_id, kind, subject, error_kind, message,
                tx_ref, attempts, started_at, duration_ms, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                failure_id,
                run_id,
                kind,
                result.subject,
                result.error or "unknown",
                result.message,
                result.tx_ref,
                result.attempts,
                result.started_at,
                result.duration_ms,
                self._now(),
            ),
        )
        return failure_id

    def list_failures(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM commit_failures ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]

    def count_failures(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM commit_failures").fetchone()
        return int(row["cnt"] or 0)

    def prune_failures(self, before_ts: int) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM commit_failures WHERE created_at < ?",
            (before_ts,),
        )
        return cursor.rowcount
