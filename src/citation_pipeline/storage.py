from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from citation_pipeline.models import Job, JobStatus, PageAnalysis

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


class PipelineStore(AbstractContextManager["PipelineStore"]):
    """Durable job queue and append-only analysis log backed by SQLite.

    Claim ownership lives here and nowhere else: every transition is a single
    status-guarded UPDATE, so two workers sharing a database file can never
    hold the same job in ``processing``.
    """

    def __init__(self, db_path: Path | str, *, clock: Clock = _utc_now):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self.conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                claimed_by TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                last_error TEXT,
                result_summary TEXT
            )
            """
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs (status, created_at, id)"
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS page_analyses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER,
                run_id TEXT,
                citation_url TEXT NOT NULL,
                domain TEXT NOT NULL,
                analysis_status TEXT NOT NULL,
                crawl_error TEXT,
                record TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )

    def now_iso(self) -> str:
        return _iso(self.clock())

    def enqueue_job(self, payload: dict[str, Any], *, run_id: str, max_attempts: int = 3) -> Job:
        cursor = self.conn.execute(
            """
            INSERT INTO jobs (run_id, payload, status, attempts, max_attempts, created_at)
            VALUES (?, ?, ?, 0, ?, ?)
            """,
            (run_id, json.dumps(payload, ensure_ascii=False), JobStatus.PENDING, max_attempts, self.now_iso()),
        )
        return self._require_job(int(cursor.lastrowid))

    def get_job(self, job_id: int) -> Job | None:
        row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def _require_job(self, job_id: int) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(f"job {job_id} does not exist")
        return job

    def claim_batch(self, limit: int, claimant: str) -> list[Job]:
        """Move up to ``limit`` eligible pending jobs to processing, oldest first."""
        started_at = self.now_iso()
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            rows = self.conn.execute(
                """
                SELECT id FROM jobs
                WHERE status = ? AND attempts < max_attempts
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (JobStatus.PENDING, limit),
            ).fetchall()
            claimed_ids: list[int] = []
            for row in rows:
                cursor = self.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, claimed_by = ?, started_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (JobStatus.PROCESSING, claimant, started_at, row["id"], JobStatus.PENDING),
                )
                if cursor.rowcount == 1:
                    claimed_ids.append(int(row["id"]))
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            self.conn.execute("ROLLBACK")
            raise
        return [self._require_job(job_id) for job_id in claimed_ids]

    def complete(self, job_id: int, summary: dict[str, Any] | None = None) -> Job:
        cursor = self.conn.execute(
            """
            UPDATE jobs
            SET status = ?, completed_at = ?, result_summary = ?
            WHERE id = ? AND status = ?
            """,
            (
                JobStatus.COMPLETED,
                self.now_iso(),
                json.dumps(summary, ensure_ascii=False) if summary is not None else None,
                job_id,
                JobStatus.PROCESSING,
            ),
        )
        if cursor.rowcount != 1:
            logger.warning("job %s was not processing when completed; left unchanged", job_id)
        return self._require_job(job_id)

    def fail(self, job_id: int, error: str) -> Job:
        """Record a failed attempt; the job returns to pending until its attempts run out."""
        cursor = self.conn.execute(
            """
            UPDATE jobs
            SET attempts = attempts + 1,
                last_error = ?,
                status = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE ? END,
                completed_at = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE NULL END,
                claimed_by = NULL,
                started_at = NULL
            WHERE id = ? AND status = ?
            """,
            (
                error,
                JobStatus.FAILED,
                JobStatus.PENDING,
                self.now_iso(),
                job_id,
                JobStatus.PROCESSING,
            ),
        )
        if cursor.rowcount != 1:
            logger.warning("job %s was not processing when failed; left unchanged", job_id)
        return self._require_job(job_id)

    def reclaim_stale(self, stale_after_seconds: float) -> int:
        """Return processing jobs whose claim is older than the window to pending."""
        now = self.clock()
        cutoff = _iso(now - timedelta(seconds=stale_after_seconds))
        note = f"reclaimed at {_iso(now)}: processing exceeded {int(stale_after_seconds)}s"
        cursor = self.conn.execute(
            """
            UPDATE jobs
            SET status = ?, claimed_by = NULL, started_at = NULL, last_error = ?
            WHERE status = ? AND started_at IS NOT NULL AND started_at < ?
            """,
            (JobStatus.PENDING, note, JobStatus.PROCESSING, cutoff),
        )
        if cursor.rowcount:
            logger.warning("reclaimed %d stale job(s)", cursor.rowcount)
        return cursor.rowcount

    def requeue(self, job_id: int) -> Job:
        cursor = self.conn.execute(
            """
            UPDATE jobs
            SET status = ?, attempts = 0, completed_at = NULL, claimed_by = NULL, started_at = NULL
            WHERE id = ? AND status = ?
            """,
            (JobStatus.PENDING, job_id, JobStatus.FAILED),
        )
        if cursor.rowcount != 1:
            raise ValueError(f"job {job_id} is not in failed state")
        return self._require_job(job_id)

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        rows = self.conn.execute("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status").fetchall()
        for row in rows:
            counts[str(row["status"])] = int(row["c"])
        return counts

    def list_jobs(self, status: JobStatus | None = None, limit: int = 50) -> list[Job]:
        if status is None:
            rows = self.conn.execute(
                "SELECT * FROM jobs ORDER BY created_at ASC, id ASC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at ASC, id ASC LIMIT ?",
                (status, limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def insert_page_analysis(self, analysis: PageAnalysis) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO page_analyses (
                job_id, run_id, citation_url, domain, analysis_status, crawl_error, record, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                analysis.job_id,
                analysis.run_id,
                analysis.citation_url,
                analysis.domain,
                analysis.analysis_status,
                analysis.crawl_error,
                analysis.model_dump_json(),
                analysis.created_at,
            ),
        )
        return int(cursor.lastrowid)

    def list_page_analyses(self, job_id: int | None = None) -> list[PageAnalysis]:
        if job_id is None:
            rows = self.conn.execute("SELECT record FROM page_analyses ORDER BY id ASC").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT record FROM page_analyses WHERE job_id = ? ORDER BY id ASC", (job_id,)
            ).fetchall()
        return [PageAnalysis.model_validate_json(row["record"]) for row in rows]

    def count_page_analyses(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM page_analyses").fetchone()
        return int(row["c"]) if row else 0

    def get_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_meta(self, key: str, value: str) -> None:
        self.conn.execute(
            """
            INSERT INTO meta (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def increment_meta(self, key: str, amount: int = 1) -> int:
        current = _parse_int_or_zero(self.get_meta(key)) + amount
        self.set_meta(key, str(current))
        return current

    def close(self) -> None:
        self.conn.close()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()


def _parse_int_or_zero(raw: str | None) -> int:
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        return 0


def _row_to_job(row: sqlite3.Row) -> Job:
    summary = row["result_summary"]
    return Job(
        id=int(row["id"]),
        run_id=str(row["run_id"]),
        payload=json.loads(row["payload"]),
        status=JobStatus(row["status"]),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        claimed_by=row["claimed_by"],
        created_at=str(row["created_at"]),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        last_error=row["last_error"],
        result_summary=json.loads(summary) if summary else None,
    )
