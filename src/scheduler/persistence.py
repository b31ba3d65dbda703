"""
Persistence Adapter for the AutoTest orchestrator.

SQLite storage with WAL mode, one connection per call:
- jobs: Job bookkeeping (state is forward-only, terminal states write-once)
- results: AutoTestResult records (insert-only, one per job)
- grades: Grade records (append-only; latest row per person/deliverable is current)
- audit: Grade change audit trail

Reads reflect all prior writes from the same process. The core depends on
the DataStore protocol, not on SQLite.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .entities import (
    AutoTestResult,
    COMPLETED_STATES,
    CommitTarget,
    FailureKind,
    Grade,
    Job,
    JobState,
    now_iso,
)
from .errors import InvalidOperationError, JobNotFoundError


class DataStore(Protocol):
    """Storage contract the scheduler and grade computer depend on."""

    def create_job(self, job: Job) -> Job: ...

    def get_job(self, job_id: str) -> Optional[Job]: ...

    def finish_job(self, job_id: str, state: JobState, error: Optional[str] = None) -> bool: ...

    def list_jobs_by_state(self, state: JobState, limit: int = 100) -> list[Job]: ...

    def list_terminal_jobs_without_result(self, limit: int = 100) -> list[Job]: ...

    def save_result(self, result: AutoTestResult) -> AutoTestResult: ...

    def get_result(self, result_id: str) -> Optional[AutoTestResult]: ...

    def get_result_for_job(self, job_id: str) -> Optional[AutoTestResult]: ...

    def get_results_for_repo(self, deliverable_id: str, repo_id: str) -> list[AutoTestResult]: ...

    def get_latest_result_for(self, target: CommitTarget) -> Optional[AutoTestResult]: ...

    def has_completed_result(self, target: CommitTarget) -> bool: ...

    def save_grade(self, grade: Grade) -> Grade: ...

    def get_grade(self, person_id: str, deliverable_id: str) -> Optional[Grade]: ...

    def get_all_grades(self, deliverable_id: Optional[str] = None) -> list[Grade]: ...

    def write_audit(self, kind: str, actor: str, before: Optional[dict], after: Optional[dict], meta: dict) -> int: ...


class PersistenceAdapter:
    """
    SQLite-based persistence for jobs, results, grades and audit entries.

    - Does NOT contain grading or scheduling logic
    - Enforces write-once rules for terminal job states and results
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file. Every call opens its own
                connection, so ":memory:" would not persist between calls.
        """
        self.db_path = str(db_path)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    identity_key TEXT NOT NULL,
                    repo_id TEXT NOT NULL,
                    target TEXT NOT NULL,
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    container_name TEXT,
                    error TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_state
                ON jobs (state, created_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    result_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL UNIQUE,
                    identity_key TEXT NOT NULL,
                    repo_id TEXT NOT NULL,
                    deliverable_id TEXT NOT NULL,
                    target_timestamp INTEGER NOT NULL,
                    target TEXT NOT NULL,
                    state TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    container_id TEXT,
                    report TEXT,
                    exit_code INTEGER,
                    failure TEXT,
                    error TEXT,
                    log_excerpt TEXT NOT NULL DEFAULT ''
                )
            """)

            # History lookups for regression analysis
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_results_repo
                ON results (deliverable_id, repo_id, target_timestamp)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_results_identity
                ON results (identity_key, finished_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS grades (
                    grade_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    person_id TEXT NOT NULL,
                    deliverable_id TEXT NOT NULL,
                    score REAL NOT NULL,
                    comment TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    custom TEXT NOT NULL DEFAULT '{}',
                    repo_id TEXT,
                    result_id TEXT,
                    url_name TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_grades_person
                ON grades (person_id, deliverable_id, grade_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit (
                    audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    before TEXT,
                    after TEXT,
                    meta TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_job(self, job: Job) -> Job:
        """Create a new job record."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs
                (job_id, identity_key, repo_id, target, state, created_at,
                 started_at, finished_at, container_name, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.target.identity_key,
                    job.target.repo_id,
                    json.dumps(job.target.to_dict()),
                    job.state.value,
                    job.created_at,
                    job.started_at,
                    job.finished_at,
                    job.container_name,
                    job.error,
                ),
            )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job entity."""
        return Job(
            job_id=row["job_id"],
            target=CommitTarget.from_dict(json.loads(row["target"])),
            state=JobState(row["state"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            container_name=row["container_name"],
            error=row["error"],
        )

    def finish_job(
        self,
        job_id: str,
        state: JobState,
        error: Optional[str] = None,
    ) -> bool:
        """
        Atomically move a non-terminal job to a terminal state.

        Returns:
            True if this call performed the transition, False if the job was
            already terminal (e.g. a lease expiry raced a late runner outcome)

        Raises:
            JobNotFoundError: If job doesn't exist
        """
        if not state.is_terminal:
            raise InvalidOperationError(f"{state.value} is not a terminal state")

        terminal_values = [s.value for s in JobState if s.is_terminal]

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET state = ?, finished_at = ?, error = COALESCE(?, error)
                WHERE job_id = ? AND state NOT IN ({', '.join('?' * len(terminal_values))})
                """,
                (state.value, now_iso(), error, job_id, *terminal_values),
            )

            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT state FROM jobs WHERE job_id = ?",
                    (job_id,),
                ).fetchone()
                if row is None:
                    raise JobNotFoundError(job_id)
                return False

        return True

    def list_jobs_by_state(self, state: JobState, limit: int = 100) -> list[Job]:
        """List jobs in a given state, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE state = ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (state.value, limit),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def list_terminal_jobs_without_result(self, limit: int = 100) -> list[Job]:
        """Closed jobs whose result was never written, oldest first."""
        terminal = [s.value for s in JobState if s.is_terminal]
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT jobs.* FROM jobs
                LEFT JOIN results ON results.job_id = jobs.job_id
                WHERE results.job_id IS NULL
                  AND jobs.state IN ({', '.join('?' * len(terminal))})
                ORDER BY jobs.created_at ASC
                LIMIT ?
                """,
                (*terminal, limit),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    # =========================================================================
    # Result Operations (insert-only)
    # =========================================================================

    def save_result(self, result: AutoTestResult) -> AutoTestResult:
        """
        Persist a result. Results are write-once.

        Raises:
            InvalidOperationError: If a result already exists for the job
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO results
                    (result_id, job_id, identity_key, repo_id, deliverable_id,
                     target_timestamp, target, state, started_at, finished_at,
                     container_id, report, exit_code, failure, error, log_excerpt)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.result_id,
                        result.job_id,
                        result.target.identity_key,
                        result.target.repo_id,
                        result.target.deliverable_id,
                        result.target.timestamp,
                        json.dumps(result.target.to_dict()),
                        result.state.value,
                        result.started_at,
                        result.finished_at,
                        result.container_id,
                        json.dumps(result.report) if result.report is not None else None,
                        result.exit_code,
                        result.failure.value if result.failure else None,
                        result.error,
                        result.log_excerpt,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise InvalidOperationError(
                f"Result already recorded for job {result.job_id}"
            ) from e
        return result

    def _row_to_result(self, row: sqlite3.Row) -> AutoTestResult:
        """Convert a database row to an AutoTestResult."""
        return AutoTestResult(
            result_id=row["result_id"],
            job_id=row["job_id"],
            target=CommitTarget.from_dict(json.loads(row["target"])),
            state=JobState(row["state"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            container_id=row["container_id"],
            report=json.loads(row["report"]) if row["report"] else None,
            exit_code=row["exit_code"],
            failure=FailureKind(row["failure"]) if row["failure"] else None,
            error=row["error"],
            log_excerpt=row["log_excerpt"],
        )

    def get_result(self, result_id: str) -> Optional[AutoTestResult]:
        """Get a result by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM results WHERE result_id = ?",
                (result_id,),
            ).fetchone()
        return self._row_to_result(row) if row else None

    def get_result_for_job(self, job_id: str) -> Optional[AutoTestResult]:
        """Get the result recorded for a job, if any."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM results WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        return self._row_to_result(row) if row else None

    def get_results_for_repo(
        self, deliverable_id: str, repo_id: str
    ) -> list[AutoTestResult]:
        """All results for a repo and deliverable, ascending by event timestamp."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM results
                WHERE deliverable_id = ? AND repo_id = ?
                ORDER BY target_timestamp ASC, finished_at ASC
                """,
                (deliverable_id, repo_id),
            ).fetchall()
        return [self._row_to_result(row) for row in rows]

    def get_latest_result_for(self, target: CommitTarget) -> Optional[AutoTestResult]:
        """Most recent result for a commit identity."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM results
                WHERE identity_key = ?
                ORDER BY finished_at DESC, rowid DESC
                LIMIT 1
                """,
                (target.identity_key,),
            ).fetchone()
        return self._row_to_result(row) if row else None

    def has_completed_result(self, target: CommitTarget) -> bool:
        """True if the identity already has a SUCCEEDED or FAILED result."""
        states = [s.value for s in COMPLETED_STATES]
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) as count FROM results
                WHERE identity_key = ? AND state IN ({', '.join('?' * len(states))})
                """,
                (target.identity_key, *states),
            ).fetchone()
        return row["count"] > 0

    # =========================================================================
    # Grade Operations (append-only)
    # =========================================================================

    def save_grade(self, grade: Grade) -> Grade:
        """Append a grade. Earlier grades for the same person are retained."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO grades
                (person_id, deliverable_id, score, comment, timestamp, custom,
                 repo_id, result_id, url_name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grade.person_id,
                    grade.deliverable_id,
                    grade.score,
                    grade.comment,
                    grade.timestamp,
                    json.dumps(grade.custom),
                    grade.repo_id,
                    grade.result_id,
                    grade.url_name,
                    now_iso(),
                ),
            )
        return grade

    def _row_to_grade(self, row: sqlite3.Row) -> Grade:
        """Convert a database row to a Grade."""
        return Grade(
            person_id=row["person_id"],
            deliverable_id=row["deliverable_id"],
            score=row["score"],
            comment=row["comment"],
            timestamp=row["timestamp"],
            custom=json.loads(row["custom"]),
            repo_id=row["repo_id"],
            result_id=row["result_id"],
            url_name=row["url_name"],
        )

    def get_grade(self, person_id: str, deliverable_id: str) -> Optional[Grade]:
        """Current (latest) grade for a person and deliverable."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM grades
                WHERE person_id = ? AND deliverable_id = ?
                ORDER BY grade_id DESC
                LIMIT 1
                """,
                (person_id, deliverable_id),
            ).fetchone()
        return self._row_to_grade(row) if row else None

    def get_all_grades(self, deliverable_id: Optional[str] = None) -> list[Grade]:
        """Current grade of every person, optionally for one deliverable."""
        query = """
            SELECT * FROM grades g
            WHERE grade_id = (
                SELECT MAX(grade_id) FROM grades
                WHERE person_id = g.person_id AND deliverable_id = g.deliverable_id
            )
        """
        params: tuple = ()
        if deliverable_id is not None:
            query += " AND deliverable_id = ?"
            params = (deliverable_id,)
        query += " ORDER BY person_id ASC"

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_grade(row) for row in rows]

    def get_grade_history(self, person_id: str, deliverable_id: str) -> list[Grade]:
        """Every grade ever recorded for a person and deliverable, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM grades
                WHERE person_id = ? AND deliverable_id = ?
                ORDER BY grade_id ASC
                """,
                (person_id, deliverable_id),
            ).fetchall()
        return [self._row_to_grade(row) for row in rows]

    # =========================================================================
    # Audit
    # =========================================================================

    def write_audit(
        self,
        kind: str,
        actor: str,
        before: Optional[dict],
        after: Optional[dict],
        meta: dict,
    ) -> int:
        """Append an audit entry and return its id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit (kind, actor, before, after, meta, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    kind,
                    actor,
                    json.dumps(before) if before is not None else None,
                    json.dumps(after) if after is not None else None,
                    json.dumps(meta),
                    now_iso(),
                ),
            )
            return cursor.lastrowid

    def list_audit(self, kind: Optional[str] = None, limit: int = 100) -> list[dict]:
        """Recent audit entries, newest first."""
        query = "SELECT * FROM audit"
        params: tuple = ()
        if kind is not None:
            query += " WHERE kind = ?"
            params = (kind,)
        query += " ORDER BY audit_id DESC LIMIT ?"
        params = params + (limit,)

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            {
                "audit_id": row["audit_id"],
                "kind": row["kind"],
                "actor": row["actor"],
                "before": json.loads(row["before"]) if row["before"] else None,
                "after": json.loads(row["after"]) if row["after"] else None,
                "meta": json.loads(row["meta"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
