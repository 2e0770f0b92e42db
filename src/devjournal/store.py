"""SQLite store for sessions, journal entries, test runs, and learned knowledge.

The database file is the single shared mutable resource. Writers in
different processes are serialized by SQLite itself (WAL mode with
``BEGIN IMMEDIATE`` and a busy timeout); threads inside one process share a
connection guarded by a re-entrant lock.

Default location: $XDG_DATA_HOME/devjournal/journal.db
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Generator, Iterable, Optional

from .models import (
    EntryOutcome,
    EntryType,
    FlakyTest,
    JournalEntry,
    PerformanceOutcome,
    Playbook,
    PlaybookStatus,
    Project,
    ReflectionStatus,
    Session,
    SessionStatus,
    TestResult,
    TestRun,
    TestStatus,
    UniversalPattern,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class JournalError(Exception):
    """Base exception for journal operations."""
    pass


class NotFoundError(JournalError):
    """Raised when a referenced session, project, entry or playbook does not exist."""
    pass


class StorageUnavailableError(JournalError):
    """Raised when the store cannot be opened."""
    pass


def _enum_list(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


class JournalStore:
    """Durable record of all journal state."""

    SCHEMA_VERSION = 1
    BUSY_TIMEOUT_MS = 10000

    def __init__(self, db_path: Path):
        """Open (and if needed create) the store.

        Args:
            db_path: Path to the SQLite database file

        Raises:
            StorageUnavailableError: If the database cannot be opened or initialized
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._last_ts: Optional[datetime] = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection: Optional[sqlite3.Connection] = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # We use our own lock
                isolation_level=None,  # Transactions are explicit
                timeout=self.BUSY_TIMEOUT_MS / 1000,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute(f"PRAGMA busy_timeout = {self.BUSY_TIMEOUT_MS}")
            self._ensure_schema()
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailableError(f"Cannot open journal store at {self.db_path}: {e}") from e
        logger.debug("Opened journal store: %s", self.db_path)

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageUnavailableError(f"Journal store is closed: {self.db_path}")
        return self._connection

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                except sqlite3.Error as e:
                    logger.debug("WAL checkpoint on close failed: %s", e)
                self._connection.close()
                self._connection = None

    def __enter__(self) -> "JournalStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ========== Schema ==========

    def _ensure_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        conn = self.connection
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if cursor.fetchone() is None:
            self._init_schema(conn)
        else:
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            if row is None or row[0] is None or row[0] < self.SCHEMA_VERSION:
                self._migrate_schema(conn, row[0] if row and row[0] else 0)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize the database schema."""
        conn.executescript(f"""
            BEGIN;

            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
            INSERT OR REPLACE INTO schema_version (version) VALUES ({self.SCHEMA_VERSION});

            -- Project catalog (seeded from config/CLI, read by everything else)
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                root_path TEXT NOT NULL UNIQUE,
                primary_language TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL REFERENCES projects(id),
                goal TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                status TEXT NOT NULL DEFAULT 'IN_PROGRESS'
                    CHECK (status IN ({_enum_list(SessionStatus)})),
                outcome_summary TEXT,
                reflection_status TEXT NOT NULL DEFAULT 'PENDING'
                    CHECK (reflection_status IN ({_enum_list(ReflectionStatus)})),
                winning_strategy TEXT,
                time_to_fix_ms INTEGER,
                hypothesis_count INTEGER,
                successful_hypothesis_id INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id, status);
            CREATE INDEX IF NOT EXISTS idx_sessions_reflection ON sessions(reflection_status, status);

            CREATE TABLE IF NOT EXISTS journal_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL REFERENCES projects(id),
                session_id INTEGER REFERENCES sessions(id),
                parent_id INTEGER REFERENCES journal_entries(id),
                entry_type TEXT NOT NULL CHECK (entry_type IN ({_enum_list(EntryType)})),
                timestamp TEXT NOT NULL,        -- ISO 8601 UTC, microseconds
                summary TEXT NOT NULL,
                details TEXT,                   -- JSON object
                git_commit_hash TEXT,
                outcome TEXT CHECK (outcome IN ({_enum_list(EntryOutcome)})),
                strategy_tags TEXT              -- JSON array
            );
            CREATE INDEX IF NOT EXISTS idx_entries_session ON journal_entries(session_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_entries_project ON journal_entries(project_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_entries_type ON journal_entries(entry_type);

            CREATE TABLE IF NOT EXISTS test_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                journal_entry_id INTEGER NOT NULL UNIQUE REFERENCES journal_entries(id),
                status TEXT NOT NULL CHECK (status IN ('PASSED', 'FAILED', 'ERROR')),
                duration_ms INTEGER,
                total_tests INTEGER NOT NULL DEFAULT 0,
                passed_tests INTEGER NOT NULL DEFAULT 0,
                failed_tests INTEGER NOT NULL DEFAULT 0,
                skipped_tests INTEGER NOT NULL DEFAULT 0,
                source_file TEXT,
                framework TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_runs_created ON test_runs(created_at);

            CREATE TABLE IF NOT EXISTS test_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                test_run_id INTEGER NOT NULL REFERENCES test_runs(id),
                test_name TEXT NOT NULL,
                test_file TEXT,
                status TEXT NOT NULL CHECK (status IN ({_enum_list(TestStatus)})),
                duration_ms INTEGER,
                error_message TEXT,
                error_signature TEXT,
                stdout TEXT,
                stderr TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_results_name ON test_results(test_name, test_file);
            CREATE INDEX IF NOT EXISTS idx_results_signature ON test_results(error_signature);

            CREATE TABLE IF NOT EXISTS universal_patterns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                signature TEXT NOT NULL UNIQUE,
                pattern_type TEXT,
                best_strategy TEXT,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                total_occurrences INTEGER NOT NULL DEFAULT 0,
                projects_seen TEXT NOT NULL DEFAULT '[]',   -- JSON array of project ids
                avg_time_to_fix_ms REAL,
                strategy_stats TEXT NOT NULL DEFAULT '{{}}', -- JSON {{tag: count}}
                first_seen TEXT NOT NULL,
                last_seen TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS troubleshooting_playbooks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                error_signature TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                context_summary TEXT,
                symptoms TEXT,
                root_cause TEXT,
                solution_steps TEXT,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                confidence_score REAL NOT NULL DEFAULT 0.5
                    CHECK (confidence_score >= 0 AND confidence_score <= 1),
                status TEXT NOT NULL DEFAULT 'DRAFT'
                    CHECK (status IN ({_enum_list(PlaybookStatus)})),
                source_session_ids TEXT NOT NULL DEFAULT '[]',
                project_id INTEGER REFERENCES projects(id),
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                last_evolved_at TEXT,
                last_decayed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_playbooks_status ON troubleshooting_playbooks(status, confidence_score);

            CREATE TABLE IF NOT EXISTS playbook_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                playbook_id INTEGER NOT NULL REFERENCES troubleshooting_playbooks(id),
                session_id INTEGER REFERENCES sessions(id),
                was_helpful INTEGER NOT NULL,
                feedback TEXT,
                used_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ai_performance_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                hypothesis_count INTEGER NOT NULL DEFAULT 0,
                successful_hypothesis_index INTEGER,
                approach_tags_tried TEXT NOT NULL DEFAULT '[]',
                winning_approach_tag TEXT,
                time_to_first_hypothesis_ms INTEGER,
                time_to_fix_ms INTEGER,
                error_signature TEXT,
                outcome TEXT NOT NULL CHECK (outcome IN ({_enum_list(PerformanceOutcome)})),
                created_at TEXT NOT NULL
            );

            COMMIT;
        """)
        logger.debug("Initialized journal schema v%d in %s", self.SCHEMA_VERSION, self.db_path)

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Migrate schema from an older version."""
        if from_version < 1:
            self._init_schema(conn)

    # ========== Transactions ==========

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block inside one write transaction.

        Re-entrant: nested blocks join the outermost transaction, which
        commits on success and rolls back on any exception.
        """
        with self._lock:
            conn = self.connection
            outermost = self._depth == 0
            if outermost:
                conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    conn.execute("COMMIT")

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchall()

    def _query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchone()

    def _next_timestamp(self, requested: Optional[datetime] = None) -> datetime:
        """Write timestamp that is strictly later than the previous one."""
        ts = requested or utc_now()
        with self._lock:
            if requested is None and self._last_ts is not None and ts <= self._last_ts:
                ts = self._last_ts + timedelta(microseconds=1)
            if self._last_ts is None or ts > self._last_ts:
                self._last_ts = ts
        return ts

    # ========== Projects ==========

    def upsert_project(
        self,
        name: str,
        root_path: str | Path,
        primary_language: Optional[str] = None,
    ) -> Project:
        """Register a project, or update the one with the same name."""
        root = str(Path(root_path).expanduser().resolve())
        with self.transaction() as conn:
            existing = conn.execute("SELECT id FROM projects WHERE name = ?", (name,)).fetchone()
            if existing:
                conn.execute(
                    "UPDATE projects SET root_path = ?, primary_language = COALESCE(?, primary_language) WHERE id = ?",
                    (root, primary_language, existing["id"]),
                )
                project_id = existing["id"]
            else:
                cursor = conn.execute(
                    "INSERT INTO projects (name, root_path, primary_language, created_at) VALUES (?, ?, ?, ?)",
                    (name, root, primary_language, format_timestamp(utc_now())),
                )
                project_id = cursor.lastrowid
        return self.require_project(project_id)

    def get_project(self, project_id: int) -> Optional[Project]:
        row = self._query_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return self._row_to_project(row) if row else None

    def require_project(self, project_id: int) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def get_project_by_path(self, root_path: str | Path) -> Optional[Project]:
        root = str(Path(root_path).expanduser().resolve())
        row = self._query_one("SELECT * FROM projects WHERE root_path = ?", (root,))
        return self._row_to_project(row) if row else None

    def find_project(self, ref: int | str | Path) -> Project:
        """Resolve a project by id, name, or root path.

        Raises:
            NotFoundError: If no project matches
        """
        if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
            project = self.get_project(int(ref))
            if project:
                return project
        if isinstance(ref, str):
            row = self._query_one("SELECT * FROM projects WHERE name = ?", (ref,))
            if row:
                return self._row_to_project(row)
        project = self.get_project_by_path(ref)
        if project is None:
            raise NotFoundError(f"Project not found: {ref}")
        return project

    def list_projects(self) -> list[Project]:
        return [self._row_to_project(r) for r in self._query("SELECT * FROM projects ORDER BY name")]

    # ========== Sessions ==========

    def create_session(self, project_id: int, goal: str) -> Session:
        """Insert a new IN_PROGRESS session."""
        self.require_project(project_id)
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO sessions (project_id, goal, start_time) VALUES (?, ?, ?)",
                (project_id, goal, format_timestamp(self._next_timestamp())),
            )
            session_id = cursor.lastrowid
        return self.require_session(session_id)

    def get_session(self, session_id: int) -> Optional[Session]:
        row = self._query_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    def require_session(self, session_id: int) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def get_active_session(self, project_id: int) -> Optional[Session]:
        """Most recent IN_PROGRESS session for a project."""
        row = self._query_one(
            "SELECT * FROM sessions WHERE project_id = ? AND status = ? ORDER BY start_time DESC, id DESC LIMIT 1",
            (project_id, SessionStatus.IN_PROGRESS.value),
        )
        return self._row_to_session(row) if row else None

    def list_sessions(
        self,
        limit: int = 20,
        project_id: Optional[int] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        conditions = []
        params: list[Any] = []
        if project_id is not None:
            conditions.append("project_id = ?")
            params.append(project_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
        params.append(limit)
        rows = self._query(
            f"SELECT * FROM sessions {where_clause} ORDER BY start_time DESC, id DESC LIMIT ?",
            params,
        )
        return [self._row_to_session(r) for r in rows]

    def finish_session(
        self,
        session_id: int,
        status: SessionStatus,
        summary: Optional[str] = None,
        fix_entry_id: Optional[int] = None,
        reflection_status: ReflectionStatus = ReflectionStatus.PENDING,
    ) -> Session:
        """Transition a session out of IN_PROGRESS.

        Raises:
            NotFoundError: If the session does not exist
        """
        with self.transaction() as conn:
            self.require_session(session_id)
            conn.execute(
                """
                UPDATE sessions
                SET end_time = ?, status = ?, outcome_summary = ?, reflection_status = ?,
                    successful_hypothesis_id = COALESCE(?, successful_hypothesis_id)
                WHERE id = ?
                """,
                (
                    format_timestamp(self._next_timestamp()),
                    status.value,
                    summary,
                    reflection_status.value,
                    fix_entry_id,
                    session_id,
                ),
            )
        return self.require_session(session_id)

    def mark_session_analyzed(
        self,
        session_id: int,
        winning_strategy: Optional[str],
        time_to_fix_ms: Optional[int],
        hypothesis_count: int,
        successful_hypothesis_id: Optional[int],
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE sessions
                SET reflection_status = ?, winning_strategy = ?, time_to_fix_ms = ?,
                    hypothesis_count = ?, successful_hypothesis_id = ?
                WHERE id = ?
                """,
                (
                    ReflectionStatus.ANALYZED.value,
                    winning_strategy,
                    time_to_fix_ms,
                    hypothesis_count,
                    successful_hypothesis_id,
                    session_id,
                ),
            )

    def set_reflection_status(self, session_id: int, status: ReflectionStatus) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET reflection_status = ? WHERE id = ?",
                (status.value, session_id),
            )

    def pending_reflection_sessions(self) -> list[Session]:
        """COMPLETED sessions awaiting reflection, oldest first."""
        rows = self._query(
            "SELECT * FROM sessions WHERE status = ? AND reflection_status = ? ORDER BY end_time, id",
            (SessionStatus.COMPLETED.value, ReflectionStatus.PENDING.value),
        )
        return [self._row_to_session(r) for r in rows]

    # ========== Journal Entries ==========

    def append_entry(
        self,
        project_id: int,
        entry_type: EntryType,
        summary: str,
        session_id: Optional[int] = None,
        parent_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        git_commit_hash: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> int:
        """Append an immutable journal entry.

        Args:
            project_id: Owning project
            entry_type: Entry type
            summary: Human-readable summary
            session_id: Owning session, if any
            parent_id: Parent entry in the reasoning tree
            details: Structured payload (stored as JSON)
            git_commit_hash: Commit the entry refers to
            timestamp: Explicit timestamp (defaults to a monotonic now)

        Returns:
            The new entry id

        Raises:
            NotFoundError: If the project, session, or parent does not exist
        """
        with self.transaction() as conn:
            self.require_project(project_id)
            if session_id is not None:
                self.require_session(session_id)
            if parent_id is not None and self.get_entry(parent_id) is None:
                raise NotFoundError(f"Parent entry not found: {parent_id}")
            cursor = conn.execute(
                """
                INSERT INTO journal_entries (
                    project_id, session_id, parent_id, entry_type, timestamp,
                    summary, details, git_commit_hash
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    session_id,
                    parent_id,
                    entry_type.value,
                    format_timestamp(self._next_timestamp(timestamp)),
                    summary,
                    json.dumps(details, default=str) if details is not None else None,
                    git_commit_hash,
                ),
            )
            return cursor.lastrowid

    def get_entry(self, entry_id: int) -> Optional[JournalEntry]:
        row = self._query_one("SELECT * FROM journal_entries WHERE id = ?", (entry_id,))
        return self._row_to_entry(row) if row else None

    def require_entry(self, entry_id: int) -> JournalEntry:
        entry = self.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Journal entry not found: {entry_id}")
        return entry

    def session_entries(self, session_id: int) -> list[JournalEntry]:
        """All entries of a session in chronological order."""
        rows = self._query(
            "SELECT * FROM journal_entries WHERE session_id = ? ORDER BY timestamp, id",
            (session_id,),
        )
        return [self._row_to_entry(r) for r in rows]

    def recent_entries(
        self,
        limit: int = 50,
        entry_type: Optional[EntryType] = None,
        project_id: Optional[int] = None,
        session_id: Optional[int] = None,
    ) -> list[JournalEntry]:
        """Newest entries first, optionally filtered."""
        conditions = []
        params: list[Any] = []
        if entry_type is not None:
            conditions.append("entry_type = ?")
            params.append(entry_type.value)
        if project_id is not None:
            conditions.append("project_id = ?")
            params.append(project_id)
        if session_id is not None:
            conditions.append("session_id = ?")
            params.append(session_id)
        where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
        params.append(limit)
        rows = self._query(
            f"SELECT * FROM journal_entries {where_clause} ORDER BY timestamp DESC, id DESC LIMIT ?",
            params,
        )
        return [self._row_to_entry(r) for r in rows]

    def annotate_entry(
        self,
        entry_id: int,
        outcome: EntryOutcome,
        strategy_tags: list[str],
    ) -> None:
        """Write reflection results onto an entry.

        Only outcome and strategy tags change; summary and details are never touched.
        """
        with self.transaction() as conn:
            conn.execute(
                "UPDATE journal_entries SET outcome = ?, strategy_tags = ? WHERE id = ?",
                (outcome.value, json.dumps(strategy_tags), entry_id),
            )

    # ========== Test Runs ==========

    def record_test_run(
        self,
        project_id: int,
        run: TestRun,
        session_id: Optional[int] = None,
        results: Optional[list[TestResult]] = None,
        timestamp: Optional[datetime] = None,
    ) -> TestRun:
        """Store a test run with its TEST_RUN journal entry.

        Entry, run row, and results are written in one transaction.
        """
        with self.transaction() as conn:
            summary = f"Test run: {run.status.value} ({run.passed_tests}/{run.total_tests} passed)"
            details = {
                "status": run.status.value,
                "total_tests": run.total_tests,
                "passed_tests": run.passed_tests,
                "failed_tests": run.failed_tests,
                "skipped_tests": run.skipped_tests,
                "duration_ms": run.duration_ms,
                "source_file": run.source_file,
                "framework": run.framework,
            }
            entry_id = self.append_entry(
                project_id,
                EntryType.TEST_RUN,
                summary,
                session_id=session_id,
                details=details,
                timestamp=timestamp,
            )
            created_at = self.require_entry(entry_id).timestamp
            cursor = conn.execute(
                """
                INSERT INTO test_runs (
                    journal_entry_id, status, duration_ms, total_tests, passed_tests,
                    failed_tests, skipped_tests, source_file, framework, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    run.status.value,
                    run.duration_ms,
                    run.total_tests,
                    run.passed_tests,
                    run.failed_tests,
                    run.skipped_tests,
                    run.source_file,
                    run.framework,
                    format_timestamp(created_at),
                ),
            )
            run.id = cursor.lastrowid
            run.journal_entry_id = entry_id
            run.created_at = created_at
            if results:
                self.record_test_results(run.id, results)
        return run

    def record_test_results(self, run_id: int, results: list[TestResult]) -> None:
        with self.transaction() as conn:
            if self._query_one("SELECT id FROM test_runs WHERE id = ?", (run_id,)) is None:
                raise NotFoundError(f"Test run not found: {run_id}")
            for result in results:
                cursor = conn.execute(
                    """
                    INSERT INTO test_results (
                        test_run_id, test_name, test_file, status, duration_ms,
                        error_message, error_signature, stdout, stderr
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        result.test_name,
                        result.test_file,
                        result.status.value,
                        result.duration_ms,
                        result.error_message,
                        result.error_signature,
                        result.stdout,
                        result.stderr,
                    ),
                )
                result.id = cursor.lastrowid
                result.test_run_id = run_id

    def get_test_run(self, run_id: int) -> Optional[TestRun]:
        row = self._query_one("SELECT * FROM test_runs WHERE id = ?", (run_id,))
        return self._row_to_run(row) if row else None

    def test_results_for_run(self, run_id: int) -> list[TestResult]:
        rows = self._query("SELECT * FROM test_results WHERE test_run_id = ? ORDER BY id", (run_id,))
        return [self._row_to_result(r) for r in rows]

    def flaky_tests(
        self,
        window_days: int = 30,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> list[FlakyTest]:
        """Tests with both PASSED and FAILED results in the trailing window.

        Ordered by flakiness, most flaky first.
        """
        since = (now or utc_now()) - timedelta(days=window_days)
        rows = self._query(
            """
            SELECT r.test_name, r.test_file,
                   SUM(CASE WHEN r.status = 'PASSED' THEN 1 ELSE 0 END) AS passes,
                   SUM(CASE WHEN r.status = 'FAILED' THEN 1 ELSE 0 END) AS failures
            FROM test_results r
            JOIN test_runs t ON t.id = r.test_run_id
            WHERE t.created_at >= ? AND r.status IN ('PASSED', 'FAILED')
            GROUP BY r.test_name, COALESCE(r.test_file, '')
            HAVING passes > 0 AND failures > 0
            """,
            (format_timestamp(since),),
        )
        flaky = [FlakyTest(r["test_name"], r["test_file"], r["passes"], r["failures"]) for r in rows]
        flaky.sort(key=lambda f: (-f.flakiness_pct, f.test_name))
        return flaky[:limit]

    # ========== Universal Patterns ==========

    def get_pattern(self, signature: str) -> Optional[UniversalPattern]:
        row = self._query_one("SELECT * FROM universal_patterns WHERE signature = ?", (signature,))
        return self._row_to_pattern(row) if row else None

    def save_pattern(self, pattern: UniversalPattern) -> UniversalPattern:
        """Insert or update a pattern row keyed by signature."""
        now = format_timestamp(utc_now())
        with self.transaction() as conn:
            params = (
                pattern.pattern_type,
                pattern.best_strategy,
                pattern.success_count,
                pattern.failure_count,
                pattern.total_occurrences,
                json.dumps(sorted(pattern.projects_seen)),
                pattern.avg_time_to_fix_ms,
                json.dumps(pattern.strategy_stats, sort_keys=True),
            )
            if pattern.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO universal_patterns (
                        pattern_type, best_strategy, success_count, failure_count,
                        total_occurrences, projects_seen, avg_time_to_fix_ms, strategy_stats,
                        signature, first_seen, last_seen
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params + (pattern.signature, now, now),
                )
                pattern.id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE universal_patterns
                    SET pattern_type = ?, best_strategy = ?, success_count = ?, failure_count = ?,
                        total_occurrences = ?, projects_seen = ?, avg_time_to_fix_ms = ?,
                        strategy_stats = ?, last_seen = ?
                    WHERE id = ?
                    """,
                    params + (now, pattern.id),
                )
        return self.get_pattern(pattern.signature)

    def find_patterns(self, signature: str, limit: int = 5) -> list[UniversalPattern]:
        """Exact signature match first, then substring matches by occurrences."""
        exact = self.get_pattern(signature)
        results = [exact] if exact else []
        rows = self._query(
            """
            SELECT * FROM universal_patterns
            WHERE signature != ? AND (instr(signature, ?) > 0 OR instr(?, signature) > 0)
            ORDER BY total_occurrences DESC, success_count DESC
            LIMIT ?
            """,
            (signature, signature, signature, limit),
        )
        results.extend(self._row_to_pattern(r) for r in rows)
        return results[:limit]

    def list_patterns(self, limit: int = 20) -> list[UniversalPattern]:
        rows = self._query(
            "SELECT * FROM universal_patterns ORDER BY total_occurrences DESC, success_count DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_pattern(r) for r in rows]

    def pattern_signatures(self) -> list[str]:
        return [r[0] for r in self._query("SELECT signature FROM universal_patterns")]

    def playbook_signatures(self, include_drafts: bool = False) -> list[str]:
        """Signatures of playbooks that lookups may return."""
        statuses = [PlaybookStatus.ACTIVE.value]
        if include_drafts:
            statuses.append(PlaybookStatus.DRAFT.value)
        marks = ", ".join("?" for _ in statuses)
        rows = self._query(
            f"SELECT error_signature FROM troubleshooting_playbooks WHERE status IN ({marks})",
            statuses,
        )
        return [r[0] for r in rows]

    # ========== Playbooks ==========

    def get_playbook(self, playbook_id: int) -> Optional[Playbook]:
        row = self._query_one("SELECT * FROM troubleshooting_playbooks WHERE id = ?", (playbook_id,))
        return self._row_to_playbook(row) if row else None

    def require_playbook(self, playbook_id: int) -> Playbook:
        playbook = self.get_playbook(playbook_id)
        if playbook is None:
            raise NotFoundError(f"Playbook not found: {playbook_id}")
        return playbook

    def get_playbook_by_signature(self, signature: str) -> Optional[Playbook]:
        row = self._query_one(
            "SELECT * FROM troubleshooting_playbooks WHERE error_signature = ?", (signature,)
        )
        return self._row_to_playbook(row) if row else None

    def find_playbooks(
        self,
        signature: str,
        limit: int = 5,
        include_drafts: bool = False,
    ) -> list[Playbook]:
        """Non-archived playbooks by exact, then substring, signature match."""
        statuses = [PlaybookStatus.ACTIVE.value]
        if include_drafts:
            statuses.append(PlaybookStatus.DRAFT.value)
        marks = ", ".join("?" for _ in statuses)
        exact = self._query(
            f"SELECT * FROM troubleshooting_playbooks WHERE error_signature = ? AND status IN ({marks})",
            [signature, *statuses],
        )
        partial = self._query(
            f"""
            SELECT * FROM troubleshooting_playbooks
            WHERE error_signature != ? AND status IN ({marks})
              AND (instr(error_signature, ?) > 0 OR instr(?, error_signature) > 0)
            ORDER BY confidence_score DESC
            LIMIT ?
            """,
            [signature, *statuses, signature, signature, limit],
        )
        return [self._row_to_playbook(r) for r in [*exact, *partial]][:limit]

    def trusted_playbooks(self, min_confidence: float = 0.7, limit: int = 20) -> list[Playbook]:
        rows = self._query(
            """
            SELECT * FROM troubleshooting_playbooks
            WHERE status = ? AND confidence_score >= ?
            ORDER BY confidence_score DESC, success_count DESC
            LIMIT ?
            """,
            (PlaybookStatus.ACTIVE.value, min_confidence, limit),
        )
        return [self._row_to_playbook(r) for r in rows]

    def list_playbooks(self, status: Optional[PlaybookStatus] = None, limit: int = 50) -> list[Playbook]:
        if status is None:
            rows = self._query(
                "SELECT * FROM troubleshooting_playbooks ORDER BY confidence_score DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._query(
                "SELECT * FROM troubleshooting_playbooks WHERE status = ? ORDER BY confidence_score DESC LIMIT ?",
                (status.value, limit),
            )
        return [self._row_to_playbook(r) for r in rows]

    def create_playbook(
        self,
        error_signature: str,
        title: str,
        context_summary: Optional[str] = None,
        solution_steps: Optional[str] = None,
        success_count: int = 1,
        confidence_score: float = 0.6,
        status: PlaybookStatus = PlaybookStatus.DRAFT,
        source_session_ids: Optional[list[int]] = None,
        project_id: Optional[int] = None,
    ) -> Playbook:
        now = format_timestamp(utc_now())
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO troubleshooting_playbooks (
                    error_signature, title, context_summary, solution_steps, success_count,
                    confidence_score, status, source_session_ids, project_id, created_at, last_evolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    error_signature,
                    title,
                    context_summary,
                    solution_steps,
                    success_count,
                    confidence_score,
                    status.value,
                    json.dumps(source_session_ids or []),
                    project_id,
                    now,
                    now,
                ),
            )
            playbook_id = cursor.lastrowid
        return self.require_playbook(playbook_id)

    def save_playbook_evidence(
        self,
        playbook_id: int,
        success_count: int,
        failure_count: int,
        confidence_score: float,
        source_session_ids: list[int],
        used_at: datetime,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE troubleshooting_playbooks
                SET success_count = ?, failure_count = ?, confidence_score = ?,
                    source_session_ids = ?, last_used_at = ?, last_evolved_at = ?
                WHERE id = ?
                """,
                (
                    success_count,
                    failure_count,
                    confidence_score,
                    json.dumps(source_session_ids),
                    format_timestamp(used_at),
                    format_timestamp(used_at),
                    playbook_id,
                ),
            )

    def set_playbook_status(self, playbook_id: int, status: PlaybookStatus) -> Playbook:
        with self.transaction() as conn:
            self.require_playbook(playbook_id)
            conn.execute(
                "UPDATE troubleshooting_playbooks SET status = ? WHERE id = ?",
                (status.value, playbook_id),
            )
        return self.require_playbook(playbook_id)

    def log_playbook_usage(
        self,
        playbook_id: int,
        was_helpful: bool,
        session_id: Optional[int] = None,
        feedback: Optional[str] = None,
        used_at: Optional[datetime] = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO playbook_usage_log (playbook_id, session_id, was_helpful, feedback, used_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (playbook_id, session_id, int(was_helpful), feedback, format_timestamp(used_at or utc_now())),
            )

    def playbook_usage(self, playbook_id: int) -> list[dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM playbook_usage_log WHERE playbook_id = ? ORDER BY used_at, id", (playbook_id,)
        )
        return [dict(r) for r in rows]

    def decay_stale_playbooks(
        self,
        factor: float,
        stale_before: datetime,
        decayed_before: datetime,
        now: datetime,
    ) -> int:
        """Multiply confidence of idle ACTIVE playbooks by ``factor``.

        A playbook decays only when its last use (or creation) is older than
        ``stale_before`` and it has not been decayed since ``decayed_before``.

        Returns:
            Number of playbooks decayed
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE troubleshooting_playbooks
                SET confidence_score = confidence_score * ?, last_decayed_at = ?
                WHERE status = ?
                  AND COALESCE(last_used_at, created_at) <= ?
                  AND (last_decayed_at IS NULL OR last_decayed_at <= ?)
                """,
                (
                    factor,
                    format_timestamp(now),
                    PlaybookStatus.ACTIVE.value,
                    format_timestamp(stale_before),
                    format_timestamp(decayed_before),
                ),
            )
            return cursor.rowcount

    def promote_draft_playbooks(self, min_confidence: float, min_successes: int) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE troubleshooting_playbooks SET status = ?
                WHERE status = ? AND confidence_score >= ? AND success_count >= ?
                """,
                (PlaybookStatus.ACTIVE.value, PlaybookStatus.DRAFT.value, min_confidence, min_successes),
            )
            return cursor.rowcount

    def archive_low_confidence_playbooks(self, floor: float, min_evidence: int) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE troubleshooting_playbooks SET status = ?
                WHERE status != ? AND confidence_score < ?
                  AND (success_count + failure_count) >= ?
                """,
                (PlaybookStatus.ARCHIVED.value, PlaybookStatus.ARCHIVED.value, floor, min_evidence),
            )
            return cursor.rowcount

    # ========== AI Performance ==========

    def log_ai_performance(
        self,
        session_id: int,
        hypothesis_count: int,
        successful_hypothesis_index: Optional[int],
        approach_tags_tried: list[str],
        winning_approach_tag: Optional[str],
        time_to_first_hypothesis_ms: Optional[int],
        time_to_fix_ms: Optional[int],
        error_signature: Optional[str],
        outcome: PerformanceOutcome,
    ) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ai_performance_log (
                    session_id, hypothesis_count, successful_hypothesis_index, approach_tags_tried,
                    winning_approach_tag, time_to_first_hypothesis_ms, time_to_fix_ms,
                    error_signature, outcome, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    hypothesis_count,
                    successful_hypothesis_index,
                    json.dumps(approach_tags_tried),
                    winning_approach_tag,
                    time_to_first_hypothesis_ms,
                    time_to_fix_ms,
                    error_signature,
                    outcome.value,
                    format_timestamp(utc_now()),
                ),
            )
            return cursor.lastrowid

    def ai_performance_records(self, session_id: Optional[int] = None) -> list[dict[str, Any]]:
        if session_id is None:
            rows = self._query("SELECT * FROM ai_performance_log ORDER BY id")
        else:
            rows = self._query("SELECT * FROM ai_performance_log WHERE session_id = ? ORDER BY id", (session_id,))
        records = []
        for row in rows:
            record = dict(row)
            record["approach_tags_tried"] = json.loads(record["approach_tags_tried"] or "[]")
            records.append(record)
        return records

    # ========== Statistics ==========

    def top_strategies(self, min_uses: int = 3, limit: int = 5) -> list[dict[str, Any]]:
        """Strategy tags ranked by success rate over annotated hypotheses."""
        rows = self._query(
            """
            SELECT tag.value AS strategy,
                   COUNT(*) AS uses,
                   SUM(CASE WHEN e.outcome = 'SUCCESS' THEN 1 ELSE 0 END) AS successes
            FROM journal_entries e, json_each(e.strategy_tags) AS tag
            WHERE e.entry_type = 'AI_HYPOTHESIS' AND e.outcome IS NOT NULL
            GROUP BY tag.value
            HAVING uses >= ?
            ORDER BY CAST(successes AS REAL) / uses DESC, uses DESC
            LIMIT ?
            """,
            (min_uses, limit),
        )
        return [
            {
                "strategy": r["strategy"],
                "uses": r["uses"],
                "successes": r["successes"],
                "success_rate": round(r["successes"] / r["uses"] * 100, 1),
            }
            for r in rows
        ]

    def journal_stats(self) -> dict[str, Any]:
        """Session counts, test pass rate, and top strategies."""
        stats: dict[str, Any] = {}

        rows = self._query("SELECT status, COUNT(*) FROM sessions GROUP BY status")
        by_status = {r[0]: r[1] for r in rows}
        stats["sessions"] = {
            "total": sum(by_status.values()),
            **{s.value.lower(): by_status.get(s.value, 0) for s in SessionStatus},
        }

        stats["entries"] = self._query_one("SELECT COUNT(*) FROM journal_entries")[0]

        row = self._query_one(
            "SELECT COUNT(*), SUM(CASE WHEN status = 'PASSED' THEN 1 ELSE 0 END) FROM test_runs"
        )
        total_runs, passed_runs = row[0], row[1] or 0
        stats["test_runs"] = {
            "total": total_runs,
            "passed": passed_runs,
            "pass_rate": round(passed_runs / total_runs * 100, 1) if total_runs else None,
        }

        stats["patterns"] = self._query_one("SELECT COUNT(*) FROM universal_patterns")[0]
        rows = self._query("SELECT status, COUNT(*) FROM troubleshooting_playbooks GROUP BY status")
        stats["playbooks"] = {r[0].lower(): r[1] for r in rows}
        stats["top_strategies"] = self.top_strategies()
        return stats

    def ai_performance_stats(self) -> dict[str, Any]:
        """Hypothesis efficiency across analyzed sessions."""
        row = self._query_one(
            """
            SELECT COUNT(*) AS sessions,
                   AVG(hypothesis_count) AS avg_hypotheses,
                   SUM(CASE WHEN successful_hypothesis_index = 1 THEN 1 ELSE 0 END) AS first_try,
                   SUM(CASE WHEN outcome = 'FIXED' THEN 1 ELSE 0 END) AS fixed,
                   AVG(CASE WHEN outcome = 'FIXED' THEN time_to_fix_ms END) AS avg_time_to_fix_ms
            FROM ai_performance_log
            """
        )
        sessions = row["sessions"]
        fixed = row["fixed"] or 0
        winners = self._query(
            """
            SELECT winning_approach_tag AS strategy, COUNT(*) AS wins
            FROM ai_performance_log
            WHERE winning_approach_tag IS NOT NULL
            GROUP BY winning_approach_tag
            ORDER BY wins DESC, strategy
            LIMIT 5
            """
        )
        return {
            "sessions_analyzed": sessions,
            "fixed": fixed,
            "avg_hypotheses_per_session": round(row["avg_hypotheses"], 2) if row["avg_hypotheses"] is not None else None,
            "first_hypothesis_success_rate": round((row["first_try"] or 0) / fixed * 100, 1) if fixed else None,
            "avg_time_to_fix_ms": int(row["avg_time_to_fix_ms"]) if row["avg_time_to_fix_ms"] is not None else None,
            "top_winning_strategies": [dict(r) for r in winners],
        }

    # ========== Row conversion ==========

    @staticmethod
    def _json(value: Optional[str], default: Any) -> Any:
        if not value:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default

    @staticmethod
    def _dt(value: Optional[str]) -> Optional[datetime]:
        return parse_timestamp(value) if value else None

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            root_path=row["root_path"],
            primary_language=row["primary_language"],
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            project_id=row["project_id"],
            goal=row["goal"],
            start_time=parse_timestamp(row["start_time"]),
            end_time=self._dt(row["end_time"]),
            status=SessionStatus(row["status"]),
            reflection_status=ReflectionStatus(row["reflection_status"]),
            outcome_summary=row["outcome_summary"],
            winning_strategy=row["winning_strategy"],
            time_to_fix_ms=row["time_to_fix_ms"],
            hypothesis_count=row["hypothesis_count"],
            successful_hypothesis_id=row["successful_hypothesis_id"],
        )

    def _row_to_entry(self, row: sqlite3.Row) -> JournalEntry:
        return JournalEntry(
            id=row["id"],
            project_id=row["project_id"],
            session_id=row["session_id"],
            parent_id=row["parent_id"],
            entry_type=EntryType(row["entry_type"]),
            timestamp=parse_timestamp(row["timestamp"]),
            summary=row["summary"],
            details=self._json(row["details"], None),
            git_commit_hash=row["git_commit_hash"],
            outcome=EntryOutcome(row["outcome"]) if row["outcome"] else None,
            strategy_tags=self._json(row["strategy_tags"], []),
        )

    def _row_to_run(self, row: sqlite3.Row) -> TestRun:
        run = TestRun(
            total_tests=row["total_tests"],
            passed_tests=row["passed_tests"],
            failed_tests=row["failed_tests"],
            skipped_tests=row["skipped_tests"],
            duration_ms=row["duration_ms"],
            source_file=row["source_file"],
            framework=row["framework"],
            id=row["id"],
            journal_entry_id=row["journal_entry_id"],
            created_at=parse_timestamp(row["created_at"]),
        )
        return run

    def _row_to_result(self, row: sqlite3.Row) -> TestResult:
        return TestResult(
            id=row["id"],
            test_run_id=row["test_run_id"],
            test_name=row["test_name"],
            test_file=row["test_file"],
            status=TestStatus(row["status"]),
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            error_signature=row["error_signature"],
            stdout=row["stdout"],
            stderr=row["stderr"],
        )

    def _row_to_pattern(self, row: sqlite3.Row) -> UniversalPattern:
        return UniversalPattern(
            id=row["id"],
            signature=row["signature"],
            pattern_type=row["pattern_type"],
            best_strategy=row["best_strategy"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            total_occurrences=row["total_occurrences"],
            projects_seen=self._json(row["projects_seen"], []),
            strategy_stats=self._json(row["strategy_stats"], {}),
            avg_time_to_fix_ms=row["avg_time_to_fix_ms"],
            first_seen=self._dt(row["first_seen"]),
            last_seen=self._dt(row["last_seen"]),
        )

    def _row_to_playbook(self, row: sqlite3.Row) -> Playbook:
        return Playbook(
            id=row["id"],
            error_signature=row["error_signature"],
            title=row["title"],
            context_summary=row["context_summary"],
            symptoms=row["symptoms"],
            root_cause=row["root_cause"],
            solution_steps=row["solution_steps"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            confidence_score=row["confidence_score"],
            status=PlaybookStatus(row["status"]),
            source_session_ids=self._json(row["source_session_ids"], []),
            project_id=row["project_id"],
            created_at=parse_timestamp(row["created_at"]),
            last_used_at=self._dt(row["last_used_at"]),
            last_evolved_at=self._dt(row["last_evolved_at"]),
            last_decayed_at=self._dt(row["last_decayed_at"]),
        )
