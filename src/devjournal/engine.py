"""Core journal engine - session lifecycle, logging, and learned-knowledge queries."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .config import JournalConfig
from .locking import locked_atomic_write
from .models import (
    DetectedChange,
    EntryType,
    FlakyTest,
    JournalEntry,
    Playbook,
    PlaybookStatus,
    Project,
    ReflectionStatus,
    Session,
    SessionStatus,
    SweepReport,
    UniversalPattern,
    format_timestamp,
)
from .ingest import IngestResult, ReportParseError, TestReportIngestor
from .reflector import ReflectionResult, Reflector
from .signatures import best_match, generate_error_signature
from .store import JournalError, JournalStore, NotFoundError, StorageUnavailableError
from .strategies import StrategyClassifier

__all__ = [
    "JournalEngine",
    "JournalError",
    "NotFoundError",
    "ReportParseError",
    "SessionConflictError",
    "StorageUnavailableError",
]

logger = logging.getLogger(__name__)


class SessionConflictError(JournalError):
    """Raised when a project already has a session in progress."""
    pass


class JournalEngine:
    """Core engine wiring the store, strategy classifier, and reflector."""

    def __init__(self, config: Optional[JournalConfig] = None, store: Optional[JournalStore] = None):
        self.config = config or JournalConfig()
        self.store = store or JournalStore(self.config.db_path)
        self.classifier = StrategyClassifier(
            patterns=self.config.strategy_patterns,
            classify_hook=self.config.hooks.get("classify_strategy"),
        )
        self.reflector = Reflector(
            self.store,
            classifier=self.classifier,
            settings=self.config.reflection,
            hooks=self.config.hooks,
        )
        for seed in self.config.projects:
            self.store.upsert_project(seed.name, seed.path, seed.language)

    def close(self) -> None:
        self.store.close()

    # ========== Projects ==========

    def add_project(self, name: str, root_path: str | Path, language: Optional[str] = None) -> Project:
        return self.store.upsert_project(name, root_path, language)

    def resolve_project(self, ref: int | str | Path) -> Project:
        """Project by id, name, or root path (NotFoundError if unknown)."""
        return self.store.find_project(ref)

    def list_projects(self) -> list[Project]:
        return self.store.list_projects()

    # ========== Sessions ==========

    def start_session(self, project: int | str | Path, goal: str) -> Session:
        """Open a work session for a project.

        Args:
            project: Project id, name, or root path
            goal: What the session is trying to achieve

        Returns:
            The new IN_PROGRESS session

        Raises:
            NotFoundError: If the project is unknown
            SessionConflictError: If the project already has a session in progress
        """
        proj = self.resolve_project(project)
        with self.store.transaction():
            active = self.store.get_active_session(proj.id)
            if active is not None:
                raise SessionConflictError(
                    f"Project {proj.name} already has session {active.id} in progress"
                )
            session = self.store.create_session(proj.id, goal)
            self.store.append_entry(
                proj.id,
                EntryType.SESSION_START,
                f"Session started: {goal}",
                session_id=session.id,
                details={"goal": goal},
            )
        logger.info("Started session %s for %s: %s", session.id, proj.name, goal)
        return session

    def end_session(
        self,
        session_id: int,
        outcome: SessionStatus = SessionStatus.COMPLETED,
        summary: Optional[str] = None,
        fix_entry_id: Optional[int] = None,
    ) -> Session:
        """Close a session and, for COMPLETED sessions, reflect on it.

        Reflection runs after the session is closed and in its own
        transaction, so a reflection failure never undoes the close.

        Args:
            session_id: Session to end
            outcome: COMPLETED or ABANDONED
            summary: Free-text outcome summary
            fix_entry_id: Entry known to be the fix (authoritative for reflection)

        Raises:
            NotFoundError: If the session or fix entry does not exist
            JournalError: If outcome is IN_PROGRESS or the session already ended
        """
        if outcome == SessionStatus.IN_PROGRESS:
            raise JournalError("A session cannot be ended as IN_PROGRESS")

        with self.store.transaction():
            session = self.store.require_session(session_id)
            if session.status != SessionStatus.IN_PROGRESS:
                raise JournalError(f"Session {session_id} already ended as {session.status.value}")
            if fix_entry_id is not None:
                self.store.require_entry(fix_entry_id)

            reflection = ReflectionStatus.PENDING
            if outcome == SessionStatus.ABANDONED:
                reflection = ReflectionStatus.SKIPPED

            self.store.append_entry(
                session.project_id,
                EntryType.SESSION_END,
                f"Session ended: {outcome.value}" + (f" - {summary}" if summary else ""),
                session_id=session_id,
                details={"outcome": outcome.value, "summary": summary, "fix_entry_id": fix_entry_id},
            )
            session = self.store.finish_session(
                session_id,
                outcome,
                summary=summary,
                fix_entry_id=fix_entry_id,
                reflection_status=reflection,
            )
        logger.info("Ended session %s as %s", session_id, outcome.value)

        if outcome == SessionStatus.COMPLETED and self.config.reflection.reflect_on_end:
            try:
                self.reflector.reflect_on_session(session_id)
            except Exception:
                # Session stays PENDING; the maintenance sweep retries it
                logger.exception("Reflection failed for session %s", session_id)
            session = self.store.require_session(session_id)
        return session

    def get_session(self, session_id: int) -> Session:
        return self.store.require_session(session_id)

    def active_session(self, project: int | str | Path) -> Optional[Session]:
        """The in-progress session of a project, if any."""
        return self.store.get_active_session(self.resolve_project(project).id)

    def list_sessions(
        self,
        limit: int = 20,
        project: Optional[int | str | Path] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        project_id = self.resolve_project(project).id if project is not None else None
        return self.store.list_sessions(limit=limit, project_id=project_id, status=status)

    def session_entries(self, session_id: int) -> list[JournalEntry]:
        self.store.require_session(session_id)
        return self.store.session_entries(session_id)

    # ========== Journal Entries ==========

    def log_entry(
        self,
        entry_type: EntryType,
        summary: str,
        session_id: Optional[int] = None,
        project: Optional[int | str | Path] = None,
        details: Optional[dict[str, Any]] = None,
        parent_id: Optional[int] = None,
        git_commit_hash: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> JournalEntry:
        """Append a journal entry.

        The owning project comes from the session when one is given;
        session-less entries need an explicit project.

        Raises:
            NotFoundError: If the session, project, or parent is unknown
            JournalError: If neither session nor project is given
        """
        if session_id is not None:
            project_id = self.store.require_session(session_id).project_id
        elif project is not None:
            project_id = self.resolve_project(project).id
        else:
            raise JournalError("A journal entry needs a session or a project")

        entry_id = self.store.append_entry(
            project_id,
            entry_type,
            summary,
            session_id=session_id,
            parent_id=parent_id,
            details=details,
            git_commit_hash=git_commit_hash,
            timestamp=timestamp,
        )
        entry = self.store.require_entry(entry_id)
        if "post_append" in self.config.hooks:
            self.config.hooks["post_append"](entry)
        return entry

    def log_hypothesis(self, session_id: int, hypothesis: str, **kwargs: Any) -> JournalEntry:
        return self.log_entry(EntryType.AI_HYPOTHESIS, hypothesis, session_id=session_id, **kwargs)

    def log_tool_call(
        self,
        session_id: int,
        tool: str,
        arguments: Optional[dict[str, Any]] = None,
        result: Optional[str] = None,
        parent_id: Optional[int] = None,
    ) -> JournalEntry:
        return self.log_entry(
            EntryType.AI_TOOL_CALL,
            f"Tool call: {tool}",
            session_id=session_id,
            parent_id=parent_id,
            details={"tool": tool, "arguments": arguments, "result": result},
        )

    def log_observation(self, session_id: int, observation: str, **kwargs: Any) -> JournalEntry:
        return self.log_entry(EntryType.AI_OBSERVATION, observation, session_id=session_id, **kwargs)

    def log_error(self, session_id: int, error_text: str, **kwargs: Any) -> JournalEntry:
        """Log an ERROR_LOG entry; its signature is stored in the details."""
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("signature", generate_error_signature(error_text))
        return self.log_entry(EntryType.ERROR_LOG, error_text, session_id=session_id, details=details, **kwargs)

    def log_note(self, note: str, session_id: Optional[int] = None, **kwargs: Any) -> JournalEntry:
        return self.log_entry(EntryType.NOTE, note, session_id=session_id, **kwargs)

    def recent_entries(
        self,
        limit: int = 50,
        entry_type: Optional[EntryType] = None,
        project: Optional[int | str | Path] = None,
        session_id: Optional[int] = None,
    ) -> list[JournalEntry]:
        project_id = self.resolve_project(project).id if project is not None else None
        return self.store.recent_entries(limit, entry_type=entry_type, project_id=project_id, session_id=session_id)

    def record_changes(self, project_id: int, changes: list[DetectedChange]) -> Optional[JournalEntry]:
        """Log one FILE_CHANGE entry for a batch of detected changes.

        Attached to the project's active session when there is one.
        """
        if not changes:
            return None
        active = self.store.get_active_session(project_id)
        significant = [c for c in changes if c.significant]
        summary = f"{len(changes)} file change(s)"
        if significant:
            summary += f", {len(significant)} significant: " + ", ".join(c.path for c in significant[:5])
        entry_id = self.store.append_entry(
            project_id,
            EntryType.FILE_CHANGE,
            summary,
            session_id=active.id if active else None,
            details={"changes": [c.to_dict() for c in changes]},
        )
        return self.store.require_entry(entry_id)

    # ========== Tests ==========

    def ingest_report(self, path: str | Path) -> Optional[IngestResult]:
        """Parse and store one test report file.

        Returns:
            The ingest result, or None when no known project owns the file

        Raises:
            ReportParseError: If the file cannot be parsed
        """
        return TestReportIngestor(self).ingest(Path(path))

    def flaky_tests(self, limit: int = 20, window_days: Optional[int] = None) -> list[FlakyTest]:
        return self.store.flaky_tests(window_days=window_days or self.config.flaky_window_days, limit=limit)

    # ========== Playbooks & Patterns ==========

    def find_playbooks(self, error_text: str, limit: int = 5, include_drafts: bool = True) -> list[Playbook]:
        """Playbooks for an error: exact, substring, then fuzzy signature match."""
        signature = generate_error_signature(error_text)
        found = self.store.find_playbooks(signature, limit=limit, include_drafts=include_drafts)
        if found:
            return found
        candidates = self.store.playbook_signatures(include_drafts=include_drafts)
        match = best_match(signature, candidates, self.config.reflection.fuzzy_threshold)
        if match is None:
            return []
        playbook = self.store.get_playbook_by_signature(match[0])
        return [playbook] if playbook else []

    def find_patterns(self, error_text: str, limit: int = 5) -> list[UniversalPattern]:
        signature = generate_error_signature(error_text)
        found = self.store.find_patterns(signature, limit=limit)
        if found:
            return found
        match = best_match(signature, self.store.pattern_signatures(), self.config.reflection.fuzzy_threshold)
        if match is None:
            return []
        pattern = self.store.get_pattern(match[0])
        return [pattern] if pattern else []

    def trusted_playbooks(self, limit: int = 20) -> list[Playbook]:
        return self.store.trusted_playbooks(self.config.reflection.trusted_confidence, limit=limit)

    def list_patterns(self, limit: int = 20) -> list[UniversalPattern]:
        return self.store.list_patterns(limit)

    def record_playbook_usage(
        self,
        playbook_id: int,
        helpful: bool,
        session_id: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> Playbook:
        """External confirmation that a playbook helped (or did not)."""
        if session_id is not None:
            self.store.require_session(session_id)
        return self.reflector.evolve_playbook(playbook_id, helpful, session_id=session_id, feedback=feedback)

    def activate_playbook(self, playbook_id: int) -> Playbook:
        return self.store.set_playbook_status(playbook_id, PlaybookStatus.ACTIVE)

    # ========== Reflection ==========

    def reflect(self, session_id: int, fix_entry_id: Optional[int] = None) -> ReflectionResult:
        return self.reflector.reflect_on_session(session_id, fix_entry_id=fix_entry_id)

    def reflect_pending(self) -> SweepReport:
        return self.reflector.reflect_on_pending_sessions()

    def run_maintenance(self, now: Optional[datetime] = None) -> SweepReport:
        return self.reflector.run_maintenance(now=now)

    # ========== Reporting ==========

    def stats(self) -> dict[str, Any]:
        """Summary statistics across sessions, tests, and learned knowledge."""
        stats = self.store.journal_stats()
        stats["ai_performance"] = self.store.ai_performance_stats()
        return stats

    def export_session(self, session_id: int, path: Path) -> Path:
        """Write a markdown report of a session."""
        session = self.store.require_session(session_id)
        project = self.store.require_project(session.project_id)
        lines = [
            f"# Session {session.id}: {session.goal}",
            "",
            f"**Project**: {project.name}",
            f"**Started**: {format_timestamp(session.start_time)}",
            f"**Status**: {session.status.value}",
            f"**Reflection**: {session.reflection_status.value}",
        ]
        if session.end_time:
            lines.append(f"**Ended**: {format_timestamp(session.end_time)}")
        if session.winning_strategy:
            lines.append(f"**Winning strategy**: {session.winning_strategy}")
        if session.outcome_summary:
            lines.extend(["", session.outcome_summary])
        lines.extend(["", "---", ""])
        for entry in self.store.session_entries(session_id):
            lines.append(entry.to_markdown())

        with locked_atomic_write(path) as f:
            f.write("\n".join(lines))
        return path
