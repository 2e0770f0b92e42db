"""Data models for projects, sessions, journal entries, test runs, and learned knowledge."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EntryType(Enum):
    """Type of journal entry."""
    SESSION_START = "SESSION_START"
    SESSION_END = "SESSION_END"
    TEST_RUN = "TEST_RUN"
    ERROR_LOG = "ERROR_LOG"
    FILE_CHANGE = "FILE_CHANGE"
    AI_TASK = "AI_TASK"
    AI_HYPOTHESIS = "AI_HYPOTHESIS"
    AI_TOOL_CALL = "AI_TOOL_CALL"
    AI_OBSERVATION = "AI_OBSERVATION"
    NOTE = "NOTE"
    COMMAND_RUN = "COMMAND_RUN"
    BUILD_EVENT = "BUILD_EVENT"


class SessionStatus(Enum):
    """Lifecycle status of a work session."""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class ReflectionStatus(Enum):
    """Whether a session has been through reflection."""
    PENDING = "PENDING"
    ANALYZED = "ANALYZED"
    SKIPPED = "SKIPPED"


class EntryOutcome(Enum):
    """Outcome written onto an entry by reflection."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    NEUTRAL = "NEUTRAL"


class TestStatus(Enum):
    """Status of a single test case."""
    __test__ = False

    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class RunStatus(Enum):
    """Aggregate status of a test run."""
    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"


class PlaybookStatus(Enum):
    """Lifecycle status of a troubleshooting playbook."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class PerformanceOutcome(Enum):
    """Coarse outcome recorded in the AI performance log."""
    FIXED = "FIXED"
    ABANDONED = "ABANDONED"


class ChangeType(Enum):
    """Kind of file-level change."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangeCategory(Enum):
    """Content category of a changed file."""
    CODE = "code"
    CONFIG = "config"
    DEPS = "deps"
    DOCS = "docs"
    OTHER = "other"


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format datetime as sortable ISO 8601 in UTC with microseconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(s: str) -> datetime:
    """Parse ISO 8601 timestamp string."""
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return format_timestamp(dt) if dt is not None else None


def duration_ms(start: datetime, end: datetime) -> int:
    """Milliseconds elapsed between two datetimes."""
    return int((end - start).total_seconds() * 1000)


@dataclass
class Project:
    """A known project root from the catalog."""
    id: int
    name: str
    root_path: str
    primary_language: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "root_path": self.root_path,
            "primary_language": self.primary_language,
        }


@dataclass
class Session:
    """A bounded unit of developer work."""
    id: int
    project_id: int
    goal: str
    start_time: datetime
    status: SessionStatus = SessionStatus.IN_PROGRESS
    reflection_status: ReflectionStatus = ReflectionStatus.PENDING
    end_time: Optional[datetime] = None
    outcome_summary: Optional[str] = None

    # Derived by reflection
    winning_strategy: Optional[str] = None
    time_to_fix_ms: Optional[int] = None
    hypothesis_count: Optional[int] = None
    successful_hypothesis_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "goal": self.goal,
            "start_time": format_timestamp(self.start_time),
            "end_time": _ts(self.end_time),
            "status": self.status.value,
            "reflection_status": self.reflection_status.value,
            "outcome_summary": self.outcome_summary,
            "winning_strategy": self.winning_strategy,
            "time_to_fix_ms": self.time_to_fix_ms,
            "hypothesis_count": self.hypothesis_count,
            "successful_hypothesis_id": self.successful_hypothesis_id,
        }


@dataclass
class JournalEntry:
    """An immutable timestamped event."""
    id: int
    project_id: int
    entry_type: EntryType
    timestamp: datetime
    summary: str
    session_id: Optional[int] = None
    parent_id: Optional[int] = None
    details: Optional[dict[str, Any]] = None
    git_commit_hash: Optional[str] = None

    # Written once by reflection
    outcome: Optional[EntryOutcome] = None
    strategy_tags: list[str] = field(default_factory=list)

    def to_markdown(self) -> str:
        """Render entry as markdown."""
        lines = [
            f"## #{self.id} {self.entry_type.value}",
            f"**Timestamp**: {format_timestamp(self.timestamp)}",
        ]
        if self.parent_id is not None:
            lines.append(f"**Parent**: #{self.parent_id}")
        if self.outcome:
            lines.append(f"**Outcome**: {self.outcome.value}")
        if self.strategy_tags:
            lines.append(f"**Strategies**: {', '.join(self.strategy_tags)}")
        if self.git_commit_hash:
            lines.append(f"**Commit**: {self.git_commit_hash}")

        lines.extend(["", self.summary, ""])

        if self.details:
            lines.append("### Details")
            for key, value in self.details.items():
                lines.append(f"- {key}: {value}")
            lines.append("")

        lines.append("---")
        lines.append("")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "session_id": self.session_id,
            "parent_id": self.parent_id,
            "entry_type": self.entry_type.value,
            "timestamp": format_timestamp(self.timestamp),
            "summary": self.summary,
            "details": self.details,
            "git_commit_hash": self.git_commit_hash,
            "outcome": self.outcome.value if self.outcome else None,
            "strategy_tags": self.strategy_tags,
        }


@dataclass
class TestResult:
    """One test case inside a run."""
    __test__ = False

    test_name: str
    status: TestStatus
    test_file: Optional[str] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_signature: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    id: Optional[int] = None
    test_run_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "test_name": self.test_name,
            "test_file": self.test_file,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "error_signature": self.error_signature,
        }


@dataclass
class TestRun:
    """One ingested test report, linked to a TEST_RUN journal entry."""
    __test__ = False

    total_tests: int
    passed_tests: int
    failed_tests: int
    skipped_tests: int = 0
    duration_ms: Optional[int] = None
    source_file: Optional[str] = None
    framework: Optional[str] = None
    id: Optional[int] = None
    journal_entry_id: Optional[int] = None
    created_at: Optional[datetime] = None
    status: RunStatus = field(init=False)

    def __post_init__(self) -> None:
        self.status = RunStatus.FAILED if self.failed_tests > 0 else RunStatus.PASSED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "journal_entry_id": self.journal_entry_id,
            "status": self.status.value,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "skipped_tests": self.skipped_tests,
            "duration_ms": self.duration_ms,
            "source_file": self.source_file,
            "framework": self.framework,
            "created_at": _ts(self.created_at),
        }


@dataclass
class FlakyTest:
    """A test with both passing and failing results inside the window."""
    test_name: str
    test_file: Optional[str]
    passes: int
    failures: int

    @property
    def flakiness_pct(self) -> float:
        return self.failures / (self.passes + self.failures) * 100

    def to_dict(self) -> dict:
        return {
            "test_name": self.test_name,
            "test_file": self.test_file,
            "passes": self.passes,
            "failures": self.failures,
            "flakiness_pct": round(self.flakiness_pct, 2),
        }


@dataclass
class UniversalPattern:
    """Cross-project aggregate for one error signature."""
    signature: str
    success_count: int = 0
    failure_count: int = 0
    total_occurrences: int = 0
    best_strategy: Optional[str] = None
    pattern_type: Optional[str] = None
    projects_seen: list[int] = field(default_factory=list)
    strategy_stats: dict[str, int] = field(default_factory=dict)
    avg_time_to_fix_ms: Optional[float] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "signature": self.signature,
            "pattern_type": self.pattern_type,
            "best_strategy": self.best_strategy,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_occurrences": self.total_occurrences,
            "projects_seen": self.projects_seen,
            "strategy_stats": self.strategy_stats,
            "avg_time_to_fix_ms": self.avg_time_to_fix_ms,
            "first_seen": _ts(self.first_seen),
            "last_seen": _ts(self.last_seen),
        }


@dataclass
class Playbook:
    """Confidence-scored troubleshooting guidance for one error signature."""
    id: int
    error_signature: str
    title: str
    created_at: datetime
    context_summary: Optional[str] = None
    symptoms: Optional[str] = None
    root_cause: Optional[str] = None
    solution_steps: Optional[str] = None
    success_count: int = 0
    failure_count: int = 0
    confidence_score: float = 0.5
    status: PlaybookStatus = PlaybookStatus.DRAFT
    source_session_ids: list[int] = field(default_factory=list)
    project_id: Optional[int] = None
    last_used_at: Optional[datetime] = None
    last_evolved_at: Optional[datetime] = None
    last_decayed_at: Optional[datetime] = None

    @property
    def evidence(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "error_signature": self.error_signature,
            "title": self.title,
            "context_summary": self.context_summary,
            "symptoms": self.symptoms,
            "root_cause": self.root_cause,
            "solution_steps": self.solution_steps,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "confidence_score": round(self.confidence_score, 4),
            "status": self.status.value,
            "source_session_ids": self.source_session_ids,
            "project_id": self.project_id,
            "created_at": format_timestamp(self.created_at),
            "last_used_at": _ts(self.last_used_at),
            "last_evolved_at": _ts(self.last_evolved_at),
        }


@dataclass
class DetectedChange:
    """A classified file-level change in a project."""
    project_id: int
    path: str
    change_type: ChangeType
    category: ChangeCategory
    significant: bool
    detected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "path": self.path,
            "change_type": self.change_type.value,
            "category": self.category.value,
            "significant": self.significant,
            "detected_at": format_timestamp(self.detected_at),
        }


@dataclass
class CommitInfo:
    """A commit in a project's recent history."""
    project_id: int
    commit_hash: str
    subject: str
    committed_at: datetime

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "hash": self.commit_hash,
            "subject": self.subject,
            "committed_at": format_timestamp(self.committed_at),
        }


@dataclass
class SweepReport:
    """Counts from a batch operation (reflection sweep, maintenance)."""
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    decayed: int = 0
    archived: int = 0
    promoted: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "decayed": self.decayed,
            "archived": self.archived,
            "promoted": self.promoted,
            "errors": self.errors,
        }
