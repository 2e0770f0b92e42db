"""Reflection: turning a finished session's timeline into reusable knowledge.

The Reflector keeps no state between calls. Every run re-derives its
analysis from the store, so reflecting twice is harmless and the
maintenance sweep can be scheduled freely.

Causal reconstruction is best-effort. When a caller names the entry that
fixed the problem, that choice is authoritative; otherwise the winner is
inferred from timestamps alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import ReflectionSettings
from .models import (
    EntryOutcome,
    EntryType,
    JournalEntry,
    PerformanceOutcome,
    Playbook,
    PlaybookStatus,
    ReflectionStatus,
    Session,
    SessionStatus,
    SweepReport,
    UniversalPattern,
    duration_ms,
    utc_now,
)
from .signatures import extract_error_type, generate_error_signature
from .store import JournalStore
from .strategies import StrategyClassifier

logger = logging.getLogger(__name__)


def bayesian_confidence(success_count: int, failure_count: int) -> float:
    """Laplace-smoothed success ratio, always strictly inside (0, 1)."""
    return (success_count + 1) / (success_count + failure_count + 2)


def run_passed(entry: JournalEntry) -> Optional[bool]:
    """Read a TEST_RUN entry's verdict from its details.

    Returns:
        True if all tests passed, False if any failed or the run errored,
        None if the entry carries no usable result
    """
    details = entry.details or {}
    status = str(details.get("status", "")).upper()
    if status == "ERROR":
        return False
    for key in ("failed_tests", "failed"):
        value = details.get(key)
        if value is None:
            continue
        try:
            return int(value) == 0
        except (TypeError, ValueError):
            continue
    if status in ("PASSED", "PASS", "SUCCESS"):
        return True
    if status in ("FAILED", "FAIL", "FAILURE"):
        return False
    return None


def _mode(histogram: dict[str, int]) -> Optional[str]:
    """Most frequent key; ties resolve alphabetically so order never matters."""
    if not histogram:
        return None
    return max(sorted(histogram), key=lambda k: histogram[k])


@dataclass
class SessionAnalysis:
    """What reflection concluded about one session."""
    session_id: int
    project_id: int
    hypotheses: list[JournalEntry]
    test_runs: list[JournalEntry]
    success: bool
    winner: Optional[JournalEntry] = None
    losers: list[JournalEntry] = field(default_factory=list)
    hypothesis_tags: dict[int, list[str]] = field(default_factory=dict)
    winning_strategy: Optional[str] = None
    error_signature: Optional[str] = None
    time_to_fix_ms: Optional[int] = None
    time_to_first_hypothesis_ms: Optional[int] = None
    explicit_fix: bool = False

    @property
    def winning_index(self) -> Optional[int]:
        """1-based position of the winner among all hypotheses."""
        if self.winner is None:
            return None
        for i, hypothesis in enumerate(self.hypotheses, start=1):
            if hypothesis.id == self.winner.id:
                return i
        return None

    @property
    def strategies_tried(self) -> list[str]:
        tried: list[str] = []
        for hypothesis in self.hypotheses:
            for tag in self.hypothesis_tags.get(hypothesis.id, [])[:1]:
                if tag not in tried:
                    tried.append(tag)
        return tried

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "success": self.success,
            "hypothesis_count": len(self.hypotheses),
            "winning_hypothesis_id": self.winner.id if self.winner else None,
            "winning_index": self.winning_index,
            "losing_hypothesis_ids": [h.id for h in self.losers],
            "winning_strategy": self.winning_strategy,
            "strategies_tried": self.strategies_tried,
            "error_signature": self.error_signature,
            "time_to_fix_ms": self.time_to_fix_ms,
            "explicit_fix": self.explicit_fix,
        }


@dataclass
class ReflectionResult:
    """Outcome of one reflection call."""
    session_id: int
    status: str  # analyzed, skipped, noop
    reason: Optional[str] = None
    analysis: Optional[SessionAnalysis] = None
    pattern: Optional[UniversalPattern] = None
    playbook: Optional[Playbook] = None

    @property
    def analyzed(self) -> bool:
        return self.status == "analyzed"

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "reason": self.reason,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "pattern": self.pattern.to_dict() if self.pattern else None,
            "playbook": self.playbook.to_dict() if self.playbook else None,
        }


class Reflector:
    """Analyzes completed sessions and maintains patterns and playbooks."""

    def __init__(
        self,
        store: JournalStore,
        classifier: Optional[StrategyClassifier] = None,
        settings: Optional[ReflectionSettings] = None,
        hooks: Optional[dict[str, Callable]] = None,
    ):
        self.store = store
        self.classifier = classifier or StrategyClassifier()
        self.settings = settings or ReflectionSettings()
        self.hooks = hooks or {}

    # ========== Analysis ==========

    def analyze_session(
        self,
        session_id: int,
        fix_entry_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SessionAnalysis:
        """Reconstruct the hypothesis chain of a session without writing anything.

        Args:
            session_id: Session to analyze
            fix_entry_id: Entry known to be the fix (overrides inference)
            now: Reference time for unresolved sessions

        Raises:
            NotFoundError: If the session does not exist
        """
        session = self.store.require_session(session_id)
        entries = self.store.session_entries(session_id)
        hypotheses = [e for e in entries if e.entry_type == EntryType.AI_HYPOTHESIS]
        runs = [e for e in entries if e.entry_type == EntryType.TEST_RUN]
        verdicts = {r.id: run_passed(r) for r in runs}

        analysis = SessionAnalysis(
            session_id=session.id,
            project_id=session.project_id,
            hypotheses=hypotheses,
            test_runs=runs,
            success=False,
        )
        analysis.hypothesis_tags = {h.id: self.classifier.classify(h.summary) for h in hypotheses}

        explicit = self._explicit_fix(session, entries, fix_entry_id)
        success_at: Optional[datetime] = None
        if explicit is not None:
            analysis.winner = explicit
            analysis.explicit_fix = True
            analysis.success = True
            confirming = next(
                (r for r in runs if r.timestamp > explicit.timestamp and verdicts[r.id] is True),
                None,
            )
            success_at = confirming.timestamp if confirming else explicit.timestamp
            if explicit.id not in analysis.hypothesis_tags:
                analysis.hypothesis_tags[explicit.id] = self.classifier.classify(explicit.summary)
        else:
            first_success = next((r for r in runs if verdicts[r.id] is True), None)
            if first_success is not None:
                analysis.success = True
                success_at = first_success.timestamp
                in_force = [h for h in hypotheses if h.timestamp < success_at]
                analysis.winner = in_force[-1] if in_force else None

        horizon = success_at
        for hypothesis in hypotheses:
            if analysis.winner is not None and hypothesis.id == analysis.winner.id:
                continue
            if horizon is not None and hypothesis.timestamp >= horizon:
                continue
            refuted = any(
                verdicts[r.id] is False
                and r.timestamp > hypothesis.timestamp
                and (horizon is None or r.timestamp < horizon)
                for r in runs
            )
            if refuted:
                analysis.losers.append(hypothesis)

        if analysis.winner is not None:
            analysis.winning_strategy = analysis.hypothesis_tags[analysis.winner.id][0]

        error_log = next((e for e in entries if e.entry_type == EntryType.ERROR_LOG), None)
        if error_log is not None:
            analysis.error_signature = generate_error_signature(error_log.summary)

        if entries:
            started = entries[0].timestamp
            analysis.time_to_fix_ms = duration_ms(started, success_at or now or utc_now())
            if hypotheses:
                analysis.time_to_first_hypothesis_ms = duration_ms(started, hypotheses[0].timestamp)

        return analysis

    def _explicit_fix(
        self,
        session: Session,
        entries: list[JournalEntry],
        fix_entry_id: Optional[int],
    ) -> Optional[JournalEntry]:
        wanted = fix_entry_id if fix_entry_id is not None else session.successful_hypothesis_id
        if wanted is None:
            return None
        for entry in entries:
            if entry.id == wanted:
                return entry
        logger.warning(
            "Fix entry %s is not part of session %s; falling back to timestamp inference",
            wanted,
            session.id,
        )
        return None

    # ========== Reflection ==========

    def reflect_on_session(
        self,
        session_id: int,
        fix_entry_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReflectionResult:
        """Analyze a completed session and fold the result into shared knowledge.

        Already ANALYZED or SKIPPED sessions are left untouched. The whole
        update runs in one transaction.

        Raises:
            NotFoundError: If the session does not exist
        """
        with self.store.transaction():
            session = self.store.require_session(session_id)
            if session.reflection_status != ReflectionStatus.PENDING:
                return ReflectionResult(
                    session_id,
                    "noop",
                    reason=f"reflection already {session.reflection_status.value}",
                )
            if session.status != SessionStatus.COMPLETED:
                return ReflectionResult(
                    session_id,
                    "skipped",
                    reason=f"session is {session.status.value}",
                )

            analysis = self.analyze_session(session_id, fix_entry_id=fix_entry_id, now=now)
            result = ReflectionResult(session_id, "analyzed", analysis=analysis)

            if analysis.success and analysis.winner is not None:
                self._tag_hypotheses(analysis)

            if analysis.success and analysis.error_signature and analysis.winning_strategy:
                result.pattern = self.reinforce_pattern(
                    analysis.error_signature,
                    analysis.winning_strategy,
                    was_success=True,
                    project_id=session.project_id,
                    time_to_fix_ms=analysis.time_to_fix_ms,
                )
                result.playbook = self._consider_playbook(result.pattern, session, analysis)

            self.store.log_ai_performance(
                session_id=session.id,
                hypothesis_count=len(analysis.hypotheses),
                successful_hypothesis_index=analysis.winning_index,
                approach_tags_tried=analysis.strategies_tried,
                winning_approach_tag=analysis.winning_strategy,
                time_to_first_hypothesis_ms=analysis.time_to_first_hypothesis_ms,
                time_to_fix_ms=analysis.time_to_fix_ms,
                error_signature=analysis.error_signature,
                outcome=PerformanceOutcome.FIXED if analysis.success else PerformanceOutcome.ABANDONED,
            )
            self.store.mark_session_analyzed(
                session.id,
                winning_strategy=analysis.winning_strategy,
                time_to_fix_ms=analysis.time_to_fix_ms,
                hypothesis_count=len(analysis.hypotheses),
                successful_hypothesis_id=analysis.winner.id if analysis.winner else None,
            )

        logger.info(
            "Reflected on session %s: success=%s winner=%s strategy=%s",
            session_id,
            analysis.success,
            analysis.winner.id if analysis.winner else None,
            analysis.winning_strategy,
        )
        if "post_reflect" in self.hooks:
            self.hooks["post_reflect"](result)
        return result

    def _tag_hypotheses(self, analysis: SessionAnalysis) -> None:
        winner = analysis.winner
        self.store.annotate_entry(winner.id, EntryOutcome.SUCCESS, analysis.hypothesis_tags[winner.id])
        for loser in analysis.losers:
            self.store.annotate_entry(loser.id, EntryOutcome.FAILURE, analysis.hypothesis_tags[loser.id])

    def reflect_on_pending_sessions(self) -> SweepReport:
        """Reflect on every COMPLETED session still PENDING.

        A failure on one session is logged and counted; the sweep continues.
        """
        report = SweepReport()
        for session in self.store.pending_reflection_sessions():
            try:
                result = self.reflect_on_session(session.id)
            except Exception as e:
                logger.exception("Reflection failed for session %s", session.id)
                report.failed += 1
                report.errors.append(f"session {session.id}: {e}")
                continue
            if result.analyzed:
                report.processed += 1
            else:
                report.skipped += 1
        return report

    # ========== Knowledge updates ==========

    def reinforce_pattern(
        self,
        signature: str,
        strategy: Optional[str],
        was_success: bool,
        project_id: Optional[int] = None,
        time_to_fix_ms: Optional[int] = None,
    ) -> UniversalPattern:
        """Fold one observation into the universal pattern for a signature.

        Args:
            signature: Canonical error signature
            strategy: Strategy tag that was applied
            was_success: Whether the strategy resolved the error
            project_id: Project the observation came from
            time_to_fix_ms: Resolution time, for successes

        Returns:
            The updated (or newly created) pattern
        """
        with self.store.transaction():
            pattern = self.store.get_pattern(signature)
            if pattern is None:
                pattern = UniversalPattern(signature=signature, pattern_type=extract_error_type(signature))
                logger.info("New universal pattern: %s", signature)

            pattern.total_occurrences += 1
            if project_id is not None and project_id not in pattern.projects_seen:
                pattern.projects_seen.append(project_id)

            if was_success:
                previous = pattern.success_count
                pattern.success_count += 1
                if strategy:
                    pattern.strategy_stats[strategy] = pattern.strategy_stats.get(strategy, 0) + 1
                if time_to_fix_ms is not None:
                    if pattern.avg_time_to_fix_ms is None or previous == 0:
                        pattern.avg_time_to_fix_ms = float(time_to_fix_ms)
                    else:
                        pattern.avg_time_to_fix_ms = (
                            pattern.avg_time_to_fix_ms * previous + time_to_fix_ms
                        ) / (previous + 1)
            else:
                pattern.failure_count += 1

            pattern.best_strategy = _mode(pattern.strategy_stats) or pattern.best_strategy
            return self.store.save_pattern(pattern)

    def _consider_playbook(
        self,
        pattern: UniversalPattern,
        session: Session,
        analysis: SessionAnalysis,
    ) -> Optional[Playbook]:
        existing = self.store.get_playbook_by_signature(pattern.signature)
        if existing is not None:
            return self.evolve_playbook(
                existing.id,
                was_helpful=True,
                session_id=session.id,
                feedback="confirmed by session reflection",
            )
        if pattern.success_count < self.settings.playbook_min_successes:
            return None
        return self._create_playbook(pattern, session, analysis)

    def _create_playbook(
        self,
        pattern: UniversalPattern,
        session: Session,
        analysis: SessionAnalysis,
    ) -> Playbook:
        signature = pattern.signature
        title = f"Fixing: {signature[:50]}..." if len(signature) > 50 else f"Fixing: {signature}"
        context = (
            f"Error pattern seen {pattern.total_occurrences} times across "
            f"{len(pattern.projects_seen)} projects. Best approach: {pattern.best_strategy}"
        )
        steps = f"Apply the {pattern.best_strategy} approach."
        if analysis.winner is not None:
            steps += f" Last winning hypothesis: {analysis.winner.summary}"
        playbook = self.store.create_playbook(
            error_signature=signature,
            title=title,
            context_summary=context,
            solution_steps=steps,
            success_count=1,
            confidence_score=self.settings.initial_confidence,
            status=PlaybookStatus.DRAFT,
            source_session_ids=[session.id],
            project_id=session.project_id,
        )
        logger.info("Created draft playbook %s for %s", playbook.id, signature)
        return playbook

    def evolve_playbook(
        self,
        playbook_id: int,
        was_helpful: bool,
        session_id: Optional[int] = None,
        feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Playbook:
        """Record one usage-feedback event and recompute confidence.

        Raises:
            NotFoundError: If the playbook does not exist
        """
        used_at = now or utc_now()
        with self.store.transaction():
            playbook = self.store.require_playbook(playbook_id)
            success = playbook.success_count + (1 if was_helpful else 0)
            failure = playbook.failure_count + (0 if was_helpful else 1)
            sessions = list(playbook.source_session_ids)
            if was_helpful and session_id is not None and session_id not in sessions:
                sessions.append(session_id)
            self.store.save_playbook_evidence(
                playbook_id,
                success_count=success,
                failure_count=failure,
                confidence_score=bayesian_confidence(success, failure),
                source_session_ids=sessions,
                used_at=used_at,
            )
            self.store.log_playbook_usage(
                playbook_id,
                was_helpful,
                session_id=session_id,
                feedback=feedback,
                used_at=used_at,
            )
        return self.store.require_playbook(playbook_id)

    # ========== Maintenance ==========

    def run_maintenance(self, now: Optional[datetime] = None) -> SweepReport:
        """Reflect on pending sessions, then promote, decay, and archive playbooks.

        Safe to run repeatedly: decay is keyed to wall-clock time since a
        playbook was last used and last decayed, not to the number of sweeps.
        """
        now = now or utc_now()
        s = self.settings
        report = self.reflect_on_pending_sessions()
        report.promoted = self.store.promote_draft_playbooks(s.trusted_confidence, s.promote_min_successes)
        report.decayed = self.store.decay_stale_playbooks(
            s.decay_factor,
            stale_before=now - timedelta(days=s.stale_days),
            decayed_before=now - timedelta(hours=s.decay_interval_hours),
            now=now,
        )
        report.archived = self.store.archive_low_confidence_playbooks(s.archive_floor, s.archive_min_evidence)
        logger.info(
            "Maintenance: %d reflected, %d skipped, %d failed, %d promoted, %d decayed, %d archived",
            report.processed,
            report.skipped,
            report.failed,
            report.promoted,
            report.decayed,
            report.archived,
        )
        return report
