"""devjournal command line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from .config import load_config
from .detector import ChangeDetector
from .engine import (
    JournalEngine,
    JournalError,
    NotFoundError,
    ReportParseError,
    StorageUnavailableError,
)
from .ingest import TestReportIngestor, TestReportWatcher
from .locking import WatcherAlreadyRunning, single_instance
from .models import EntryType, SessionStatus, SweepReport, format_timestamp

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV_VAR = "DEVJOURNAL_LOG_LEVEL"


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    if verbose:
        level = "DEBUG"
    elif quiet:
        level = "WARNING"
    else:
        level = os.environ.get(LOG_LEVEL_ENV_VAR, "INFO").upper()
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_sweep(report: SweepReport) -> None:
    print(f"Processed: {report.processed}, skipped: {report.skipped}, failed: {report.failed}")
    if report.promoted or report.decayed or report.archived:
        print(f"Playbooks promoted: {report.promoted}, decayed: {report.decayed}, archived: {report.archived}")
    for error in report.errors:
        print(f"  ! {error}")


# ========== Projects ==========

def cmd_project_add(engine: JournalEngine, args: argparse.Namespace) -> int:
    project = engine.add_project(args.name, args.path, args.language)
    print(f"Registered {project.name} (#{project.id}) at {project.root_path}")
    return 0


def cmd_project_list(engine: JournalEngine, args: argparse.Namespace) -> int:
    projects = engine.list_projects()
    if args.json:
        _print_json([p.to_dict() for p in projects])
        return 0
    if not projects:
        print("No projects registered. Add one with: devjournal project add NAME PATH")
    for project in projects:
        language = f" [{project.primary_language}]" if project.primary_language else ""
        print(f"#{project.id:<4} {project.name}{language}  {project.root_path}")
    return 0


# ========== Sessions ==========

def cmd_session_start(engine: JournalEngine, args: argparse.Namespace) -> int:
    session = engine.start_session(args.project, args.goal)
    print(f"Started session {session.id}: {session.goal}")
    return 0


def cmd_session_end(engine: JournalEngine, args: argparse.Namespace) -> int:
    outcome = SessionStatus.ABANDONED if args.abandoned else SessionStatus.COMPLETED
    session = engine.end_session(args.session_id, outcome, summary=args.summary, fix_entry_id=args.fix)
    print(f"Session {session.id} {session.status.value}, reflection {session.reflection_status.value}")
    if session.winning_strategy:
        print(f"Winning strategy: {session.winning_strategy}")
    return 0


def cmd_session_list(engine: JournalEngine, args: argparse.Namespace) -> int:
    status = SessionStatus(args.status) if args.status else None
    sessions = engine.list_sessions(limit=args.limit, project=args.project, status=status)
    if args.json:
        _print_json([s.to_dict() for s in sessions])
        return 0
    for session in sessions:
        started = format_timestamp(session.start_time)[:19]
        print(f"#{session.id:<5} {started}  {session.status.value:<11} {session.goal}")
    return 0


def cmd_session_show(engine: JournalEngine, args: argparse.Namespace) -> int:
    if args.export:
        path = engine.export_session(args.session_id, args.export)
        print(f"Exported session {args.session_id} to {path}")
        return 0

    session = engine.get_session(args.session_id)
    entries = engine.session_entries(session.id)
    if args.json:
        _print_json({"session": session.to_dict(), "entries": [e.to_dict() for e in entries]})
        return 0
    print(f"Session {session.id}: {session.goal}")
    print(f"Status: {session.status.value} (reflection {session.reflection_status.value})")
    if session.winning_strategy:
        print(f"Winning strategy: {session.winning_strategy}")
    if session.time_to_fix_ms is not None:
        print(f"Time to fix: {session.time_to_fix_ms / 1000:.1f}s")
    print()
    for entry in entries:
        tags = f" [{', '.join(entry.strategy_tags)}]" if entry.strategy_tags else ""
        outcome = f" {entry.outcome.value}" if entry.outcome else ""
        print(f"  #{entry.id:<5} {entry.entry_type.value:<14}{outcome}{tags} {entry.summary}")
    return 0


# ========== Journal ==========

def cmd_journal_log(engine: JournalEngine, args: argparse.Namespace) -> int:
    details = None
    if args.details:
        try:
            details = json.loads(args.details)
        except json.JSONDecodeError as e:
            raise JournalError(f"--details is not valid JSON: {e}") from e
    entry_type = EntryType(args.entry_type.upper())
    if entry_type == EntryType.ERROR_LOG and args.session is not None:
        entry = engine.log_error(args.session, args.message, details=details, parent_id=args.parent)
    else:
        entry = engine.log_entry(
            entry_type,
            args.message,
            session_id=args.session,
            project=args.project,
            details=details,
            parent_id=args.parent,
        )
    print(f"Logged entry {entry.id}")
    return 0


def cmd_journal_list(engine: JournalEngine, args: argparse.Namespace) -> int:
    entry_type = EntryType(args.type.upper()) if args.type else None
    entries = engine.recent_entries(
        limit=args.limit,
        entry_type=entry_type,
        project=args.project,
        session_id=args.session,
    )
    if args.json:
        _print_json([e.to_dict() for e in entries])
        return 0
    for entry in entries:
        when = format_timestamp(entry.timestamp)[:19]
        session = f" s{entry.session_id}" if entry.session_id else ""
        print(f"#{entry.id:<5} {when}{session} {entry.entry_type.value:<14} {entry.summary}")
    return 0


# ========== Tests ==========

def cmd_tests_process(engine: JournalEngine, args: argparse.Namespace) -> int:
    report = SweepReport()
    for path in args.files:
        try:
            result = engine.ingest_report(path)
        except ReportParseError as e:
            logger.warning("%s", e)
            report.failed += 1
            report.errors.append(str(e))
            continue
        if result is None:
            report.skipped += 1
            continue
        report.processed += 1
        run = result.run
        print(f"{path}: {run.status.value} {run.passed_tests}/{run.total_tests} passed ({result.project.name})")
        for test_name, match in result.matches.items():
            label = getattr(match, "title", None) or match.signature
            print(f"  known fix for {test_name}: {label}")
    _print_sweep(report)
    return 0


def cmd_tests_flaky(engine: JournalEngine, args: argparse.Namespace) -> int:
    flaky = engine.flaky_tests(limit=args.limit, window_days=args.days)
    if args.json:
        _print_json([f.to_dict() for f in flaky])
        return 0
    if not flaky:
        print("No flaky tests found.")
    for test in flaky:
        print(f"{test.flakiness_pct:5.1f}%  {test.test_name}  ({test.passes} pass / {test.failures} fail)")
    return 0


def _watch_projects(engine: JournalEngine, ref: Optional[str]):
    if ref is not None:
        return [engine.resolve_project(ref)]
    return engine.list_projects()


def _wait_for_interrupt() -> None:
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        print()


def cmd_tests_watch(engine: JournalEngine, args: argparse.Namespace) -> int:
    projects = _watch_projects(engine, args.project)
    if not projects:
        print("No projects to watch.", file=sys.stderr)
        return 1
    with single_instance(engine.config.db_path, "tests"):
        watcher = TestReportWatcher(
            TestReportIngestor(engine),
            [Path(p.root_path) for p in projects],
        )
        watcher.start()
        print(f"Watching {len(projects)} project(s) for test reports. Press Ctrl+C to stop.")
        try:
            _wait_for_interrupt()
        finally:
            watcher.stop()
        print(f"Ingested {len(watcher.ingested)} report(s), {watcher.failures} failed")
    return 0


# ========== Learning ==========

def cmd_reflect(engine: JournalEngine, args: argparse.Namespace) -> int:
    if args.session is not None:
        result = engine.reflect(args.session, fix_entry_id=args.fix)
        if args.json:
            _print_json(result.to_dict())
            return 0
        print(f"Session {result.session_id}: {result.status}" + (f" ({result.reason})" if result.reason else ""))
        if result.analysis and result.analysis.winning_strategy:
            print(f"Winning strategy: {result.analysis.winning_strategy}")
        return 0

    report = engine.reflect_pending() if args.all else engine.run_maintenance()
    if args.json:
        _print_json(report.to_dict())
    else:
        _print_sweep(report)
    return 0


def cmd_playbooks(engine: JournalEngine, args: argparse.Namespace) -> int:
    if args.playbooks_command == "feedback":
        playbook = engine.record_playbook_usage(
            args.playbook_id,
            helpful=args.helpful,
            session_id=args.session,
            feedback=args.note,
        )
        print(f"Playbook {playbook.id} confidence {playbook.confidence_score:.2f} ({playbook.status.value})")
        return 0
    if args.playbooks_command == "activate":
        playbook = engine.activate_playbook(args.playbook_id)
        print(f"Playbook {playbook.id} is {playbook.status.value}")
        return 0

    if args.error:
        playbooks = engine.find_playbooks(args.error, limit=args.limit)
    else:
        playbooks = engine.trusted_playbooks(limit=args.limit)
    if args.json:
        _print_json([p.to_dict() for p in playbooks])
        return 0
    if not playbooks:
        print("No matching playbooks.")
    for playbook in playbooks:
        print(f"#{playbook.id:<4} {playbook.confidence_score:.2f} {playbook.status.value:<8} {playbook.title}")
        if playbook.solution_steps:
            for line in playbook.solution_steps.splitlines():
                print(f"        {line}")
    return 0


def cmd_patterns(engine: JournalEngine, args: argparse.Namespace) -> int:
    if args.signature:
        patterns = engine.find_patterns(args.signature, limit=args.limit)
    else:
        patterns = engine.list_patterns(limit=args.limit)
    if args.json:
        _print_json([p.to_dict() for p in patterns])
        return 0
    for pattern in patterns:
        print(
            f"{pattern.total_occurrences:>4}x  {pattern.success_count} fixed / {pattern.failure_count} failed"
            f"  best: {pattern.best_strategy or '-'}  {pattern.signature}"
        )
    return 0


def cmd_stats(engine: JournalEngine, args: argparse.Namespace) -> int:
    stats = engine.stats()
    if args.json:
        _print_json(stats)
        return 0
    for key, value in stats.items():
        if isinstance(value, (dict, list)):
            print(f"{key}:")
            print(json.dumps(value, indent=2, default=str))
        else:
            print(f"{key}: {value}")
    return 0


# ========== Change detection ==========

def _detector(engine: JournalEngine, projects) -> ChangeDetector:
    watch = engine.config.watch
    return ChangeDetector(
        projects,
        engine.record_changes,
        debounce_seconds=watch.debounce_seconds,
        flush_interval=watch.flush_interval,
        ignore=watch.ignore,
    )


def cmd_scan(engine: JournalEngine, args: argparse.Namespace) -> int:
    detector = _detector(engine, _watch_projects(engine, args.project))
    changes = detector.scan_git_changes()
    if args.json:
        _print_json([c.to_dict() for c in changes])
        return 0
    names = {p.id: p.name for p in detector.projects}
    for change in changes:
        flag = "*" if change.significant else " "
        print(f"{flag} {names[change.project_id]}: {change.change_type.value:<8} {change.category.value:<6} {change.path}")
    print(f"{len(changes)} uncommitted change(s)")
    return 0


def cmd_commits(engine: JournalEngine, args: argparse.Namespace) -> int:
    detector = _detector(engine, _watch_projects(engine, args.project))
    commits = detector.recent_commits(days=args.days)
    if args.json:
        _print_json([c.to_dict() for c in commits])
        return 0
    names = {p.id: p.name for p in detector.projects}
    for commit in commits:
        when = format_timestamp(commit.committed_at)[:16]
        print(f"{when} {names[commit.project_id]:<20} {commit.commit_hash[:8]} {commit.subject}")
    return 0


def cmd_stale(engine: JournalEngine, args: argparse.Namespace) -> int:
    detector = _detector(engine, engine.list_projects())
    stale = detector.stale_projects(days=args.days)
    if not stale:
        print(f"Every git project has a commit in the last {args.days} days.")
    for project, last in stale:
        when = format_timestamp(last)[:10] if last else "never"
        print(f"{project.name:<24} last commit {when}")
    return 0


def cmd_watch(engine: JournalEngine, args: argparse.Namespace) -> int:
    projects = _watch_projects(engine, args.project)
    if not projects:
        print("No projects to watch.", file=sys.stderr)
        return 1
    with single_instance(engine.config.db_path, "watch"):
        detector = _detector(engine, projects)
        reports = TestReportWatcher(
            TestReportIngestor(engine),
            [Path(p.root_path) for p in projects],
        )
        watched = detector.start()
        reports.start()
        print(f"Watching {watched} project(s). Press Ctrl+C to stop.")
        try:
            _wait_for_interrupt()
        finally:
            detector.stop()
            reports.stop()
    return 0


def cmd_serve(engine: JournalEngine, args: argparse.Namespace) -> int:
    from .server import HAS_MCP, run_server

    if not HAS_MCP:
        print("Error: MCP package not installed.", file=sys.stderr)
        print("Install with: pip install devjournal[mcp]", file=sys.stderr)
        return 1
    engine.close()
    asyncio.run(run_server(engine.config))
    return 0


# ========== Parser ==========

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devjournal",
        description="Self-improving debugging journal: sessions, test runs, and learned fixes",
    )
    parser.add_argument("--config", "-c", type=Path, help="Path to config file (default: auto-detect)")
    parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Directory to search for a config file (default: current directory)",
    )
    parser.add_argument("--db", type=Path, help="Database file (overrides config)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Warnings and errors only")

    commands = parser.add_subparsers(dest="command", required=True)

    # project
    project = commands.add_parser("project", help="Manage the project catalog")
    project_cmds = project.add_subparsers(dest="project_command", required=True)
    add = project_cmds.add_parser("add", help="Register a project root")
    add.add_argument("name")
    add.add_argument("path", type=Path)
    add.add_argument("--language")
    add.set_defaults(handler=cmd_project_add)
    project_cmds.add_parser("list", help="List projects").set_defaults(handler=cmd_project_list)

    # session
    session = commands.add_parser("session", help="Work sessions")
    session_cmds = session.add_subparsers(dest="session_command", required=True)
    start = session_cmds.add_parser("start", help="Start a session")
    start.add_argument("project", help="Project id, name, or path")
    start.add_argument("goal")
    start.set_defaults(handler=cmd_session_start)
    end = session_cmds.add_parser("end", help="End a session")
    end.add_argument("session_id", type=int)
    end.add_argument("--summary")
    end.add_argument("--fix", type=int, help="Entry id known to be the fix")
    end.add_argument("--abandoned", action="store_true", help="End as ABANDONED (no learning)")
    end.set_defaults(handler=cmd_session_end)
    session_list = session_cmds.add_parser("list", help="List sessions")
    session_list.add_argument("-n", "--limit", type=int, default=20)
    session_list.add_argument("--project")
    session_list.add_argument("--status", choices=[s.value for s in SessionStatus])
    session_list.set_defaults(handler=cmd_session_list)
    show = session_cmds.add_parser("show", help="Show a session and its entries")
    show.add_argument("session_id", type=int)
    show.add_argument("--export", type=Path, help="Write a markdown report to this file")
    show.set_defaults(handler=cmd_session_show)

    # journal
    journal = commands.add_parser("journal", help="Journal entries")
    journal_cmds = journal.add_subparsers(dest="journal_command", required=True)
    log = journal_cmds.add_parser("log", help="Append an entry")
    log.add_argument("entry_type", choices=[t.value for t in EntryType], type=str.upper)
    log.add_argument("message")
    log.add_argument("--session", type=int)
    log.add_argument("--project")
    log.add_argument("--parent", type=int)
    log.add_argument("--details", help="JSON object of structured details")
    log.set_defaults(handler=cmd_journal_log)
    journal_list = journal_cmds.add_parser("list", help="Recent entries")
    journal_list.add_argument("-n", "--limit", type=int, default=50)
    journal_list.add_argument("--type", choices=[t.value for t in EntryType], type=str.upper)
    journal_list.add_argument("--session", type=int)
    journal_list.add_argument("--project")
    journal_list.set_defaults(handler=cmd_journal_list)

    # tests
    tests = commands.add_parser("tests", help="Test reports")
    tests_cmds = tests.add_subparsers(dest="tests_command", required=True)
    process = tests_cmds.add_parser("process", help="Ingest report files")
    process.add_argument("files", nargs="+", type=Path)
    process.set_defaults(handler=cmd_tests_process)
    tests_watch = tests_cmds.add_parser("watch", help="Ingest reports as they are written")
    tests_watch.add_argument("--project")
    tests_watch.set_defaults(handler=cmd_tests_watch)
    flaky = tests_cmds.add_parser("flaky", help="Tests that both pass and fail")
    flaky.add_argument("-n", "--limit", type=int, default=20)
    flaky.add_argument("--days", type=int, help="Trailing window (default: from config)")
    flaky.set_defaults(handler=cmd_tests_flaky)

    # reflect
    reflect = commands.add_parser("reflect", help="Learn from sessions (default: full maintenance sweep)")
    target = reflect.add_mutually_exclusive_group()
    target.add_argument("--session", type=int, help="Reflect on one session")
    target.add_argument("--all", action="store_true", help="Reflect on every pending session only")
    reflect.add_argument("--fix", type=int, help="Entry id known to be the fix (with --session)")
    reflect.set_defaults(handler=cmd_reflect)

    # playbooks
    playbooks = commands.add_parser("playbooks", help="Troubleshooting playbooks")
    playbooks.add_argument("--error", help="Find playbooks for this error text")
    playbooks.add_argument("-n", "--limit", type=int, default=10)
    playbooks.set_defaults(handler=cmd_playbooks)
    playbook_cmds = playbooks.add_subparsers(dest="playbooks_command")
    feedback = playbook_cmds.add_parser("feedback", help="Record whether a playbook helped")
    feedback.add_argument("playbook_id", type=int)
    helpful = feedback.add_mutually_exclusive_group(required=True)
    helpful.add_argument("--helpful", dest="helpful", action="store_true")
    helpful.add_argument("--not-helpful", dest="helpful", action="store_false")
    feedback.add_argument("--session", type=int)
    feedback.add_argument("--note")
    activate = playbook_cmds.add_parser("activate", help="Promote a DRAFT playbook to ACTIVE")
    activate.add_argument("playbook_id", type=int)

    # patterns
    patterns = commands.add_parser("patterns", help="Cross-project error patterns")
    patterns.add_argument("--signature", help="Error text or signature to look up")
    patterns.add_argument("-n", "--limit", type=int, default=20)
    patterns.set_defaults(handler=cmd_patterns)

    commands.add_parser("stats", help="Summary statistics").set_defaults(handler=cmd_stats)

    # change detection
    scan = commands.add_parser("scan", help="Uncommitted git changes")
    scan.add_argument("--project")
    scan.set_defaults(handler=cmd_scan)
    commits = commands.add_parser("commits", help="Recent commits across projects")
    commits.add_argument("--days", type=int, default=7)
    commits.add_argument("--project")
    commits.set_defaults(handler=cmd_commits)
    stale = commands.add_parser("stale", help="Projects without recent commits")
    stale.add_argument("--days", type=int, default=30)
    stale.set_defaults(handler=cmd_stale)
    watch = commands.add_parser("watch", help="Watch projects for changes and test reports")
    watch.add_argument("--project")
    watch.set_defaults(handler=cmd_watch)

    commands.add_parser("serve", help="Run the MCP server on stdio").set_defaults(handler=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "reflect" and args.fix is not None and args.session is None:
        parser.error("reflect: --fix requires --session")
    configure_logging(args.verbose, args.quiet)

    try:
        config = load_config(args.root.resolve(), args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 2
    if args.db is not None:
        config.db_path = args.db

    try:
        engine = JournalEngine(config)
    except StorageUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        return args.handler(engine, args)
    except NotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except WatcherAlreadyRunning as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except JournalError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
