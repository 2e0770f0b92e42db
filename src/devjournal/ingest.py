"""Test report ingestion.

Parses Jest-style JSON and JUnit-style XML reports into test runs and
results, attributes them to a project, and stores them through the engine.
A watchdog-based watcher feeds new or rewritten report files in
continuously.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .models import Playbook, Project, RunStatus, TestResult, TestRun, TestStatus, UniversalPattern
from .signatures import generate_error_signature
from .store import JournalError

if TYPE_CHECKING:
    from .config import WatchSettings
    from .engine import JournalEngine

logger = logging.getLogger(__name__)

PROJECT_MARKERS = [".git", "package.json", "pyproject.toml", "setup.py", "go.mod", "Cargo.toml"]

_STATUS_MAP = {
    "passed": TestStatus.PASSED,
    "pass": TestStatus.PASSED,
    "success": TestStatus.PASSED,
    "failed": TestStatus.FAILED,
    "fail": TestStatus.FAILED,
    "failure": TestStatus.FAILED,
    "pending": TestStatus.SKIPPED,
    "skipped": TestStatus.SKIPPED,
    "todo": TestStatus.SKIPPED,
    "disabled": TestStatus.SKIPPED,
}


class ReportParseError(JournalError):
    """Raised when a report file matches no known format."""
    pass


def map_status(raw: Any) -> TestStatus:
    """Normalize a framework's status word; unknown words become ERROR."""
    return _STATUS_MAP.get(str(raw or "").strip().lower(), TestStatus.ERROR)


@dataclass
class ParsedReport:
    """A report normalized to counts plus per-case results."""
    framework: str
    tests: list[TestResult] = field(default_factory=list)
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: Optional[int] = None

    @property
    def status(self) -> RunStatus:
        return RunStatus.FAILED if self.failed > 0 else RunStatus.PASSED

    def to_run(self, source_file: Optional[str] = None) -> TestRun:
        return TestRun(
            total_tests=self.total,
            passed_tests=self.passed,
            failed_tests=self.failed,
            skipped_tests=self.skipped,
            duration_ms=self.duration_ms,
            source_file=source_file,
            framework=self.framework,
        )


@dataclass
class IngestResult:
    """What happened to one ingested report."""
    project: Project
    run: TestRun
    results: list[TestResult]
    session_id: Optional[int] = None
    matches: dict[str, Playbook | UniversalPattern] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "project": self.project.name,
            "session_id": self.session_id,
            "run": self.run.to_dict(),
            "failures": [r.to_dict() for r in self.results if r.status in (TestStatus.FAILED, TestStatus.ERROR)],
            "matches": {name: m.to_dict() for name, m in self.matches.items()},
        }


def _counts_from(tests: list[TestResult]) -> tuple[int, int, int, int]:
    passed = sum(1 for t in tests if t.status == TestStatus.PASSED)
    failed = sum(1 for t in tests if t.status in (TestStatus.FAILED, TestStatus.ERROR))
    skipped = sum(1 for t in tests if t.status == TestStatus.SKIPPED)
    return len(tests), passed, failed, skipped


def _with_signature(result: TestResult) -> TestResult:
    if result.status in (TestStatus.FAILED, TestStatus.ERROR):
        result.error_signature = generate_error_signature(result.error_message or "")
    return result


def _int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ========== Jest-style JSON ==========

def parse_jest_json(text: str) -> ParsedReport:
    """Parse a Jest-style JSON report.

    Raises:
        ReportParseError: If the text is not JSON or lacks test results
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ReportParseError(f"Invalid JSON report: {e}") from e
    if not isinstance(data, dict) or ("testResults" not in data and "numTotalTests" not in data):
        raise ReportParseError("JSON report has no testResults or numTotalTests")

    report = ParsedReport(framework="jest")
    for suite in data.get("testResults") or []:
        if not isinstance(suite, dict):
            continue
        suite_file = suite.get("name") or suite.get("testFilePath")
        assertions = suite.get("assertionResults") or []
        for assertion in assertions:
            if not isinstance(assertion, dict):
                continue
            messages = [str(m) for m in assertion.get("failureMessages") or []]
            report.tests.append(_with_signature(TestResult(
                test_name=assertion.get("fullName") or assertion.get("title") or "unnamed test",
                status=map_status(assertion.get("status")),
                test_file=suite_file,
                duration_ms=_int(assertion.get("duration")),
                error_message="\n".join(messages) or None,
            )))
        # Suite that failed before running any test (syntax error, bad import)
        if not assertions and map_status(suite.get("status")) in (TestStatus.FAILED, TestStatus.ERROR):
            report.tests.append(_with_signature(TestResult(
                test_name=suite_file or "test suite",
                status=TestStatus.ERROR,
                test_file=suite_file,
                error_message=suite.get("message") or suite.get("failureMessage"),
            )))

    # Suites that crashed before running count as one failed test each
    crashed = (_int(data.get("numRuntimeErrorTestSuites")) or 0) if "numFailedTests" in data else 0
    total, passed, failed, skipped = _counts_from(report.tests)
    report.total = (_int(data.get("numTotalTests")) or 0) + crashed if "numTotalTests" in data else total
    report.passed = _int(data.get("numPassedTests")) or 0 if "numPassedTests" in data else passed
    if "numFailedTests" in data:
        report.failed = (_int(data.get("numFailedTests")) or 0) + crashed
    else:
        report.failed = failed
    if "numPendingTests" in data or "numTodoTests" in data:
        report.skipped = (_int(data.get("numPendingTests")) or 0) + (_int(data.get("numTodoTests")) or 0)
    else:
        report.skipped = skipped

    durations = [t.duration_ms for t in report.tests if t.duration_ms is not None]
    report.duration_ms = sum(durations) if durations else None
    return report


# ========== JUnit-style XML ==========

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _text(element: Optional[ET.Element]) -> Optional[str]:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _seconds_to_ms(value: Optional[str]) -> Optional[int]:
    try:
        return int(float(value) * 1000)
    except (TypeError, ValueError):
        return None


def _parse_testcase(case: ET.Element, suite_name: Optional[str]) -> TestResult:
    children = {_local(child.tag): child for child in case}
    status = TestStatus.PASSED
    marker = None
    if "failure" in children:
        status, marker = TestStatus.FAILED, children["failure"]
    elif "error" in children:
        status, marker = TestStatus.ERROR, children["error"]
    elif "skipped" in children:
        status = TestStatus.SKIPPED

    message = None
    if marker is not None:
        parts = [marker.get("message"), _text(marker)]
        message = "\n".join(p for p in parts if p) or marker.get("type")

    return _with_signature(TestResult(
        test_name=case.get("name") or "unnamed test",
        status=status,
        test_file=case.get("file") or case.get("classname") or suite_name,
        duration_ms=_seconds_to_ms(case.get("time")),
        error_message=message,
        stdout=_text(children.get("system-out")),
        stderr=_text(children.get("system-err")),
    ))


def parse_junit_xml(text: str) -> ParsedReport:
    """Parse a JUnit-style XML report (suites may nest arbitrarily).

    Raises:
        ReportParseError: If the text is not XML or has no suite root
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ReportParseError(f"Invalid XML report: {e}") from e
    if _local(root.tag) not in ("testsuites", "testsuite"):
        raise ReportParseError(f"Unexpected XML root element: {root.tag}")

    report = ParsedReport(framework="junit")

    def walk(element: ET.Element, suite_name: Optional[str]) -> None:
        for child in element:
            tag = _local(child.tag)
            if tag == "testsuite":
                walk(child, child.get("name") or suite_name)
            elif tag == "testcase":
                report.tests.append(_parse_testcase(child, suite_name))

    if _local(root.tag) == "testsuite":
        walk(root, root.get("name"))
    else:
        walk(root, None)

    if report.tests:
        report.total, report.passed, report.failed, report.skipped = _counts_from(report.tests)
    else:
        total = _int(root.get("tests")) or 0
        failed = (_int(root.get("failures")) or 0) + (_int(root.get("errors")) or 0)
        skipped = _int(root.get("skipped")) or _int(root.get("disabled")) or 0
        report.total, report.failed, report.skipped = total, failed, skipped
        report.passed = max(total - failed - skipped, 0)

    report.duration_ms = _seconds_to_ms(root.get("time"))
    if report.duration_ms is None:
        durations = [t.duration_ms for t in report.tests if t.duration_ms is not None]
        report.duration_ms = sum(durations) if durations else None
    return report


# ========== Files ==========

def parse_report_text(text: str, suffix: str = "") -> ParsedReport:
    """Dispatch on file extension, falling back to sniffing the content."""
    suffix = suffix.lower()
    if suffix == ".json":
        return parse_jest_json(text)
    if suffix == ".xml":
        return parse_junit_xml(text)
    stripped = text.lstrip()
    if stripped.startswith("<"):
        return parse_junit_xml(text)
    if stripped.startswith("{"):
        return parse_jest_json(text)
    raise ReportParseError("Report is neither JSON nor XML")


def parse_report(path: Path, retries: int = 3, backoff: float = 0.2) -> ParsedReport:
    """Read and parse a report, retrying while it may still be being written.

    Args:
        path: Report file
        retries: Extra attempts after the first
        backoff: Initial delay in seconds, doubled each retry

    Raises:
        ReportParseError: If the file still cannot be read or parsed
    """
    last_error: Optional[Exception] = None
    for attempt in range(retries + 1):
        try:
            text = path.read_text(encoding="utf-8")
            if not text.strip():
                raise ReportParseError(f"Empty report: {path}")
            return parse_report_text(text, path.suffix)
        except (OSError, UnicodeDecodeError, ReportParseError) as e:
            last_error = e
            if attempt < retries:
                time.sleep(backoff * (2 ** attempt))
    raise ReportParseError(f"Cannot parse report {path}: {last_error}") from last_error


def resolve_project(path: Path, projects: Iterable[Project]) -> Optional[Project]:
    """Owning project of a file.

    Longest matching configured root wins. Otherwise walk up the parent
    directories to the nearest project marker and accept it if that
    directory is a known root.
    """
    target = path.expanduser().resolve()
    projects = list(projects)
    best: Optional[Project] = None
    best_len = -1
    for project in projects:
        root = Path(project.root_path)
        if target == root or root in target.parents:
            if len(root.parts) > best_len:
                best, best_len = project, len(root.parts)
    if best is not None:
        return best

    by_root = {}
    for project in projects:
        try:
            by_root[Path(project.root_path).resolve()] = project
        except OSError:
            continue
    for directory in target.parents:
        if any((directory / marker).exists() for marker in PROJECT_MARKERS):
            found = by_root.get(directory)
            if found is None:
                logger.debug("Nearest project marker %s is not a known project", directory)
            return found
    return None


class TestReportIngestor:
    """Parses, attributes, and stores test reports."""
    __test__ = False

    def __init__(self, engine: "JournalEngine", settings: Optional["WatchSettings"] = None):
        self.engine = engine
        self.settings = settings or engine.config.watch

    def ingest(self, path: Path) -> Optional[IngestResult]:
        """Ingest one report file.

        Returns:
            The stored result, or None when no project owns the file

        Raises:
            ReportParseError: If the report cannot be parsed
        """
        path = Path(path)
        report = parse_report(path, self.settings.read_retries, self.settings.read_backoff)
        project = resolve_project(path, self.engine.store.list_projects())
        if project is None:
            logger.warning("Dropping test report %s: no known project owns it", path)
            return None

        store = self.engine.store
        active = store.get_active_session(project.id)
        run = store.record_test_run(
            project.id,
            report.to_run(source_file=str(path)),
            session_id=active.id if active else None,
            results=report.tests,
        )
        result = IngestResult(
            project=project,
            run=run,
            results=report.tests,
            session_id=active.id if active else None,
        )
        logger.info(
            "Ingested %s for %s: %d/%d passed",
            path.name,
            project.name,
            run.passed_tests,
            run.total_tests,
        )

        for test in report.tests:
            if test.status not in (TestStatus.FAILED, TestStatus.ERROR) or not test.error_signature:
                continue
            match = self._lookup(test.error_signature)
            if match is not None:
                result.matches[test.test_name] = match
                logger.info("Known fix for %s: %s", test.test_name, self._describe(match))
        return result

    def _lookup(self, signature: str) -> Optional[Playbook | UniversalPattern]:
        playbooks = self.engine.store.find_playbooks(signature, limit=1, include_drafts=True)
        if playbooks:
            return playbooks[0]
        patterns = self.engine.store.find_patterns(signature, limit=1)
        return patterns[0] if patterns else None

    @staticmethod
    def _describe(match: Playbook | UniversalPattern) -> str:
        if isinstance(match, Playbook):
            return f"playbook #{match.id} '{match.title}' (confidence {match.confidence_score:.2f})"
        return f"pattern '{match.signature}' best strategy {match.best_strategy}"


# ========== Continuous watching ==========

class _ReportHandler(FileSystemEventHandler):
    def __init__(self, watcher: "TestReportWatcher", root: Path):
        self.watcher = watcher
        self.root = root

    def on_created(self, event):
        if event.is_directory:
            return
        self.watcher.notify(self.root, Path(event.src_path))

    def on_modified(self, event):
        if event.is_directory:
            return
        self.watcher.notify(self.root, Path(event.src_path))

    def on_moved(self, event):
        if event.is_directory:
            return
        self.watcher.notify(self.root, Path(event.dest_path))


class TestReportWatcher:
    """Watches project roots for report files and ingests them once stable.

    A report is ingested after it has been quiet for ``stability_seconds``,
    so files still being written are not read half-way.
    """
    __test__ = False

    IGNORED_DIRS = {"node_modules", ".git"}

    def __init__(
        self,
        ingestor: TestReportIngestor,
        roots: Iterable[Path],
        patterns: Optional[list[str]] = None,
        stability_seconds: float = 0.5,
    ):
        self.ingestor = ingestor
        self.roots = [Path(r) for r in roots]
        self.patterns = patterns or ingestor.settings.report_patterns
        self.stability_seconds = stability_seconds
        self.ingested: list[IngestResult] = []
        self.failures = 0
        self._timers: dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()
        self._observers: list[Observer] = []
        self._accepting = False

    def matches(self, root: Path, path: Path) -> bool:
        try:
            rel = path.relative_to(root)
        except ValueError:
            return False
        if any(part in self.IGNORED_DIRS for part in rel.parts):
            return False
        rel_str = rel.as_posix()
        return any(fnmatch(rel_str, p) or fnmatch(rel_str, f"*/{p}") for p in self.patterns)

    def start(self) -> None:
        self._accepting = True
        for root in self.roots:
            if not root.is_dir():
                logger.warning("Skipping report watch for inaccessible root %s", root)
                continue
            observer = Observer()
            observer.schedule(_ReportHandler(self, root), str(root), recursive=True)
            observer.start()
            self._observers.append(observer)
            logger.debug("Watching %s for test reports", root)

    def notify(self, root: Path, path: Path) -> None:
        if not self._accepting or not self.matches(root, path):
            return
        with self._lock:
            timer = self._timers.pop(path, None)
            if timer is not None:
                timer.cancel()
            timer = threading.Timer(self.stability_seconds, self._fire, args=(path,))
            timer.daemon = True
            self._timers[path] = timer
            timer.start()

    def _fire(self, path: Path) -> None:
        with self._lock:
            self._timers.pop(path, None)
        self.process(path)

    def process(self, path: Path) -> Optional[IngestResult]:
        """Ingest one report, logging instead of raising on bad input."""
        try:
            result = self.ingestor.ingest(path)
        except ReportParseError as e:
            self.failures += 1
            logger.warning("Skipping unparseable report %s: %s", path, e)
            return None
        except Exception:
            self.failures += 1
            logger.exception("Failed to ingest report %s", path)
            return None
        if result is not None:
            self.ingested.append(result)
        return result

    def stop(self) -> None:
        """Stop watching; reports waiting for stability are ingested now."""
        self._accepting = False
        for observer in self._observers:
            observer.stop()
        for observer in self._observers:
            observer.join()
        self._observers = []

        with self._lock:
            pending = list(self._timers)
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        for path in pending:
            self.process(path)
