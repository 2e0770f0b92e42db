"""Project change detection.

Watches project roots with watchdog, classifies each changed file, and
hands batches to a sink. Significant changes (dependency manifests, build
config, added or removed source files) are flushed after a short quiet
period; everything else is batched and flushed on an interval. Also scans
git for uncommitted changes, recent commits, and stale projects.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path, PurePath
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import DEFAULT_IGNORE
from .models import (
    ChangeCategory,
    ChangeType,
    CommitInfo,
    DetectedChange,
    Project,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30

DEPENDENCY_FILES = {
    "package.json",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "requirements.txt",
    "Pipfile",
    "Pipfile.lock",
    "poetry.lock",
    "go.mod",
    "go.sum",
    "Cargo.toml",
    "Cargo.lock",
    "Gemfile",
    "Gemfile.lock",
}

SIGNIFICANT_FILES = {
    "package.json",
    "package-lock.json",
    "tsconfig.json",
    "vite.config.ts",
    "next.config.js",
    "firebase.json",
    "firestore.rules",
    ".env.example",
    "requirements.txt",
    "pyproject.toml",
    "setup.cfg",
    "go.mod",
    "Cargo.toml",
    "CLAUDE.md",
    "GEMINI_CONTEXT.md",
    "README.md",
}

SOURCE_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".rs", ".java", ".kt", ".swift"}
CONFIG_EXTENSIONS = {".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".rules"}
DOC_EXTENSIONS = {".md", ".rst", ".adoc"}


def categorize_file(path: str | PurePath) -> ChangeCategory:
    """Bucket a file path into a change category."""
    pure = PurePath(path)
    name = pure.name
    suffix = pure.suffix.lower()
    stem = pure.stem.lower()

    if name in DEPENDENCY_FILES:
        return ChangeCategory.DEPS
    if suffix in DOC_EXTENSIONS or "docs" in pure.parts:
        return ChangeCategory.DOCS
    if name.startswith(".") and suffix not in SOURCE_EXTENSIONS:
        return ChangeCategory.CONFIG
    if name in SIGNIFICANT_FILES or "config" in stem or stem.endswith("rc"):
        return ChangeCategory.CONFIG
    if suffix in SOURCE_EXTENSIONS:
        return ChangeCategory.CODE
    if suffix in CONFIG_EXTENSIONS:
        return ChangeCategory.CONFIG
    return ChangeCategory.OTHER


def is_significant_change(path: str | PurePath, change_type: ChangeType) -> bool:
    """Whether a change should be surfaced right away."""
    pure = PurePath(path)
    if pure.name in SIGNIFICANT_FILES:
        return True
    return pure.suffix.lower() in SOURCE_EXTENSIONS and change_type in (ChangeType.ADDED, ChangeType.DELETED)


def classify_change(project_id: int, path: str, change_type: ChangeType) -> DetectedChange:
    return DetectedChange(
        project_id=project_id,
        path=path,
        change_type=change_type,
        category=categorize_file(path),
        significant=is_significant_change(path, change_type),
    )


class _ProjectHandler(FileSystemEventHandler):
    def __init__(self, detector: "ChangeDetector", project: Project):
        self.detector = detector
        self.project = project

    def on_created(self, event):
        if not event.is_directory:
            self.detector.record(self.project, event.src_path, ChangeType.ADDED)

    def on_modified(self, event):
        if not event.is_directory:
            self.detector.record(self.project, event.src_path, ChangeType.MODIFIED)

    def on_deleted(self, event):
        if not event.is_directory:
            self.detector.record(self.project, event.src_path, ChangeType.DELETED)

    def on_moved(self, event):
        if not event.is_directory:
            self.detector.record(self.project, event.src_path, ChangeType.DELETED)
            self.detector.record(self.project, event.dest_path, ChangeType.ADDED)


class ChangeDetector:
    """Watches project roots and emits classified change batches.

    Args:
        projects: Projects to watch
        on_changes: Sink called as ``on_changes(project_id, changes)``
        debounce_seconds: Quiet period before significant changes are flushed
        flush_interval: Seconds between flushes of ordinary changes
        ignore: Directory names whose contents are never reported
    """

    def __init__(
        self,
        projects: Iterable[Project],
        on_changes: Callable[[int, list[DetectedChange]], object],
        debounce_seconds: float = 0.5,
        flush_interval: float = 5.0,
        ignore: Optional[Iterable[str]] = None,
    ):
        self.projects = list(projects)
        self.on_changes = on_changes
        self.debounce_seconds = debounce_seconds
        self.flush_interval = flush_interval
        self.ignore = set(ignore if ignore is not None else DEFAULT_IGNORE)

        self._lock = threading.Lock()
        # project id -> path -> latest change for that path
        self._significant: dict[int, OrderedDict[str, DetectedChange]] = {}
        self._backlog: dict[int, OrderedDict[str, DetectedChange]] = {}
        self._debounce: Optional[threading.Timer] = None
        self._stop = threading.Event()
        self._flusher: Optional[threading.Thread] = None
        self._observers: list[Observer] = []
        self._accepting = False

    # ========== Lifecycle ==========

    def start(self) -> int:
        """Begin watching. Returns the number of roots being watched."""
        self._accepting = True
        self._stop.clear()
        for project in self.projects:
            root = Path(project.root_path)
            if not root.is_dir():
                logger.warning("Skipping inaccessible project root %s (%s)", root, project.name)
                continue
            observer = Observer()
            try:
                observer.schedule(_ProjectHandler(self, project), str(root), recursive=True)
                observer.start()
            except OSError as e:
                logger.warning("Cannot watch %s: %s", root, e)
                continue
            self._observers.append(observer)
            logger.info("Watching %s at %s", project.name, root)

        self._flusher = threading.Thread(target=self._flush_loop, name="devjournal-flush", daemon=True)
        self._flusher.start()
        return len(self._observers)

    def stop(self) -> None:
        """Stop watching, emitting anything still pending."""
        self._accepting = False
        for observer in self._observers:
            observer.stop()
        for observer in self._observers:
            observer.join()
        self._observers = []

        self._stop.set()
        if self._flusher is not None:
            self._flusher.join()
            self._flusher = None
        with self._lock:
            if self._debounce is not None:
                self._debounce.cancel()
                self._debounce = None
        self.flush()

    def _flush_loop(self) -> None:
        while not self._stop.wait(self.flush_interval):
            self.flush_backlog()

    # ========== Events ==========

    def is_ignored(self, root: Path, path: Path) -> bool:
        try:
            rel = path.relative_to(root)
        except ValueError:
            return True
        return any(part in self.ignore for part in rel.parts)

    def record(self, project: Project, path: str | Path, change_type: ChangeType) -> Optional[DetectedChange]:
        """Classify and queue one file event."""
        if not self._accepting:
            return None
        root = Path(project.root_path)
        path = Path(path)
        if self.is_ignored(root, path):
            return None
        rel = path.relative_to(root).as_posix()
        change = classify_change(project.id, rel, change_type)

        with self._lock:
            queue = self._significant if change.significant else self._backlog
            pending = queue.setdefault(project.id, OrderedDict())
            pending.pop(rel, None)
            pending[rel] = change
            if change.significant:
                if self._debounce is not None:
                    self._debounce.cancel()
                self._debounce = threading.Timer(self.debounce_seconds, self.flush_significant)
                self._debounce.daemon = True
                self._debounce.start()
        return change

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(p) for p in self._significant.values()) + sum(len(p) for p in self._backlog.values())

    # ========== Flushing ==========

    def flush_significant(self) -> int:
        with self._lock:
            batches, self._significant = self._significant, {}
            self._debounce = None
        return self._emit(batches)

    def flush_backlog(self) -> int:
        with self._lock:
            batches, self._backlog = self._backlog, {}
        return self._emit(batches)

    def flush(self) -> int:
        """Emit every pending change, significant or not."""
        with self._lock:
            batches: dict[int, OrderedDict[str, DetectedChange]] = {}
            for queue in (self._significant, self._backlog):
                for project_id, changes in queue.items():
                    merged = batches.setdefault(project_id, OrderedDict())
                    merged.update(changes)
            self._significant, self._backlog = {}, {}
        return self._emit(batches)

    def _emit(self, batches: dict[int, OrderedDict[str, DetectedChange]]) -> int:
        emitted = 0
        for project_id, changes in batches.items():
            if not changes:
                continue
            try:
                self.on_changes(project_id, list(changes.values()))
                emitted += len(changes)
            except Exception:
                logger.exception("Change sink failed for project %s", project_id)
        return emitted

    # ========== Git ==========

    def _git(self, project: Project, *args: str, quiet: bool = False) -> Optional[str]:
        root = Path(project.root_path)
        if not (root / ".git").exists():
            return None
        log = logger.debug if quiet else logger.warning
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=root,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log("git %s failed for %s: %s", args[0], project.name, e)
            return None
        if result.returncode != 0:
            log("git %s failed for %s: %s", args[0], project.name, result.stderr.strip())
            return None
        return result.stdout

    def _is_repository(self, project: Project) -> bool:
        """True when the project's own .git directory is a usable repository."""
        output = self._git(project, "rev-parse", "--absolute-git-dir")
        if output is None:
            return False
        return Path(output.strip()).resolve() == (Path(project.root_path) / ".git").resolve()

    def scan_git_changes(self) -> list[DetectedChange]:
        """Uncommitted changes across all git projects, from ``git status``."""
        found = []
        for project in self.projects:
            output = self._git(project, "status", "--porcelain", "--untracked-files=all")
            if not output:
                continue
            for line in output.splitlines():
                change = self._parse_status_line(project, line)
                if change is not None:
                    found.append(change)
        return found

    def _parse_status_line(self, project: Project, line: str) -> Optional[DetectedChange]:
        if len(line) < 4:
            return None
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if any(part in self.ignore for part in PurePath(path).parts):
            return None
        if code == "??" or "A" in code:
            change_type = ChangeType.ADDED
        elif "D" in code:
            change_type = ChangeType.DELETED
        else:
            change_type = ChangeType.MODIFIED
        return classify_change(project.id, path, change_type)

    def recent_commits(self, days: int = 7) -> list[CommitInfo]:
        """Commits from the last ``days`` days across all projects, newest first."""
        commits = []
        for project in self.projects:
            output = self._git(project, "log", f"--since={days} days ago", "--format=%H%x1f%s%x1f%aI")
            if not output:
                continue
            for line in output.splitlines():
                parts = line.split("\x1f")
                if len(parts) != 3:
                    continue
                commit_hash, subject, when = parts
                try:
                    committed_at = parse_timestamp(when)
                except ValueError:
                    continue
                commits.append(CommitInfo(project.id, commit_hash, subject, committed_at))
        commits.sort(key=lambda c: c.committed_at, reverse=True)
        return commits

    def stale_projects(self, days: int = 30, now: Optional[datetime] = None) -> list[tuple[Project, Optional[datetime]]]:
        """Git projects with no commit in the last ``days`` days.

        Returns:
            (project, last commit time) pairs; the time is None for repos without commits
        """
        cutoff = (now or utc_now()) - timedelta(days=days)
        stale = []
        for project in self.projects:
            if not (Path(project.root_path) / ".git").exists():
                continue
            if not self._is_repository(project):
                continue
            if self._git(project, "rev-parse", "--verify", "-q", "HEAD", quiet=True) is None:
                # Valid repository with no commits yet
                stale.append((project, None))
                continue
            output = self._git(project, "log", "-1", "--format=%aI")
            if output is None:
                continue
            when = output.strip()
            if not when:
                continue
            try:
                last = parse_timestamp(when)
            except ValueError:
                continue
            if last < cutoff:
                stale.append((project, last))
        return stale
