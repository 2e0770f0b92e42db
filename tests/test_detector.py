"""Tests for project change detection."""

import shutil
import subprocess
import time
from datetime import timedelta

import pytest

from devjournal.detector import ChangeDetector, categorize_file, classify_change, is_significant_change
from devjournal.models import ChangeCategory, ChangeType, EntryType, utc_now

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(root, *args):
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=root,
        check=True,
        capture_output=True,
    )


class Sink:
    """Collects emitted change batches."""

    def __init__(self):
        self.batches = []

    def __call__(self, project_id, changes):
        self.batches.append((project_id, changes))

    @property
    def paths(self):
        return [c.path for _, changes in self.batches for c in changes]


@pytest.fixture
def sink():
    return Sink()


@pytest.fixture
def detector(project, sink):
    det = ChangeDetector([project], sink, debounce_seconds=60, flush_interval=60)
    det.start()
    yield det
    det.stop()


class TestClassification:
    """Tests for file categorization and significance."""

    @pytest.mark.parametrize("path,category", [
        ("package.json", ChangeCategory.DEPS),
        ("backend/requirements.txt", ChangeCategory.DEPS),
        ("README.md", ChangeCategory.DOCS),
        ("docs/guide.txt", ChangeCategory.DOCS),
        (".env", ChangeCategory.CONFIG),
        (".eslintrc.js", ChangeCategory.CONFIG),
        ("vite.config.ts", ChangeCategory.CONFIG),
        ("tsconfig.json", ChangeCategory.CONFIG),
        ("deploy/settings.yaml", ChangeCategory.CONFIG),
        ("src/app.ts", ChangeCategory.CODE),
        ("assets/logo.png", ChangeCategory.OTHER),
    ])
    def test_categorize(self, path, category):
        assert categorize_file(path) == category

    def test_manifests_always_significant(self):
        assert is_significant_change("package.json", ChangeType.MODIFIED)
        assert is_significant_change("pyproject.toml", ChangeType.MODIFIED)
        assert is_significant_change("README.md", ChangeType.MODIFIED)

    def test_source_significant_only_when_added_or_removed(self):
        assert is_significant_change("src/app.ts", ChangeType.ADDED)
        assert is_significant_change("src/app.ts", ChangeType.DELETED)
        assert not is_significant_change("src/app.ts", ChangeType.MODIFIED)
        assert not is_significant_change("notes.txt", ChangeType.ADDED)

    def test_classify_change(self):
        change = classify_change(7, "src/app.py", ChangeType.ADDED)
        assert change.project_id == 7
        assert change.category == ChangeCategory.CODE
        assert change.significant
        assert change.to_dict()["change_type"] == "added"


class TestRecording:
    """Tests for queueing and flushing recorded events."""

    def test_not_recording_before_start(self, project, project_dir, sink):
        det = ChangeDetector([project], sink)
        assert det.record(project, project_dir / "src" / "a.ts", ChangeType.ADDED) is None

    def test_relative_paths_and_coalescing(self, detector, project, project_dir, sink):
        """Several events on one path collapse to the latest."""
        detector.record(project, project_dir / "src" / "a.ts", ChangeType.MODIFIED)
        detector.record(project, project_dir / "src" / "a.ts", ChangeType.MODIFIED)
        detector.record(project, project_dir / "src" / "b.ts", ChangeType.MODIFIED)
        assert detector.pending_count() == 2

        assert detector.flush_backlog() == 2
        assert sink.paths == ["src/a.ts", "src/b.ts"]
        assert sink.batches[0][0] == project.id

    def test_significant_and_backlog_kept_apart(self, detector, project, project_dir, sink):
        detector.record(project, project_dir / "package.json", ChangeType.MODIFIED)
        detector.record(project, project_dir / "src" / "a.ts", ChangeType.MODIFIED)

        assert detector.flush_significant() == 1
        assert sink.paths == ["package.json"]
        assert detector.pending_count() == 1

    def test_ignored_directories(self, detector, project, project_dir, temp_dir):
        assert detector.record(project, project_dir / "node_modules" / "x" / "index.js", ChangeType.ADDED) is None
        assert detector.record(project, project_dir / ".git" / "HEAD", ChangeType.MODIFIED) is None
        assert detector.record(project, temp_dir / "outside.ts", ChangeType.ADDED) is None
        assert detector.pending_count() == 0

    def test_significant_changes_debounced(self, project, project_dir, sink):
        det = ChangeDetector([project], sink, debounce_seconds=0.05, flush_interval=60)
        det.start()
        try:
            det.record(project, project_dir / "package.json", ChangeType.MODIFIED)
            deadline = time.monotonic() + 5
            while not sink.batches and time.monotonic() < deadline:
                time.sleep(0.02)
            assert sink.paths == ["package.json"]
        finally:
            det.stop()

    def test_stop_flushes_everything(self, project, project_dir, sink):
        det = ChangeDetector([project], sink, debounce_seconds=60, flush_interval=60)
        det.start()
        det.record(project, project_dir / "package.json", ChangeType.MODIFIED)
        det.record(project, project_dir / "src" / "a.ts", ChangeType.MODIFIED)
        det.stop()

        assert sorted(sink.paths) == ["package.json", "src/a.ts"]

    def test_sink_failure_isolated(self, project, project_dir):
        """A failing sink is logged; later batches still go out."""
        calls = []

        def flaky_sink(project_id, changes):
            calls.append(changes)
            if len(calls) == 1:
                raise RuntimeError("sink down")

        det = ChangeDetector([project], flaky_sink, debounce_seconds=60, flush_interval=60)
        det.start()
        try:
            det.record(project, project_dir / "src" / "a.ts", ChangeType.MODIFIED)
            assert det.flush() == 0
            det.record(project, project_dir / "src" / "b.ts", ChangeType.MODIFIED)
            assert det.flush() == 1
        finally:
            det.stop()

    def test_inaccessible_root_skipped(self, engine, project, temp_dir, sink):
        gone = engine.add_project("gone", temp_dir / "missing")
        det = ChangeDetector([project, gone], sink)
        try:
            assert det.start() == 1
        finally:
            det.stop()

    def test_watchdog_events_reach_sink(self, project, project_dir, sink):
        det = ChangeDetector([project], sink, debounce_seconds=0.05, flush_interval=0.1)
        det.start()
        try:
            (project_dir / "src").mkdir()
            (project_dir / "src" / "new.ts").write_text("export {}")
            deadline = time.monotonic() + 10
            while "src/new.ts" not in sink.paths and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            det.stop()
        assert "src/new.ts" in sink.paths

    def test_engine_records_batches(self, engine, project, project_dir):
        """Batches land as FILE_CHANGE entries on the active session."""
        session = engine.start_session(project.id, "upgrade deps")
        det = ChangeDetector([project], engine.record_changes, debounce_seconds=60, flush_interval=60)
        det.start()
        det.record(project, project_dir / "package.json", ChangeType.MODIFIED)
        det.stop()

        entries = [e for e in engine.session_entries(session.id) if e.entry_type == EntryType.FILE_CHANGE]
        assert len(entries) == 1
        assert "package.json" in entries[0].summary
        assert entries[0].details["changes"][0]["category"] == "deps"


@requires_git
class TestGit:
    """Tests for git-backed scans."""

    def test_uncommitted_changes(self, project, project_dir, sink):
        _git(project_dir, "init", "-q")
        (project_dir / "app.py").write_text("print('hi')\n")
        (project_dir / "node_modules").mkdir()
        (project_dir / "node_modules" / "dep.js").write_text("")

        changes = ChangeDetector([project], sink).scan_git_changes()
        by_path = {c.path: c for c in changes}

        assert by_path["app.py"].change_type == ChangeType.ADDED
        assert by_path["app.py"].significant
        assert by_path["package.json"].category == ChangeCategory.DEPS
        assert not any(p.startswith("node_modules") for p in by_path)

    def test_deleted_and_modified(self, project, project_dir, sink):
        _git(project_dir, "init", "-q")
        (project_dir / "a.py").write_text("a = 1\n")
        (project_dir / "b.py").write_text("b = 1\n")
        _git(project_dir, "add", ".")
        _git(project_dir, "commit", "-q", "-m", "initial")
        (project_dir / "a.py").write_text("a = 2\n")
        (project_dir / "b.py").unlink()

        by_path = {c.path: c for c in ChangeDetector([project], sink).scan_git_changes()}
        assert by_path["a.py"].change_type == ChangeType.MODIFIED
        assert by_path["b.py"].change_type == ChangeType.DELETED

    def test_recent_commits_and_staleness(self, project, project_dir, sink):
        _git(project_dir, "init", "-q")
        det = ChangeDetector([project], sink)
        assert det.stale_projects() == [(project, None)]

        _git(project_dir, "add", ".")
        _git(project_dir, "commit", "-q", "-m", "add manifest")

        commits = det.recent_commits(days=7)
        assert [c.subject for c in commits] == ["add manifest"]
        assert len(commits[0].commit_hash) == 40

        assert det.stale_projects(days=30) == []
        stale = det.stale_projects(days=30, now=utc_now() + timedelta(days=60))
        assert stale[0][0].id == project.id
        assert stale[0][1] is not None

    def test_broken_repository_not_stale(self, project, project_dir, sink):
        """A .git directory git cannot read is skipped, not reported as never committed."""
        (project_dir / ".git").mkdir()
        det = ChangeDetector([project], sink)
        assert det.stale_projects(days=30) == []
        assert det.recent_commits() == []

    def test_non_git_project_ignored(self, project, sink):
        det = ChangeDetector([project], sink)
        assert det.scan_git_changes() == []
        assert det.recent_commits() == []
        assert det.stale_projects() == []
