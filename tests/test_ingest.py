"""Tests for test report parsing, attribution, and ingestion."""

import json
import time

import pytest

from devjournal.ingest import (
    ReportParseError,
    TestReportIngestor,
    TestReportWatcher,
    map_status,
    parse_jest_json,
    parse_junit_xml,
    parse_report,
    parse_report_text,
    resolve_project,
)
from devjournal.models import EntryType, RunStatus, TestStatus
from devjournal.signatures import generate_error_signature

NESTED_JUNIT = """<?xml version="1.0" encoding="UTF-8"?>
<testsuites time="1.5">
  <testsuite name="outer">
    <testsuite name="inner">
      <testcase name="adds" classname="pkg.Calc" time="0.1"/>
      <testcase name="divides" classname="pkg.Calc" time="0.2">
        <failure message="AssertionError: expected 1 to equal 2">at calc.py:10</failure>
      </testcase>
    </testsuite>
    <testcase name="later" time="0.3"><skipped/></testcase>
    <testcase name="crashes">
      <error type="RuntimeError">boom</error>
      <system-out>log line</system-out>
    </testcase>
  </testsuite>
</testsuites>
"""


class TestStatusMapping:
    """Tests for framework status normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("passed", TestStatus.PASSED),
        ("PASS", TestStatus.PASSED),
        ("failed", TestStatus.FAILED),
        ("pending", TestStatus.SKIPPED),
        ("todo", TestStatus.SKIPPED),
        ("disabled", TestStatus.SKIPPED),
        ("exploded", TestStatus.ERROR),
        (None, TestStatus.ERROR),
    ])
    def test_map_status(self, raw, expected):
        assert map_status(raw) == expected


class TestJestParsing:
    """Tests for Jest-style JSON reports."""

    def test_counts_and_failures(self, temp_dir, write_report):
        report = parse_jest_json(write_report(temp_dir, passed=10, failed=2).read_text())

        assert report.framework == "jest"
        assert (report.total, report.passed, report.failed) == (12, 10, 2)
        assert report.status == RunStatus.FAILED
        failures = [t for t in report.tests if t.status == TestStatus.FAILED]
        assert len(failures) == 2
        assert failures[0].test_file == "/app/src/auth.test.ts"
        assert failures[0].error_signature == "TypeError: Cannot read property 'id' of undefined"
        assert report.duration_ms == 10 * 5 + 2 * 7

    def test_runtime_error_suites_count_as_failures(self):
        data = {
            "numTotalTests": 1,
            "numPassedTests": 1,
            "numFailedTests": 0,
            "numRuntimeErrorTestSuites": 1,
            "testResults": [],
        }
        report = parse_jest_json(json.dumps(data))
        assert (report.total, report.passed, report.failed) == (2, 1, 1)
        assert report.passed + report.failed + report.skipped == report.total
        assert report.status == RunStatus.FAILED

    def test_suite_that_never_ran(self):
        """A suite failing before any test runs becomes an ERROR case."""
        data = {
            "testResults": [
                {
                    "name": "/app/src/broken.test.ts",
                    "status": "failed",
                    "assertionResults": [],
                    "message": "SyntaxError: Unexpected token '}'",
                }
            ]
        }
        report = parse_jest_json(json.dumps(data))

        assert (report.total, report.failed) == (1, 1)
        assert report.tests[0].status == TestStatus.ERROR
        assert report.tests[0].error_signature.startswith("SyntaxError:")

    def test_not_a_report(self):
        with pytest.raises(ReportParseError):
            parse_jest_json('{"hello": "world"}')
        with pytest.raises(ReportParseError):
            parse_jest_json("{not json")


class TestJUnitParsing:
    """Tests for JUnit-style XML reports."""

    def test_nested_suites(self):
        report = parse_junit_xml(NESTED_JUNIT)

        assert report.framework == "junit"
        assert (report.total, report.passed, report.failed, report.skipped) == (4, 1, 2, 1)
        assert report.duration_ms == 1500

        by_name = {t.test_name: t for t in report.tests}
        assert by_name["divides"].status == TestStatus.FAILED
        assert by_name["divides"].error_message == "AssertionError: expected 1 to equal 2\nat calc.py:10"
        assert by_name["divides"].test_file == "pkg.Calc"
        assert by_name["later"].test_file == "outer"
        assert by_name["crashes"].status == TestStatus.ERROR
        assert by_name["crashes"].error_message == "boom"
        assert by_name["crashes"].stdout == "log line"

    def test_namespaced_root(self):
        xml = '<testsuite xmlns="urn:example" name="s"><testcase name="t"/></testsuite>'
        report = parse_junit_xml(xml)
        assert report.total == 1
        assert report.passed == 1

    def test_counts_from_attributes_without_cases(self):
        report = parse_junit_xml('<testsuite tests="5" failures="1" errors="1" skipped="1"/>')
        assert (report.total, report.passed, report.failed, report.skipped) == (5, 2, 2, 1)

    def test_duration_summed_without_root_time(self):
        xml = '<testsuite><testcase name="a" time="0.25"/><testcase name="b" time="0.5"/></testsuite>'
        assert parse_junit_xml(xml).duration_ms == 750

    def test_wrong_root(self):
        with pytest.raises(ReportParseError):
            parse_junit_xml("<html/>")


class TestReportFiles:
    """Tests for format dispatch and file reading."""

    def test_sniffs_content_without_suffix(self):
        assert parse_report_text('<testsuite name="s"/>').framework == "junit"
        assert parse_report_text('{"testResults": []}').framework == "jest"

    def test_unrecognized_content(self):
        with pytest.raises(ReportParseError):
            parse_report_text("plain text output", ".txt")

    def test_empty_file(self, temp_dir):
        path = temp_dir / "junit.xml"
        path.write_text("")
        with pytest.raises(ReportParseError):
            parse_report(path, retries=0)

    def test_missing_file(self, temp_dir):
        with pytest.raises(ReportParseError):
            parse_report(temp_dir / "nope.json", retries=1, backoff=0.01)


class TestResolveProject:
    """Tests for attributing a report file to a project."""

    def test_longest_root_wins(self, engine, project, project_dir):
        nested_dir = project_dir / "packages" / "lib"
        nested_dir.mkdir(parents=True)
        nested = engine.add_project("lib", nested_dir)

        owner = resolve_project(nested_dir / "junit.xml", engine.list_projects())
        assert owner.id == nested.id
        owner = resolve_project(project_dir / "junit.xml", engine.list_projects())
        assert owner.id == project.id

    def test_unknown_location(self, engine, project, temp_dir):
        assert resolve_project(temp_dir / "elsewhere" / "junit.xml", engine.list_projects()) is None

    def test_unregistered_marker_root(self, engine, project, temp_dir):
        """A directory that looks like a project is not registered automatically."""
        other = temp_dir / "other"
        other.mkdir()
        (other / "pyproject.toml").write_text("")
        assert resolve_project(other / "junit.xml", engine.list_projects()) is None


class TestIngestor:
    """Tests for storing parsed reports."""

    def test_failed_login_report(self, engine, project, project_dir, write_report):
        """12 tests, 10 passed, 2 failed with a path-bearing TypeError."""
        path = write_report(
            project_dir,
            passed=10,
            failed=2,
            message="TypeError: Cannot read property 'email' of undefined",
        )
        result = engine.ingest_report(path)

        assert result.project.id == project.id
        assert result.run.status == RunStatus.FAILED
        assert (result.run.total_tests, result.run.passed_tests, result.run.failed_tests) == (12, 10, 2)

        stored = engine.store.test_results_for_run(result.run.id)
        assert len(stored) == 12
        failures = [r for r in stored if r.status == TestStatus.FAILED]
        assert len(failures) == 2
        for failure in failures:
            assert failure.error_signature.startswith("TypeError:")
            assert "Cannot read property 'email' of undefined" in failure.error_signature
            assert "/app/src/auth.ts" not in failure.error_signature
            assert "42" not in failure.error_signature

        entry = engine.store.require_entry(result.run.journal_entry_id)
        assert entry.entry_type == EntryType.TEST_RUN
        assert entry.details["source_file"] == str(path)

    def test_unattributed_report_dropped(self, engine, project, temp_dir, write_report):
        elsewhere = temp_dir / "elsewhere"
        elsewhere.mkdir()
        path = write_report(elsewhere)

        assert engine.ingest_report(path) is None
        assert engine.recent_entries(entry_type=EntryType.TEST_RUN) == []

    def test_attaches_to_active_session(self, engine, project, project_dir, write_report):
        session = engine.start_session(project.id, "fix auth tests")
        result = engine.ingest_report(write_report(project_dir))

        assert result.session_id == session.id
        types = [e.entry_type for e in engine.session_entries(session.id)]
        assert EntryType.TEST_RUN in types

    def test_no_session_stores_project_level_run(self, engine, project, project_dir, write_report):
        result = engine.ingest_report(write_report(project_dir, failed=0))
        assert result.session_id is None
        assert result.run.status == RunStatus.PASSED
        assert engine.store.require_entry(result.run.journal_entry_id).session_id is None

    def test_known_fix_surfaced(self, engine, project, project_dir, write_report):
        signature = generate_error_signature("TypeError: Cannot read property 'id' of undefined")
        playbook = engine.store.create_playbook(signature, "Fixing: missing id")

        result = engine.ingest_report(write_report(project_dir))

        assert set(result.matches) == {"auth fails case 0", "auth fails case 1"}
        assert all(m.id == playbook.id for m in result.matches.values())
        assert result.to_dict()["matches"]["auth fails case 0"]["title"] == "Fixing: missing id"

    def test_pattern_surfaced_without_playbook(self, engine, project, project_dir, write_report):
        signature = generate_error_signature("TypeError: Cannot read property 'id' of undefined")
        engine.reflector.reinforce_pattern(signature, "defensive-coding", was_success=True)

        result = engine.ingest_report(write_report(project_dir))
        match = result.matches["auth fails case 0"]
        assert match.best_strategy == "defensive-coding"

    def test_unparseable_report(self, engine, project, project_dir):
        engine.config.watch.read_retries = 0
        path = project_dir / "junit.xml"
        path.write_text("<testsuite")

        with pytest.raises(ReportParseError):
            engine.ingest_report(path)


class TestReportWatcherBehavior:
    """Tests for the continuous report watcher."""

    @pytest.fixture
    def watcher(self, engine, project_dir):
        engine.config.watch.read_retries = 0
        w = TestReportWatcher(TestReportIngestor(engine), [project_dir], stability_seconds=0.1)
        yield w
        w.stop()

    def test_matches(self, watcher, project_dir, temp_dir):
        assert watcher.matches(project_dir, project_dir / "jest-results.json")
        assert watcher.matches(project_dir, project_dir / "packages" / "api" / "junit.xml")
        assert watcher.matches(project_dir, project_dir / "build" / "test-results" / "unit" / "TEST-a.xml")
        assert not watcher.matches(project_dir, project_dir / "node_modules" / "x" / "junit.xml")
        assert not watcher.matches(project_dir, project_dir / "README.md")
        assert not watcher.matches(project_dir, temp_dir / "junit.xml")

    def test_process_counts_failures(self, watcher, project, project_dir):
        bad = project_dir / "junit.xml"
        bad.write_text("not a report")

        assert watcher.process(bad) is None
        assert watcher.failures == 1
        assert watcher.ingested == []

    def test_stop_ingests_pending(self, engine, project, project_dir, write_report):
        path = write_report(project_dir)
        watcher = TestReportWatcher(TestReportIngestor(engine), [project_dir], stability_seconds=60)
        watcher.start()
        watcher.notify(project_dir, path)
        watcher.stop()

        assert len(watcher.ingested) == 1
        assert watcher.ingested[0].run.failed_tests == 2

    def test_notify_ignored_when_not_started(self, watcher, project, project_dir, write_report):
        watcher.notify(project_dir, write_report(project_dir))
        watcher.stop()
        assert watcher.ingested == []

    def test_picks_up_new_report(self, watcher, project, project_dir, write_report):
        watcher.start()
        write_report(project_dir)

        deadline = time.monotonic() + 10
        while not watcher.ingested and time.monotonic() < deadline:
            time.sleep(0.05)

        assert len(watcher.ingested) >= 1
        assert watcher.ingested[0].project.id == project.id
