"""Shared pytest fixtures for devjournal tests."""

import json
import tempfile
from pathlib import Path

import pytest

from devjournal.config import JournalConfig
from devjournal.engine import JournalEngine
from devjournal.store import JournalStore


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the user's real database and config."""
    monkeypatch.delenv("DEVJOURNAL_DB", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))


@pytest.fixture
def temp_dir():
    """Create a temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def config(temp_dir):
    """Create a test configuration with the database inside the temp dir."""
    return JournalConfig(db_path=temp_dir / "journal.db")


@pytest.fixture
def store(config):
    """Create a store with proper cleanup."""
    st = JournalStore(config.db_path)
    yield st
    st.close()


@pytest.fixture
def engine(config):
    """Create a test engine with proper cleanup."""
    eng = JournalEngine(config)
    yield eng
    eng.close()


@pytest.fixture
def project_dir(temp_dir):
    """A project root with a marker file."""
    root = temp_dir / "webapp"
    root.mkdir()
    (root / "package.json").write_text("{}")
    return root


@pytest.fixture
def project(engine, project_dir):
    """A registered project."""
    return engine.add_project("webapp", project_dir, "typescript")


def jest_report(passed=10, failed=2, message="TypeError: Cannot read property 'id' of undefined"):
    """Build a Jest-style JSON report with the given outcome counts."""
    assertions = [
        {"fullName": f"auth passes case {i}", "title": f"case {i}", "status": "passed", "duration": 5}
        for i in range(passed)
    ]
    assertions += [
        {
            "fullName": f"auth fails case {i}",
            "title": f"fails {i}",
            "status": "failed",
            "duration": 7,
            "failureMessages": [f"{message}\n    at login (/app/src/auth.ts:42:10)"],
        }
        for i in range(failed)
    ]
    return json.dumps({
        "numTotalTests": passed + failed,
        "numPassedTests": passed,
        "numFailedTests": failed,
        "numPendingTests": 0,
        "success": failed == 0,
        "testResults": [
            {
                "name": "/app/src/auth.test.ts",
                "status": "failed" if failed else "passed",
                "assertionResults": assertions,
            }
        ],
    })


@pytest.fixture
def write_report():
    """Write a Jest report into a directory and return its path."""

    def _write(directory: Path, name: str = "jest-results.json", **kwargs) -> Path:
        path = directory / name
        path.write_text(jest_report(**kwargs))
        return path

    return _write
