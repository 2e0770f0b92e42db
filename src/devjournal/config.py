"""Configuration loading for devjournal.

Supports three tiers:
1. Simple config via .toml or .json - most users
2. Python config via .py - power users with hooks or a custom strategy table
3. Full override via constructing JournalConfig directly - tests and embedding
"""

from __future__ import annotations

import importlib.util
import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

DB_ENV_VAR = "DEVJOURNAL_DB"

DEFAULT_IGNORE = [
    "node_modules",
    ".git",
    "dist",
    "build",
    ".next",
    "__pycache__",
    ".venv",
    "venv",
    "coverage",
    ".cache",
    ".pytest_cache",
    ".mypy_cache",
    "playwright-report",
    "test-results",
]

DEFAULT_REPORT_PATTERNS = [
    "junit.xml",
    "junit-*.xml",
    "test-results.xml",
    "jest-results.json",
    "jest-output.json",
    ".jest-results/*.json",
    "coverage/junit.xml",
    "pytest-report.xml",
    "pytest-results.xml",
    "test-output/*.xml",
    "reports/tests/*.xml",
    "build/test-results/**/*.xml",
    "target/surefire-reports/*.xml",
]


@dataclass
class ProjectSeed:
    """A project to register in the catalog at startup."""
    name: str
    path: str
    language: Optional[str] = None


@dataclass
class WatchSettings:
    """Continuous watch and report ingestion tuning."""
    debounce_seconds: float = 0.5
    flush_interval: float = 5.0
    ignore: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    report_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_REPORT_PATTERNS))
    read_retries: int = 3
    read_backoff: float = 0.2


@dataclass
class ReflectionSettings:
    """Thresholds for learning and playbook maintenance."""
    reflect_on_end: bool = True
    playbook_min_successes: int = 2
    initial_confidence: float = 0.6
    trusted_confidence: float = 0.7
    decay_factor: float = 0.995
    stale_days: int = 30
    decay_interval_hours: float = 24.0
    archive_floor: float = 0.2
    archive_min_evidence: int = 5
    promote_min_successes: int = 3
    fuzzy_threshold: float = 0.5


@dataclass
class JournalConfig:
    """Configuration for a journal store and its watchers."""

    db_path: Path = field(default_factory=lambda: default_db_path())
    projects: list[ProjectSeed] = field(default_factory=list)
    watch: WatchSettings = field(default_factory=WatchSettings)
    reflection: ReflectionSettings = field(default_factory=ReflectionSettings)
    flaky_window_days: int = 30

    # Ordered (regex, tag) rows replacing the built-in strategy table
    strategy_patterns: Optional[list[tuple[str, str]]] = None

    # Hooks (populated from Python config)
    hooks: dict[str, Callable] = field(default_factory=dict)

    # Where the config came from, if anywhere
    source: Optional[Path] = None


def default_db_path() -> Path:
    """Database location: $DEVJOURNAL_DB, else under $XDG_DATA_HOME."""
    override = os.environ.get(DB_ENV_VAR)
    if override:
        return Path(override).expanduser()
    data_home = os.environ.get("XDG_DATA_HOME")
    base = Path(data_home) if data_home else Path.home() / ".local" / "share"
    return base / "devjournal" / "journal.db"


def user_config_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    return base / "devjournal"


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_python_config(path: Path) -> tuple[dict[str, Any], dict[str, Callable], Optional[list]]:
    """Load configuration from Python file.

    Returns:
        Tuple of (config_dict, hooks_dict, strategy_patterns)

    Convention:
        - CONFIG dict or config dict for static configuration
        - Functions named hook_* become hooks
        - STRATEGY_PATTERNS list of (regex, tag) replaces the strategy table
    """
    spec = importlib.util.spec_from_file_location("devjournal_user_config", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load Python config from {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules["devjournal_user_config"] = module
    spec.loader.exec_module(module)

    config_dict = {}
    if hasattr(module, "CONFIG"):
        config_dict = module.CONFIG
    elif hasattr(module, "config"):
        config_dict = module.config

    hooks = {}
    for name in dir(module):
        if name.startswith("hook_"):
            hooks[name[5:]] = getattr(module, name)

    patterns = getattr(module, "STRATEGY_PATTERNS", None)
    return config_dict, hooks, patterns


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _as_bool(value: Any) -> bool:
    """Parse a config flag; JSON and env-style strings are read by value."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    return bool(value)


def _as_patterns(rows: Any) -> list[tuple[str, str]]:
    patterns = []
    for row in rows:
        if isinstance(row, dict):
            patterns.append((row["pattern"], row["tag"]))
        else:
            pattern, tag = row
            patterns.append((pattern, tag))
    return patterns


def dict_to_config(data: dict[str, Any], base_dir: Optional[Path] = None) -> JournalConfig:
    """Convert dictionary to JournalConfig.

    Relative paths are resolved against ``base_dir`` (the config file's directory).
    """
    config = JournalConfig()
    base_dir = base_dir or Path.cwd()

    def resolve(p: str) -> Path:
        path = Path(p).expanduser()
        return path if path.is_absolute() else base_dir / path

    if "store" in data and "path" in data["store"] and not os.environ.get(DB_ENV_VAR):
        config.db_path = resolve(data["store"]["path"])

    for proj in data.get("projects", []):
        config.projects.append(ProjectSeed(
            name=proj["name"],
            path=str(resolve(proj["path"])),
            language=proj.get("language"),
        ))

    if "watch" in data:
        watch = data["watch"]
        for key in ("debounce_seconds", "flush_interval", "read_backoff"):
            if key in watch:
                setattr(config.watch, key, float(watch[key]))
        if "read_retries" in watch:
            config.watch.read_retries = int(watch["read_retries"])
        if "ignore" in watch:
            config.watch.ignore = list(watch["ignore"])
        if "extra_ignore" in watch:
            config.watch.ignore.extend(watch["extra_ignore"])
        if "report_patterns" in watch:
            config.watch.report_patterns = list(watch["report_patterns"])

    if "reflection" in data:
        refl = data["reflection"]
        defaults = ReflectionSettings()
        for key, value in refl.items():
            if not hasattr(defaults, key):
                continue
            kind = type(getattr(defaults, key))
            setattr(config.reflection, key, _as_bool(value) if kind is bool else kind(value))

    if "tests" in data and "flaky_window_days" in data["tests"]:
        config.flaky_window_days = int(data["tests"]["flaky_window_days"])

    if "strategies" in data:
        config.strategy_patterns = _as_patterns(data["strategies"])

    return config


def find_config_file(root: Path) -> Optional[Path]:
    """Find configuration file.

    Search order, first in ``root`` then in the user config directory:
    1. devjournal_config.py (most flexible)
    2. devjournal.toml
    3. devjournal.json
    4. .devjournal.toml
    5. .devjournal.json
    """
    candidates = [
        "devjournal_config.py",
        "devjournal.toml",
        "devjournal.json",
        ".devjournal.toml",
        ".devjournal.json",
    ]

    for directory in (root, user_config_dir()):
        for name in candidates:
            path = directory / name
            if path.exists():
                return path

    return None


def load_config(root: Optional[Path] = None, config_path: Optional[Path] = None) -> JournalConfig:
    """Load journal configuration.

    Args:
        root: Directory to search for a config file (default: cwd)
        config_path: Optional explicit path to config file

    Returns:
        JournalConfig instance
    """
    root = root or Path.cwd()
    if config_path is None:
        config_path = find_config_file(root)

    if config_path is None:
        return JournalConfig()

    suffix = config_path.suffix.lower()
    base_dir = config_path.parent

    if suffix == ".py":
        config_dict, hooks, patterns = load_python_config(config_path)
        config = dict_to_config(config_dict, base_dir)
        config.hooks = hooks
        if patterns is not None:
            config.strategy_patterns = _as_patterns(patterns)

    elif suffix == ".toml":
        config = dict_to_config(load_toml_config(config_path), base_dir)

    elif suffix == ".json":
        config = dict_to_config(load_json_config(config_path), base_dir)

    else:
        raise ValueError(f"Unsupported config file type: {suffix}")

    config.source = config_path
    return config
