"""Tests for configuration loading."""

import json
from pathlib import Path

import pytest

from devjournal.config import (
    DEFAULT_REPORT_PATTERNS,
    JournalConfig,
    default_db_path,
    dict_to_config,
    find_config_file,
    load_config,
)


class TestDefaults:
    """Tests for default configuration."""

    def test_defaults(self):
        config = JournalConfig()
        assert config.reflection.reflect_on_end is True
        assert config.reflection.decay_factor == pytest.approx(0.995)
        assert config.watch.report_patterns == DEFAULT_REPORT_PATTERNS
        assert config.strategy_patterns is None
        assert config.hooks == {}

    def test_db_under_xdg_data_home(self, tmp_path):
        assert default_db_path() == tmp_path / "xdg-data" / "devjournal" / "journal.db"

    def test_db_env_override(self, monkeypatch, temp_dir):
        monkeypatch.setenv("DEVJOURNAL_DB", str(temp_dir / "custom.db"))
        assert default_db_path() == temp_dir / "custom.db"

    def test_no_config_file(self, temp_dir):
        config = load_config(temp_dir)
        assert config.source is None
        assert config.projects == []


class TestDictToConfig:
    """Tests for dict_to_config."""

    def test_full_dict(self, temp_dir):
        config = dict_to_config({
            "store": {"path": "data/journal.db"},
            "projects": [{"name": "api", "path": "services/api", "language": "python"}],
            "watch": {"debounce_seconds": 2, "extra_ignore": ["tmp"], "read_retries": 5},
            "reflection": {"reflect_on_end": False, "stale_days": 14},
            "tests": {"flaky_window_days": 7},
            "strategies": [{"pattern": "firestore", "tag": "firebase-rules-fix"}, ["grpc", "network-fix"]],
        }, temp_dir)

        assert config.db_path == temp_dir / "data" / "journal.db"
        assert config.projects[0].path == str(temp_dir / "services" / "api")
        assert config.projects[0].language == "python"
        assert config.watch.debounce_seconds == 2.0
        assert config.watch.read_retries == 5
        assert "tmp" in config.watch.ignore
        assert "node_modules" in config.watch.ignore
        assert config.reflection.reflect_on_end is False
        assert config.reflection.stale_days == 14
        assert config.flaky_window_days == 7
        assert config.strategy_patterns == [("firestore", "firebase-rules-fix"), ("grpc", "network-fix")]

    def test_env_var_beats_file(self, monkeypatch, temp_dir):
        monkeypatch.setenv("DEVJOURNAL_DB", str(temp_dir / "env.db"))
        config = dict_to_config({"store": {"path": "file.db"}}, temp_dir)
        assert config.db_path == temp_dir / "env.db"

    @pytest.mark.parametrize("value,expected", [
        ("false", False),
        ("False", False),
        ("no", False),
        ("0", False),
        ("true", True),
        ("on", True),
        (False, False),
        (1, True),
    ])
    def test_reflect_on_end_flag(self, temp_dir, value, expected):
        config = dict_to_config({"reflection": {"reflect_on_end": value}}, temp_dir)
        assert config.reflection.reflect_on_end is expected

    def test_unparseable_flag_rejected(self, temp_dir):
        with pytest.raises(ValueError):
            dict_to_config({"reflection": {"reflect_on_end": "maybe"}}, temp_dir)

    def test_json_string_flag(self, temp_dir):
        (temp_dir / "devjournal.json").write_text(json.dumps({"reflection": {"reflect_on_end": "false"}}))
        assert load_config(temp_dir).reflection.reflect_on_end is False

    def test_unknown_reflection_keys_ignored(self, temp_dir):
        config = dict_to_config({"reflection": {"no_such_setting": 1}}, temp_dir)
        assert not hasattr(config.reflection, "no_such_setting")


class TestConfigFiles:
    """Tests for config file discovery and formats."""

    def test_toml(self, temp_dir):
        (temp_dir / "devjournal.toml").write_text(
            '[store]\npath = "j.db"\n\n[[projects]]\nname = "web"\npath = "web"\n\n'
            '[reflection]\ntrusted_confidence = 0.8\n'
        )
        config = load_config(temp_dir)

        assert config.source == temp_dir / "devjournal.toml"
        assert config.db_path == temp_dir / "j.db"
        assert config.projects[0].name == "web"
        assert config.reflection.trusted_confidence == pytest.approx(0.8)

    def test_json(self, temp_dir):
        (temp_dir / ".devjournal.json").write_text(json.dumps({"tests": {"flaky_window_days": 3}}))
        config = load_config(temp_dir)
        assert config.flaky_window_days == 3

    def test_python_config_with_hooks(self, temp_dir):
        (temp_dir / "devjournal_config.py").write_text(
            "CONFIG = {'reflection': {'playbook_min_successes': 3}}\n"
            "STRATEGY_PATTERNS = [(r'firestore', 'firebase-rules-fix')]\n"
            "def hook_post_append(entry):\n"
            "    pass\n"
        )
        config = load_config(temp_dir)

        assert config.reflection.playbook_min_successes == 3
        assert config.strategy_patterns == [("firestore", "firebase-rules-fix")]
        assert set(config.hooks) == {"post_append"}

    def test_python_beats_toml(self, temp_dir):
        (temp_dir / "devjournal.toml").write_text("")
        (temp_dir / "devjournal_config.py").write_text("CONFIG = {}\n")
        assert find_config_file(temp_dir).name == "devjournal_config.py"

    def test_user_config_dir_searched(self, tmp_path, temp_dir):
        user_dir = tmp_path / "xdg-config" / "devjournal"
        user_dir.mkdir(parents=True)
        (user_dir / "devjournal.json").write_text("{}")
        assert find_config_file(temp_dir) == user_dir / "devjournal.json"

    def test_explicit_path(self, temp_dir):
        path = temp_dir / "elsewhere.toml"
        path.write_text("[tests]\nflaky_window_days = 9\n")
        assert load_config(config_path=path).flaky_window_days == 9

    def test_unsupported_suffix(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("a: 1")
        with pytest.raises(ValueError):
            load_config(config_path=Path(path))

    def test_example_config_loads(self):
        example = Path(__file__).parent.parent / "examples" / "devjournal_config.py"
        config = load_config(config_path=example)
        assert "post_reflect" in config.hooks
        assert config.strategy_patterns
