"""Tests for configuration loading and priority merging."""

import pytest
import yaml

from book_organizer_config import (DEFAULT_CONFIG, find_config_file, generate_default_config,
                                   load_yaml, parse_args_and_config)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep the user's real config files and environment out of the tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("BOOK_ORGANIZER_WATCH_DIR", raising=False)


@pytest.fixture
def config_file(tmp_path):
    """A config file overriding a few keys."""
    path = tmp_path / "custom.yaml"
    path.write_text(yaml.safe_dump({
        "watch_dir": str(tmp_path / "incoming"),
        "google_api_key": "from-file",
        "workers": 8,
        "catalog": {"max_attempts": 5, "initial_backoff": 0.5},
        "extraction": {"scan_pages": 3, "deep_scan": False},
    }))
    return path


class TestLoading:
    """Finding and reading YAML files."""

    def test_load_yaml(self, config_file):
        """Nested mappings are loaded as dicts."""
        data = load_yaml(str(config_file))
        assert data["catalog"]["max_attempts"] == 5

    def test_load_yaml_rejects_lists(self, tmp_path):
        """The top level must be a mapping."""
        path = tmp_path / "bad.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_yaml(str(path))

    def test_explicit_path_wins(self, config_file):
        """An explicit path is returned as is."""
        assert find_config_file(explicit_path=str(config_file)) == str(config_file)

    def test_missing_explicit_path(self, tmp_path):
        """A missing explicit path gives no config."""
        assert find_config_file(explicit_path=str(tmp_path / "nope.yaml")) is None

    def test_watch_dir_config_found(self, tmp_path):
        """A config inside the watched directory is picked up."""
        watch = tmp_path / "downloads"
        watch.mkdir()
        (watch / "book_organizer.yaml").write_text("workers: 2\n")
        assert find_config_file(watch_dir=str(watch)) == str(watch / "book_organizer.yaml")

    def test_generated_config_round_trips(self):
        """The generated default config parses back to the defaults."""
        assert yaml.safe_load(generate_default_config()) == DEFAULT_CONFIG


class TestPriority:
    """explicit CLI > environment > config file > defaults."""

    def test_defaults(self, tmp_path):
        """Without a config file the built-in defaults apply."""
        config = parse_args_and_config([str(tmp_path)])
        assert config.config_path is None
        assert config.watch_dir == str(tmp_path)
        assert config.books_dir_name == "Books"
        assert config.workers == 4
        assert config.debounce_seconds == 1.0
        assert config.max_attempts == 3
        assert config.initial_backoff == 1.0
        assert config.request_timeout == 10
        assert config.scan_pages == 10
        assert config.deep_scan is True
        assert config.title_min_length == 5
        assert config.title_max_length == 100
        assert config.google_api_key is None
        assert config.verbose is False

    def test_config_file_values(self, config_file, tmp_path):
        """Dotted keys are read from nested sections."""
        config = parse_args_and_config(["--config", str(config_file)])
        assert config.watch_dir == str(tmp_path / "incoming")
        assert config.workers == 8
        assert config.max_attempts == 5
        assert config.initial_backoff == 0.5
        assert config.scan_pages == 3
        assert config.deep_scan is False
        assert config.google_api_key == "from-file"

    def test_cli_overrides_file(self, config_file):
        """Explicit flags beat the config file."""
        config = parse_args_and_config(["--config", str(config_file), "--workers", "2",
                                        "--max-attempts", "1"])
        assert config.workers == 2
        assert config.max_attempts == 1

    def test_env_overrides_file(self, config_file, monkeypatch):
        """GOOGLE_API_KEY beats the config file."""
        monkeypatch.setenv("GOOGLE_API_KEY", "from-env")
        config = parse_args_and_config(["--config", str(config_file)])
        assert config.google_api_key == "from-env"

    def test_cli_overrides_env(self, monkeypatch):
        """An explicit --google-api-key beats the environment."""
        monkeypatch.setenv("GOOGLE_API_KEY", "from-env")
        config = parse_args_and_config(["--google-api-key", "from-cli"])
        assert config.google_api_key == "from-cli"

    def test_watch_dir_from_env(self, tmp_path, monkeypatch):
        """BOOK_ORGANIZER_WATCH_DIR is used when no directory is given."""
        monkeypatch.setenv("BOOK_ORGANIZER_WATCH_DIR", str(tmp_path / "env-dir"))
        assert parse_args_and_config([]).watch_dir == str(tmp_path / "env-dir")

    def test_modes(self, tmp_path):
        """Mode flags are exposed directly."""
        config = parse_args_and_config([str(tmp_path), "--resolve", "a.pdf", "0306406152"])
        assert config.resolve == ["a.pdf", "0306406152"]
        assert not config.once
        assert parse_args_and_config([str(tmp_path), "--once"]).once

    def test_no_deep_scan_flag(self, tmp_path):
        """--no-deep-scan turns deep scanning off."""
        assert parse_args_and_config([str(tmp_path), "--no-deep-scan"]).deep_scan is False

    def test_to_dict_masks_key(self, tmp_path):
        """The API key is never dumped in clear text."""
        config = parse_args_and_config([str(tmp_path), "--google-api-key", "secret"])
        assert config.to_dict()["google_api_key"] == "***"
