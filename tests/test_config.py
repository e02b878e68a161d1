"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from redgreen.config import (
    CONFIG_FILENAME,
    SAMPLE_CONFIG,
    Config,
    ConfigError,
    load_config,
    validate_config,
    write_sample_config,
)


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / CONFIG_FILENAME
    path.write_text(yaml.dump(data))
    return path


class TestDefaults:
    def test_defaults(self, tmp_path: Path):
        c = load_config(tmp_path, env={})
        assert c.project_dir == tmp_path.resolve()
        assert c.ai.provider == "openai"
        assert c.ai.model == "gpt-4o"
        assert c.runner.command == "npx vitest run --reporter json"
        assert c.project.max_attempts == 10
        assert c.project.test_pattern == "**/*.test.{js,ts}"
        assert c.validation.enabled is True
        assert c.logging.level == "info"

    def test_history_path_relative_to_project(self, tmp_path: Path):
        c = load_config(tmp_path, env={})
        assert c.history_path == tmp_path.resolve() / ".redgreen-history.json"

    def test_history_path_absolute(self, tmp_path: Path):
        c = Config(project_dir=tmp_path)
        c.history.path = str(tmp_path / "elsewhere" / "h.json")
        assert c.history_path == tmp_path / "elsewhere" / "h.json"


class TestLoadFromFile:
    def test_sections(self, tmp_path: Path):
        _write(tmp_path, {
            "ai": {"provider": "anthropic", "model": "claude-sonnet-4-5", "temperature": 0.5},
            "project": {"max_attempts": 4, "test_pattern": "**/test_*.py"},
            "runner": {"command": "pytest --json-report"},
            "validation": {"enabled": False},
        })
        c = load_config(tmp_path, env={})
        assert c.ai.provider == "anthropic"
        assert c.ai.model == "claude-sonnet-4-5"
        assert c.ai.temperature == 0.5
        assert c.project.max_attempts == 4
        assert c.project.test_pattern == "**/test_*.py"
        assert c.runner.command == "pytest --json-report"
        assert c.validation.enabled is False

    def test_explicit_path(self, tmp_path: Path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.dump({"ai": {"model": "gpt-4o-mini"}}))
        c = load_config(tmp_path, config_path=path, env={})
        assert c.ai.model == "gpt-4o-mini"

    def test_explicit_path_missing(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path, config_path=tmp_path / "nope.yaml", env={})

    def test_invalid_yaml(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("ai: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(tmp_path, env={})

    def test_top_level_must_be_mapping(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("- one\n- two\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(tmp_path, env={})

    def test_section_must_be_mapping(self, tmp_path: Path):
        _write(tmp_path, {"ai": "gpt-4o"})
        with pytest.raises(ConfigError, match="'ai'"):
            load_config(tmp_path, env={})

    def test_unknown_keys_ignored(self, tmp_path: Path, caplog):
        _write(tmp_path, {"ai": {"colour": "red"}, "extras": {"x": 1}})
        with caplog.at_level("WARNING"):
            c = load_config(tmp_path, env={})
        assert c.ai.model == "gpt-4o"
        assert "ai.colour" in caplog.text
        assert "extras" in caplog.text

    def test_uncoercible_value(self, tmp_path: Path):
        _write(tmp_path, {"project": {"max_attempts": "many"}})
        with pytest.raises(ConfigError, match="project.max_attempts"):
            load_config(tmp_path, env={})

    def test_sample_config_loads(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text(SAMPLE_CONFIG)
        c = load_config(tmp_path, env={})
        assert c == Config(project_dir=tmp_path.resolve())


class TestOverrides:
    def test_env_over_file(self, tmp_path: Path):
        _write(tmp_path, {"ai": {"model": "gpt-4o"}})
        c = load_config(tmp_path, env={
            "REDGREEN_MODEL": "gpt-4o-mini",
            "REDGREEN_MAX_ATTEMPTS": "3",
            "REDGREEN_VALIDATION": "off",
        })
        assert c.ai.model == "gpt-4o-mini"
        assert c.project.max_attempts == 3
        assert c.validation.enabled is False

    def test_cli_over_env(self, tmp_path: Path):
        c = load_config(
            tmp_path,
            env={"REDGREEN_MODEL": "gpt-4o-mini"},
            overrides={"ai.model": "gpt-4.1", "project.max_attempts": None},
        )
        assert c.ai.model == "gpt-4.1"
        assert c.project.max_attempts == 10

    def test_empty_env_value_ignored(self, tmp_path: Path):
        c = load_config(tmp_path, env={"REDGREEN_MODEL": ""})
        assert c.ai.model == "gpt-4o"

    @pytest.mark.parametrize("raw, expected", [
        ("yes", True), ("1", True), ("ON", True), ("no", False), ("0", False),
    ])
    def test_bool_strings(self, tmp_path: Path, raw, expected):
        c = load_config(tmp_path, env={"REDGREEN_VALIDATION": raw})
        assert c.validation.enabled is expected

    def test_bad_bool(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_config(tmp_path, env={"REDGREEN_VALIDATION": "maybe"})


class TestValidation:
    def test_unknown_provider(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Unknown AI provider"):
            load_config(tmp_path, env={"REDGREEN_PROVIDER": "gemini"})

    def test_unknown_log_level(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="log level"):
            load_config(tmp_path, env={"REDGREEN_LOG_LEVEL": "loud"})

    def test_log_level_lowercased(self, tmp_path: Path):
        c = load_config(tmp_path, env={"REDGREEN_LOG_LEVEL": "DEBUG"})
        assert c.logging.level == "debug"

    def test_empty_command(self):
        c = Config()
        c.runner.command = "  "
        with pytest.raises(ConfigError, match="runner.command"):
            validate_config(c)

    def test_out_of_range_values_clamped(self, caplog):
        c = Config()
        c.ai.temperature = 5.0
        c.project.max_attempts = 0
        c.project.wait_between_attempts = -1
        c.runner.timeout = 0
        with caplog.at_level("WARNING"):
            validate_config(c)
        assert c.ai.temperature == 0.2
        assert c.project.max_attempts == 10
        assert c.project.wait_between_attempts == 2.0
        assert c.runner.timeout == 120.0
        assert "Invalid max_attempts" in caplog.text


class TestSampleConfig:
    def test_write(self, tmp_path: Path):
        path = write_sample_config(tmp_path)
        assert path == tmp_path / CONFIG_FILENAME
        assert "provider: openai" in path.read_text()

    def test_refuses_overwrite(self, tmp_path: Path):
        write_sample_config(tmp_path)
        with pytest.raises(ConfigError, match="already exists"):
            write_sample_config(tmp_path)

    def test_force(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("old")
        write_sample_config(tmp_path, force=True)
        assert "ai:" in (tmp_path / CONFIG_FILENAME).read_text()
