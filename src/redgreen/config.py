"""Configuration — redgreen.yaml, then environment, then CLI overrides.

Each YAML section maps onto one dataclass. Out-of-range numbers are
clamped back to their defaults with a warning; values that cannot be
interpreted at all raise ConfigError.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from redgreen.backends import PROVIDERS

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "redgreen.yaml"
LOG_LEVELS = ("debug", "info", "warning", "error")

ENV_OVERRIDES: dict[str, str] = {
    "REDGREEN_MODEL": "ai.model",
    "REDGREEN_PROVIDER": "ai.provider",
    "REDGREEN_TEMPERATURE": "ai.temperature",
    "REDGREEN_MAX_ATTEMPTS": "project.max_attempts",
    "REDGREEN_VALIDATION": "validation.enabled",
    "REDGREEN_LOG_LEVEL": "logging.level",
    "REDGREEN_TEST_COMMAND": "runner.command",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""


@dataclass
class AIConfig:
    provider: str = "openai"
    model: str = "gpt-4o"
    temperature: float = 0.2
    max_tokens: int = 4096
    base_url: str = ""
    timeout: float = 60.0


@dataclass
class RunnerConfig:
    command: str = "npx vitest run --reporter json"
    timeout: float = 120.0


@dataclass
class ValidationConfig:
    enabled: bool = True
    first_attempt_only: bool = True
    use_llm: bool = True


@dataclass
class ProjectSettings:
    test_pattern: str = "**/*.test.{js,ts}"
    max_attempts: int = 10
    wait_between_attempts: float = 2.0
    poll_interval: float = 1.0
    debounce: float = 0.3


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class HistoryConfig:
    save: bool = False
    path: str = ".redgreen-history.json"


@dataclass
class Config:
    """Complete configuration for one project."""
    project_dir: Path = field(default_factory=Path.cwd)
    ai: AIConfig = field(default_factory=AIConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    project: ProjectSettings = field(default_factory=ProjectSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    @property
    def history_path(self) -> Path:
        path = Path(self.history.path)
        return path if path.is_absolute() else self.project_dir / path


_SECTIONS: dict[str, type] = {
    "ai": AIConfig,
    "runner": RunnerConfig,
    "validation": ValidationConfig,
    "project": ProjectSettings,
    "logging": LoggingConfig,
    "history": HistoryConfig,
}


def load_config(
    project_dir: str | Path,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Config:
    """Build a Config for `project_dir`.

    Args:
        project_dir: Project root; redgreen.yaml is looked up here.
        config_path: Explicit config file; must exist when given.
        env: Environment mapping (defaults to os.environ).
        overrides: Dotted keys from the command line, e.g.
            {"ai.model": "gpt-4o-mini"}. None values are ignored.
    """
    project_dir = Path(project_dir).resolve()
    config = Config(project_dir=project_dir)

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = project_dir / CONFIG_FILENAME

    if path.exists():
        raw = _read_yaml(path)
        for section, values in raw.items():
            if section not in _SECTIONS:
                logger.warning("Ignoring unknown config section: %s", section)
                continue
            if not isinstance(values, dict):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            for key, value in values.items():
                _set(config, f"{section}.{key}", value, source=str(path))
        logger.debug("Loaded config from %s", path)
    else:
        logger.debug("No config file found, using defaults")

    env = os.environ if env is None else env
    for var, dotted in ENV_OVERRIDES.items():
        if env.get(var):
            _set(config, dotted, env[var], source=var)

    for dotted, value in (overrides or {}).items():
        if value is not None:
            _set(config, dotted, value, source="command line")

    validate_config(config)
    return config


def _read_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return raw


def _set(config: Config, dotted: str, value: Any, source: str) -> None:
    section_name, _, key = dotted.partition(".")
    section = getattr(config, section_name)
    known = {f.name: f for f in fields(section)}
    if key not in known:
        logger.warning("Ignoring unknown config key %s (from %s)", dotted, source)
        return
    default = getattr(type(section)(), key)
    try:
        setattr(section, key, _coerce(value, type(default)))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {dotted} (from {source}): {value!r}") from e


def _coerce(value: Any, target: type) -> Any:
    if target is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    if target is int:
        if isinstance(value, bool):
            raise TypeError("boolean is not an integer")
        return int(value)
    if target is float:
        if isinstance(value, bool):
            raise TypeError("boolean is not a number")
        return float(value)
    if value is None:
        return ""
    return str(value)


def validate_config(config: Config) -> None:
    """Reject unusable settings; clamp out-of-range numbers to defaults."""
    if config.ai.provider not in PROVIDERS:
        raise ConfigError(
            f"Unknown AI provider: {config.ai.provider}. Available: {', '.join(PROVIDERS)}"
        )
    config.logging.level = config.logging.level.lower()
    if config.logging.level not in LOG_LEVELS:
        raise ConfigError(
            f"Unknown log level: {config.logging.level}. Available: {', '.join(LOG_LEVELS)}"
        )
    if not config.runner.command.strip():
        raise ConfigError("runner.command must not be empty")

    _clamp(config.ai, "temperature", lambda v: 0.0 <= v <= 2.0)
    _clamp(config.ai, "max_tokens", lambda v: v > 0)
    _clamp(config.ai, "timeout", lambda v: v > 0)
    _clamp(config.runner, "timeout", lambda v: v > 0)
    _clamp(config.project, "max_attempts", lambda v: v >= 1)
    _clamp(config.project, "wait_between_attempts", lambda v: v >= 0)
    _clamp(config.project, "poll_interval", lambda v: v > 0)
    _clamp(config.project, "debounce", lambda v: v >= 0)


def _clamp(section: object, key: str, valid) -> None:
    value = getattr(section, key)
    if valid(value):
        return
    default = getattr(type(section)(), key)
    logger.warning("Invalid %s: %s, using default %s", key, value, default)
    setattr(section, key, default)


SAMPLE_CONFIG = """\
# redgreen configuration
ai:
  provider: openai          # openai | anthropic
  model: gpt-4o
  temperature: 0.2
  max_tokens: 4096
  # base_url: http://localhost:11434/v1
  timeout: 60

runner:
  command: npx vitest run --reporter json
  timeout: 120

validation:
  enabled: true
  first_attempt_only: true
  use_llm: true

project:
  test_pattern: "**/*.test.{js,ts}"
  max_attempts: 10
  wait_between_attempts: 2
  poll_interval: 1
  debounce: 0.3

logging:
  level: info

history:
  save: false
  path: .redgreen-history.json
"""


def write_sample_config(project_dir: str | Path, force: bool = False) -> Path:
    """Write a commented redgreen.yaml. Refuses to overwrite unless forced."""
    path = Path(project_dir) / CONFIG_FILENAME
    if path.exists() and not force:
        raise ConfigError(f"Config file already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(SAMPLE_CONFIG)
    logger.info("Wrote sample config to %s", path)
    return path
