"""TOML configuration file support for codemender.

Loads configuration from:
1. System: /etc/codemender/config.toml
2. User: ~/.config/codemender/config.toml (XDG_CONFIG_HOME)
3. Local: ./.codemender.toml (project-specific)
4. Environment variables (highest priority)

Configuration is merged in order, with later sources overriding earlier ones.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from codemender.paths import paths

logger = logging.getLogger(__name__)


@dataclass
class GeneralConfig:
    """Logging settings."""

    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"
    log_max_bytes: int = 1_000_000
    log_backup_count: int = 3


@dataclass
class CorrectionConfig:
    """Bounds of the correction loop."""

    max_iterations: int = 5
    history_window: int = 5


@dataclass
class StabilizationConfig:
    """How long to wait for diagnostics to settle after a write."""

    timeout: float = 5.0
    base_interval: float = 0.1
    required_stable_checks: int = 3
    max_backoff_cap: float = 1.0


@dataclass
class ExecutorConfig:
    """Plan step retry policy and command limits."""

    max_transient_retries: int = 3
    retry_base_delay: float = 10.0
    retry_step_delay: float = 5.0
    command_timeout: int = 120


@dataclass
class ProviderConfig:
    """Generation provider selection."""

    name: str = "ollama"  # "ollama" or "anthropic"
    model: str | None = None
    url: str = "http://127.0.0.1:11434"
    timeout: int = 120


@dataclass
class DiagnosticsConfig:
    """Linter command; {path} is replaced with the file being checked."""

    command: str = "ruff check --output-format=json --no-cache {path}"


@dataclass
class Config:
    """Complete codemender configuration."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    stabilization: StabilizationConfig = field(default_factory=StabilizationConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)

    @classmethod
    def load(cls, sources: list[Path] | None = None) -> Config:
        """Load configuration from all sources."""
        config = cls()

        if sources is None:
            sources = [
                Path("/etc/codemender/config.toml"),
                paths.config_file,
                Path.cwd() / ".codemender.toml",
            ]

        for source in sources:
            if source.exists():
                config = config._merge_from_file(source)

        return config._apply_env_overrides()

    def _merge_from_file(self, path: Path) -> Config:
        """Merge a TOML file; a broken file is logged and skipped."""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Failed to load config from %s: %s", path, e)
            return self
        return self._merge_dict(data)

    def _merge_dict(self, data: dict[str, Any]) -> Config:
        for section_name in (
            "general",
            "correction",
            "stabilization",
            "executor",
            "provider",
            "diagnostics",
        ):
            if isinstance(data.get(section_name), dict):
                _merge_dataclass(getattr(self, section_name), data[section_name])
        return self

    def _apply_env_overrides(self) -> Config:
        env_mappings = {
            "CODEMENDER_LOG_LEVEL": ("general", "log_level"),
            "CODEMENDER_LOG_FORMAT": ("general", "log_format"),
            "CODEMENDER_MAX_ITERATIONS": ("correction", "max_iterations", int),
            "CODEMENDER_STABILIZATION_TIMEOUT": ("stabilization", "timeout", float),
            "CODEMENDER_MAX_TRANSIENT_RETRIES": ("executor", "max_transient_retries", int),
            "CODEMENDER_RETRY_BASE_DELAY": ("executor", "retry_base_delay", float),
            "CODEMENDER_COMMAND_TIMEOUT": ("executor", "command_timeout", int),
            "CODEMENDER_PROVIDER": ("provider", "name"),
            "CODEMENDER_MODEL": ("provider", "model"),
            "CODEMENDER_OLLAMA_URL": ("provider", "url"),
            "CODEMENDER_DIAGNOSTICS_COMMAND": ("diagnostics", "command"),
        }

        for env_var, mapping in env_mappings.items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            section = getattr(self, mapping[0])
            converter = mapping[2] if len(mapping) > 2 else str
            try:
                setattr(section, mapping[1], converter(value))  # type: ignore[operator]
            except (ValueError, TypeError):
                logger.warning("Ignoring invalid value for %s: %r", env_var, value)

        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _merge_dataclass(obj: Any, data: dict[str, Any]) -> Any:
    """Merge dictionary values into a dataclass instance."""
    for key, value in data.items():
        if not hasattr(obj, key):
            logger.debug("Ignoring unknown config key %s", key)
            continue
        current_value = getattr(obj, key)
        if isinstance(current_value, bool) and isinstance(value, str):
            value = _parse_bool(value)
        elif isinstance(current_value, int) and isinstance(value, str):
            value = int(value)
        elif isinstance(current_value, float) and isinstance(value, (str, int)):
            value = float(value)
        setattr(obj, key, value)
    return obj


def _parse_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "y", "on")


_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reload_config() -> Config:
    global _config
    _config = Config.load()
    return _config
