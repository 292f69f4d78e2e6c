"""XDG Base Directory compliant paths for codemender.

On Linux:
  - Config: ~/.config/codemender (XDG_CONFIG_HOME)
  - Cache:  ~/.cache/codemender (XDG_CACHE_HOME), holds the log file

On other platforms, falls back to ~/.codemender.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Final

APP_NAME: Final[str] = "codemender"


def _is_linux() -> bool:
    return sys.platform.startswith("linux")


def _get_xdg_path(env_var: str, default_subdir: str) -> Path:
    """XDG directory from the environment, or the XDG default under $HOME."""
    if env_var in os.environ:
        return Path(os.environ[env_var]) / APP_NAME
    return Path.home() / default_subdir / APP_NAME


@dataclass(frozen=True)
class XDGPaths:
    """Where codemender keeps its configuration and logs."""

    config_home: Path
    cache_home: Path

    @classmethod
    def detect(cls) -> XDGPaths:
        if _is_linux():
            return cls(
                config_home=_get_xdg_path("XDG_CONFIG_HOME", ".config"),
                cache_home=_get_xdg_path("XDG_CACHE_HOME", ".cache"),
            )
        fallback = Path.home() / f".{APP_NAME}"
        return cls(config_home=fallback / "config", cache_home=fallback / "cache")

    def ensure_dirs(self) -> None:
        self.config_home.mkdir(parents=True, exist_ok=True)
        self.cache_home.mkdir(parents=True, exist_ok=True)

    @property
    def config_file(self) -> Path:
        """User configuration file."""
        return self.config_home / "config.toml"

    @property
    def log_path(self) -> Path:
        """Application log path."""
        return self.cache_home / "codemender.log"


paths = XDGPaths.detect()
