"""
Installer settings.

Resolved from, lowest to highest precedence: defaults, a YAML settings
file, LIB_AGENTS_* environment variables, then explicit CLI options.

    # ~/.config/lib-agents/config.yaml
    repo_url: https://github.com/kunallimaye/lib-agents.git
    scope: global
    mode: copy
    keep_backups: 3
    on_conflict: ask
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import REPO_URL
from .models import InstallMode
from .reconcile import CONFLICT_POLICIES

logger = logging.getLogger("libagents.config")

DEFAULT_CONFIG_PATH = "~/.config/lib-agents/config.yaml"

_ENV_KEYS = {
    "LIB_AGENTS_REPO_URL": "repo_url",
    "LIB_AGENTS_SOURCE": "source",
    "LIB_AGENTS_SCOPE": "scope",
    "LIB_AGENTS_MODE": "mode",
}


class InstallScope(str, Enum):
    """Where the installation root lives."""

    PROJECT = "project"
    GLOBAL = "global"


class InstallerSettings(BaseModel):
    """Resolved installer configuration."""

    repo_url: str = REPO_URL
    source: Optional[Path] = None
    scope: InstallScope = InstallScope.PROJECT
    mode: InstallMode = InstallMode.COPY
    keep_backups: int = Field(default=3, ge=1)
    on_conflict: str = "ask"
    check_remote: bool = True

    @field_validator("on_conflict")
    @classmethod
    def _known_policy(cls, v: str) -> str:
        if v not in CONFLICT_POLICIES:
            raise ValueError(f"must be one of {', '.join(CONFLICT_POLICIES)}")
        return v

    def install_root(self, cwd: Optional[Path] = None) -> Path:
        """Installation root for the configured scope."""
        if self.scope == InstallScope.GLOBAL:
            return Path("~/.config/opencode").expanduser()
        return (cwd or Path.cwd()) / ".opencode"


def _read_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring settings file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: not a mapping", path)
        return {}
    return data


def load_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> InstallerSettings:
    """Resolve settings from file, environment and overrides.

    Args:
        path: Settings file. Defaults to $LIB_AGENTS_CONFIG or
            ~/.config/lib-agents/config.yaml when present.
        env: Environment mapping (defaults to os.environ).
        **overrides: Explicit values; None values are ignored.

    Returns:
        InstallerSettings. An invalid file falls back to defaults.
    """
    env = os.environ if env is None else env
    config_path = Path(path or env.get("LIB_AGENTS_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()

    data: dict[str, Any] = {}
    if config_path.is_file():
        data.update(_read_file(config_path))
    for env_key, field_name in _ENV_KEYS.items():
        if env.get(env_key):
            data[field_name] = env[env_key]
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return InstallerSettings(**data)
    except ValidationError as exc:
        logger.warning("Invalid settings (%s); using defaults", exc.errors()[0].get("msg"))
        return InstallerSettings(**{k: v for k, v in overrides.items() if v is not None})
