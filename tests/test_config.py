"""Tests for installer settings resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from libagents.config import InstallerSettings, InstallScope, load_settings
from libagents.models import InstallMode

from conftest import write


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults(self, tmp_path: Path) -> None:
        s = load_settings(tmp_path / "absent.yaml", env={})
        assert s.scope == InstallScope.PROJECT
        assert s.mode == InstallMode.COPY
        assert s.keep_backups == 3
        assert s.on_conflict == "ask"
        assert s.source is None

    def test_file(self, tmp_path: Path) -> None:
        cfg = write(tmp_path / "config.yaml", "scope: global\nmode: link\nkeep_backups: 5\n")
        s = load_settings(cfg, env={})
        assert s.scope == InstallScope.GLOBAL
        assert s.mode == InstallMode.LINK
        assert s.keep_backups == 5

    def test_config_path_from_env(self, tmp_path: Path) -> None:
        cfg = write(tmp_path / "elsewhere.yaml", "on_conflict: take\n")
        s = load_settings(env={"LIB_AGENTS_CONFIG": str(cfg)})
        assert s.on_conflict == "take"

    def test_precedence(self, tmp_path: Path) -> None:
        """Overrides beat environment, which beats the file."""
        cfg = write(tmp_path / "config.yaml", "repo_url: https://file.example/x.git\nscope: global\n")
        env = {"LIB_AGENTS_REPO_URL": "https://env.example/x.git", "LIB_AGENTS_SCOPE": "global"}

        s = load_settings(cfg, env=env, scope="project", repo_url=None)

        assert s.repo_url == "https://env.example/x.git"
        assert s.scope == InstallScope.PROJECT

    def test_env_source(self, tmp_path: Path) -> None:
        s = load_settings(tmp_path / "absent.yaml", env={"LIB_AGENTS_SOURCE": str(tmp_path)})
        assert s.source == tmp_path

    def test_unreadable_file_ignored(self, tmp_path: Path) -> None:
        cfg = write(tmp_path / "config.yaml", "scope: [unclosed\n")
        assert load_settings(cfg, env={}).scope == InstallScope.PROJECT

    def test_not_a_mapping_ignored(self, tmp_path: Path) -> None:
        cfg = write(tmp_path / "config.yaml", "- just\n- a list\n")
        assert load_settings(cfg, env={}).mode == InstallMode.COPY

    def test_invalid_values_fall_back(self, tmp_path: Path) -> None:
        cfg = write(tmp_path / "config.yaml", "on_conflict: merge\nkeep_backups: 0\n")
        s = load_settings(cfg, env={}, mode="link")
        assert s.on_conflict == "ask"
        assert s.keep_backups == 3
        assert s.mode == InstallMode.LINK


class TestInstallerSettings:
    """Tests for the settings model."""

    def test_rejects_unknown_policy(self) -> None:
        with pytest.raises(ValidationError):
            InstallerSettings(on_conflict="merge")

    def test_project_root(self, tmp_path: Path) -> None:
        assert InstallerSettings().install_root(tmp_path) == tmp_path / ".opencode"

    def test_global_root(self) -> None:
        root = InstallerSettings(scope="global").install_root()
        assert root == Path("~/.config/opencode").expanduser()
