"""End-to-end tests for the Installer invocation surface."""

from __future__ import annotations

from pathlib import Path

import pytest

from libagents.catalog import read_front_matter
from libagents.errors import InstallerError, NoBackupError, UnknownAgentError, UnknownProfileError
from libagents.hashing import hash_file
from libagents.manifest import MIGRATED_REVISION, load_manifest, loads, manifest_path
from libagents.models import Action, InstallMode
from libagents.reconcile import sidecar_path
from libagents.source import SourceTree

from conftest import GIT_OPS_AGENT, REVISION, add_agent_resources, write


def _actions(report) -> dict[str, Action]:
    return {str(item.path): item.action for item in report.plan}


class TestInstall:
    """Tests for Installer.install()."""

    def test_first_install(self, make_installer, install_root: Path, project: Path) -> None:
        report = make_installer().install(["docs"])

        assert report.ok
        assert set(_actions(report).values()) == {Action.NEW}
        assert report.snapshot is None
        assert (install_root / "agents" / "git-ops.md").read_text() == GIT_OPS_AGENT
        assert (install_root / "agents" / "docs.md").is_file()
        assert not (install_root / "agents" / "devops.md").exists()
        assert (install_root / "tools" / "gh.ts").is_file()
        assert (install_root / "skills" / "terraform" / "SKILL.md").is_file()
        assert (project / "AGENTS.md").is_file()
        assert (project / "opencode.json").is_file()

        manifest = load_manifest(install_root)
        assert manifest.installed_agents == ["docs", "git-ops"]
        assert manifest.source_revision == REVISION
        assert manifest.mode == InstallMode.COPY
        assert manifest.entry_map().get(str(project / "AGENTS.md")).hash == hash_file(project / "AGENTS.md")

    def test_install_all(self, make_installer, install_root: Path) -> None:
        make_installer().install(None)
        assert load_manifest(install_root).installed_agents == ["devops", "docs", "git-ops"]

    def test_agents_accumulate(self, make_installer, install_root: Path) -> None:
        make_installer().install(["git-ops"])
        make_installer().install(["devops"])
        manifest = load_manifest(install_root)
        assert manifest.installed_agents == ["devops", "git-ops"]
        assert manifest.entry_map().get(str(install_root / "agents" / "git-ops.md")) is not None

    def test_rerun_is_a_no_op(self, make_installer, install_root: Path) -> None:
        """Nothing changed: everything is unchanged and no snapshot is taken."""
        make_installer().install(["docs"])
        before = manifest_path(install_root).read_text()

        report = make_installer().install(["docs"])

        assert set(_actions(report).values()) == {Action.UNCHANGED}
        assert report.snapshot is None
        assert make_installer().list_backups() == []
        assert load_manifest(install_root).entry_map() == loads(before).entry_map()

    def test_unknown_agent_fails_before_writing(self, make_installer, install_root: Path) -> None:
        with pytest.raises(UnknownAgentError):
            make_installer().install(["nope"])
        assert not install_root.exists()

    def test_existing_user_file_not_clobbered(self, make_installer, project: Path) -> None:
        write(project / "AGENTS.md", "my own instructions\n")
        make_installer().install(["git-ops"])
        assert (project / "AGENTS.md").read_text() == "my own instructions\n"
        assert sidecar_path(project / "AGENTS.md").is_file()

    def test_existing_config_not_adopted(self, make_installer, install_root: Path, project: Path) -> None:
        """A user's own opencode.json beside an empty root is never treated as installed."""
        config = write(project / "opencode.json", '{"model": "mine"}\n')

        report = make_installer().install(["git-ops"])

        assert not report.migrated
        assert _actions(report)[str(config)] == Action.NEW
        assert config.read_text() == '{"model": "mine"}\n'
        assert sidecar_path(config).read_text() == '{"$schema": "https://opencode.ai/config.json"}\n'
        assert str(config) not in load_manifest(install_root).entry_map()

        again = make_installer().install(["git-ops"])
        assert _actions(again)[str(config)] == Action.NEW
        assert config.read_text() == '{"model": "mine"}\n'

    def test_migration_leaves_user_files_alone(self, make_installer, install_root: Path, project: Path) -> None:
        write(install_root / "tools" / "gh.ts", "old tool\n")
        write(project / "AGENTS.md", "my own instructions\n")

        report = make_installer().update()

        assert report.migrated
        assert _actions(report)[str(project / "AGENTS.md")] == Action.NEW
        assert (project / "AGENTS.md").read_text() == "my own instructions\n"
        assert sidecar_path(project / "AGENTS.md").is_file()

    def test_local_customization(self, make_installer, source_tree: Path, project: Path) -> None:
        write(project / "AGENTS.local.md", "Run the linter first.\n")
        make_installer().install(["git-ops"])
        text = (project / "AGENTS.md").read_text()
        assert text.startswith((source_tree / "AGENTS.md").read_text())
        assert "<!-- BEGIN local -->\nRun the linter first.\n<!-- END local -->" in text

        write(project / "AGENTS.local.md", "Run the tests first.\n")
        report = make_installer().update()
        assert _actions(report)[str(project / "AGENTS.md")] == Action.AUTO_UPDATE
        assert "Run the tests first." in (project / "AGENTS.md").read_text()
        assert "linter" not in (project / "AGENTS.md").read_text()


class TestDryRun:
    """Dry runs classify without touching anything."""

    def test_first_install_dry_run(self, make_installer, install_root: Path, project: Path) -> None:
        dry = make_installer().install(["docs"], dry_run=True)

        assert dry.dry_run
        assert dry.result is None
        assert not install_root.exists()
        assert not (project / "AGENTS.md").exists()

        real = make_installer().install(["docs"])
        assert _actions(dry) == _actions(real)

    def test_update_dry_run_writes_nothing(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer().install(["docs"])
        write(source_tree / "tools" / "gh.ts", "export const gh = () => 'gh v2'\n")
        manifest_before = manifest_path(install_root).read_bytes()
        tool_before = (install_root / "tools" / "gh.ts").read_bytes()

        dry = make_installer().update(dry_run=True)

        assert _actions(dry)[str(install_root / "tools" / "gh.ts")] == Action.AUTO_UPDATE
        assert manifest_path(install_root).read_bytes() == manifest_before
        assert (install_root / "tools" / "gh.ts").read_bytes() == tool_before
        assert make_installer().list_backups() == []

        real = make_installer().update()
        assert _actions(dry) == _actions(real)


class TestUpdate:
    """Tests for Installer.update()."""

    def test_requires_installation(self, make_installer) -> None:
        with pytest.raises(InstallerError, match="Nothing installed"):
            make_installer().update()

    def test_auto_update_takes_snapshot(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer().install(["docs"])
        write(source_tree / "tools" / "gh.ts", "v2\n")

        report = make_installer().update()

        tool = install_root / "tools" / "gh.ts"
        assert _actions(report)[str(tool)] == Action.AUTO_UPDATE
        assert tool.read_text() == "v2\n"
        assert report.snapshot is not None
        assert load_manifest(install_root).entry_map().get(str(tool)).hash == hash_file(tool)

    def test_shared_conflict_skipped_without_terminal(self, make_installer, source_tree: Path,
                                                      install_root: Path) -> None:
        """Local edit and upstream change: the local copy stays and is recorded."""
        make_installer().install(["docs"])
        tool = install_root / "tools" / "gh.ts"
        tool.write_text("my local tweak\n")
        write(source_tree / "tools" / "gh.ts", "upstream v2\n")

        report = make_installer(policy="ask", interactive=False).update()

        assert _actions(report)[str(tool)] == Action.CONFLICT
        assert tool.read_text() == "my local tweak\n"
        assert load_manifest(install_root).entry_map().get(str(tool)).hash == hash_file(tool)

    def test_user_conflict_sidecar(self, make_installer, source_tree: Path, project: Path) -> None:
        make_installer().install(["docs"])
        (project / "AGENTS.md").write_text("my edits\n")
        write(source_tree / "AGENTS.md", "# Project agents v2\n")

        make_installer(policy="take").update()

        assert (project / "AGENTS.md").read_text() == "my edits\n"
        assert (project / "AGENTS.md.upstream").read_text() == "# Project agents v2\n"

    def test_removed_upstream_is_kept(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer().install(["docs"])
        (source_tree / "commands" / "commit.md").unlink()

        report = make_installer().update()

        command = install_root / "commands" / "commit.md"
        assert _actions(report)[str(command)] == Action.REMOVED_UPSTREAM
        assert command.is_file()
        assert load_manifest(install_root).entry_map().get(str(command)) is not None

    def test_category_filter(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer().install(["docs"])
        write(source_tree / "tools" / "gh.ts", "tool v2\n")
        write(source_tree / "skills" / "terraform" / "SKILL.md", "skill v2\n")

        report = make_installer().update(categories=["skills"])

        assert all("/skills/" in path for path in _actions(report))
        assert (install_root / "skills" / "terraform" / "SKILL.md").read_text() == "skill v2\n"
        assert (install_root / "tools" / "gh.ts").read_text() != "tool v2\n"
        assert load_manifest(install_root).entry_map().get(str(install_root / "tools" / "gh.ts")) is not None

    def test_agent_filter(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer().install(["docs"])
        write(source_tree / "agents" / "git-ops" / "agent.md", "git-ops v2\n")
        write(source_tree / "agents" / "docs" / "agent.md", "docs v2\n")

        make_installer().update(agents=["git-ops"])

        assert (install_root / "agents" / "git-ops.md").read_text() == "git-ops v2\n"
        assert (install_root / "agents" / "docs.md").read_text() != "docs v2\n"

    def test_failed_file_retried_next_run(self, make_installer, install_root: Path) -> None:
        """A per-file failure is reported, left out of the manifest, and retried."""
        blocker = install_root / "commands" / "commit.md"
        blocker.mkdir(parents=True)
        write(blocker / "keep", "x")

        first = make_installer().install(["docs"])

        assert not first.ok
        assert [str(o.item.path) for o in first.result.errors] == [str(blocker)]
        assert (install_root / "tools" / "gh.ts").is_file()
        assert load_manifest(install_root).entry_map().get(str(blocker)) is None

        (blocker / "keep").unlink()
        blocker.rmdir()
        second = make_installer().install(["docs"])

        assert second.ok
        assert _actions(second)[str(blocker)] == Action.NEW
        assert blocker.is_file()

    def test_migrates_unmanaged_installation(self, make_installer, install_root: Path) -> None:
        write(install_root / "tools" / "gh.ts", "old tool\n")

        report = make_installer().update()

        assert report.migrated
        assert _actions(report)[str(install_root / "tools" / "gh.ts")] == Action.AUTO_UPDATE
        assert report.snapshot is not None


class TestAgentResources:
    """Per-agent tools, commands, skills and package.json."""

    def test_installed_with_owner_only(self, make_installer, source_tree: Path, install_root: Path) -> None:
        add_agent_resources(source_tree)

        make_installer().install(["devops"])

        assert (install_root / "tools" / "gcloud.ts").is_file()
        assert not (install_root / "tools" / "gh-issue.ts").exists()
        assert not (install_root / "tools" / "gh.ts").exists()

        make_installer().install(["git-ops"])

        assert (install_root / "tools" / "gh-issue.ts").is_file()
        assert (install_root / "commands" / "pr.md").is_file()
        assert (install_root / "skills" / "rebase" / "SKILL.md").is_file()
        assert "agent gh" in (install_root / "tools" / "gh.ts").read_text()

    def test_agent_filter_ignores_other_agents_files(self, make_installer, source_tree: Path, install_root: Path) -> None:
        add_agent_resources(source_tree)
        make_installer().install(None)

        report = make_installer().update(agents=["devops"])

        paths = _actions(report)
        assert str(install_root / "tools" / "gcloud.ts") in paths
        assert str(install_root / "tools" / "gh-issue.ts") not in paths
        assert Action.REMOVED_UPSTREAM not in paths.values()
        assert str(install_root / "tools" / "gh-issue.ts") in load_manifest(install_root).entry_map()

    def test_package_json_installed_when_absent(self, make_installer, source_tree: Path, install_root: Path) -> None:
        add_agent_resources(source_tree)

        make_installer().install(["git-ops"])

        # devops sorts first, so its copy is the one offered
        package = install_root / "package.json"
        assert package.read_text() == '{"name": "devops-tools"}\n'
        assert load_manifest(install_root).entry_map()[str(package)].hash == hash_file(package)

    def test_existing_package_json_kept(self, make_installer, source_tree: Path, install_root: Path) -> None:
        add_agent_resources(source_tree)
        package = write(install_root / "package.json", '{"name": "mine"}\n')

        report = make_installer().install(["git-ops"])

        assert _actions(report)[str(package)] == Action.NEW
        assert package.read_text() == '{"name": "mine"}\n'
        assert str(package) not in load_manifest(install_root).entry_map()

    def test_tracked_package_json_never_updated(self, make_installer, source_tree: Path, install_root: Path) -> None:
        add_agent_resources(source_tree)
        make_installer().install(["git-ops"])
        write(source_tree / "agents" / "devops" / "package.json", '{"name": "devops-tools", "version": "2"}\n')

        report = make_installer().update()

        package = install_root / "package.json"
        assert _actions(report)[str(package)] == Action.AUTO_UPDATE
        assert package.read_text() == '{"name": "devops-tools"}\n'
        assert not report.mutating
        assert report.snapshot is None


class TestLinkMode:
    """Tests for symlink installs."""

    def test_links_from_local_source(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer(mode=InstallMode.LINK).install(["git-ops"])

        tool = install_root / "tools" / "gh.ts"
        assert tool.is_symlink()
        assert tool.resolve() == (source_tree / "tools" / "gh.ts").resolve()
        assert load_manifest(install_root).mode == InstallMode.LINK

    def test_recorded_mode_reused(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer(mode=InstallMode.LINK).install(["git-ops"])
        write(source_tree / "skills" / "new-skill" / "SKILL.md", "# New\n")
        make_installer().update()
        assert (install_root / "skills" / "new-skill" / "SKILL.md").is_symlink()

    def test_falls_back_to_copy_for_temporary_source(self, make_installer, source_tree: Path,
                                                     install_root: Path, runner) -> None:
        installer = make_installer(mode=InstallMode.LINK)
        installer._source = SourceTree(source_tree, url="https://example.com/x.git", temporary=True, runner=runner)

        report = installer.install(["git-ops"])

        assert report.manifest.mode == InstallMode.COPY
        assert not (install_root / "tools" / "gh.ts").is_symlink()

    def test_rendered_agents_are_copied(self, make_installer, install_root: Path) -> None:
        make_installer(mode=InstallMode.LINK).switch_profile("frontend")
        assert not (install_root / "agents" / "git-ops.md").is_symlink()
        assert (install_root / "tools" / "gh.ts").is_symlink()


class TestProfiles:
    """Tests for Installer.switch_profile()."""

    def test_switch_installs_profile(self, make_installer, install_root: Path) -> None:
        report = make_installer().switch_profile("frontend")

        assert report.manifest.profile == "frontend"
        assert report.manifest.installed_agents == ["docs", "git-ops"]
        assert (install_root / "skills" / "conventional-commits" / "SKILL.md").is_file()
        assert (install_root / "skills" / "readme-style" / "SKILL.md").is_file()
        assert not (install_root / "skills" / "terraform").exists()

        meta = read_front_matter((install_root / "agents" / "git-ops.md").read_text())
        assert meta["permission"]["skill"] == {"git-*": "allow", "conventional-commits": "allow"}

    def test_switch_is_idempotent(self, make_installer, install_root: Path) -> None:
        make_installer().switch_profile("frontend")
        agent = (install_root / "agents" / "git-ops.md").read_text()

        report = make_installer().switch_profile("frontend")

        assert set(_actions(report).values()) == {Action.UNCHANGED}
        assert report.snapshot is None
        assert (install_root / "agents" / "git-ops.md").read_text() == agent

    def test_switch_resets_previous_profile(self, make_installer, install_root: Path) -> None:
        make_installer().switch_profile("frontend")
        (install_root / "agents" / "git-ops.md").write_text("hand edited\n")

        report = make_installer().switch_profile("infra")

        git_ops = (install_root / "agents" / "git-ops.md").read_text()
        assert "terraform" in git_ops
        assert "conventional-commits" not in git_ops
        assert "hand edited" not in git_ops
        assert "readme-style" not in (install_root / "agents" / "docs.md").read_text()
        assert report.manifest.profile == "infra"
        assert report.manifest.installed_agents == ["devops", "docs", "git-ops"]

    def test_clear_restores_pristine(self, make_installer, install_root: Path) -> None:
        make_installer().switch_profile("frontend")

        report = make_installer().switch_profile(None)

        assert report.manifest.profile is None
        assert (install_root / "agents" / "git-ops.md").read_text() == GIT_OPS_AGENT
        assert (install_root / "skills" / "terraform" / "SKILL.md").is_file()

    def test_profile_survives_install(self, make_installer, install_root: Path) -> None:
        make_installer().switch_profile("frontend")
        report = make_installer().install(["devops"])
        assert report.manifest.profile == "frontend"
        assert "conventional-commits" in (install_root / "agents" / "git-ops.md").read_text()

    def test_unknown_profile(self, make_installer, install_root: Path) -> None:
        with pytest.raises(UnknownProfileError):
            make_installer().switch_profile("backend")
        assert not install_root.exists()

    def test_list_profiles(self, make_installer) -> None:
        assert [p.name for p in make_installer().list_profiles()] == ["frontend", "infra"]


class TestStatus:
    """Tests for Installer.status()."""

    def test_nothing_installed(self, make_installer) -> None:
        report = make_installer().status()
        assert report.manifest is None
        assert report.files == []

    def test_reports_local_state(self, make_installer, install_root: Path) -> None:
        make_installer().install(["docs"])
        (install_root / "tools" / "gh.ts").write_text("edited\n")
        (install_root / "commands" / "commit.md").unlink()

        report = make_installer().status()

        states = {f.path: f.state for f in report.files}
        assert states[str(install_root / "tools" / "gh.ts")] == "modified"
        assert states[str(install_root / "commands" / "commit.md")] == "missing"
        assert report.count("ok") == len(report.files) - 2
        assert report.update_available is False

    def test_update_available(self, make_installer, runner) -> None:
        make_installer().install(["docs"])
        runner.remote = "0" * 40
        assert make_installer().status().update_available is True

    def test_remote_failure_is_not_fatal(self, make_installer, runner) -> None:
        make_installer().install(["docs"])
        runner.remote = None
        report = make_installer().status()
        assert report.remote_revision is None
        assert report.update_available is None

    def test_offline(self, make_installer, runner) -> None:
        make_installer().install(["docs"])
        runner.calls.clear()
        make_installer().status(check_remote=False)
        assert not any("ls-remote" in call for call in runner.calls)

    def test_migrates_without_manifest(self, make_installer, install_root: Path, project: Path) -> None:
        write(install_root / "agents" / "git-ops.md", "old agent\n")
        write(project / "AGENTS.md", "old instructions\n")

        report = make_installer().status()

        assert report.migrated
        assert report.update_available is None
        saved = load_manifest(install_root)
        assert saved.source_revision == MIGRATED_REVISION
        assert saved.installed_agents == ["git-ops"]
        assert {f.state for f in report.files} == {"ok"}


class TestRollback:
    """Tests for Installer.rollback()."""

    def test_rollback_restores_previous_run(self, make_installer, source_tree: Path, install_root: Path) -> None:
        make_installer().install(["docs"])
        tool = install_root / "tools" / "gh.ts"
        original = tool.read_bytes()
        manifest_before = manifest_path(install_root).read_text()
        write(source_tree / "tools" / "gh.ts", "v2\n")
        make_installer().update()
        assert tool.read_text() == "v2\n"

        result = make_installer().rollback()

        assert result["errors"] == []
        assert tool.read_bytes() == original
        assert manifest_path(install_root).read_text() == manifest_before

    def test_rollback_without_snapshot(self, make_installer) -> None:
        with pytest.raises(NoBackupError):
            make_installer().rollback()

    def test_retention_across_runs(self, make_installer, source_tree: Path) -> None:
        make_installer().install(["docs"])
        for n in range(5):
            write(source_tree / "tools" / "gh.ts", f"v{n}\n")
            make_installer().update()
        assert len(make_installer().list_backups()) == 3
