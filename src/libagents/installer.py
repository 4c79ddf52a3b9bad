"""
Installer: the invocation surface over the synchronization engine.

    install(agents)        deploy agents plus every shared resource
    status()               compare the manifest with disk (and upstream)
    update(...)            reconcile an existing installation
    rollback()             restore the newest snapshot
    switch_profile(name)   re-install scoped to a profile and re-render agents
    list_profiles()        profiles the source offers

One run is strictly sequential: discovery, classification, snapshot,
mutation, then the manifest is written last. A fatal error anywhere
before that leaves the previous manifest in place.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from . import REPO_URL
from .backup import KEEP_BACKUPS, create_snapshot, list_backups, rollback
from .catalog import (
    CATEGORIES,
    AgentInfo,
    Scope,
    discover,
    list_agents,
    resolve_agents,
    resource_owners,
)
from .errors import InstallerError, UnknownProfileError
from .hashing import MISSING_HASH, hash_file
from .manifest import (
    MIGRATED_REVISION,
    load_manifest,
    merge_manifests,
    migrate_manifest,
    save_manifest,
)
from .models import Action, InstallMode, Manifest, Tier
from .preflight import PreflightResult, run_preflight
from .profiles import Profile, find_profile, list_profiles, render_catalog
from .reconcile import ConflictResolver, PlanItem, ReconcileResult, Reconciler, build_plan
from .source import UNKNOWN_REVISION, RunCache, Runner, SourceTree, remote_revision, run_command

logger = logging.getLogger("libagents.installer")


@dataclass
class UpdateReport:
    """Result of an install, update or profile switch.

    Attributes:
        plan: Classified items.
        dry_run: Whether anything was applied.
        result: What applying the plan did (None for dry runs).
        snapshot: Snapshot taken before mutating, if any.
        manifest: Manifest written at the end of the run.
        migrated: The baseline manifest was synthesized this run.
        agents: Agents selected by this run (empty for updates).
    """

    plan: list[PlanItem] = field(default_factory=list)
    dry_run: bool = False
    result: Optional[ReconcileResult] = None
    snapshot: Optional[dict[str, Any]] = None
    manifest: Optional[Manifest] = None
    migrated: bool = False
    agents: list[str] = field(default_factory=list)

    @property
    def counts(self) -> dict[Action, int]:
        """Number of plan items per action."""
        return dict(Counter(item.action for item in self.plan))

    @property
    def mutating(self) -> bool:
        return any(item.mutating for item in self.plan)

    @property
    def ok(self) -> bool:
        """True unless some file failed to install."""
        return not (self.result and self.result.errors)


@dataclass
class FileStatus:
    """Live state of one manifest entry."""

    path: str
    tier: Tier
    state: str  # ok, modified, missing


@dataclass
class StatusReport:
    """What status() found."""

    manifest: Optional[Manifest] = None
    files: list[FileStatus] = field(default_factory=list)
    migrated: bool = False
    remote_revision: Optional[str] = None

    @property
    def update_available(self) -> Optional[bool]:
        """Whether upstream moved past the installed revision (None if unknown)."""
        if not self.manifest or not self.remote_revision:
            return None
        if self.manifest.source_revision in ("", UNKNOWN_REVISION, MIGRATED_REVISION):
            return None
        return self.remote_revision != self.manifest.source_revision

    def count(self, state: str) -> int:
        return sum(1 for f in self.files if f.state == state)


class Installer:
    """Deploys and maintains one installation root.

    Args:
        root: Installation root (e.g. <project>/.opencode).
        source: Local source checkout; cloned from repo_url when absent.
        repo_url: Upstream repository.
        mode: Copy or link. None keeps the installation's recorded mode.
        user_root: Directory for user-tier files. Defaults to root's parent.
        resolver: Conflict resolver for agent/shared tiers.
        keep_backups: Snapshots to retain.
        runner: External command runner.
    """

    def __init__(
        self,
        root: Path,
        source: Optional[Path] = None,
        repo_url: str = REPO_URL,
        mode: Optional[InstallMode] = None,
        user_root: Optional[Path] = None,
        resolver: Optional[ConflictResolver] = None,
        keep_backups: int = KEEP_BACKUPS,
        runner: Runner = run_command,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.user_root = Path(user_root).expanduser().resolve() if user_root else self.root.parent
        self.repo_url = repo_url
        self.requested_mode = mode
        self.resolver = resolver or ConflictResolver()
        self.keep_backups = keep_backups
        self.runner = runner
        self.cache = RunCache()
        self._local_source = Path(source).expanduser() if source else None
        self._source: Optional[SourceTree] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def source(self) -> SourceTree:
        """Upstream tree, located (or fetched) on first use."""
        if self._source is None:
            self._source = SourceTree.locate(
                self._local_source, self.repo_url, self.cache, runner=self.runner,
            )
        return self._source

    def close(self) -> None:
        """Release a temporary source clone."""
        if self._source is not None:
            self._source.close()
            self._source = None

    def __enter__(self) -> "Installer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_or_migrate(self) -> tuple[Optional[Manifest], bool]:
        manifest = load_manifest(self.root)
        if manifest is not None:
            return manifest, False
        manifest = migrate_manifest(self.root)
        return manifest, manifest is not None

    def _mode(self, manifest: Optional[Manifest]) -> InstallMode:
        mode = self.requested_mode or (manifest.mode if manifest else InstallMode.COPY)
        if mode == InstallMode.LINK and self.source.temporary:
            logger.warning(
                "Cannot use link mode with a downloaded source (temporary directory). "
                "Falling back to copy."
            )
            return InstallMode.COPY
        return mode

    def _active_profile(self, manifest: Optional[Manifest]) -> Optional[Profile]:
        if not manifest or not manifest.profile:
            return None
        try:
            return find_profile(self.source.path, manifest.profile)
        except UnknownProfileError:
            logger.warning(
                "Active profile '%s' is no longer offered upstream; ignoring it",
                manifest.profile,
            )
            return None

    def _require_installation(self) -> tuple[Manifest, bool]:
        manifest, migrated = self._load_or_migrate()
        if manifest is None:
            raise InstallerError(
                f"Nothing installed at {self.root}. Run 'lib-agents install' first."
            )
        return manifest, migrated

    def _agent_destinations(self, agents: Iterable[str]) -> set[Path]:
        category = next(c for c in CATEGORIES if c.name == "agents")
        return {
            category.destination(self.root, name, Path(f"{name}.md"))
            for name in agents
        }

    def _run(
        self,
        old: Optional[Manifest],
        scope: Scope,
        agents: list[str],
        profile: Optional[Profile],
        dry_run: bool,
        migrated: bool,
        force: Iterable[Path] = (),
    ) -> UpdateReport:
        src = self.source
        catalog = discover(src.path, self.root, self.user_root, scope)
        catalog = render_catalog(catalog, profile)
        owners = resource_owners(src.path, self.root)
        plan = build_plan(old, catalog, self.root, self.user_root, scope, force, owners)
        report = UpdateReport(plan=plan, dry_run=dry_run, migrated=migrated, agents=list(agents))
        if dry_run:
            return report

        mode = self._mode(old)
        if old is not None and report.mutating:
            report.snapshot = create_snapshot(old, self.root, keep=self.keep_backups)

        result = Reconciler(mode, self.resolver).apply(plan)
        incoming = Manifest(
            source_revision=src.revision(),
            source_url=src.url,
            installed_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            installed_agents=agents,
            mode=mode,
            profile=profile.name if profile else None,
            entries=result.entries,
        )
        manifest = merge_manifests(old, incoming).without(result.dropped) if old else incoming
        save_manifest(manifest, self.root)

        report.result = result
        report.manifest = manifest
        logger.info(
            "Reconciled %d files in %s (%d written, %d errors)",
            len(plan), self.root, len(result.written), len(result.errors),
        )
        return report

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def install(self, agents: Optional[Iterable[str]] = None, dry_run: bool = False) -> UpdateReport:
        """Install agents (all when None) with their dependencies.

        Shared resources and user-tier files are installed as well. An
        active profile keeps scoping skills and rendering agents.

        Raises:
            UnknownAgentError: If a selected agent does not exist.
        """
        names = resolve_agents(self.source.path, agents)
        old, migrated = self._load_or_migrate()
        profile = self._active_profile(old)
        scope = Scope(
            agents=set(names),
            skills=set(profile.all_skills) if profile else None,
        )
        return self._run(old, scope, names, profile, dry_run, migrated)

    def update(
        self,
        dry_run: bool = False,
        categories: Optional[Iterable[str]] = None,
        agents: Optional[Iterable[str]] = None,
    ) -> UpdateReport:
        """Reconcile an existing installation with upstream.

        Args:
            dry_run: Classify only; write nothing, not even the manifest.
            categories: Only these categories (agents, tools, commands,
                prompts, skills, user).
            agents: Only these installed agents.

        Raises:
            InstallerError: If nothing is installed at the root.
        """
        old, migrated = self._require_installation()
        installed = set(old.installed_agents)
        if agents:
            requested = set(resolve_agents(self.source.path, agents))
            selected = requested & installed
            for name in sorted(requested - installed):
                logger.warning("Agent '%s' is not installed; use install to add it", name)
        else:
            selected = installed
        profile = self._active_profile(old)
        scope = Scope(
            categories=set(categories) if categories else None,
            agents=selected,
            skills=set(profile.all_skills) if profile else None,
        )
        return self._run(old, scope, [], profile, dry_run, migrated)

    def status(self, check_remote: bool = True) -> StatusReport:
        """Report the live state of every tracked file.

        Synthesizes (and saves) a baseline manifest when none exists.
        """
        manifest, migrated = self._load_or_migrate()
        report = StatusReport(manifest=manifest, migrated=migrated)
        if manifest is None:
            return report
        if migrated:
            save_manifest(manifest, self.root)

        for entry in sorted(manifest.entries, key=lambda e: (e.tier.value, e.path)):
            current = hash_file(Path(entry.path))
            if current == MISSING_HASH:
                state = "missing"
            elif current == entry.hash:
                state = "ok"
            else:
                state = "modified"
            report.files.append(FileStatus(path=entry.path, tier=entry.tier, state=state))

        if check_remote:
            report.remote_revision = remote_revision(
                manifest.source_url or self.repo_url, runner=self.runner,
            )
        return report

    def rollback(self, backup_id: Optional[str] = None) -> dict[str, Any]:
        """Restore the newest snapshot.

        Raises:
            NoBackupError: If there is none.
        """
        return rollback(self.root, backup_id)

    def switch_profile(self, name: Optional[str], dry_run: bool = False) -> UpdateReport:
        """Activate a profile, or clear the active one with None.

        Installs the profile's agents, scopes skills to the profile, and
        resets every agent definition touched by the old or new profile
        to pristine upstream content before rendering the new one.

        Raises:
            UnknownProfileError: If the profile does not exist.
        """
        new_profile = find_profile(self.source.path, name) if name else None
        old, migrated = self._load_or_migrate()
        old_profile = self._active_profile(old)

        agents = resolve_agents(self.source.path, new_profile.agents) if new_profile else []
        selected = set(agents) | set(old.installed_agents if old else [])
        scope = Scope(
            agents=selected,
            skills=set(new_profile.all_skills) if new_profile else None,
        )
        touched = set(new_profile.agent_skills if new_profile else ())
        touched |= set(old_profile.agent_skills if old_profile else ())
        force = self._agent_destinations(touched & selected)
        return self._run(old, scope, agents, new_profile, dry_run, migrated, force=force)

    def list_profiles(self) -> list[Profile]:
        """Profiles offered by the source."""
        return list_profiles(self.source.path)

    def list_agents(self) -> list[AgentInfo]:
        """Agents offered by the source."""
        return list_agents(self.source.path)

    def list_backups(self) -> list[Path]:
        """Snapshots of this installation, newest first."""
        return list_backups(self.root)

    def check_prerequisites(self, cwd: Optional[Path] = None) -> PreflightResult:
        """Check the external tools installed agents rely on."""
        return run_preflight(cwd=cwd, cache=self.cache, runner=self.runner)
