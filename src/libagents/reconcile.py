"""
Reconciliation Engine: decides and applies a per-file action.

Every destination known to the manifest or the catalog is classified from
three hashes:

    installed   what the manifest says the installer last wrote
    current     what is on disk right now
    incoming    what upstream offers now

    installed  current                  incoming  action
    ---------  -----------------------  --------  ----------------
    absent     -                        present   new
    present    -                        absent    removed-upstream
    present    = installed = incoming   present   unchanged
    present    = installed, != incoming present   auto-update
    present    != installed, = incoming present   already-current
    present    != installed             = instd   modified-locally
    present    all three differ                   conflict

Conflicts follow tier policy: user files are never overwritten (upstream
content goes to a .upstream sibling); agent and shared files are resolved
by the operator when a terminal is attached, otherwise skipped.
Removed-upstream files are only reported; nothing is ever deleted.
Install-once entries (package.json) are only written where no file exists.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

import click

from .catalog import Scope, identify
from .hashing import MISSING_HASH, hash_file
from .models import (
    Action,
    CatalogEntry,
    InstallMode,
    Manifest,
    ManifestEntry,
    Resolution,
    Tier,
)

logger = logging.getLogger("libagents.reconcile")

SIDECAR_SUFFIX = ".upstream"
CONFLICT_POLICIES = ("ask", "keep", "take", "skip")


def classify(installed: Optional[str], current: str, incoming: Optional[str]) -> Action:
    """Classify one file from its installed, current and incoming hashes.

    Args:
        installed: Hash recorded in the manifest, None if untracked.
        current: Hash of the file on disk (MISSING_HASH if absent).
        incoming: Hash upstream offers, None if upstream dropped it.

    Returns:
        Action for the file.
    """
    if installed is None:
        if incoming is None:
            raise ValueError("a path must be installed or incoming")
        return Action.NEW
    if incoming is None:
        return Action.REMOVED_UPSTREAM
    if current == incoming:
        return Action.UNCHANGED if current == installed else Action.ALREADY_CURRENT
    if current == installed:
        return Action.AUTO_UPDATE
    if incoming == installed:
        return Action.MODIFIED_LOCALLY
    return Action.CONFLICT


@dataclass
class PlanItem:
    """One classified destination path."""

    path: Path
    tier: Tier
    action: Action
    installed: Optional[str]
    current: str
    incoming: Optional[str]
    entry: Optional[CatalogEntry] = None
    forced: bool = False

    @property
    def mutating(self) -> bool:
        """Whether applying this item may write."""
        if self.entry is not None and self.entry.install_once:
            return self.action == Action.NEW and self.current == MISSING_HASH
        if self.forced and self.action == Action.MODIFIED_LOCALLY:
            return True
        return self.action.mutating


def build_plan(
    manifest: Optional[Manifest],
    catalog: list[CatalogEntry],
    root: Path,
    user_root: Path,
    scope: Optional[Scope] = None,
    force: Iterable[Path] = (),
    owners: Optional[dict[str, tuple[str, ...]]] = None,
) -> list[PlanItem]:
    """Classify every path in the manifest or the catalog.

    Manifest entries outside the scope are not considered; they survive
    untouched through the manifest merge.

    Args:
        manifest: Previous manifest, or None for a first install.
        catalog: Fresh catalog entries (already scoped).
        root: Installation root.
        user_root: Directory of user-tier files.
        scope: Restriction applied when building the catalog.
        force: Paths to reset to upstream regardless of local edits.
        owners: Installed path -> agents shipping it, so agent-owned
            entries follow the agent selection.

    Returns:
        list[PlanItem]: Sorted by tier, then path.
    """
    scope = scope or Scope()
    owners = owners or {}
    forced = {str(p) for p in force}
    incoming = {str(e.destination): e for e in catalog}
    installed: dict[str, ManifestEntry] = {}

    for entry in (manifest.entries if manifest else []):
        ident = identify(Path(entry.path), root, user_root)
        if ident is None:
            if scope.categories is None:
                installed[entry.path] = entry
            continue
        if scope.includes(*ident, owners.get(entry.path, ())):
            installed[entry.path] = entry

    plan = []
    for path in sorted(set(incoming) | set(installed)):
        cat_entry = incoming.get(path)
        man_entry = installed.get(path)
        current = hash_file(Path(path))
        action = classify(
            man_entry.hash if man_entry else None,
            current,
            cat_entry.hash if cat_entry else None,
        )
        tier = cat_entry.tier if cat_entry else man_entry.tier
        plan.append(PlanItem(
            path=Path(path),
            tier=tier,
            action=action,
            installed=man_entry.hash if man_entry else None,
            current=current,
            incoming=cat_entry.hash if cat_entry else None,
            entry=cat_entry,
            forced=path in forced and cat_entry is not None,
        ))
        logger.debug("%s %s", action.value, path)
    plan.sort(key=lambda i: (i.tier.value, str(i.path)))
    return plan


class ConflictResolver:
    """Chooses keep/take/skip for agent and shared tier conflicts.

    Args:
        policy: "ask" prompts on a terminal and skips otherwise;
            "keep", "take" and "skip" apply without asking.
        interactive: Override terminal detection.
        prompt: Replacement for the interactive prompt (testing).
    """

    def __init__(
        self,
        policy: str = "ask",
        interactive: Optional[bool] = None,
        prompt: Optional[Callable[[PlanItem], str]] = None,
    ) -> None:
        if policy not in CONFLICT_POLICIES:
            raise ValueError(f"Unknown conflict policy: {policy}")
        self.policy = policy
        if interactive is None:
            interactive = sys.stdin.isatty() and sys.stdout.isatty()
        self.interactive = interactive
        self._prompt = prompt or self._ask

    @staticmethod
    def _ask(item: PlanItem) -> str:
        click.echo(f"\nConflict: {item.path}")
        click.echo("  Both your copy and upstream changed since the last install.")
        return click.prompt(
            "  Keep mine / take upstream / skip",
            type=click.Choice(["keep", "take", "skip"]),
            default="skip",
        )

    def resolve(self, item: PlanItem) -> Resolution:
        """Decide how to resolve one conflict."""
        if self.policy != "ask":
            return Resolution(self.policy)
        if not self.interactive:
            return Resolution.SKIP
        return Resolution(self._prompt(item))


@dataclass
class ItemOutcome:
    """What applying a plan item did."""

    item: PlanItem
    resolution: Optional[Resolution] = None
    written: bool = False
    sidecar: Optional[Path] = None
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    """Outcome of applying a plan.

    Attributes:
        outcomes: One per plan item.
        entries: Manifest entries for the new manifest.
        dropped: Paths whose previous entries must be forgotten.
    """

    outcomes: list[ItemOutcome] = field(default_factory=list)
    entries: list[ManifestEntry] = field(default_factory=list)
    dropped: set[str] = field(default_factory=set)

    @property
    def errors(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.error]

    @property
    def written(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.written]

    @property
    def conflicts(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.item.action == Action.CONFLICT or o.sidecar]

    @property
    def removed_upstream(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.item.action == Action.REMOVED_UPSTREAM]


def sidecar_path(path: Path) -> Path:
    """Sibling that receives upstream content for a user-tier conflict."""
    return path.with_name(path.name + SIDECAR_SUFFIX)


def _atomic_write(dest: Path, data: bytes) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def place(entry: CatalogEntry, mode: InstallMode) -> None:
    """Install one catalog entry at its destination.

    Link mode symlinks the source file, except for rendered entries,
    which are always written as regular files.
    """
    dest = entry.destination
    if mode == InstallMode.LINK and entry.rendered is None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.link")
        tmp.unlink(missing_ok=True)
        tmp.symlink_to(entry.source.resolve())
        os.replace(tmp, dest)
        return
    _atomic_write(dest, entry.content())


class Reconciler:
    """Applies a plan to the filesystem.

    Args:
        mode: Copy or link.
        resolver: Conflict resolver for agent and shared tiers.
    """

    def __init__(self, mode: InstallMode, resolver: ConflictResolver) -> None:
        self.mode = mode
        self.resolver = resolver

    def apply(self, plan: list[PlanItem]) -> ReconcileResult:
        """Apply every item; a failing file does not stop the batch.

        A file that fails is left out of the new manifest entries so the
        next run retries it.
        """
        result = ReconcileResult()
        for item in plan:
            outcome = ItemOutcome(item=item)
            try:
                entry = self._apply_item(item, outcome, result)
            except OSError as exc:
                outcome.error = str(exc)
                entry = None
                logger.warning("Failed to install %s: %s", item.path, exc)
            if entry is not None:
                result.entries.append(entry)
            result.outcomes.append(outcome)
        return result

    def _entry(self, item: PlanItem, digest: str) -> ManifestEntry:
        return ManifestEntry(path=str(item.path), tier=item.tier, hash=digest)

    def _write(self, item: PlanItem, outcome: ItemOutcome) -> ManifestEntry:
        place(item.entry, self.mode)
        outcome.written = True
        logger.info("Installed %s", item.path)
        return self._entry(item, hash_file(item.path))

    def _write_sidecar(self, item: PlanItem, outcome: ItemOutcome) -> None:
        sidecar = sidecar_path(item.path)
        _atomic_write(sidecar, item.entry.content())
        outcome.sidecar = sidecar
        outcome.resolution = Resolution.SIDECAR
        logger.warning(
            "%s has local changes; upstream version saved to %s (compare with: diff -u %s %s)",
            item.path, sidecar, item.path, sidecar,
        )

    def _apply_once(self, item: PlanItem, outcome: ItemOutcome) -> Optional[ManifestEntry]:
        if item.action == Action.NEW and item.current == MISSING_HASH:
            return self._write(item, outcome)
        if item.current == item.incoming:
            return self._entry(item, item.current)
        if item.installed is None:
            logger.warning(
                "%s already exists; skipping (merge %s manually if needed)",
                item.path, item.entry.source,
            )
            return None
        return self._entry(item, item.installed)

    def _apply_item(
        self,
        item: PlanItem,
        outcome: ItemOutcome,
        result: ReconcileResult,
    ) -> Optional[ManifestEntry]:
        action = item.action

        if item.entry is not None and item.entry.install_once:
            return self._apply_once(item, outcome)

        if action == Action.NEW:
            if item.tier == Tier.USER and item.current not in (MISSING_HASH, item.incoming):
                self._write_sidecar(item, outcome)
                return None
            return self._write(item, outcome)

        if action == Action.AUTO_UPDATE:
            return self._write(item, outcome)

        if action in (Action.UNCHANGED, Action.ALREADY_CURRENT):
            return self._entry(item, item.current)

        if action == Action.MODIFIED_LOCALLY:
            if item.forced:
                return self._write(item, outcome)
            return self._entry(item, item.installed)

        if action == Action.REMOVED_UPSTREAM:
            if item.current == MISSING_HASH:
                result.dropped.add(str(item.path))
                return None
            logger.warning("%s was removed upstream; delete it manually if unused", item.path)
            return self._entry(item, item.installed)

        # Conflict
        if item.tier == Tier.USER:
            self._write_sidecar(item, outcome)
            return self._entry(item, item.installed)

        resolution = Resolution.TAKE if item.forced else self.resolver.resolve(item)
        outcome.resolution = resolution
        if resolution == Resolution.TAKE:
            return self._write(item, outcome)
        if resolution == Resolution.KEEP:
            logger.info("Keeping local version of %s", item.path)
            return self._entry(item, item.incoming)
        logger.warning("Skipped conflicting file %s (local edits kept)", item.path)
        return self._entry(item, item.current)
