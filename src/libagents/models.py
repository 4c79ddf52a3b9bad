"""
Pydantic models for installer state.

The manifest records what the installer placed on disk; catalog entries
describe what upstream offers right now. Reconciliation compares the two.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    """Conflict-policy category of a tracked file."""

    USER = "user"
    AGENT = "agent"
    SHARED = "shared"


class InstallMode(str, Enum):
    """How files are placed into the installation tree."""

    COPY = "copy"
    LINK = "link"


class Action(str, Enum):
    """Per-file outcome of comparing installed, current and incoming hashes."""

    NEW = "new"
    REMOVED_UPSTREAM = "removed-upstream"
    UNCHANGED = "unchanged"
    AUTO_UPDATE = "auto-update"
    ALREADY_CURRENT = "already-current"
    MODIFIED_LOCALLY = "modified-locally"
    CONFLICT = "conflict"

    @property
    def mutating(self) -> bool:
        """Whether applying this action may write to the installation."""
        return self in (Action.NEW, Action.AUTO_UPDATE, Action.CONFLICT)


class Resolution(str, Enum):
    """How a conflict was (or will be) resolved."""

    KEEP = "keep"
    TAKE = "take"
    SKIP = "skip"
    SIDECAR = "sidecar"


class ManifestEntry(BaseModel):
    """One installed file: absolute destination, tier and content hash."""

    path: str
    tier: Tier
    hash: str


class Manifest(BaseModel):
    """Persisted record of an installation.

    Attributes:
        source_revision: Upstream revision the files came from.
        source_url: Where upstream lives.
        installed_at: UTC timestamp of the last mutating run.
        installed_agents: Agents selected so far (union across runs).
        mode: Copy or link.
        profile: Active profile name, if any.
        entries: One entry per installed path.
    """

    source_revision: str = ""
    source_url: str = ""
    installed_at: str = ""
    installed_agents: list[str] = Field(default_factory=list)
    mode: InstallMode = InstallMode.COPY
    profile: Optional[str] = None
    entries: list[ManifestEntry] = Field(default_factory=list)

    @field_validator("entries")
    @classmethod
    def _unique_paths(cls, v: list[ManifestEntry]) -> list[ManifestEntry]:
        """Collapse duplicate paths, last occurrence wins."""
        by_path: dict[str, ManifestEntry] = {}
        for entry in v:
            by_path[entry.path] = entry
        return list(by_path.values())

    @field_validator("installed_agents")
    @classmethod
    def _unique_agents(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    def entry_map(self) -> dict[str, ManifestEntry]:
        """Entries keyed by path."""
        return {e.path: e for e in self.entries}

    def without(self, paths: set[str]) -> "Manifest":
        """Copy of this manifest with the given paths dropped."""
        kept = [e for e in self.entries if e.path not in paths]
        return self.model_copy(update={"entries": kept})


class CatalogEntry(BaseModel):
    """A resource upstream currently offers.

    Attributes:
        destination: Absolute install path.
        source: File in the upstream tree.
        tier: Conflict-policy tier.
        hash: Hash of the content that would be installed.
        category: Catalog category name (agents, tools, ...).
        name: Resource name within its category.
        rendered: Installed bytes when they differ from the source file
            (profile injection, local customization). None means the
            source file is installed as-is.
        owners: Agents shipping this resource in their own directory;
            empty for top-level resources.
        install_once: Only ever written where no file exists yet.
    """

    destination: Path
    source: Path
    tier: Tier
    hash: str
    category: str
    name: str
    rendered: Optional[bytes] = None
    owners: tuple[str, ...] = ()
    install_once: bool = False

    def content(self) -> bytes:
        """Bytes that installing this entry writes."""
        if self.rendered is not None:
            return self.rendered
        return self.source.read_bytes()
