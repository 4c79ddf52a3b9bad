"""
Resource Catalog: discovers what upstream offers and where it installs.

Source tree layout:

    <source>/
    ├── AGENTS.md, opencode.json   # user tier, installed beside the root
    ├── agents/<name>/agent.md     # agent tier, one directory per agent
    ├── agents/<name>/DEPENDS      # optional, one agent name per line
    ├── agents/<name>/tools/, commands/, skills/   # owned by the agent
    ├── agents/<name>/package.json # installed only where none exists
    ├── tools/*.ts                 # shared
    ├── commands/*.md              # shared
    ├── prompts/*                  # shared
    └── skills/<name>/SKILL.md     # shared

Resources inside an agent directory install beside the shared ones but are
selected with their owning agent. Discovery is read-only. A missing category
directory contributes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import yaml

from .errors import UnknownAgentError
from .hashing import hash_file
from .models import CatalogEntry, Tier

logger = logging.getLogger("libagents.catalog")

USER_FILES = ("AGENTS.md", "opencode.json")
USER_CATEGORY = "user"
PACKAGE_FILE = "package.json"
PACKAGE_CATEGORY = "package"
AGENT_RESOURCE_CATEGORIES = ("tools", "commands", "skills")


@dataclass(frozen=True)
class Category:
    """One kind of resource and its install layout.

    Attributes:
        name: Category name, also the directory under source and root.
        tier: Conflict-policy tier of every file in the category.
        pattern: Glob for flat categories.
        entry_file: Fixed filename inside one-directory-per-name categories.
        flatten: Install <name>/<entry_file> as <name><suffix> instead of
            keeping the per-name directory.
    """

    name: str
    tier: Tier
    pattern: str = "*"
    entry_file: Optional[str] = None
    flatten: bool = False

    def _installed_name(self, name: str) -> str:
        suffix = Path(self.entry_file).suffix if self.entry_file else ""
        return f"{name}{suffix}"

    def sources(self, source_root: Path) -> list[tuple[str, Path]]:
        """(name, source file) pairs this category offers, sorted by name."""
        base = source_root / self.name
        if not base.is_dir():
            return []
        found = []
        if self.entry_file:
            for sub in sorted(base.iterdir()):
                candidate = sub / self.entry_file
                if sub.is_dir() and candidate.is_file():
                    found.append((sub.name, candidate))
        else:
            for f in sorted(base.glob(self.pattern)):
                if f.is_file() and not f.name.startswith("."):
                    found.append((f.stem, f))
        return found

    def destination(self, root: Path, name: str, source: Path) -> Path:
        """Where a resource of this category installs under the root."""
        if self.entry_file and self.flatten:
            return root / self.name / self._installed_name(name)
        if self.entry_file:
            return root / self.name / name / self.entry_file
        return root / self.name / source.name

    def installed(self, root: Path) -> list[tuple[str, Path]]:
        """(name, path) pairs of files that look installed under the root."""
        base = root / self.name
        if not base.is_dir():
            return []
        if self.entry_file and self.flatten:
            pattern = f"*{Path(self.entry_file).suffix}"
            return [(f.stem, f) for f in sorted(base.glob(pattern)) if f.is_file()]
        if self.entry_file:
            return [
                (sub.name, sub / self.entry_file)
                for sub in sorted(base.iterdir())
                if (sub / self.entry_file).is_file()
            ]
        return [
            (f.stem, f) for f in sorted(base.glob(self.pattern))
            if f.is_file() and not f.name.startswith(".")
        ]

    def identify(self, root: Path, path: Path) -> Optional[str]:
        """Resource name for an installed path of this category, else None."""
        try:
            rel = path.relative_to(root / self.name)
        except ValueError:
            return None
        parts = rel.parts
        if self.entry_file and not self.flatten:
            if len(parts) == 2 and parts[1] == self.entry_file:
                return parts[0]
            return None
        if len(parts) != 1:
            return None
        return Path(parts[0]).stem


CATEGORIES: tuple[Category, ...] = (
    Category("agents", Tier.AGENT, entry_file="agent.md", flatten=True),
    Category("tools", Tier.SHARED, pattern="*.ts"),
    Category("commands", Tier.SHARED, pattern="*.md"),
    Category("prompts", Tier.SHARED),
    Category("skills", Tier.SHARED, entry_file="SKILL.md"),
)

CATEGORY_NAMES = tuple(c.name for c in CATEGORIES) + (PACKAGE_CATEGORY, USER_CATEGORY)


def get_category(name: str) -> Category:
    """Look up a category by name."""
    for category in CATEGORIES:
        if category.name == name:
            return category
    raise KeyError(name)


@dataclass
class Scope:
    """Restricts which resources a reconciliation pass considers.

    None for any field means "no restriction".
    """

    categories: Optional[set[str]] = None
    agents: Optional[set[str]] = None
    skills: Optional[set[str]] = None

    def includes(self, category: str, name: str, owners: Iterable[str] = ()) -> bool:
        """Whether a resource falls inside this scope.

        A resource owned by agents is in scope when any owner is; profile
        skill scoping does not apply to it.
        """
        if self.categories is not None and category not in self.categories:
            return False
        owners = set(owners)
        if owners:
            return self.agents is None or bool(owners & self.agents)
        if category == "agents" and self.agents is not None:
            return name in self.agents
        if category == "skills" and self.skills is not None:
            return name in self.skills
        return True


@dataclass
class AgentInfo:
    """An agent package offered by the source."""

    name: str
    description: str = ""
    depends: list[str] = field(default_factory=list)
    commands: list[tuple[str, str]] = field(default_factory=list)


def read_front_matter(text: str) -> dict:
    """Parse the YAML front matter of a markdown document.

    Returns an empty dict when the document has none or it is malformed.
    """
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}
    for idx in range(1, len(lines)):
        if lines[idx].strip() == "---":
            try:
                data = yaml.safe_load("\n".join(lines[1:idx]))
            except yaml.YAMLError as exc:
                logger.debug("Unparseable front matter: %s", exc)
                return {}
            return data if isinstance(data, dict) else {}
    return {}


def _read_depends(agent_dir: Path) -> list[str]:
    depends_file = agent_dir / "DEPENDS"
    if not depends_file.is_file():
        return []
    deps = []
    for line in depends_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        deps.append(line)
    return deps


def _description(path: Path) -> str:
    meta = read_front_matter(path.read_text(encoding="utf-8"))
    return " ".join(str(meta.get("description", "")).split())


def list_agents(source_root: Path) -> list[AgentInfo]:
    """Every agent the source offers, with description, dependencies and commands."""
    agents = []
    for name, agent_file in get_category("agents").sources(source_root):
        agent_dir = agent_file.parent
        commands = [
            (cmd_name, _description(cmd_file))
            for cmd_name, cmd_file in get_category("commands").sources(agent_dir)
        ]
        agents.append(AgentInfo(
            name=name,
            description=_description(agent_file)[:80],
            depends=_read_depends(agent_dir),
            commands=commands,
        ))
    return agents


def resolve_agents(source_root: Path, names: Optional[Iterable[str]] = None) -> list[str]:
    """Expand an agent selection with its transitive dependencies.

    Args:
        source_root: Upstream source tree.
        names: Requested agents. None selects every agent.

    Returns:
        list[str]: Agent names, dependencies before dependents.

    Raises:
        UnknownAgentError: If a name (or dependency) is not in the source.
    """
    available = {a.name: a for a in list_agents(source_root)}
    requested = list(available) if names is None else list(names)

    ordered: list[str] = []
    visiting: set[str] = set()

    def visit(name: str, required_by: Optional[str] = None) -> None:
        if name in ordered or name in visiting:
            return
        if name not in available:
            hint = f" (required by '{required_by}')" if required_by else ""
            raise UnknownAgentError(f"Agent '{name}' not found in {source_root / 'agents'}{hint}")
        visiting.add(name)
        for dep in available[name].depends:
            visit(dep, required_by=name)
        visiting.discard(name)
        ordered.append(name)

    for name in requested:
        visit(name)
    return ordered


def discover_user_files(source_root: Path, user_root: Path) -> list[CatalogEntry]:
    """Catalog entries for the root-level user-tier files."""
    entries = []
    for filename in USER_FILES:
        src = source_root / filename
        if not src.is_file():
            continue
        entries.append(CatalogEntry(
            destination=user_root / filename,
            source=src,
            tier=Tier.USER,
            hash=hash_file(src),
            category=USER_CATEGORY,
            name=filename,
        ))
    return entries


def _agent_resource_files(source_root: Path, root: Path) -> list[tuple[str, str, Path, Path, str]]:
    """(category, name, source, destination, owner) for every agent-owned file."""
    found = []
    for owner, agent_file in get_category("agents").sources(source_root):
        agent_dir = agent_file.parent
        for category in CATEGORIES:
            if category.name not in AGENT_RESOURCE_CATEGORIES:
                continue
            for name, src in category.sources(agent_dir):
                found.append((category.name, name, src, category.destination(root, name, src), owner))
        package = agent_dir / PACKAGE_FILE
        if package.is_file():
            found.append((PACKAGE_CATEGORY, PACKAGE_FILE, package, root / PACKAGE_FILE, owner))
    return found


def resource_owners(source_root: Path, root: Path) -> dict[str, tuple[str, ...]]:
    """Installed path -> agents shipping it, for every agent-owned resource."""
    owners: dict[str, list[str]] = {}
    for _category, _name, _src, dest, owner in _agent_resource_files(source_root, root):
        owners.setdefault(str(dest), []).append(owner)
    return {path: tuple(names) for path, names in owners.items()}


def discover_agent_resources(source_root: Path, root: Path) -> list[CatalogEntry]:
    """Catalog entries for the tools, commands, skills and package.json agents ship.

    Agents are visited by name; when two ship the same destination the first
    provides the content and both own it.
    """
    owners = resource_owners(source_root, root)
    entries: dict[str, CatalogEntry] = {}
    for category, name, src, dest, owner in _agent_resource_files(source_root, root):
        key = str(dest)
        if key in entries:
            logger.debug("%s is already provided by '%s'; ignoring the copy in '%s'",
                         dest, entries[key].owners[0], owner)
            continue
        entries[key] = CatalogEntry(
            destination=dest,
            source=src,
            tier=Tier.SHARED,
            hash=hash_file(src),
            category=category,
            name=name,
            owners=owners[key],
            install_once=category == PACKAGE_CATEGORY,
        )
    return list(entries.values())


def discover(
    source_root: Path,
    root: Path,
    user_root: Path,
    scope: Optional[Scope] = None,
) -> list[CatalogEntry]:
    """Enumerate every resource upstream offers within a scope.

    A top-level resource whose destination an agent also ships is left
    out; the agent's copy is the one installed.

    Args:
        source_root: Upstream source tree.
        root: Installation root.
        user_root: Directory receiving user-tier files.
        scope: Optional restriction by category, agent and skill name.

    Returns:
        list[CatalogEntry]: Entries hashed from their source files.
    """
    scope = scope or Scope()
    owned = discover_agent_resources(source_root, root)
    claimed = {str(e.destination) for e in owned}

    entries: list[CatalogEntry] = []
    for category in CATEGORIES:
        for name, src in category.sources(source_root):
            if not scope.includes(category.name, name):
                continue
            dest = category.destination(root, name, src)
            if str(dest) in claimed:
                logger.debug("%s is shipped by an agent; skipping %s", dest, src)
                continue
            entries.append(CatalogEntry(
                destination=dest,
                source=src,
                tier=category.tier,
                hash=hash_file(src),
                category=category.name,
                name=name,
            ))
    for entry in owned:
        if scope.includes(entry.category, entry.name, entry.owners):
            entries.append(entry)
    for entry in discover_user_files(source_root, user_root):
        if scope.includes(USER_CATEGORY, entry.name):
            entries.append(entry)
    logger.debug("Discovered %d catalog entries in %s", len(entries), source_root)
    return entries


def identify(path: Path, root: Path, user_root: Path) -> Optional[tuple[str, str]]:
    """Map an installed path back to its (category, name), if it has one."""
    path = Path(path)
    if path.parent == user_root and path.name in USER_FILES:
        return USER_CATEGORY, path.name
    if path == root / PACKAGE_FILE:
        return PACKAGE_CATEGORY, PACKAGE_FILE
    for category in CATEGORIES:
        name = category.identify(root, path)
        if name is not None:
            return category.name, name
    return None


def scan_installed(root: Path) -> list[tuple[Path, Tier]]:
    """Category files under an installation root.

    package.json is left out: users keep their own there, and the installer
    only ever writes it where none exists.
    """
    found: list[tuple[Path, Tier]] = []
    for category in CATEGORIES:
        for _name, path in category.installed(root):
            found.append((path, category.tier))
    return found
