"""
Profile Engine: named selections of agents and skills.

A profile lives in the source tree as profiles/<name>.yaml:

    name: frontend
    description: UI work with docs support
    agents:
      git-ops:
        skills: [conventional-commits]
      docs: [readme-style, changelog]
      devops:

Applying a profile installs only the skills it names and, for each agent
listed with extra skills, rewrites that agent's installed definition:
permission entries go into the front matter's permission.skill block and
a human-readable section is appended, both between BEGIN/END
profile:<name> markers. Rendering always starts from pristine upstream
text with every profile region stripped, so it is idempotent and a
profile switch never leaves stale entries behind.

The same marker convention carries local customizations: the content of
AGENTS.local.md is appended to the managed AGENTS.md on every install.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from . import markers
from .errors import MarkerError, ProfileError, UnknownProfileError
from .hashing import hash_bytes
from .models import CatalogEntry, Tier

logger = logging.getLogger("libagents.profiles")

PROFILES_DIR = "profiles"
PROFILE_REGION_PREFIX = "profile:"
LOCAL_REGION = "local"

_PERMISSION_RE = re.compile(r"^permission:\s*(?:#.*)?$")
_INLINE_PERMISSION_RE = re.compile(r"^permission:\s*(?P<value>[^\s#].*?)\s*$")
_SKILL_RE = re.compile(r"^(\s+)skill:\s*(?:#.*)?$")
_INLINE_SKILL_RE = re.compile(r"^(?P<indent>\s+)skill:\s*(?P<value>[^\s#].*?)\s*$")


class Profile(BaseModel):
    """A named selection over agents and skills. Immutable once parsed."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    agents: tuple[str, ...] = ()
    agent_skills: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    @property
    def all_skills(self) -> frozenset[str]:
        """Every skill any agent in the profile gains."""
        return frozenset(s for skills in self.agent_skills.values() for s in skills)

    @property
    def region(self) -> str:
        """Marker region name owned by this profile."""
        return f"{PROFILE_REGION_PREFIX}{self.name}"


def _ordered_unique(items: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    raise ProfileError(f"{where}: expected a list of names")


def parse_profile(data: Any, default_name: str = "") -> Profile:
    """Build a Profile from a parsed YAML document.

    Agents may be a mapping (name -> skills list, {skills: [...]}, or
    null) or a list of names / {name, skills} items.

    Raises:
        ProfileError: If the document does not have that shape.
    """
    if not isinstance(data, dict):
        raise ProfileError("profile document must be a mapping")

    name = str(data.get("name") or default_name).strip()
    if not name:
        raise ProfileError("profile has no name")

    raw_agents = data.get("agents") or {}
    pairs: list[tuple[str, Any]] = []
    if isinstance(raw_agents, dict):
        pairs = list(raw_agents.items())
    elif isinstance(raw_agents, list):
        for item in raw_agents:
            if isinstance(item, str):
                pairs.append((item, None))
            elif isinstance(item, dict) and "name" in item:
                pairs.append((item["name"], item.get("skills")))
            else:
                raise ProfileError(f"profile '{name}': invalid agent item {item!r}")
    else:
        raise ProfileError(f"profile '{name}': agents must be a mapping or list")

    agents: list[str] = []
    agent_skills: dict[str, tuple[str, ...]] = {}
    for agent, value in pairs:
        agent = str(agent)
        agents.append(agent)
        if isinstance(value, dict):
            value = value.get("skills")
        skills = _string_list(value, f"profile '{name}', agent '{agent}'")
        if skills:
            merged = list(agent_skills.get(agent, ())) + skills
            agent_skills[agent] = _ordered_unique(merged)

    return Profile(
        name=name,
        description=" ".join(str(data.get("description", "")).split()),
        agents=_ordered_unique(agents),
        agent_skills=agent_skills,
    )


def load_profile(path: Path) -> Profile:
    """Read and parse one profile document.

    Raises:
        ProfileError: On unreadable YAML or an invalid document.
    """
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ProfileError(f"{path}: {exc}") from exc
    return parse_profile(data, default_name=Path(path).stem)


def list_profiles(source_root: Path) -> list[Profile]:
    """Every valid profile in the source, sorted by name.

    Malformed documents are skipped with a warning.
    """
    profiles_dir = Path(source_root) / PROFILES_DIR
    if not profiles_dir.is_dir():
        return []
    found: dict[str, Profile] = {}
    for path in sorted(profiles_dir.iterdir()):
        if path.suffix not in (".yaml", ".yml") or not path.is_file():
            continue
        try:
            profile = load_profile(path)
        except ProfileError as exc:
            logger.warning("Skipping profile %s: %s", path, exc)
            continue
        found[profile.name] = profile
    return sorted(found.values(), key=lambda p: p.name)


def find_profile(source_root: Path, name: str) -> Profile:
    """Look up a profile by name.

    Raises:
        UnknownProfileError: If the source has no such profile.
    """
    for profile in list_profiles(source_root):
        if profile.name == name:
            return profile
    raise UnknownProfileError(f"Profile '{name}' not found in {Path(source_root) / PROFILES_DIR}")


# ---------------------------------------------------------------------------
# Agent definition rendering
# ---------------------------------------------------------------------------


def _split_front_matter(text: str) -> tuple[str, str, str, str]:
    """Split into (opening, front matter, closing, body); empty parts if none."""
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return "", "", "", text
    for idx in range(1, len(lines)):
        if lines[idx].strip() == "---":
            return lines[0], "".join(lines[1:idx]), lines[idx], "".join(lines[idx + 1:])
    return "", "", "", text


def _permission_entries(skills: tuple[str, ...], indent: str) -> str:
    return "".join(f'{indent}"{skill}": allow\n' for skill in skills)


def _inline_value(raw: str, where: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise MarkerError(f"cannot read inline {where} value {raw!r}: {exc}") from exc


def _skill_rules(value: Any, skills: tuple[str, ...]) -> dict[str, Any]:
    """Existing permission.skill value merged with the profile's grants."""
    if value is None:
        rules: dict[str, Any] = {}
    elif isinstance(value, dict):
        rules = {str(k): v for k, v in value.items()}
    elif isinstance(value, str):
        rules = {"*": value}
    else:
        raise MarkerError(f"permission.skill must be a rule or a mapping, not {value!r}")
    rules.update({skill: "allow" for skill in skills})
    return rules


def _block_yaml(data: dict[str, Any], indent: str) -> str:
    text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return "".join(f"{indent}{line}\n" for line in text.splitlines())


def _inject_permissions(front: str, region: str, skills: tuple[str, ...]) -> str:
    lines = front.splitlines(keepends=True)
    perm_idx = next((i for i, line in enumerate(lines) if _PERMISSION_RE.match(line)), None)

    if perm_idx is None:
        inline_idx = next((i for i, line in enumerate(lines) if _INLINE_PERMISSION_RE.match(line)), None)
        if inline_idx is None:
            content = "permission:\n  skill:\n" + _permission_entries(skills, "    ")
            return markers.insert(front, region, content)
        # permission: {...} is rewritten in block form inside the region
        value = _inline_value(_INLINE_PERMISSION_RE.match(lines[inline_idx])["value"], "permission")
        if not isinstance(value, dict):
            raise MarkerError(f"permission must be a mapping to carry skill grants, not {value!r}")
        permission = {str(k): v for k, v in value.items()}
        permission["skill"] = _skill_rules(permission.get("skill"), skills)
        rest = "".join(lines[:inline_idx] + lines[inline_idx + 1:])
        return markers.insert(rest, region, _block_yaml({"permission": permission}, ""))

    end_idx = len(lines)
    for i in range(perm_idx + 1, len(lines)):
        line = lines[i]
        if line.strip() and not line[0].isspace() and not line.startswith("#"):
            end_idx = i
            break
    before = "".join(lines[:perm_idx])
    children = lines[perm_idx + 1:end_idx]
    after = "".join(lines[end_idx:])

    skill_match = next((m for m in map(_SKILL_RE.match, children) if m), None)
    inline_match = next((m for m in map(_INLINE_SKILL_RE.match, children) if m), None)

    if skill_match:
        block = lines[perm_idx] + "".join(children)
        indent = skill_match.group(1) + "  "
        block = markers.insert(
            block, region, _permission_entries(skills, indent),
            anchor=_SKILL_RE, indent=indent,
        )
    elif inline_match:
        # skill: <value> is rewritten in block form inside the region
        indent = inline_match["indent"]
        rules = _skill_rules(_inline_value(inline_match["value"], "permission.skill"), skills)
        block = lines[perm_idx] + "".join(c for c in children if not _INLINE_SKILL_RE.match(c))
        block = markers.insert(
            block, region, _block_yaml({"skill": rules}, indent),
            anchor=_PERMISSION_RE, indent=indent,
        )
    else:
        child = next((line for line in children if line.strip()), "  x")
        indent = child[: len(child) - len(child.lstrip())] or "  "
        block = lines[perm_idx] + "".join(children)
        content = f"{indent}skill:\n" + _permission_entries(skills, indent + "  ")
        block = markers.insert(block, region, content, anchor=_PERMISSION_RE, indent=indent)
    return before + block + after


def _skills_section(profile: Profile, skills: tuple[str, ...]) -> str:
    lines = [
        "",
        f"## Profile: {profile.name}",
        "",
        f"Additional skills enabled by the `{profile.name}` profile:",
        "",
    ]
    lines.extend(f"- `{skill}`" for skill in skills)
    return "\n".join(lines) + "\n"


def render_agent_definition(text: str, agent: str, profile: Optional[Profile]) -> str:
    """Apply a profile to an agent definition.

    Every existing profile region is removed first, whatever profile
    wrote it; then the given profile's regions are added if it grants
    this agent extra skills. An inline permission or permission.skill
    value is moved into the region in block form, so clearing restores
    pristine text only when rendering starts from upstream content.

    Args:
        text: Agent definition (markdown with YAML front matter).
        agent: Agent name.
        profile: Profile to apply, or None for pristine output.

    Returns:
        str: Rendered definition.

    Raises:
        MarkerError: If the front matter's permission cannot carry grants.
    """
    opening, front, closing, body = _split_front_matter(text)
    front = markers.strip(front, f"{PROFILE_REGION_PREFIX}*")
    body = markers.strip(body, f"{PROFILE_REGION_PREFIX}*")

    skills = profile.agent_skills.get(agent, ()) if profile else ()
    if skills:
        if opening:
            front = _inject_permissions(front, profile.region, skills)
        else:
            logger.debug("Agent '%s' has no front matter; skipping permission entries", agent)
        body = markers.insert(body, profile.region, _skills_section(profile, skills), style=markers.HTML_STYLE)
    return opening + front + closing + body


# ---------------------------------------------------------------------------
# Local customization
# ---------------------------------------------------------------------------


def local_sidecar(destination: Path) -> Path:
    """User-owned sidecar for a managed instruction file (AGENTS.local.md)."""
    destination = Path(destination)
    return destination.with_name(f"{destination.stem}.local{destination.suffix}")


def render_local_customization(text: str, sidecar_text: str) -> str:
    """Append sidecar content to a managed file between local markers."""
    text = markers.strip(text, LOCAL_REGION)
    if not sidecar_text.strip():
        return text
    return markers.insert(text, LOCAL_REGION, sidecar_text, style=markers.HTML_STYLE)


# ---------------------------------------------------------------------------
# Catalog rendering
# ---------------------------------------------------------------------------


def _render_entry(entry: CatalogEntry, profile: Optional[Profile]) -> Optional[str]:
    if entry.tier == Tier.AGENT:
        raw = entry.source.read_text(encoding="utf-8")
        rendered = render_agent_definition(raw, entry.name, profile)
        return rendered if rendered != raw else None
    if entry.tier == Tier.USER and entry.destination.suffix == ".md":
        sidecar = local_sidecar(entry.destination)
        if not sidecar.is_file():
            return None
        raw = entry.source.read_text(encoding="utf-8")
        rendered = render_local_customization(raw, sidecar.read_text(encoding="utf-8"))
        return rendered if rendered != raw else None
    return None


def render_catalog(entries: list[CatalogEntry], profile: Optional[Profile]) -> list[CatalogEntry]:
    """Attach rendered content to entries the profile or sidecars change.

    The entry hash becomes the hash of the rendered bytes, so an
    installation already carrying the same rendering reconciles as
    unchanged.
    """
    out = []
    for entry in entries:
        try:
            rendered = _render_entry(entry, profile)
        except UnicodeDecodeError:
            logger.warning("Not rendering non-UTF-8 file %s", entry.source)
            rendered = None
        except MarkerError as exc:
            logger.warning("Installing %s without profile changes: %s", entry.source, exc)
            rendered = None
        if rendered is None:
            out.append(entry)
            continue
        data = rendered.encode("utf-8")
        out.append(entry.model_copy(update={"rendered": data, "hash": hash_bytes(data)}))
    return out
