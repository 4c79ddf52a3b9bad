"""
Manifest Store: persisted record of everything the installer placed.

Stored at <root>/.manifest.lock as line-oriented text:

    source_revision=<rev>
    source_url=<url>
    installed_at=<UTC timestamp>
    installed_agents=<comma-joined names>
    mode=copy|link
    profile=<name>                 # only when a profile is active

    [<tier>] <absolute path> hash=<hex>
    ...

Entries are sorted by tier then path so successive manifests diff cleanly.
Writes go through a temporary file and an atomic rename.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from .catalog import scan_installed
from .errors import ManifestError
from .hashing import hash_file
from .models import InstallMode, Manifest, ManifestEntry, Tier

logger = logging.getLogger("libagents.manifest")

MANIFEST_FILENAME = ".manifest.lock"
MIGRATED_REVISION = "unknown (migrated)"

_HEADER_KEYS = (
    "source_revision",
    "source_url",
    "installed_at",
    "installed_agents",
    "mode",
    "profile",
)
_ENTRY_RE = re.compile(r"^\[(?P<tier>[a-z]+)\] (?P<path>.+) hash=(?P<hash>\S+)$")


def manifest_path(root: Path) -> Path:
    """Location of the manifest for an installation root."""
    return Path(root) / MANIFEST_FILENAME


def dumps(manifest: Manifest) -> str:
    """Serialize a manifest to its text form."""
    lines = [
        f"source_revision={manifest.source_revision}",
        f"source_url={manifest.source_url}",
        f"installed_at={manifest.installed_at}",
        f"installed_agents={','.join(manifest.installed_agents)}",
        f"mode={manifest.mode.value}",
    ]
    if manifest.profile:
        lines.append(f"profile={manifest.profile}")
    lines.append("")
    for entry in sorted(manifest.entries, key=lambda e: (e.tier.value, e.path)):
        lines.append(f"[{entry.tier.value}] {entry.path} hash={entry.hash}")
    return "\n".join(lines) + "\n"


def loads(text: str) -> Manifest:
    """Parse manifest text.

    Raises:
        ManifestError: On an unknown header key, a malformed entry line,
            or an invalid tier/mode value.
    """
    header: dict[str, str] = {}
    entries: list[ManifestEntry] = []
    in_body = False

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.rstrip("\r")
        if not in_body:
            if not line.strip():
                in_body = True
                continue
            key, sep, value = line.partition("=")
            if not sep or key not in _HEADER_KEYS:
                raise ManifestError(f"line {lineno}: unexpected header {line!r}")
            header[key] = value
            continue
        if not line.strip():
            continue
        match = _ENTRY_RE.match(line)
        if not match:
            raise ManifestError(f"line {lineno}: malformed entry {line!r}")
        try:
            tier = Tier(match["tier"])
        except ValueError:
            raise ManifestError(f"line {lineno}: unknown tier {match['tier']!r}") from None
        entries.append(ManifestEntry(path=match["path"], tier=tier, hash=match["hash"]))

    agents = [a for a in header.get("installed_agents", "").split(",") if a]
    try:
        mode = InstallMode(header.get("mode", InstallMode.COPY.value))
    except ValueError:
        raise ManifestError(f"unknown mode {header.get('mode')!r}") from None

    return Manifest(
        source_revision=header.get("source_revision", ""),
        source_url=header.get("source_url", ""),
        installed_at=header.get("installed_at", ""),
        installed_agents=agents,
        mode=mode,
        profile=header.get("profile") or None,
        entries=entries,
    )


def load_manifest(root: Path) -> Optional[Manifest]:
    """Load the manifest of an installation.

    A missing manifest and a corrupt one are both reported as None so the
    caller falls back to migration; corruption is logged.

    Args:
        root: Installation root.

    Returns:
        Manifest or None.
    """
    path = manifest_path(root)
    if not path.is_file():
        return None
    try:
        return loads(path.read_text(encoding="utf-8"))
    except (ManifestError, OSError, UnicodeDecodeError) as exc:
        logger.warning("Ignoring unreadable manifest %s: %s", path, exc)
        return None


def save_manifest(manifest: Manifest, root: Path) -> Path:
    """Write the manifest atomically.

    Args:
        manifest: Manifest to persist.
        root: Installation root.

    Returns:
        Path: The manifest file.
    """
    path = manifest_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".manifest.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dumps(manifest))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Manifest saved: %s (%d entries)", path, len(manifest.entries))
    return path


def merge_manifests(existing: Manifest, incoming: Manifest) -> Manifest:
    """Combine a previous manifest with the result of a new run.

    Header fields come from incoming; installed_agents is the union.
    Entries from incoming win for the same path, and entries incoming
    does not mention are kept, so a scoped update never forgets files
    it did not look at.
    """
    entries = existing.entry_map()
    entries.update(incoming.entry_map())
    return incoming.model_copy(update={
        "installed_agents": sorted(set(existing.installed_agents) | set(incoming.installed_agents)),
        "entries": list(entries.values()),
    })


def migrate_manifest(root: Path) -> Optional[Manifest]:
    """Synthesize a baseline manifest for an installation that lacks one.

    Every installed-looking artifact under the root is hashed as it is
    right now, so the next reconciliation treats current content as what
    was installed. User-tier files beside the root are never adopted; an
    untracked one reconciles as new and keeps the user's content.

    Args:
        root: Installation root.

    Returns:
        Manifest, or None when the root holds nothing installed-looking.
    """
    found = scan_installed(root)
    if not found:
        return None
    entries = [
        ManifestEntry(path=str(path), tier=tier, hash=hash_file(path))
        for path, tier in found
    ]
    agents = [path.stem for path, tier in found if tier == Tier.AGENT]
    logger.info("Migrated %d installed files into a new manifest for %s", len(entries), root)
    return Manifest(
        source_revision=MIGRATED_REVISION,
        installed_agents=agents,
        entries=entries,
    )
