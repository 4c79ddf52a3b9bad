"""
Installation snapshots and rollback.

Before any run that would write, every file the current manifest tracks
is copied into a new timestamp-named snapshot alongside the manifest
itself. Only the newest KEEP_BACKUPS snapshots are kept.

Layout:
    <root>/.backup/
    └── 20261019T101500123456Z/
        ├── .manifest.lock         # manifest as it was before the run
        └── files/                 # tracked files, by absolute path
            └── home/me/project/.opencode/agents/git-ops.md

Rollback restores the newest snapshot wholesale: its manifest becomes the
active manifest and every file in it is copied back to its recorded
destination. Files created after the snapshot are left alone.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .errors import NoBackupError
from .hashing import hash_file
from .manifest import MANIFEST_FILENAME, dumps, loads, save_manifest
from .models import Manifest

logger = logging.getLogger("libagents.backup")

BACKUP_DIRNAME = ".backup"
FILES_DIRNAME = "files"
KEEP_BACKUPS = 3
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


def backup_root(root: Path) -> Path:
    """Directory holding every snapshot of an installation."""
    return Path(root) / BACKUP_DIRNAME


def _stored_path(snapshot_dir: Path, path: str) -> Path:
    """Where a tracked absolute path lives inside a snapshot."""
    p = Path(path)
    return snapshot_dir / FILES_DIRNAME / p.relative_to(p.anchor)


def _copy(src: Path, dest: Path) -> None:
    """Copy a file, preserving symlinks as symlinks."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.is_symlink() or dest.exists():
        dest.unlink()
    shutil.copy2(src, dest, follow_symlinks=False)


def list_backups(root: Path) -> list[Path]:
    """Snapshot directories, newest first."""
    base = backup_root(root)
    if not base.is_dir():
        return []
    return sorted((d for d in base.iterdir() if d.is_dir()), reverse=True)


def prune_backups(root: Path, keep: int = KEEP_BACKUPS) -> list[Path]:
    """Delete all but the newest `keep` snapshots, oldest first.

    Returns:
        list[Path]: Removed snapshot directories.
    """
    stale = list(reversed(list_backups(root)[keep:]))
    for snapshot_dir in stale:
        shutil.rmtree(snapshot_dir)
        logger.info("Pruned old snapshot %s", snapshot_dir.name)
    return stale


def _new_snapshot_dir(base: Path) -> Path:
    stamp = datetime.now(timezone.utc)
    while True:
        candidate = base / stamp.strftime(TIMESTAMP_FORMAT)
        try:
            candidate.mkdir(parents=True)
            return candidate
        except FileExistsError:
            stamp += timedelta(microseconds=1)


def create_snapshot(
    manifest: Manifest,
    root: Path,
    keep: int = KEEP_BACKUPS,
) -> dict[str, Any]:
    """Snapshot every file a manifest tracks.

    Files that no longer exist are skipped.

    Args:
        manifest: Manifest describing the installation before the run.
        root: Installation root.
        keep: Number of snapshots to retain after this one.

    Returns:
        dict: Result with 'path', 'backup_id', 'file_count', 'pruned'.
    """
    snapshot_dir = _new_snapshot_dir(backup_root(root))
    file_count = 0
    for entry in manifest.entries:
        src = Path(entry.path)
        if not (src.is_file() or src.is_symlink()):
            continue
        _copy(src, _stored_path(snapshot_dir, entry.path))
        file_count += 1

    (snapshot_dir / MANIFEST_FILENAME).write_text(dumps(manifest), encoding="utf-8")
    pruned = prune_backups(root, keep)

    logger.info("Snapshot created: %s (%d files)", snapshot_dir, file_count)
    return {
        "path": snapshot_dir,
        "backup_id": snapshot_dir.name,
        "file_count": file_count,
        "pruned": [p.name for p in pruned],
    }


def rollback(root: Path, backup_id: Optional[str] = None) -> dict[str, Any]:
    """Restore the newest snapshot (or a named one) over the installation.

    Args:
        root: Installation root.
        backup_id: Snapshot to restore. Defaults to the newest.

    Returns:
        dict: Result with 'backup_id', 'restored', 'errors', 'manifest'.

    Raises:
        NoBackupError: If no snapshot exists (or the named one does not).
    """
    snapshots = list_backups(root)
    if not snapshots:
        raise NoBackupError(f"No snapshots found in {backup_root(root)}")
    if backup_id is None:
        snapshot_dir = snapshots[0]
    else:
        snapshot_dir = backup_root(root) / backup_id
        if snapshot_dir not in snapshots:
            raise NoBackupError(f"Snapshot '{backup_id}' not found in {backup_root(root)}")

    manifest = loads((snapshot_dir / MANIFEST_FILENAME).read_text(encoding="utf-8"))

    restored = 0
    errors: list[str] = []
    for entry in manifest.entries:
        stored = _stored_path(snapshot_dir, entry.path)
        if not (stored.is_file() or stored.is_symlink()):
            continue
        dest = Path(entry.path)
        try:
            _copy(stored, dest)
        except OSError as exc:
            errors.append(f"{dest}: {exc}")
            logger.warning("Failed to restore %s: %s", dest, exc)
            continue
        if hash_file(dest) != hash_file(stored):
            errors.append(f"Checksum mismatch: {dest}")
        restored += 1

    save_manifest(manifest, root)
    logger.info(
        "Rolled back to %s: %d files restored (%d errors)",
        snapshot_dir.name, restored, len(errors),
    )
    return {
        "backup_id": snapshot_dir.name,
        "restored": restored,
        "errors": errors,
        "manifest": manifest,
    }


def snapshot_size(snapshot_dir: Path) -> int:
    """Total bytes stored in a snapshot."""
    total = 0
    for dirpath, _dirs, files in os.walk(snapshot_dir):
        for name in files:
            path = Path(dirpath) / name
            if not path.is_symlink():
                total += path.stat().st_size
    return total
