"""Tests for installation snapshots and rollback."""

from __future__ import annotations

from pathlib import Path

import pytest

from libagents.backup import (
    FILES_DIRNAME,
    KEEP_BACKUPS,
    backup_root,
    create_snapshot,
    list_backups,
    prune_backups,
    rollback,
    snapshot_size,
)
from libagents.errors import NoBackupError
from libagents.hashing import hash_file
from libagents.manifest import MANIFEST_FILENAME, load_manifest, save_manifest
from libagents.models import Manifest, ManifestEntry, Tier

from conftest import write


def _setup_installation(tmp_path: Path) -> tuple[Path, Manifest]:
    """Create a small installation with a manifest.

    Args:
        tmp_path: Temporary directory from pytest.

    Returns:
        tuple: (installation root, manifest)
    """
    root = tmp_path / ".opencode"
    agent = write(root / "agents" / "git-ops.md", "agent v1\n")
    tool = write(root / "tools" / "gh.ts", "tool v1\n")
    user = write(tmp_path / "AGENTS.md", "instructions v1\n")
    manifest = Manifest(
        source_revision="rev1",
        installed_agents=["git-ops"],
        entries=[
            ManifestEntry(path=str(p), tier=tier, hash=hash_file(p))
            for p, tier in ((agent, Tier.AGENT), (tool, Tier.SHARED), (user, Tier.USER))
        ],
    )
    save_manifest(manifest, root)
    return root, manifest


class TestCreateSnapshot:
    """Tests for create_snapshot()."""

    def test_copies_tracked_files_and_manifest(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)

        result = create_snapshot(manifest, root)

        snapshot = result["path"]
        assert result["file_count"] == 3
        assert (snapshot / MANIFEST_FILENAME).is_file()
        stored = snapshot / FILES_DIRNAME / Path(str(root / "tools" / "gh.ts")).relative_to("/")
        assert stored.read_text() == "tool v1\n"

    def test_missing_files_skipped(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)
        (root / "tools" / "gh.ts").unlink()
        assert create_snapshot(manifest, root)["file_count"] == 2

    def test_ids_sort_chronologically(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)
        ids = [create_snapshot(manifest, root)["backup_id"] for _ in range(3)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3
        assert [p.name for p in list_backups(root)] == list(reversed(ids))

    def test_retention_keeps_three(self, tmp_path: Path) -> None:
        """After more than three runs only the newest three remain."""
        root, manifest = _setup_installation(tmp_path)
        ids = [create_snapshot(manifest, root)["backup_id"] for _ in range(5)]

        remaining = [p.name for p in list_backups(root)]
        assert KEEP_BACKUPS == 3
        assert remaining == list(reversed(ids[-3:]))

    def test_prune_reports_oldest_first(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)
        ids = [create_snapshot(manifest, root, keep=10)["backup_id"] for _ in range(4)]
        pruned = prune_backups(root, keep=1)
        assert [p.name for p in pruned] == ids[:3]

    def test_snapshot_size(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)
        result = create_snapshot(manifest, root)
        assert snapshot_size(result["path"]) > len("agent v1\ntool v1\ninstructions v1\n")


class TestRollback:
    """Tests for rollback()."""

    def test_no_snapshot(self, tmp_path: Path) -> None:
        with pytest.raises(NoBackupError):
            rollback(tmp_path / ".opencode")

    def test_unknown_snapshot(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)
        create_snapshot(manifest, root)
        with pytest.raises(NoBackupError, match="nope"):
            rollback(root, "nope")

    def test_restores_files_and_manifest(self, tmp_path: Path) -> None:
        """Rollback brings back the exact pre-run bytes and manifest."""
        root, manifest = _setup_installation(tmp_path)
        before = {e.path: Path(e.path).read_bytes() for e in manifest.entries}
        create_snapshot(manifest, root)

        (root / "agents" / "git-ops.md").write_text("agent v2\n")
        (root / "tools" / "gh.ts").unlink()
        (tmp_path / "AGENTS.md").write_text("instructions v2\n")
        save_manifest(manifest.model_copy(update={"source_revision": "rev2"}), root)

        result = rollback(root)

        assert result["errors"] == []
        assert result["restored"] == 3
        assert {p: Path(p).read_bytes() for p in before} == before
        assert load_manifest(root).source_revision == "rev1"

    def test_newest_snapshot_wins(self, tmp_path: Path) -> None:
        root, manifest = _setup_installation(tmp_path)
        create_snapshot(manifest, root)
        (root / "tools" / "gh.ts").write_text("tool v2\n")
        newer = manifest.model_copy(update={"source_revision": "rev2"})
        latest = create_snapshot(newer, root)
        (root / "tools" / "gh.ts").write_text("tool v3\n")

        result = rollback(root)

        assert result["backup_id"] == latest["backup_id"]
        assert (root / "tools" / "gh.ts").read_text() == "tool v2\n"

    def test_preserves_symlinks(self, tmp_path: Path) -> None:
        root = tmp_path / ".opencode"
        target = write(tmp_path / "source" / "gh.ts", "linked tool\n")
        link = root / "tools" / "gh.ts"
        link.parent.mkdir(parents=True)
        link.symlink_to(target)
        manifest = Manifest(entries=[ManifestEntry(path=str(link), tier=Tier.SHARED, hash=hash_file(link))])
        create_snapshot(manifest, root)

        link.unlink()
        link.write_text("replaced by a regular file\n")
        rollback(root)

        assert link.is_symlink()
        assert link.read_text() == "linked tool\n"

    def test_backup_root_location(self, tmp_path: Path) -> None:
        assert backup_root(tmp_path) == tmp_path / ".backup"
