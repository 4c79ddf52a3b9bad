"""
Upstream source acquisition.

The installer works from a local directory tree. When none is available
(e.g. the CLI is run from a pipe rather than a checkout) the repository
is cloned once, shallowly, into a temporary directory that is removed
when the SourceTree is closed.

External commands go through run_command so tests can substitute a fake.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from .errors import EnvironmentCheckError, SourceError

logger = logging.getLogger("libagents.source")

UNKNOWN_REVISION = "unknown"

Runner = Callable[..., subprocess.CompletedProcess]


def run_command(
    args: Sequence[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run an external command, capturing text output.

    Raises:
        OSError: If the executable cannot be started.
        subprocess.TimeoutExpired: If a timeout was given and exceeded.
    """
    logger.debug("Running: %s", " ".join(args))
    return subprocess.run(
        list(args),
        cwd=str(cwd) if cwd else None,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


@dataclass
class RunCache:
    """Per-invocation memo for environment probes.

    One instance lives for one installer run, so repeated runs in the
    same process never see stale answers.
    """

    which: Callable[[str], Optional[str]] = shutil.which
    _tools: dict[str, Optional[str]] = field(default_factory=dict)

    def tool(self, name: str) -> Optional[str]:
        """Path of an executable, looked up once per run."""
        if name not in self._tools:
            self._tools[name] = self.which(name)
        return self._tools[name]

    def require_git(self) -> str:
        """Path of git.

        Raises:
            EnvironmentCheckError: If git is not on PATH.
        """
        git = self.tool("git")
        if not git:
            raise EnvironmentCheckError(
                "git is required to download agents. Install from https://git-scm.com"
            )
        return git


def looks_like_source(path: Optional[Path]) -> bool:
    """Whether a directory is an upstream source tree."""
    return bool(path) and (Path(path) / "agents").is_dir()


class SourceTree:
    """A local upstream tree, possibly a temporary clone.

    Args:
        path: Root of the tree.
        url: Where the tree came from.
        temporary: Delete the tree on close().
        runner: Command runner for git queries.
    """

    def __init__(
        self,
        path: Path,
        url: str = "",
        temporary: bool = False,
        runner: Runner = run_command,
    ) -> None:
        self.path = Path(path)
        self.url = url
        self.temporary = temporary
        self._runner = runner
        self._revision: Optional[str] = None

    @classmethod
    def locate(
        cls,
        local: Optional[Path],
        url: str,
        cache: RunCache,
        runner: Runner = run_command,
    ) -> "SourceTree":
        """Use a local tree if there is one, else clone url once.

        Raises:
            EnvironmentCheckError: If a clone is needed and git is missing.
            SourceError: If the clone fails.
        """
        if looks_like_source(local):
            return cls(Path(local).resolve(), url=url, runner=runner)

        git = cache.require_git()
        logger.info("No local agent source found; cloning %s", url)
        tmp = Path(tempfile.mkdtemp(prefix="lib-agents-"))
        try:
            result = runner([git, "clone", "--depth", "1", "--quiet", url, str(tmp)])
        except OSError as exc:
            shutil.rmtree(tmp, ignore_errors=True)
            raise SourceError(f"Failed to clone {url}: {exc}") from exc
        if result.returncode != 0 or not looks_like_source(tmp):
            shutil.rmtree(tmp, ignore_errors=True)
            detail = (result.stderr or "").strip() or "no agents/ directory in clone"
            raise SourceError(f"Failed to clone {url}: {detail}")
        return cls(tmp, url=url, temporary=True, runner=runner)

    def revision(self) -> str:
        """Commit the tree is at, or UNKNOWN_REVISION outside a git checkout."""
        if self._revision is None:
            self._revision = UNKNOWN_REVISION
            try:
                result = self._runner(["git", "-C", str(self.path), "rev-parse", "HEAD"])
                if result.returncode == 0 and result.stdout.strip():
                    self._revision = result.stdout.strip()
            except OSError as exc:
                logger.debug("Cannot read source revision: %s", exc)
        return self._revision

    def close(self) -> None:
        """Remove the tree if it is a temporary clone."""
        if self.temporary and self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug("Removed temporary source %s", self.path)

    def __enter__(self) -> "SourceTree":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def remote_revision(url: str, runner: Runner = run_command, timeout: float = 15) -> Optional[str]:
    """Latest commit on the remote's HEAD, or None if it cannot be queried."""
    if not url:
        return None
    try:
        result = runner(["git", "ls-remote", url, "HEAD"], timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Could not query %s: %s", url, exc)
        return None
    if result.returncode != 0:
        logger.warning("Could not query %s: %s", url, (result.stderr or "").strip())
        return None
    first = result.stdout.strip().split("\n")[0]
    return first.split()[0] if first else None
