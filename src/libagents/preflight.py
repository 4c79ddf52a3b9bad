"""
Preflight checks: the external tools installed agents rely on.

Checks for:
  - Git (required: source download and revision tracking)
  - Whether the working directory is a git work tree
  - GitHub CLI (gh) and its authentication state
  - Bun (OpenCode runs TypeScript tools with it)

Only git is required. Everything else degrades agent functionality but
never blocks an install.
"""

from __future__ import annotations

import platform
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .source import RunCache, Runner, run_command


class ToolStatus(str, Enum):
    """Status of a system tool."""
    INSTALLED = "installed"
    MISSING = "missing"
    WARNING = "warning"


@dataclass
class ToolCheck:
    """Result of checking a single prerequisite."""

    name: str
    status: ToolStatus
    required: bool
    version: str = ""
    detail: str = ""
    download_url: str = ""

    @property
    def installed(self) -> bool:
        """Whether the check passed outright."""
        return self.status == ToolStatus.INSTALLED

    @property
    def ok(self) -> bool:
        """Whether this check passes (installed, or optional and not)."""
        return self.installed or not self.required


@dataclass
class PreflightResult:
    """Combined result of all prerequisite checks."""

    checks: list[ToolCheck] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        """True if every required tool is present."""
        return all(c.ok for c in self.checks)

    @property
    def required_missing(self) -> list[ToolCheck]:
        """Required tools that are missing."""
        return [c for c in self.checks if c.required and not c.installed]

    @property
    def warnings(self) -> list[ToolCheck]:
        """Optional checks that did not pass."""
        return [c for c in self.checks if not c.required and not c.installed]


def _first_line(runner: Runner, args: list[str]) -> Optional[str]:
    """First stdout line of a command, or None if it failed."""
    try:
        result = runner(args, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip().split("\n")[0][:60]


def _git_download_url() -> str:
    """Platform-specific Git download URL."""
    urls = {
        "Windows": "https://git-scm.com/download/win",
        "Darwin": "https://git-scm.com/download/mac",
        "Linux": "https://git-scm.com/download/linux",
    }
    return urls.get(platform.system(), "https://git-scm.com/downloads")


def check_git(cache: RunCache, runner: Runner = run_command) -> ToolCheck:
    """Check that git is installed."""
    if not cache.tool("git"):
        return ToolCheck(
            name="git",
            status=ToolStatus.MISSING,
            required=True,
            detail="git is required to download and track agents.",
            download_url=_git_download_url(),
        )
    version = _first_line(runner, ["git", "--version"]) or ""
    return ToolCheck(
        name="git",
        status=ToolStatus.INSTALLED,
        required=True,
        version=version.replace("git version ", ""),
    )


def check_git_repo(cache: RunCache, cwd: Path, runner: Runner = run_command) -> ToolCheck:
    """Check whether cwd is inside a git work tree."""
    inside = bool(cache.tool("git")) and _first_line(
        runner, ["git", "-C", str(cwd), "rev-parse", "--is-inside-work-tree"]
    ) == "true"
    return ToolCheck(
        name="git repository",
        status=ToolStatus.INSTALLED if inside else ToolStatus.WARNING,
        required=False,
        detail="" if inside else "Not inside a git repository. Git tools require a repo.",
    )


def check_gh(cache: RunCache, runner: Runner = run_command) -> list[ToolCheck]:
    """Check the GitHub CLI and whether it is authenticated."""
    if not cache.tool("gh"):
        return [ToolCheck(
            name="gh",
            status=ToolStatus.MISSING,
            required=False,
            detail="GitHub operations require the gh CLI.",
            download_url="https://cli.github.com",
        )]
    version = _first_line(runner, ["gh", "--version"]) or ""
    checks = [ToolCheck(
        name="gh",
        status=ToolStatus.INSTALLED,
        required=False,
        version=version.replace("gh version ", "").split(" ")[0],
    )]
    authed = _first_line(runner, ["gh", "auth", "status"]) is not None
    checks.append(ToolCheck(
        name="gh auth",
        status=ToolStatus.INSTALLED if authed else ToolStatus.WARNING,
        required=False,
        detail="" if authed else "gh CLI not authenticated. Run: gh auth login",
    ))
    return checks


def check_bun(cache: RunCache, runner: Runner = run_command) -> ToolCheck:
    """Check for bun, which OpenCode uses for TypeScript tools."""
    if not cache.tool("bun"):
        return ToolCheck(
            name="bun",
            status=ToolStatus.MISSING,
            required=False,
            detail="OpenCode uses bun for TypeScript tools.",
            download_url="https://bun.sh",
        )
    return ToolCheck(
        name="bun",
        status=ToolStatus.INSTALLED,
        required=False,
        version=_first_line(runner, ["bun", "--version"]) or "",
    )


def run_preflight(
    cwd: Optional[Path] = None,
    cache: Optional[RunCache] = None,
    runner: Runner = run_command,
) -> PreflightResult:
    """Run all prerequisite checks.

    Args:
        cwd: Directory to test for a git work tree. Defaults to cwd.
        cache: Per-run tool lookup cache.
        runner: Command runner.

    Returns:
        PreflightResult with every check.
    """
    cache = cache or RunCache()
    cwd = cwd or Path.cwd()
    checks = [check_git(cache, runner), check_git_repo(cache, cwd, runner)]
    checks.extend(check_gh(cache, runner))
    checks.append(check_bun(cache, runner))
    return PreflightResult(checks=checks)
