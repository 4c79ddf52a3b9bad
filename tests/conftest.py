"""Shared test fixtures for lib-agents."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

import pytest

from libagents.installer import Installer
from libagents.reconcile import ConflictResolver

REVISION = "1f2e3d4c5b6a79881f2e3d4c5b6a79881f2e3d4c"

GIT_OPS_AGENT = """\
---
description: Git operations, commits and pull requests
mode: subagent
permission:
  bash: allow
  skill:
    "git-*": allow
tools:
  write: false
---

# Git Ops

Handles branches, commits and pull requests.
"""

DOCS_AGENT = """\
---
description: Documentation writer
mode: subagent
---

# Docs

Writes and maintains project documentation.
"""

DEVOPS_AGENT = """\
---
description: Infrastructure and deployment
mode: subagent
permission:
  bash: ask
---

# DevOps

Plans and applies infrastructure changes.
"""


class FakeRunner:
    """Stands in for run_command: answers the git queries the installer makes."""

    def __init__(self, revision: str = REVISION, remote: Optional[str] = REVISION) -> None:
        self.revision = revision
        self.remote = remote
        self.calls: list[list[str]] = []

    def __call__(self, args, cwd=None, timeout=None) -> subprocess.CompletedProcess:
        args = list(args)
        self.calls.append(args)
        if "rev-parse" in args and "HEAD" in args:
            return subprocess.CompletedProcess(args, 0, stdout=f"{self.revision}\n", stderr="")
        if "ls-remote" in args:
            if self.remote is None:
                return subprocess.CompletedProcess(args, 128, stdout="", stderr="fatal: unreachable")
            return subprocess.CompletedProcess(args, 0, stdout=f"{self.remote}\tHEAD\n", stderr="")
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="unsupported")


def write(path: Path, text: str) -> Path:
    """Write a file, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def build_source(root: Path) -> Path:
    """Create a fake upstream source tree.

    Args:
        root: Directory to populate.

    Returns:
        Path: The source root.
    """
    write(root / "agents" / "git-ops" / "agent.md", GIT_OPS_AGENT)
    write(root / "agents" / "docs" / "agent.md", DOCS_AGENT)
    write(root / "agents" / "docs" / "DEPENDS", "# docs needs git history\ngit-ops\n")
    write(root / "agents" / "devops" / "agent.md", DEVOPS_AGENT)

    write(root / "tools" / "gh.ts", "export const gh = () => 'gh'\n")
    write(root / "tools" / "README.md", "not a tool\n")
    write(root / "commands" / "commit.md", "Commit staged changes.\n")
    write(root / "prompts" / "review.md", "Review this change.\n")
    write(root / "skills" / "conventional-commits" / "SKILL.md", "# Conventional commits\n")
    write(root / "skills" / "readme-style" / "SKILL.md", "# README style\n")
    write(root / "skills" / "terraform" / "SKILL.md", "# Terraform\n")

    write(root / "AGENTS.md", "# Project agents\n\nUse @git-ops for git work.\n")
    write(root / "opencode.json", '{"$schema": "https://opencode.ai/config.json"}\n')

    write(root / "profiles" / "frontend.yaml", """\
name: frontend
description: UI work with docs support
agents:
  git-ops:
    skills: [conventional-commits]
  docs: [readme-style]
""")
    write(root / "profiles" / "infra.yaml", """\
description: Infrastructure work
agents:
  - devops
  - name: git-ops
    skills: [terraform]
""")
    return root



def add_agent_resources(root: Path) -> Path:
    """Give agents their own tools, commands, skills and package.json."""
    write(root / "agents" / "git-ops" / "tools" / "gh-issue.ts", "export const issue = () => 1\n")
    write(root / "agents" / "git-ops" / "tools" / "gh.ts", "export const gh = () => 'agent gh'\n")
    write(root / "agents" / "git-ops" / "commands" / "pr.md", "---\ndescription: Open a pull request\n---\n\nOpen a PR.\n")
    write(root / "agents" / "git-ops" / "skills" / "rebase" / "SKILL.md", "# Rebase\n")
    write(root / "agents" / "git-ops" / "package.json", '{"name": "git-ops-tools"}\n')
    write(root / "agents" / "devops" / "tools" / "gcloud.ts", "export const gcloud = () => 1\n")
    write(root / "agents" / "devops" / "package.json", '{"name": "devops-tools"}\n')
    return root

@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Provide a fake upstream source tree."""
    return build_source(tmp_path.resolve() / "source")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Provide an empty project directory."""
    path = tmp_path.resolve() / "project"
    path.mkdir()
    return path


@pytest.fixture
def install_root(project: Path) -> Path:
    """Installation root inside the project (not created yet)."""
    return project / ".opencode"


@pytest.fixture
def runner() -> FakeRunner:
    """Provide a fake command runner."""
    return FakeRunner()


@pytest.fixture
def make_installer(source_tree: Path, install_root: Path, runner: FakeRunner):
    """Factory for installers over the fake source and project."""

    def _make(policy: str = "ask", interactive: bool = False, **kwargs) -> Installer:
        kwargs.setdefault("resolver", ConflictResolver(policy=policy, interactive=interactive))
        return Installer(root=install_root, source=source_tree, runner=runner, **kwargs)

    return _make
