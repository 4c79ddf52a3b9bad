"""Shared utilities for all CLI command modules.

Provides the Rich console, the common installation options, and helpers
for rendering reconciliation reports.
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from ..config import InstallerSettings, InstallScope, load_settings
from ..errors import InstallerError
from ..installer import Installer, UpdateReport
from ..models import Action, InstallMode
from ..reconcile import CONFLICT_POLICIES, ConflictResolver

console = Console()


def action_style(action: Action) -> str:
    """Map an action to a Rich-formatted label."""
    return {
        Action.NEW: "[bold green]new[/]",
        Action.AUTO_UPDATE: "[cyan]auto-update[/]",
        Action.UNCHANGED: "[dim]unchanged[/]",
        Action.ALREADY_CURRENT: "[dim]already-current[/]",
        Action.MODIFIED_LOCALLY: "[yellow]modified-locally[/]",
        Action.REMOVED_UPSTREAM: "[magenta]removed-upstream[/]",
        Action.CONFLICT: "[bold red]conflict[/]",
    }.get(action, action.value)


def installer_options(func: Callable) -> Callable:
    """Attach the options every installation command shares."""
    options = [
        click.option("--global", "scope", flag_value=InstallScope.GLOBAL.value,
                     help="Use ~/.config/opencode/."),
        click.option("--project", "scope", flag_value=InstallScope.PROJECT.value,
                     help="Use .opencode/ in the current directory (default)."),
        click.option("--root", default=None, type=click.Path(file_okay=False),
                     help="Installation root (overrides --global/--project)."),
        click.option("--source", default=None, type=click.Path(file_okay=False),
                     help="Local lib-agents checkout to install from."),
        click.option("--repo-url", default=None, help="Upstream repository to clone."),
        click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
                     help="Settings file."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def resolve_settings(
    scope: Optional[str],
    source: Optional[str],
    repo_url: Optional[str],
    config_path: Optional[str],
    **overrides,
) -> InstallerSettings:
    """Settings from file and environment with CLI options on top."""
    return load_settings(
        Path(config_path) if config_path else None,
        scope=scope or None,
        source=Path(source).expanduser() if source else None,
        repo_url=repo_url,
        **overrides,
    )


def build_installer(
    settings: InstallerSettings,
    root: Optional[str] = None,
    mode: Optional[InstallMode] = None,
    interactive: Optional[bool] = None,
) -> Installer:
    """Create an Installer from resolved settings."""
    install_root = Path(root).expanduser() if root else settings.install_root()
    return Installer(
        root=install_root,
        source=settings.source,
        repo_url=settings.repo_url,
        mode=mode,
        resolver=ConflictResolver(policy=settings.on_conflict, interactive=interactive),
        keep_backups=settings.keep_backups,
    )


def handle_errors(func: Callable) -> Callable:
    """Turn InstallerError into a red message and exit code 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except InstallerError as exc:
            console.print(f"[bold red]Error:[/] {exc}")
            raise SystemExit(1)

    return wrapper


conflict_option = click.option(
    "--on-conflict",
    type=click.Choice(CONFLICT_POLICIES),
    default=None,
    help="Conflict policy for agent/shared files (default: ask on a terminal, else skip).",
)


def print_report(report: UpdateReport, show_unchanged: bool = False) -> None:
    """Render an UpdateReport as a table plus warnings."""
    title = "Planned changes (dry run)" if report.dry_run else "Reconciliation"
    if report.migrated:
        console.print("[yellow]No manifest found; baseline synthesized from installed files.[/]")

    table = Table(title=title, show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Action")
    table.add_column("Tier", style="dim")
    table.add_column("Path", style="cyan")
    table.add_column("Note", style="dim")

    notes: dict[str, str] = {}
    if report.result:
        for outcome in report.result.outcomes:
            note = ""
            if outcome.error:
                note = f"[red]failed: {outcome.error}[/]"
            elif outcome.sidecar:
                note = f"upstream saved to {outcome.sidecar.name}"
            elif outcome.resolution:
                note = f"resolved: {outcome.resolution.value}"
            notes[str(outcome.item.path)] = note

    shown = 0
    for item in report.plan:
        if not show_unchanged and item.action in (Action.UNCHANGED, Action.ALREADY_CURRENT):
            continue
        table.add_row(action_style(item.action), item.tier.value, str(item.path), notes.get(str(item.path), ""))
        shown += 1

    console.print()
    if shown:
        console.print(table)
    else:
        console.print("[green]Everything is up to date.[/]")

    counts = report.counts
    summary = ", ".join(f"{n} {a.value}" for a, n in sorted(counts.items(), key=lambda kv: kv[0].value))
    console.print(f"\n[bold]{len(report.plan)}[/] files: {summary or 'none'}")

    if report.snapshot:
        console.print(f"[dim]Snapshot: {report.snapshot['path']}[/]")

    if report.result:
        for outcome in report.result.conflicts:
            if outcome.sidecar:
                console.print(
                    f"[yellow]Review:[/] diff -u {outcome.item.path} {outcome.sidecar}"
                )
        for outcome in report.result.removed_upstream:
            console.print(f"[magenta]Removed upstream, delete manually if unused:[/] {outcome.item.path}")
        if report.result.errors:
            console.print(
                f"[red]{len(report.result.errors)} file(s) failed; they will be retried next run.[/]"
            )
    console.print()
