"""Maintenance commands: status, update, rollback, backups."""

from __future__ import annotations

from datetime import datetime

import click
from rich.panel import Panel
from rich.table import Table

from ..backup import TIMESTAMP_FORMAT, snapshot_size
from ..catalog import CATEGORY_NAMES
from ._common import (
    build_installer,
    conflict_option,
    console,
    handle_errors,
    installer_options,
    print_report,
    resolve_settings,
)


def _created(backup_id: str) -> str:
    try:
        return datetime.strptime(backup_id, TIMESTAMP_FORMAT).strftime("%Y-%m-%d %H:%M:%S UTC")
    except ValueError:
        return "?"


def register_update_commands(main: click.Group) -> None:
    """Register status, update, rollback and backups on the main group."""

    @main.command()
    @click.option("--offline", is_flag=True, help="Do not query the upstream repository.")
    @installer_options
    @handle_errors
    def status(offline, scope, root, source, repo_url, config_path):
        """Show what is installed and whether it was changed locally.

        Example:

            lib-agents status --global
        """
        settings = resolve_settings(scope, source, repo_url, config_path)
        with build_installer(settings, root=root) as installer:
            report = installer.status(check_remote=settings.check_remote and not offline)

        manifest = report.manifest
        if manifest is None:
            console.print(f"\n[dim]Nothing installed at {installer.root}.[/]\n")
            return

        if report.migrated:
            console.print("\n[yellow]No manifest found; baseline synthesized from installed files.[/]")

        console.print(Panel(
            f"Root: [cyan]{installer.root}[/]\n"
            f"Source: {manifest.source_url or '?'}\n"
            f"Revision: {manifest.source_revision}\n"
            f"Installed: {manifest.installed_at or '?'}\n"
            f"Mode: {manifest.mode.value}\n"
            f"Profile: {manifest.profile or '[dim]none[/]'}\n"
            f"Agents: {', '.join(manifest.installed_agents) or '[dim]none[/]'}",
            title="Installation",
            border_style="cyan",
        ))

        changed = [f for f in report.files if f.state != "ok"]
        if changed:
            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("State")
            table.add_column("Tier", style="dim")
            table.add_column("Path", style="cyan")
            for f in changed:
                label = "[yellow]modified[/]" if f.state == "modified" else "[red]missing[/]"
                table.add_row(label, f.tier.value, f.path)
            console.print(table)

        console.print(
            f"\n[bold]{len(report.files)}[/] tracked files: "
            f"{report.count('ok')} ok, {report.count('modified')} modified, "
            f"{report.count('missing')} missing"
        )
        if report.update_available:
            console.print(
                f"[bold cyan]Update available:[/] {report.remote_revision[:12]} "
                f"(installed {manifest.source_revision[:12]}). Run 'lib-agents update'."
            )
        elif report.update_available is False:
            console.print("[green]Up to date with upstream.[/]")
        console.print()

    @main.command()
    @click.option("--dry-run", is_flag=True, help="Show what would change without writing anything.")
    @click.option("--category", "categories", multiple=True, type=click.Choice(CATEGORY_NAMES),
                  help="Only reconcile this category (repeatable).")
    @click.option("--agent", "agents", multiple=True, help="Only reconcile this agent (repeatable).")
    @click.option("--all", "show_all", is_flag=True, help="Also list unchanged files.")
    @conflict_option
    @installer_options
    @handle_errors
    def update(dry_run, categories, agents, show_all, on_conflict, scope, root, source, repo_url, config_path):
        """Reconcile the installation with upstream.

        Files you have not edited are updated automatically. Files edited
        both locally and upstream are conflicts: user files get the
        upstream version saved beside them as .upstream, agent and
        shared files are resolved by --on-conflict.

        Examples:

            lib-agents update --dry-run

            lib-agents update --category skills --on-conflict take
        """
        settings = resolve_settings(scope, source, repo_url, config_path, on_conflict=on_conflict)
        with build_installer(settings, root=root) as installer:
            console.print(f"\n[cyan]Updating {installer.root}[/]")
            report = installer.update(
                dry_run=dry_run,
                categories=categories or None,
                agents=agents or None,
            )
            print_report(report, show_unchanged=show_all)

        if not report.ok:
            raise SystemExit(1)

    @main.command()
    @click.argument("backup_id", required=False)
    @installer_options
    @handle_errors
    def rollback(backup_id, scope, root, source, repo_url, config_path):
        """Restore the installation from the newest snapshot.

        Examples:

            lib-agents rollback

            lib-agents rollback 20261019T101500123456Z
        """
        settings = resolve_settings(scope, source, repo_url, config_path)
        installer = build_installer(settings, root=root)
        result = installer.rollback(backup_id)

        status_line = "[green]VERIFIED[/]" if not result["errors"] else "[red]ERRORS[/]"
        console.print(Panel(
            f"[bold green]Rollback complete[/]\n"
            f"Snapshot: {result['backup_id']}\n"
            f"Files: {result['restored']}\n"
            f"Revision: {result['manifest'].source_revision}\n"
            f"Integrity: {status_line}",
            title="Rollback",
            border_style="green",
        ))
        if result["errors"]:
            console.print("[yellow]Restore errors:[/]")
            for err in result["errors"]:
                console.print(f"  [red]{err}[/]")
            raise SystemExit(1)

    @main.command()
    @installer_options
    @handle_errors
    def backups(scope, root, source, repo_url, config_path):
        """List installation snapshots, newest first.

        Example:

            lib-agents backups
        """
        settings = resolve_settings(scope, source, repo_url, config_path)
        installer = build_installer(settings, root=root)
        snapshots = installer.list_backups()

        if not snapshots:
            console.print("\n[dim]No snapshots found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Snapshot", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Created", style="dim")
        for snapshot_dir in snapshots:
            size_kb = snapshot_size(snapshot_dir) / 1024
            table.add_row(snapshot_dir.name, f"{size_kb:.1f} KB", _created(snapshot_dir.name))

        console.print(f"\n[bold]{len(snapshots)}[/] snapshot(s):\n")
        console.print(table)
        console.print()
