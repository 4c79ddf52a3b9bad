"""Profile commands: list, switch, clear."""

from __future__ import annotations

import click
from rich.table import Table

from ..manifest import load_manifest
from ._common import (
    build_installer,
    conflict_option,
    console,
    handle_errors,
    installer_options,
    print_report,
    resolve_settings,
)


def register_profile_commands(main: click.Group) -> None:
    """Register the profile command group."""

    @main.group()
    def profile():
        """Profiles: named agent sets with per-agent skill permissions.

        Switching a profile installs its agents, limits installed skills
        to the ones it grants, and renders those grants into each agent
        definition.
        """

    @profile.command("list")
    @installer_options
    @handle_errors
    def profile_list(scope, root, source, repo_url, config_path):
        """List the profiles the source offers.

        Example:

            lib-agents profile list
        """
        settings = resolve_settings(scope, source, repo_url, config_path)
        with build_installer(settings, root=root) as installer:
            profiles = installer.list_profiles()
            manifest = load_manifest(installer.root)

        if not profiles:
            console.print("\n[dim]No profiles found.[/]\n")
            return

        active = manifest.profile if manifest else None
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("", width=1)
        table.add_column("Profile", style="green")
        table.add_column("Agents")
        table.add_column("Skills", justify="right")
        table.add_column("Description", style="dim")
        for p in profiles:
            table.add_row(
                "*" if p.name == active else "",
                p.name,
                ", ".join(p.agents),
                str(len(p.all_skills)),
                p.description,
            )

        console.print(f"\n[bold]{len(profiles)}[/] profile(s):\n")
        console.print(table)
        console.print()

    @profile.command("switch")
    @click.argument("name")
    @click.option("--dry-run", is_flag=True, help="Show what would change without writing anything.")
    @conflict_option
    @installer_options
    @handle_errors
    def profile_switch(name, dry_run, on_conflict, scope, root, source, repo_url, config_path):
        """Activate a profile.

        Agent definitions touched by the previous or the new profile are
        reset to upstream before the new profile is rendered into them.

        Example:

            lib-agents profile switch backend
        """
        settings = resolve_settings(scope, source, repo_url, config_path, on_conflict=on_conflict)
        with build_installer(settings, root=root) as installer:
            console.print(f"\n[cyan]Switching {installer.root} to profile '{name}'[/]")
            report = installer.switch_profile(name, dry_run=dry_run)
            print_report(report)

        if not report.ok:
            raise SystemExit(1)
        if not dry_run:
            console.print(f"[bold green]Profile '{name}' active.[/]\n")

    @profile.command("clear")
    @click.option("--dry-run", is_flag=True, help="Show what would change without writing anything.")
    @conflict_option
    @installer_options
    @handle_errors
    def profile_clear(dry_run, on_conflict, scope, root, source, repo_url, config_path):
        """Deactivate the active profile and restore pristine agents.

        Example:

            lib-agents profile clear
        """
        settings = resolve_settings(scope, source, repo_url, config_path, on_conflict=on_conflict)
        with build_installer(settings, root=root) as installer:
            report = installer.switch_profile(None, dry_run=dry_run)
            print_report(report)

        if not report.ok:
            raise SystemExit(1)

    main.add_command(profile)
