"""Deployment commands: install, list, check."""

from __future__ import annotations

import click
from rich.markup import escape
from rich.table import Table

from ..models import InstallMode
from ._common import (
    build_installer,
    conflict_option,
    console,
    handle_errors,
    installer_options,
    print_report,
    resolve_settings,
)


def register_install_commands(main: click.Group) -> None:
    """Register install, list and check on the main group."""

    @main.command()
    @click.argument("agents", nargs=-1)
    @click.option("--all", "-a", "install_all", is_flag=True, help="Install all available agents.")
    @click.option("--link", is_flag=True, help="Symlink instead of copy (development, local source only).")
    @click.option("--dry-run", is_flag=True, help="Show what would change without writing anything.")
    @conflict_option
    @installer_options
    @handle_errors
    def install(agents, install_all, link, dry_run, on_conflict, scope, root, source, repo_url, config_path):
        """Deploy agent packages into the OpenCode configuration.

        Shared tools, commands, prompts and skills are installed alongside
        the selected agents. Dependencies listed in an agent's DEPENDS
        file are installed first.

        Examples:

            lib-agents install git-ops docs

            lib-agents install --all --global

            lib-agents install git-ops --link --source ~/src/lib-agents
        """
        if not agents and not install_all:
            raise click.UsageError("At least one agent name is required (or use --all).")

        settings = resolve_settings(scope, source, repo_url, config_path, on_conflict=on_conflict)
        mode = InstallMode.LINK if link else settings.mode
        with build_installer(settings, root=root, mode=mode) as installer:
            console.print(f"\n[cyan]Installing to {installer.root}[/]")
            report = installer.install(None if install_all else list(agents), dry_run=dry_run)
            print_report(report)
            offered = {info.name: info for info in installer.list_agents()}

        if not report.ok:
            raise SystemExit(1)
        if not dry_run:
            console.print("[bold green]Installation complete.[/]")
            console.print("\n[cyan]Usage in OpenCode:[/]")
            for name in report.agents:
                console.print(f"    @{name}  - Invoke the agent directly")
                for command, description in offered[name].commands:
                    console.print(f"    /{command:<16}- {escape(description)}")
            console.print()

    @main.command("list")
    @installer_options
    @handle_errors
    def list_cmd(scope, root, source, repo_url, config_path):
        """List available agents.

        Example:

            lib-agents list
        """
        settings = resolve_settings(scope, source, repo_url, config_path)
        with build_installer(settings, root=root) as installer:
            agents = installer.list_agents()

        if not agents:
            console.print("\n[dim]No agents found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Agent", style="green")
        table.add_column("Description")
        table.add_column("Depends on", style="dim")
        for agent in agents:
            table.add_row(agent.name, agent.description, ", ".join(agent.depends))

        console.print(f"\n[bold]{len(agents)}[/] agent(s):\n")
        console.print(table)
        console.print()

    @main.command()
    @installer_options
    @handle_errors
    def check(scope, root, source, repo_url, config_path):
        """Check prerequisites without installing anything.

        Example:

            lib-agents check
        """
        settings = resolve_settings(scope, source, repo_url, config_path)
        installer = build_installer(settings, root=root)
        result = installer.check_prerequisites()

        console.print()
        for c in result.checks:
            if c.installed:
                version = f": {c.version}" if c.version else ""
                console.print(f"  [green]OK[/]    {c.name}{version}")
            elif c.required:
                console.print(f"  [red]MISSING[/] {c.name}: {c.detail}")
            else:
                console.print(f"  [yellow]WARN[/]  {c.name}: {c.detail}")
            if c.download_url and not c.installed:
                console.print(f"          [dim]Install from {c.download_url}[/]")

        console.print()
        if result.all_ok:
            console.print("[green]All prerequisites met.[/]\n")
            return
        console.print("[red]Required prerequisites are missing.[/]\n")
        raise SystemExit(1)
