"""
lib-agents CLI.

The main Click group is defined here and every command module registers
its commands through a register function.

Entry point: libagents.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="lib-agents")
@click.option("--verbose", "-v", is_flag=True, help="Log what the installer does.")
def main(verbose: bool):
    """lib-agents: install and update OpenCode agents.

    Agents, tools, commands, prompts and skills are deployed from the
    lib-agents repository and tracked in a manifest so later updates
    never clobber your edits.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .install import register_install_commands
from .update import register_update_commands
from .profile import register_profile_commands

register_install_commands(main)
register_update_commands(main)
register_profile_commands(main)
