"""CLI subcommand registration."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import click


def register_commands(cli: click.Group) -> None:
    """Register all subcommands on the CLI group."""
    from agentcell.cli_commands.config import config
    from agentcell.cli_commands.health import health
    from agentcell.cli_commands.run import run

    cli.add_command(run)
    cli.add_command(config)
    cli.add_command(health)
