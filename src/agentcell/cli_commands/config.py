"""``agentcell config``: inspect the effective sandbox configuration."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import yaml

from agentcell.cli_commands._output import console, print_config
from agentcell.runtime.errors import ConfigValidationError
from agentcell.runtime.sandbox.manager import SandboxManager
from agentcell.runtime.sandbox.settings import load_settings


@click.group()
def config() -> None:
    """Inspect sandbox configuration."""


@config.command("show")
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (defaults to $AGENTCELL_CONFIG).",
)
@click.option(
    "--overrides", "-o", "overrides_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file of per-sandbox overrides to resolve against the defaults.",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def show(config_path: str | None, overrides_path: str | None, as_json: bool) -> None:
    """Show the configuration a new sandbox would get."""
    try:
        settings = load_settings(config_path)
        overrides = None
        if overrides_path:
            overrides = yaml.safe_load(Path(overrides_path).read_text(encoding="utf-8")) or {}
        effective = SandboxManager(settings).resolve(overrides)
    except (ConfigValidationError, yaml.YAMLError) as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(1)

    print_config(effective, as_json=as_json)
