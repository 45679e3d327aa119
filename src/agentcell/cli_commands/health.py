"""``agentcell health``: check that sandbox providers are usable."""

from __future__ import annotations

import asyncio
import sys

import click

from agentcell.cli_commands._output import console, print_health
from agentcell.runtime.errors import ConfigValidationError
from agentcell.runtime.sandbox.manager import SandboxManager
from agentcell.runtime.sandbox.models import HealthStatus, ProviderKind
from agentcell.runtime.sandbox.settings import load_settings


@click.command()
@click.option(
    "--provider", "-p", "providers",
    type=click.Choice([k.value for k in ProviderKind]),
    multiple=True,
    help="Provider to check (repeatable; defaults to the configured provider).",
)
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (defaults to $AGENTCELL_CONFIG).",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def health(providers: tuple[str, ...], config_path: str | None, as_json: bool) -> None:
    """Check provider health.  Exits 1 if any provider is unhealthy."""
    try:
        settings = load_settings(config_path)
    except ConfigValidationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(1)

    kinds = [ProviderKind(p) for p in providers] or [settings.defaults.provider]
    manager = SandboxManager(settings)

    async def _check() -> list[HealthStatus]:
        return [await manager.health_check(kind) for kind in kinds]

    statuses = asyncio.run(_check())
    print_health(statuses, as_json=as_json)
    if not all(s.healthy for s in statuses):
        sys.exit(1)
