"""Shared CLI output formatters."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from agentcell.runtime.sandbox.models import (  # noqa: TC001
    ExitEvent,
    HealthStatus,
    SandboxConfig,
)

console = Console()
err_console = Console(stderr=True)


def print_config(config: SandboxConfig, *, as_json: bool = False) -> None:
    """Pretty-print an effective sandbox configuration."""
    if as_json:
        console.print_json(config.model_dump_json())
        return

    res = config.resources
    net = config.network
    env = config.environment

    table = Table(title="Effective Sandbox Configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("provider", config.provider.value)
    table.add_row("image", config.container.image)
    table.add_row("root directory", config.allowed_root_directory)
    table.add_row("memory", f"{res.memory_mb} MiB")
    table.add_row("cpus", f"{res.cpus:g}")
    table.add_row("pids limit", str(res.pids_limit))
    table.add_row("disk", f"{res.disk_mb} MiB")
    table.add_row("timeout", f"{res.timeout_ms} ms")
    table.add_row("network", net.mode.value)
    if net.allowed_hosts:
        table.add_row("allowed hosts", ", ".join(net.allowed_hosts))
    if net.allowed_ports:
        table.add_row("allowed ports", ", ".join(str(p) for p in net.allowed_ports))
    table.add_row("env passthrough", ", ".join(env.passthrough) or "-")
    table.add_row("env set", ", ".join(sorted(env.set)) or "-")
    table.add_row("env blocked", _truncate(", ".join(env.blocked)) or "-")
    console.print(table)


def print_health(statuses: list[HealthStatus], *, as_json: bool = False) -> None:
    """Pretty-print provider health checks as a table."""
    if as_json:
        console.print_json(data=[s.model_dump(mode="json") for s in statuses])
        return

    table = Table(title="Provider Health")
    table.add_column("Provider", style="cyan")
    table.add_column("Healthy")
    table.add_column("Message")

    for status in statuses:
        table.add_row(
            status.provider.value,
            "[green]yes[/green]" if status.healthy else "[red]no[/red]",
            _truncate(status.message),
        )

    console.print(table)


def print_exit(event: ExitEvent) -> None:
    """Summarize how a command ended, on stderr."""
    if event.timed_out:
        err_console.print(f"[yellow]Timed out after {event.duration_ms} ms (exit {event.exit_code})[/yellow]")
    elif event.exit_code == 0:
        err_console.print(f"[green]Exited 0 in {event.duration_ms} ms[/green]")
    else:
        err_console.print(f"[red]Exited {event.exit_code} in {event.duration_ms} ms[/red]")


def _truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
