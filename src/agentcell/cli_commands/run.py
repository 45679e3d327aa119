"""``agentcell run``: run one command in a throwaway sandbox."""

from __future__ import annotations

import asyncio
import os
import sys

import click

from agentcell.cli_commands._output import console, err_console, print_exit
from agentcell.runtime.errors import ConfigValidationError, SandboxError
from agentcell.runtime.sandbox.bridge import HttpStreamSink, StreamBridge
from agentcell.runtime.sandbox.manager import SandboxManager
from agentcell.runtime.sandbox.models import (
    ExecOptions,
    ExitEvent,
    NetworkMode,
    ProviderKind,
    StdoutChunk,
)
from agentcell.runtime.sandbox.settings import SandboxSettings, load_settings


@click.command(context_settings={"ignore_unknown_options": True})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (defaults to $AGENTCELL_CONFIG).",
)
@click.option("--provider", "-p", type=click.Choice([k.value for k in ProviderKind]), default=None)
@click.option("--image", default=None, help="Container image.")
@click.option("--network", type=click.Choice([m.value for m in NetworkMode]), default=None)
@click.option("--memory-mb", type=int, default=None)
@click.option("--cpus", type=float, default=None)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None, help="Kill the command after this long.")
@click.option(
    "--workspace", "-w",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Host directory copied into the sandbox root before running.",
)
@click.option("--env", "-e", "env_pairs", multiple=True, help="KEY=VALUE for this command (repeatable).")
@click.option("--stream-url", default=None, help="Durable stream service to mirror output to.")
@click.option("--stream-id", default=None, help="Stream id used with --stream-url.")
@click.option("--agent-id", default="cli", show_default=True)
@click.option("--project-id", default="cli", show_default=True)
def run(
    command: tuple[str, ...],
    config_path: str | None,
    provider: str | None,
    image: str | None,
    network: str | None,
    memory_mb: int | None,
    cpus: float | None,
    timeout_ms: int | None,
    workspace: str | None,
    env_pairs: tuple[str, ...],
    stream_url: str | None,
    stream_id: str | None,
    agent_id: str,
    project_id: str,
) -> None:
    """Run COMMAND in a fresh sandbox, stream its output and remove the sandbox.

    Exits with the command's exit code (124 on timeout).
    """
    try:
        settings = load_settings(config_path)
    except ConfigValidationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(1)

    env: dict[str, str] = {}
    for pair in env_pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value

    overrides = {
        "provider": provider,
        "network": {"mode": network},
        "resources": {"memory_mb": memory_mb, "cpus": cpus},
        "container": {"image": image},
    }
    options = ExecOptions(env=env, timeout_ms=timeout_ms)

    exit_code = asyncio.run(
        _run_once(
            settings,
            overrides,
            list(command),
            options,
            workspace=workspace,
            stream_url=stream_url,
            stream_id=stream_id,
            agent_id=agent_id,
            project_id=project_id,
        )
    )
    sys.exit(exit_code)


async def _run_once(
    settings: SandboxSettings,
    overrides: dict[str, object],
    command: list[str],
    options: ExecOptions,
    *,
    workspace: str | None,
    stream_url: str | None,
    stream_id: str | None,
    agent_id: str,
    project_id: str,
) -> int:
    if stream_url:
        async with HttpStreamSink(stream_url) as sink:
            bridge = StreamBridge(sink)
            manager = SandboxManager(settings, bridge=bridge)
            try:
                return await _execute(manager, overrides, command, options, workspace, stream_id or project_id, agent_id, project_id)
            finally:
                await manager.close()

    manager = SandboxManager(settings)
    try:
        return await _execute(manager, overrides, command, options, workspace, None, agent_id, project_id)
    finally:
        await manager.close()


async def _execute(
    manager: SandboxManager,
    overrides: dict[str, object],
    command: list[str],
    options: ExecOptions,
    workspace: str | None,
    stream_id: str | None,
    agent_id: str,
    project_id: str,
) -> int:
    created = await manager.create(agent_id, project_id, overrides)
    if not created.ok:
        err_console.print(f"[red]{created.error}[/red]")
        return 1
    sandbox = created.value

    try:
        if workspace:
            # Trailing "/." copies the directory contents rather than the directory.
            copied = await manager.copy_in(sandbox.id, os.path.join(workspace, "."), ".")
            if not copied.ok:
                err_console.print(f"[red]{copied.error}[/red]")
                return 1

        started = await manager.start(sandbox.id)
        if not started.ok:
            err_console.print(f"[red]{started.error}[/red]")
            return 1

        exit_code = 1
        try:
            async for event in manager.exec_stream(sandbox.id, command, options, stream_id=stream_id):
                if isinstance(event, ExitEvent):
                    print_exit(event)
                    exit_code = event.exit_code
                elif isinstance(event, StdoutChunk):
                    sys.stdout.write(event.data)
                    sys.stdout.flush()
                else:
                    sys.stderr.write(event.data)
                    sys.stderr.flush()
        except SandboxError as exc:
            err_console.print(f"[red]{exc}[/red]")
        return exit_code
    finally:
        removed = await manager.remove(sandbox.id)
        if not removed.ok:
            err_console.print(f"[yellow]Cleanup failed:[/yellow] {removed.error}")
