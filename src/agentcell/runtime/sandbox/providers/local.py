"""LocalProvider: runs sandbox commands directly on the host.

This is a development/fallback provider.  It is **not** a sandbox: commands
run as the current user, with the host network and full read access to the
host filesystem.  Only resource ceilings (POSIX rlimits) and the sanitized
environment are applied.  Never use it for untrusted code.

POSIX only (process groups, signals and rlimits).
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import shutil
import signal
import tempfile
import time
import warnings
from collections.abc import Mapping
from pathlib import Path

import psutil

from agentcell.runtime.sandbox.enforcer import MIB, local_process_limits
from agentcell.runtime.sandbox.execution import RunningCommand
from agentcell.runtime.sandbox.models import HealthStatus, ProviderKind, ResourceUsage
from agentcell.runtime.sandbox.providers.base import BaseSandboxProvider, HostCapacity
from agentcell.runtime.sandbox.registry import RegistryEntry
from agentcell.runtime.sandbox.settings import SandboxSettings

logger = logging.getLogger(__name__)

_WARNING_MSG = (
    "LocalProvider executes commands directly on the host with NO isolation. "
    "Use DockerProvider for untrusted workloads."
)

_CPU_SAMPLE_SECONDS = 0.1


class LocalProvider(BaseSandboxProvider):
    """Host-local provider (no isolation).

    Each sandbox is a temporary workspace directory.  Sandbox paths under
    ``allowed_root_directory`` map onto that directory, so the same
    ``/workspace/src/main.py`` works against every provider.

    Emits ``warnings.warn`` and ``logger.warning`` on construction and
    ``logger.warning`` on every sandbox it creates.

    Args:
        settings: Process-level sandbox settings.
        host_env: Environment the passthrough list reads from.
        apply_limits: Install rlimits in each child; defaults to
            ``settings.local_rlimits``.  ``RLIMIT_NPROC`` counts every
            process of the current user, so this is best turned off on busy
            development machines.
    """

    kind = ProviderKind.LOCAL

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        *,
        host_env: Mapping[str, str] | None = None,
        apply_limits: bool | None = None,
    ) -> None:
        super().__init__(settings, host_env=host_env)
        self._apply_limits = self._settings.local_rlimits if apply_limits is None else apply_limits
        warnings.warn(_WARNING_MSG, stacklevel=2)
        logger.warning(_WARNING_MSG)

    # ------------------------------------------------------------------
    # Lifecycle primitives
    # ------------------------------------------------------------------

    async def _materialize(self, entry: RegistryEntry) -> None:
        logger.warning("LocalProvider: sandbox %s is UNSANDBOXED", entry.id)
        entry.backend["limits"] = local_process_limits(entry.config)
        workspace = await asyncio.to_thread(
            tempfile.mkdtemp,
            prefix=f"{self._settings.container_prefix}-{entry.id[:12]}-",
            dir=self._settings.local_workspace_root,
        )
        entry.backend["workspace"] = workspace
        entry.instance.handle = workspace
        entry.instance.workspace_path = workspace

    async def _start(self, entry: RegistryEntry) -> None:
        workspace = entry.backend["workspace"]
        if not os.path.isdir(workspace):
            raise FileNotFoundError(f"workspace {workspace} no longer exists")

    async def _stop(self, entry: RegistryEntry, grace_seconds: float) -> None:
        commands = list(entry.active)
        if not commands:
            return
        for running in commands:
            _signal_group(running, signal.SIGCONT)
            _signal_group(running, signal.SIGTERM)
        waits = [running.process.wait() for running in commands]
        _done, pending = await asyncio.wait(
            [asyncio.ensure_future(w) for w in waits],
            timeout=grace_seconds,
        )
        for task in pending:
            task.cancel()
        if pending:
            logger.info("Sandbox %s: %d command(s) ignored SIGTERM", entry.id, len(pending))

    async def _pause(self, entry: RegistryEntry) -> None:
        for running in list(entry.active):
            _signal_group(running, signal.SIGSTOP)

    async def _resume(self, entry: RegistryEntry) -> None:
        for running in list(entry.active):
            _signal_group(running, signal.SIGCONT)

    async def _destroy(self, entry: RegistryEntry) -> None:
        for running in list(entry.active):
            await running.kill()

    async def _release_storage(self, entry: RegistryEntry) -> None:
        workspace = entry.backend.get("workspace")
        if workspace:
            await asyncio.to_thread(shutil.rmtree, workspace)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _spawn(
        self,
        entry: RegistryEntry,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        user: str | None,
        stdin: bool,
    ) -> RunningCommand:
        if user:
            logger.warning("LocalProvider cannot switch user; ignoring user=%r", user)
        workspace = entry.backend["workspace"]
        host_cwd = self._host_path(entry, cwd)
        await asyncio.to_thread(os.makedirs, host_cwd, exist_ok=True)

        child_env = dict(env)
        if not os.path.isdir(child_env.get("HOME", "")):
            child_env["HOME"] = workspace

        limits = entry.backend["limits"] if self._apply_limits else None
        logger.warning("LocalProvider: executing %s on host (UNSANDBOXED)", argv)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=host_cwd,
            env=child_env,
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            preexec_fn=limits.preexec() if limits is not None else None,
        )
        running: RunningCommand

        async def _terminate() -> None:
            _signal_group(running, signal.SIGKILL)

        running = RunningCommand(proc, _terminate)
        return running

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def _read_file(self, entry: RegistryEntry, path: str) -> bytes:
        return await asyncio.to_thread(Path(self._host_path(entry, path)).read_bytes)

    async def _write_file(self, entry: RegistryEntry, path: str, data: bytes) -> None:
        target = Path(self._host_path(entry, path))

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)

    async def _copy_in(self, entry: RegistryEntry, host_path: str, path: str) -> None:
        await asyncio.to_thread(_copy, host_path, self._host_path(entry, path))

    async def _copy_out(self, entry: RegistryEntry, path: str, host_path: str) -> None:
        source = self._host_path(entry, path)
        if not os.path.exists(source):
            raise FileNotFoundError(f"{path} does not exist in sandbox")
        await asyncio.to_thread(_copy, source, host_path)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _usage(self, entry: RegistryEntry) -> ResourceUsage:
        pids = [running.process.pid for running in entry.active if running.returncode is None]
        return await asyncio.to_thread(_measure, pids, entry.backend["workspace"])

    async def _health(self) -> HealthStatus:
        memory = psutil.virtual_memory()
        return HealthStatus(
            healthy=True,
            provider=self.kind,
            message="local provider available (no isolation)",
            details={
                "cpus": os.cpu_count(),
                "memory_total_mb": memory.total // MIB,
                "memory_percent": memory.percent,
                "isolated": False,
            },
        )

    async def _capacity(self) -> HostCapacity | None:
        # CPU share is not enforced locally, so only memory is checked.
        return HostCapacity(memory_mb=psutil.virtual_memory().total // MIB)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _host_path(entry: RegistryEntry, sandbox_path: str) -> str:
        """Map an already-confined sandbox path onto the workspace directory."""
        root = posixpath.normpath(entry.config.allowed_root_directory)
        relative = posixpath.relpath(sandbox_path, root)
        workspace = entry.backend["workspace"]
        if relative == ".":
            return workspace
        return os.path.join(workspace, *relative.split("/"))


def _signal_group(running: RunningCommand, sig: signal.Signals) -> None:
    if running.returncode is not None:
        return
    try:
        os.killpg(running.process.pid, sig)
    except ProcessLookupError:
        logger.debug("Process group %s already gone", running.process.pid)


def _copy(source: str, destination: str) -> None:
    if os.path.isdir(source):
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        shutil.copy2(source, destination)


def _measure(pids: list[int], workspace: str) -> ResourceUsage:
    processes: list[psutil.Process] = []
    for pid in pids:
        try:
            root = psutil.Process(pid)
            processes.append(root)
            processes.extend(root.children(recursive=True))
        except psutil.Error:
            continue

    for proc in processes:
        try:
            proc.cpu_percent(None)
        except psutil.Error:
            continue
    time.sleep(_CPU_SAMPLE_SECONDS)

    memory = 0
    cpu = 0.0
    alive = 0
    for proc in processes:
        try:
            memory += proc.memory_info().rss
            cpu += proc.cpu_percent(None)
            alive += 1
        except psutil.Error:
            continue

    disk = 0
    for dirpath, _dirnames, filenames in os.walk(workspace):
        for name in filenames:
            try:
                disk += os.lstat(os.path.join(dirpath, name)).st_size
            except FileNotFoundError:
                continue

    return ResourceUsage(
        memory_mb=round(memory / MIB, 2),
        cpu_percent=round(cpu, 2),
        pids=alive,
        disk_mb=round(disk / MIB, 2),
    )
