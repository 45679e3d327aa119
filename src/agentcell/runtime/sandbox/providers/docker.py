"""DockerProvider: long-lived sandboxes in Docker containers.

Uses the ``docker`` CLI via subprocess (no docker-py dependency).  Each
sandbox is one container kept alive by ``tail -f /dev/null`` under
``--init``; commands run through ``docker exec``.  The workspace is a
named volume (``<prefix>-<sandbox id>``) unless the config bind-mounts a
host directory.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import json
import logging
import math
import posixpath
import re
import tarfile
import uuid
from typing import Any

from agentcell.runtime.errors import SandboxError, SandboxErrorCode, SandboxTimeoutError
from agentcell.runtime.sandbox.enforcer import MIB, docker_runtime_args
from agentcell.runtime.sandbox.execution import RunningCommand
from agentcell.runtime.sandbox.models import HealthStatus, ProviderKind, ResourceUsage
from agentcell.runtime.sandbox.providers.base import BaseSandboxProvider, HostCapacity
from agentcell.runtime.sandbox.registry import RegistryEntry

logger = logging.getLogger(__name__)

LABEL_SANDBOX_ID = "agentcell.sandbox_id"
LABEL_PROJECT_ID = "agentcell.project_id"
LABEL_AGENT_ID = "agentcell.agent_id"

# Runs the command as the leader of a new session and records its pid (which
# is also its process group id) so a second exec can kill the whole group.
# fd 3 carries stdin past the background job's /dev/null redirection.
_PIDFILE_WRAPPER = (
    'exec 3<&0; setsid "$@" <&3 3<&- & echo $! > "$0"; '
    "trap 'rm -f \"$0\"' EXIT; wait $!"
)

_KILL_GROUP = 'kill -s KILL -- -"$(cat "$0")" 2>/dev/null; rm -f "$0"'

_SIZE_RE = re.compile(r"^\s*([\d.]+)\s*([A-Za-z]*)\s*$")
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "kib": 1024,
    "mb": 1000**2,
    "mib": 1024**2,
    "gb": 1000**3,
    "gib": 1024**3,
    "tb": 1000**4,
    "tib": 1024**4,
}


class DockerProvider(BaseSandboxProvider):
    """Container-engine sandbox provider.

    Lifecycle maps onto the docker CLI:

    * ``create``: ``docker pull`` when the image is missing, then
      ``docker volume create`` + ``docker create`` with the enforcer's
      limits and the sanitized environment.
    * ``start`` / ``stop``: ``docker start`` / ``docker stop -t <grace>``.
    * ``pause`` / ``resume``: ``docker pause`` / ``docker unpause``.
    * ``remove``: ``docker rm -f`` then ``docker volume rm``.
    """

    kind = ProviderKind.DOCKER

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._host_capacity: HostCapacity | None = None

    @property
    def _docker(self) -> str:
        return self._settings.docker_binary

    def container_name(self, sandbox_id: str) -> str:
        return f"{self._settings.container_prefix}-{sandbox_id}"

    # ------------------------------------------------------------------
    # Lifecycle primitives
    # ------------------------------------------------------------------

    async def _materialize(self, entry: RegistryEntry) -> None:
        image = entry.config.container.image
        if not await self.is_image_available(image):
            await self.pull_image(image)
        name = self.container_name(entry.id)
        mount = await self._prepare_workspace(entry)
        out = await self._run_docker(self._build_create_command(entry, name, mount))
        entry.instance.handle = out.stdout.splitlines()[-1] if out.stdout else name
        logger.debug("Created container %s (%s)", name, entry.instance.handle)

    async def _prepare_workspace(self, entry: RegistryEntry) -> str:
        """Return the ``--mount`` spec for the workspace, creating a volume if needed."""
        root = entry.config.allowed_root_directory
        host_path = entry.config.container.workspace_host_path
        if host_path:
            return f"type=bind,source={host_path},target={root}"

        volume = self.container_name(entry.id)
        await self._run_docker([
            self._docker, "volume", "create",
            "--label", f"{LABEL_SANDBOX_ID}={entry.id}",
            volume,
        ])
        entry.backend["volume"] = volume
        return f"type=volume,source={volume},target={root}"

    def _build_create_command(self, entry: RegistryEntry, name: str, mount: str) -> list[str]:
        """Build the ``docker create`` command with limits, network and env."""
        cfg = entry.config
        instance = entry.instance
        cmd: list[str] = [
            self._docker, "create",
            "--name", name,
            "--label", f"{LABEL_SANDBOX_ID}={instance.id}",
            "--label", f"{LABEL_PROJECT_ID}={instance.project_id}",
            "--label", f"{LABEL_AGENT_ID}={instance.agent_id}",
            "--hostname", "sandbox",
            "--workdir", cfg.allowed_root_directory,
            "--mount", mount,
        ]
        cmd.extend(docker_runtime_args(
            cfg,
            restricted_network=self._settings.restricted_network,
            disk_quota=self._settings.disk_quota,
        ))
        cmd.extend(cfg.container.runtime_args)

        for key, value in entry.env.items():
            cmd.extend(["-e", f"{key}={value}"])

        # Keep-alive process; commands arrive through docker exec.
        cmd.extend(["--init", "--entrypoint", "tail", cfg.container.image, "-f", "/dev/null"])
        return cmd

    async def _start(self, entry: RegistryEntry) -> None:
        await self._run_docker([self._docker, "start", self._handle(entry)])

    async def _stop(self, entry: RegistryEntry, grace_seconds: float) -> None:
        await self._run_docker(
            [self._docker, "stop", "-t", str(math.ceil(grace_seconds)), self._handle(entry)],
            timeout=grace_seconds + self._settings.operation_timeout_seconds,
        )

    async def _pause(self, entry: RegistryEntry) -> None:
        await self._run_docker([self._docker, "pause", self._handle(entry)])

    async def _resume(self, entry: RegistryEntry) -> None:
        await self._run_docker([self._docker, "unpause", self._handle(entry)])

    async def _destroy(self, entry: RegistryEntry) -> None:
        out = await self._run_docker(
            [self._docker, "rm", "-f", self._handle(entry)],
            ignore_errors=True,
            capture_stderr=True,
        )
        if out.returncode != 0 and "No such container" not in out.stderr:
            raise SandboxError(
                SandboxErrorCode.REMOVAL_FAILED,
                f"docker rm failed (rc={out.returncode}): {out.stderr}",
            )

    async def _release_storage(self, entry: RegistryEntry) -> None:
        volume = entry.backend.get("volume")
        if volume:
            await self._run_docker([self._docker, "volume", "rm", "-f", volume])

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
        handle = self._handle(entry)
        pidfile = f"/tmp/.agentcell-exec-{uuid.uuid4().hex[:12]}.pid"
        cmd = self._build_exec_command(handle, argv, cwd=cwd, env=env, user=user, stdin=stdin, pidfile=pidfile)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SandboxError(SandboxErrorCode.PROVIDER_UNAVAILABLE, f"Failed to run docker: {exc}") from exc

        async def _terminate() -> None:
            # The docker exec client dying does not end the process inside.
            await self._run_docker(self._build_kill_command(handle, pidfile), ignore_errors=True)

        return RunningCommand(proc, _terminate)

    def _build_kill_command(self, handle: str, pidfile: str) -> list[str]:
        """Kill the process group recorded in *pidfile*, children included."""
        return [self._docker, "exec", "-u", "root", handle, "sh", "-c", _KILL_GROUP, pidfile]

    def _build_exec_command(
        self,
        handle: str,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        user: str | None,
        stdin: bool,
        pidfile: str,
    ) -> list[str]:
        cmd: list[str] = [self._docker, "exec"]
        if stdin:
            cmd.append("-i")
        cmd.extend(["-w", cwd])
        if user:
            cmd.extend(["-u", user])
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([handle, "sh", "-c", _PIDFILE_WRAPPER, pidfile])
        cmd.extend(argv)
        return cmd

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def _read_file(self, entry: RegistryEntry, path: str) -> bytes:
        out = await self._run_docker([self._docker, "cp", f"{self._handle(entry)}:{path}", "-"])
        try:
            with tarfile.open(fileobj=io.BytesIO(out.data)) as tar:
                # A directory arrives as a tar of its tree; only a lone regular
                # file named like the target is a file read.
                member = tar.next()
                if (
                    member is None
                    or not member.isfile()
                    or posixpath.normpath(member.name) != posixpath.basename(path)
                ):
                    raise SandboxError(SandboxErrorCode.FILE_NOT_FOUND, f"{path} is not a regular file")
                extracted = tar.extractfile(member)
                if extracted is None:
                    raise SandboxError(SandboxErrorCode.FILE_NOT_FOUND, f"{path} is not readable")
                return extracted.read()
        except tarfile.TarError as exc:
            raise SandboxError(SandboxErrorCode.FILE_NOT_FOUND, f"bad archive for {path}: {exc}") from exc

    async def _write_file(self, entry: RegistryEntry, path: str, data: bytes) -> None:
        root = posixpath.normpath(entry.config.allowed_root_directory)
        relative = posixpath.relpath(path, root)
        if relative in (".", ""):
            raise SandboxError(SandboxErrorCode.WRITE_FAILED, f"{path} is a directory")
        await self._run_docker(
            [self._docker, "cp", "-", f"{self._handle(entry)}:{root}"],
            input=build_tar(relative, data),
        )

    async def _copy_in(self, entry: RegistryEntry, host_path: str, path: str) -> None:
        await self._run_docker([self._docker, "cp", host_path, f"{self._handle(entry)}:{path}"])

    async def _copy_out(self, entry: RegistryEntry, path: str, host_path: str) -> None:
        await self._run_docker([self._docker, "cp", f"{self._handle(entry)}:{path}", host_path])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _usage(self, entry: RegistryEntry) -> ResourceUsage:
        handle = self._handle(entry)
        stats = await self._run_docker([
            self._docker, "stats", "--no-stream", "--format", "{{json .}}", handle,
        ])
        size = await self._run_docker([
            self._docker, "inspect", "--size", "--format", "{{.SizeRw}}", handle,
        ])
        try:
            return parse_stats(stats.stdout, size.stdout)
        except (KeyError, ValueError) as exc:
            raise SandboxError(SandboxErrorCode.STATS_FAILED, f"unexpected docker stats output: {exc}") from exc

    async def _health(self) -> HealthStatus:
        info = await self._docker_info()
        image = self._settings.defaults.container.image
        return HealthStatus(
            healthy=True,
            provider=self.kind,
            message="docker daemon reachable",
            details={
                "server_version": info.get("ServerVersion"),
                "containers": info.get("Containers"),
                "containers_running": info.get("ContainersRunning"),
                "images": info.get("Images"),
                "ncpu": info.get("NCPU"),
                "mem_total_mb": int(info.get("MemTotal", 0)) // MIB,
                "default_image": image,
                # False means the first create pulls it.
                "default_image_pulled": await self.is_image_available(image),
            },
        )

    async def _capacity(self) -> HostCapacity | None:
        if self._host_capacity is not None:
            return self._host_capacity
        try:
            info = await self._docker_info()
        except (SandboxError, ValueError) as exc:
            logger.warning("Skipping capacity check, docker unavailable: %s", exc)
            return None
        ncpu = info.get("NCPU")
        mem_mb = int(info.get("MemTotal", 0)) // MIB
        self._host_capacity = HostCapacity(
            cpus=float(ncpu) if ncpu else None,
            memory_mb=mem_mb or None,
        )
        return self._host_capacity

    async def _docker_info(self) -> dict[str, Any]:
        out = await self._run_docker([self._docker, "info", "--format", "{{json .}}"])
        return json.loads(out.stdout)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def is_image_available(self, image: str) -> bool:
        """Whether *image* is present in the local image store."""
        out = await self._run_docker(
            [self._docker, "image", "inspect", "--format", "{{.Id}}", image],
            ignore_errors=True,
        )
        return out.returncode == 0

    async def pull_image(self, image: str) -> None:
        """Pull *image*, bounded by ``settings.pull_timeout_seconds``.

        Raises:
            SandboxError: ``CREATION_FAILED`` when the pull fails.
            SandboxTimeoutError: When the pull exceeds its deadline.
        """
        logger.info("Pulling image %s", image)
        try:
            await self._run_docker(
                [self._docker, "pull", "--quiet", image],
                timeout=self._settings.pull_timeout_seconds,
            )
        except SandboxTimeoutError:
            raise
        except SandboxError as exc:
            raise SandboxError(
                SandboxErrorCode.CREATION_FAILED,
                f"cannot pull image {image}: {exc.detail}",
            ) from exc
        logger.info("Pulled image %s", image)

    # ------------------------------------------------------------------
    # Docker CLI
    # ------------------------------------------------------------------

    @staticmethod
    def _handle(entry: RegistryEntry) -> str:
        handle = entry.instance.handle
        if not handle:
            raise SandboxError(SandboxErrorCode.NOT_FOUND, "sandbox has no container", sandbox_id=entry.id)
        return handle

    async def _run_docker(
        self,
        cmd: list[str],
        *,
        ignore_errors: bool = False,
        capture_stderr: bool = False,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> _DockerOutput:
        """Run a docker CLI command and return its output.

        The command is killed after *timeout* seconds (default
        ``settings.operation_timeout_seconds``), even with *ignore_errors*.
        """
        deadline = timeout if timeout is not None else self._settings.operation_timeout_seconds
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            if ignore_errors:
                return _DockerOutput(returncode=-1)
            raise SandboxError(SandboxErrorCode.PROVIDER_UNAVAILABLE, f"Failed to run docker: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(input), timeout=deadline)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.error("docker %s timed out after %ss", cmd[1] if len(cmd) > 1 else "", deadline)
            raise SandboxTimeoutError(deadline) from None

        stdout = stdout_bytes.decode(errors="replace").strip() if stdout_bytes else ""
        stderr = stderr_bytes.decode(errors="replace").strip() if stderr_bytes else ""

        if proc.returncode != 0 and not ignore_errors:
            raise SandboxError(
                SandboxErrorCode.EXEC_FAILED,
                f"docker command failed (rc={proc.returncode}): {stderr or stdout}",
            )

        return _DockerOutput(
            stdout=stdout,
            stderr=stderr if capture_stderr else "",
            returncode=proc.returncode or 0,
            data=stdout_bytes or b"",
        )


class _DockerOutput:
    """Simple container for docker CLI output."""

    __slots__ = ("stdout", "stderr", "returncode", "data")

    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0, data: bytes = b"") -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.data = data


def build_tar(relative_path: str, data: bytes, mode: int = 0o644) -> bytes:
    """Pack *data* as *relative_path* (with parent directories) into a tar archive."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        parts = relative_path.split("/")
        for depth in range(1, len(parts)):
            info = tarfile.TarInfo("/".join(parts[:depth]))
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        info = tarfile.TarInfo(relative_path)
        info.size = len(data)
        info.mode = mode
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def parse_size(text: str) -> float:
    """Convert a docker size string such as ``12.5MiB`` to bytes."""
    match = _SIZE_RE.match(text)
    if match is None:
        raise ValueError(f"unparseable size {text!r}")
    number, unit = match.groups()
    try:
        factor = _SIZE_UNITS[unit.lower()]
    except KeyError:
        raise ValueError(f"unknown size unit {unit!r}") from None
    return float(number) * factor


def parse_stats(stats_json: str, size_rw: str = "") -> ResourceUsage:
    """Build :class:`ResourceUsage` from ``docker stats`` JSON and ``SizeRw``."""
    stats = json.loads(stats_json)
    used = stats["MemUsage"].split("/")[0]
    pids = stats.get("PIDs", "0")
    size_text = size_rw.strip()
    disk_bytes = int(size_text) if size_text and size_text != "<no value>" else 0
    return ResourceUsage(
        memory_mb=round(parse_size(used) / MIB, 2),
        cpu_percent=float(stats["CPUPerc"].rstrip("%") or 0),
        pids=int(pids) if pids not in ("", "--") else 0,
        disk_mb=round(disk_bytes / MIB, 2),
    )
