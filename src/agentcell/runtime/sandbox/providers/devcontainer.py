"""DevContainerProvider: Docker sandboxes described by a ``devcontainer.json``.

Only image-based descriptors are supported.  The fields read are::

    {
      "image": "mcr.microsoft.com/devcontainers/python:3.12",
      "containerEnv": {"PIP_INDEX_URL": "https://pypi.internal/simple"},
      "runArgs": ["--shm-size=1g"],
      "workspaceFolder": "/workspaces/app",
      "remoteUser": "vscode",
      "postCreateCommand": "pip install -e .",
      "hostRequirements": {"cpus": 4, "memory": "8gb", "storage": "32gb"}
    }

Descriptor values sit between the configured defaults and the caller's
overrides: anything the caller passes explicitly wins.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentcell.runtime.errors import ConfigValidationError, SandboxError, SandboxErrorCode
from agentcell.runtime.sandbox.execution import RunningCommand
from agentcell.runtime.sandbox.models import (
    ContainerOverrides,
    EnvironmentOverrides,
    ProviderKind,
    ResourceOverrides,
    SandboxConfig,
    SandboxOverrides,
)
from agentcell.runtime.sandbox.policy import PolicyResolver, parse_overrides
from agentcell.runtime.sandbox.providers.docker import DockerProvider
from agentcell.runtime.sandbox.registry import RegistryEntry

logger = logging.getLogger(__name__)

_MEMORY_RE = re.compile(r"^\s*([\d.]+)\s*(tb|gb|mb|kb)?\s*$", re.IGNORECASE)
_MB_PER_UNIT = {"tb": 1024 * 1024, "gb": 1024, "mb": 1, "kb": 1 / 1024}
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def strip_jsonc(text: str) -> str:
    """Remove ``//`` and ``/* */`` comments and trailing commas outside strings."""
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
        elif ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1
    return _TRAILING_COMMA_RE.sub(r"\1", "".join(out))


def load_descriptor(path: str | Path) -> dict[str, Any]:
    """Read and parse a ``devcontainer.json`` file.

    Raises:
        ConfigValidationError: When the file is missing or not a JSON object.
    """
    descriptor_path = Path(path)
    try:
        raw = descriptor_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError(f"Cannot read {descriptor_path}: {exc}") from exc
    try:
        data = json.loads(strip_jsonc(raw))
    except json.JSONDecodeError as exc:
        raise ConfigValidationError(f"{descriptor_path}: invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{descriptor_path}: descriptor must be a JSON object")
    return data


def parse_memory_mb(value: Any) -> int:
    """``"8gb"`` -> ``8192``.  Bare numbers are megabytes."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    match = _MEMORY_RE.match(value) if isinstance(value, str) else None
    if match is None:
        raise ConfigValidationError(f"invalid hostRequirements size {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MB_PER_UNIT[(unit or "mb").lower()])


def _field(descriptor: Mapping[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    """``descriptor[key]`` when present, checked against *kind*."""
    value = descriptor.get(key)
    if value is not None and not isinstance(value, kind):
        raise ConfigValidationError(f"devcontainer {key} has the wrong type: {value!r}")
    return value


def descriptor_overrides(descriptor: Mapping[str, Any]) -> SandboxOverrides:
    """Map descriptor fields onto a :class:`SandboxOverrides`.

    Raises:
        ConfigValidationError: When a field has the wrong shape.
    """
    host = _field(descriptor, "hostRequirements", dict) or {}
    container_env = _field(descriptor, "containerEnv", dict) or {}
    run_args = _field(descriptor, "runArgs", list)

    cpus = host.get("cpus")
    if cpus is not None and (isinstance(cpus, bool) or not isinstance(cpus, (int, float))):
        raise ConfigValidationError(f"invalid hostRequirements cpus {cpus!r}")

    try:
        return SandboxOverrides(
            provider=ProviderKind.DEVCONTAINER,
            resources=ResourceOverrides(
                cpus=float(cpus) if cpus is not None else None,
                memory_mb=parse_memory_mb(host["memory"]) if "memory" in host else None,
                disk_mb=parse_memory_mb(host["storage"]) if "storage" in host else None,
            ),
            environment=EnvironmentOverrides(set={str(k): str(v) for k, v in container_env.items()}),
            allowed_root_directory=_field(descriptor, "workspaceFolder", str),
            container=ContainerOverrides(
                image=_field(descriptor, "image", str),
                runtime_args=[str(a) for a in run_args] if run_args is not None else None,
            ),
        )
    except ValidationError as exc:
        raise ConfigValidationError(f"invalid devcontainer descriptor: {exc}") from exc


def resolve_with_descriptor(
    resolver: PolicyResolver,
    overrides: SandboxOverrides | Mapping[str, Any] | None,
) -> SandboxConfig:
    """Resolve *overrides* as defaults, then descriptor, then caller.

    The descriptor path itself comes from the caller's overrides or the
    defaults.  Configs for other providers resolve normally.
    """
    ov = parse_overrides(overrides)
    first = resolver.resolve(ov)
    if first.provider != ProviderKind.DEVCONTAINER:
        return first
    path = first.devcontainer.descriptor_path
    if not path:
        raise ConfigValidationError("devcontainer provider requires devcontainer.descriptor_path")

    layered = PolicyResolver(resolver.resolve(descriptor_overrides(load_descriptor(path))))
    config = layered.resolve(ov)
    return config.model_copy(update={"devcontainer": first.devcontainer})


class DevContainerProvider(DockerProvider):
    """Docker provider driven by a dev-container descriptor.

    Container lifecycle, exec and file operations are inherited unchanged.
    On top of them it labels containers the way the dev-container tooling
    does, runs ``postCreateCommand`` once after the first start and uses
    ``remoteUser`` as the default exec user.
    """

    kind = ProviderKind.DEVCONTAINER

    async def _materialize(self, entry: RegistryEntry) -> None:
        path = entry.config.devcontainer.descriptor_path
        if not path:
            raise SandboxError(SandboxErrorCode.INVALID_CONFIG, "no devcontainer descriptor configured")
        try:
            descriptor = load_descriptor(path)
        except ConfigValidationError as exc:
            raise SandboxError(SandboxErrorCode.CREATION_FAILED, exc.detail) from exc
        if not descriptor.get("image"):
            raise SandboxError(
                SandboxErrorCode.CREATION_FAILED,
                f"{path}: only image-based dev containers are supported (no 'image' key)",
            )

        entry.backend["descriptor_path"] = str(Path(path).resolve())
        entry.backend["post_create"] = descriptor.get("postCreateCommand")
        entry.backend["remote_user"] = descriptor.get("remoteUser") or descriptor.get("containerUser")
        await super()._materialize(entry)

    def _build_create_command(self, entry: RegistryEntry, name: str, mount: str) -> list[str]:
        cmd = super()._build_create_command(entry, name, mount)
        descriptor_path = entry.backend.get("descriptor_path", "")
        labels = [
            "--label", f"devcontainer.config_file={descriptor_path}",
            "--label", f"devcontainer.local_folder={Path(descriptor_path).parent.parent}",
        ]
        # Insert right after "docker create".
        return cmd[:2] + labels + cmd[2:]

    async def _start(self, entry: RegistryEntry) -> None:
        await super()._start(entry)
        if entry.backend.get("post_create_done"):
            return
        commands = _post_create_commands(entry.backend.get("post_create"))
        handle = self._handle(entry)
        user = entry.backend.get("remote_user")
        for argv in commands:
            logger.info("Sandbox %s: running postCreateCommand %s", entry.id, argv)
            cmd = [self._docker, "exec", "-w", entry.config.allowed_root_directory]
            if user:
                cmd.extend(["-u", user])
            cmd.append(handle)
            cmd.extend(argv)
            await self._run_docker(cmd, timeout=entry.config.resources.timeout_ms / 1000)
        entry.backend["post_create_done"] = True

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
        return await super()._spawn(
            entry,
            argv,
            cwd=cwd,
            env=env,
            user=user or entry.backend.get("remote_user"),
            stdin=stdin,
        )


def _post_create_commands(value: Any) -> list[list[str]]:
    """Normalize the three ``postCreateCommand`` shapes into argv lists."""
    if not value:
        return []
    if isinstance(value, str):
        return [["sh", "-c", value]]
    if isinstance(value, list):
        return [[str(part) for part in value]]
    if isinstance(value, dict):
        commands: list[list[str]] = []
        for item in value.values():
            commands.extend(_post_create_commands(item))
        return commands
    raise SandboxError(SandboxErrorCode.START_FAILED, f"unsupported postCreateCommand {value!r}")
