"""Merge caller overrides onto the configured defaults.

Pure logic, no I/O.  Merge rules:

* environment ``passthrough`` and ``blocked`` are unions (defaults first,
  duplicates dropped); there is no way to *remove* a default-blocked name.
* environment ``set`` is the default mapping updated by the override mapping.
* every scalar field (resource ceilings, network mode, image, ...) is
  override-wins-over-default, field by field.

The only failure mode is schema validation; conflicts between lists are
settled later by the environment sanitizer, where ``blocked`` wins.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from pydantic import ValidationError

from agentcell.runtime.errors import ConfigValidationError
from agentcell.runtime.sandbox.models import (
    ContainerSettings,
    DevContainerSettings,
    EnvironmentPolicy,
    NetworkPolicy,
    ResourceLimits,
    SandboxConfig,
    SandboxOverrides,
)

T = TypeVar("T")

MEMORY_MB_RANGE = (512, 32768)
CPUS_RANGE = (0.5, 16.0)
PIDS_RANGE = (32, 4096)
DISK_MB_RANGE = (256, 1_048_576)
TIMEOUT_MS_RANGE = (1_000, 86_400_000)


def dedupe(*groups: Iterable[T]) -> tuple[T, ...]:
    """Concatenate *groups*, keeping the first occurrence of each item."""
    seen: set[T] = set()
    out: list[T] = []
    for group in groups:
        for item in group:
            if item not in seen:
                seen.add(item)
                out.append(item)
    return tuple(out)


def parse_overrides(data: SandboxOverrides | Mapping[str, Any] | None) -> SandboxOverrides:
    """Coerce *data* into :class:`SandboxOverrides`.

    Raises:
        ConfigValidationError: If *data* does not match the schema.
    """
    if data is None:
        return SandboxOverrides()
    if isinstance(data, SandboxOverrides):
        return data
    try:
        return SandboxOverrides.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigValidationError(str(exc)) from exc


class PolicyResolver:
    """Produce one effective :class:`SandboxConfig` per sandbox."""

    def __init__(self, defaults: SandboxConfig) -> None:
        self._defaults = defaults

    @property
    def defaults(self) -> SandboxConfig:
        return self._defaults

    def resolve(self, overrides: SandboxOverrides | Mapping[str, Any] | None = None) -> SandboxConfig:
        """Merge *overrides* onto the defaults and validate the result.

        Raises:
            ConfigValidationError: On out-of-range resources or malformed fields.
        """
        ov = parse_overrides(overrides)
        base = self._defaults

        resources = ResourceLimits(
            memory_mb=_pick(ov.resources.memory_mb, base.resources.memory_mb),
            cpus=_pick(ov.resources.cpus, base.resources.cpus),
            pids_limit=_pick(ov.resources.pids_limit, base.resources.pids_limit),
            disk_mb=_pick(ov.resources.disk_mb, base.resources.disk_mb),
            timeout_ms=_pick(ov.resources.timeout_ms, base.resources.timeout_ms),
        )

        network = NetworkPolicy(
            mode=_pick(ov.network.mode, base.network.mode),
            allowed_hosts=(
                dedupe(ov.network.allowed_hosts)
                if ov.network.allowed_hosts is not None
                else base.network.allowed_hosts
            ),
            allowed_ports=(
                dedupe(ov.network.allowed_ports)
                if ov.network.allowed_ports is not None
                else base.network.allowed_ports
            ),
        )

        environment = EnvironmentPolicy(
            passthrough=dedupe(base.environment.passthrough, ov.environment.passthrough),
            set={**base.environment.set, **ov.environment.set},
            blocked=dedupe(base.environment.blocked, ov.environment.blocked),
            inherit_all=_pick(ov.environment.inherit_all, base.environment.inherit_all),
        )

        container = ContainerSettings(
            image=_pick(ov.container.image, base.container.image),
            runtime_args=(
                tuple(ov.container.runtime_args)
                if ov.container.runtime_args is not None
                else base.container.runtime_args
            ),
            workspace_host_path=_pick(ov.container.workspace_host_path, base.container.workspace_host_path),
            read_only_root=_pick(ov.container.read_only_root, base.container.read_only_root),
        )

        devcontainer = DevContainerSettings(
            descriptor_path=_pick(ov.devcontainer.descriptor_path, base.devcontainer.descriptor_path),
        )

        config = SandboxConfig(
            provider=_pick(ov.provider, base.provider),
            resources=resources,
            network=network,
            environment=environment,
            allowed_root_directory=_pick(ov.allowed_root_directory, base.allowed_root_directory),
            container=container,
            devcontainer=devcontainer,
        )
        validate_config(config)
        return config


def validate_config(config: SandboxConfig) -> None:
    """Check range constraints pydantic's types cannot express.

    Raises:
        ConfigValidationError: Naming the first offending field.
    """
    res = config.resources
    _check_range("resources.memory_mb", res.memory_mb, MEMORY_MB_RANGE)
    _check_range("resources.cpus", res.cpus, CPUS_RANGE)
    _check_range("resources.pids_limit", res.pids_limit, PIDS_RANGE)
    _check_range("resources.disk_mb", res.disk_mb, DISK_MB_RANGE)
    _check_range("resources.timeout_ms", res.timeout_ms, TIMEOUT_MS_RANGE)

    if not config.allowed_root_directory.startswith("/"):
        msg = f"allowed_root_directory must be absolute, got {config.allowed_root_directory!r}"
        raise ConfigValidationError(msg)

    for port in config.network.allowed_ports:
        if not 1 <= port <= 65535:
            raise ConfigValidationError(f"network.allowed_ports contains invalid port {port}")

    for name in (*config.environment.passthrough, *config.environment.set, *config.environment.blocked):
        if not name or "=" in name:
            raise ConfigValidationError(f"invalid environment variable name {name!r}")


def _pick(override: T | None, default: T) -> T:
    return default if override is None else override


def _check_range(field: str, value: float, bounds: tuple[float, float]) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise ConfigValidationError(f"{field}={value} outside allowed range [{low}, {high}]")
