"""Sandbox providers and provider selection."""

from __future__ import annotations

from collections.abc import Mapping

from agentcell.runtime.sandbox.models import ProviderKind
from agentcell.runtime.sandbox.providers.base import BaseSandboxProvider, HostCapacity, SandboxProvider
from agentcell.runtime.sandbox.providers.devcontainer import DevContainerProvider
from agentcell.runtime.sandbox.providers.docker import DockerProvider
from agentcell.runtime.sandbox.providers.local import LocalProvider
from agentcell.runtime.sandbox.settings import SandboxSettings

PROVIDER_CLASSES: dict[ProviderKind, type[BaseSandboxProvider]] = {
    ProviderKind.DOCKER: DockerProvider,
    ProviderKind.DEVCONTAINER: DevContainerProvider,
    ProviderKind.LOCAL: LocalProvider,
}


def create_provider(
    kind: ProviderKind | str,
    settings: SandboxSettings | None = None,
    *,
    host_env: Mapping[str, str] | None = None,
) -> BaseSandboxProvider:
    """Construct a fresh provider for *kind*, with its own empty registry."""
    return PROVIDER_CLASSES[ProviderKind(kind)](settings, host_env=host_env)


__all__ = [
    "BaseSandboxProvider",
    "DevContainerProvider",
    "DockerProvider",
    "HostCapacity",
    "LocalProvider",
    "PROVIDER_CLASSES",
    "SandboxProvider",
    "create_provider",
]
