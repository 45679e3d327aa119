"""Sandbox subsystem: isolated, long-lived execution contexts for agents."""

from agentcell.runtime.sandbox.bridge import HttpStreamSink, MemoryStreamSink, StreamBridge, StreamSink
from agentcell.runtime.sandbox.manager import SandboxManager
from agentcell.runtime.sandbox.models import (
    ExecOptions,
    ExecResult,
    ExecStreamEvent,
    ExitEvent,
    HealthStatus,
    LifecycleEvent,
    NetworkMode,
    ProviderKind,
    ResourceUsage,
    SandboxConfig,
    SandboxInstance,
    SandboxOverrides,
    SandboxStatus,
    StderrChunk,
    StdoutChunk,
)
from agentcell.runtime.sandbox.policy import PolicyResolver
from agentcell.runtime.sandbox.providers import (
    DevContainerProvider,
    DockerProvider,
    LocalProvider,
    SandboxProvider,
    create_provider,
)
from agentcell.runtime.sandbox.settings import SandboxSettings, load_settings

__all__ = [
    "DevContainerProvider",
    "DockerProvider",
    "ExecOptions",
    "ExecResult",
    "ExecStreamEvent",
    "ExitEvent",
    "HealthStatus",
    "HttpStreamSink",
    "LifecycleEvent",
    "LocalProvider",
    "MemoryStreamSink",
    "NetworkMode",
    "PolicyResolver",
    "ProviderKind",
    "ResourceUsage",
    "SandboxConfig",
    "SandboxInstance",
    "SandboxManager",
    "SandboxOverrides",
    "SandboxProvider",
    "SandboxSettings",
    "SandboxStatus",
    "StderrChunk",
    "StdoutChunk",
    "StreamBridge",
    "StreamSink",
    "create_provider",
    "load_settings",
]
