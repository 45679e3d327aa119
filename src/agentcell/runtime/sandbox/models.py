"""Data models for the sandbox subsystem."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any, Literal, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderKind(str, Enum):
    """Execution backends a sandbox can be materialized on."""

    DOCKER = "docker"
    DEVCONTAINER = "devcontainer"
    LOCAL = "local"


class NetworkMode(str, Enum):
    NONE = "none"
    RESTRICTED = "restricted"
    FULL = "full"


class SandboxStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"
    REMOVED = "removed"


# ---------------------------------------------------------------------------
# Effective (resolved) configuration
# ---------------------------------------------------------------------------


class ResourceLimits(BaseModel):
    """Resource ceilings applied to one sandbox."""

    model_config = ConfigDict(frozen=True)

    memory_mb: int = Field(default=4096, description="Memory ceiling in MiB.")
    cpus: float = Field(default=2.0, description="CPU share (number of cores).")
    pids_limit: int = Field(default=256, description="Maximum number of processes.")
    disk_mb: int = Field(default=10240, description="Ephemeral storage ceiling in MiB.")
    timeout_ms: int = Field(default=300_000, description="Default per-command timeout.")


class NetworkPolicy(BaseModel):
    """Network isolation applied to one sandbox."""

    model_config = ConfigDict(frozen=True)

    mode: NetworkMode = NetworkMode.NONE
    allowed_hosts: tuple[str, ...] = ()
    allowed_ports: tuple[int, ...] = ()


# Validated as a dict, stored read-only, dumped as a plain dict.
FrozenEnv = Annotated[
    dict[str, str],
    AfterValidator(MappingProxyType),
    PlainSerializer(dict, return_type=dict[str, str]),
]


class EnvironmentPolicy(BaseModel):
    """Environment variable allow/set/block lists.

    ``blocked`` always wins: a name listed there never reaches the sandbox,
    whatever ``passthrough``, ``set`` or ``inherit_all`` say.
    """

    model_config = ConfigDict(frozen=True)

    passthrough: tuple[str, ...] = ()
    set: FrozenEnv = Field(default_factory=lambda: MappingProxyType({}))
    blocked: tuple[str, ...] = ()
    inherit_all: bool = False


class ContainerSettings(BaseModel):
    """Container-engine specific settings."""

    model_config = ConfigDict(frozen=True)

    image: str = "agentcell/sandbox:latest"
    runtime_args: tuple[str, ...] = ()
    workspace_host_path: str | None = Field(
        default=None,
        description="Host directory bind-mounted at the workspace path; a named volume is used when unset.",
    )
    read_only_root: bool = False


class DevContainerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    descriptor_path: str | None = Field(default=None, description="Path to devcontainer.json.")


class SandboxConfig(BaseModel):
    """Fully-resolved, immutable configuration for one sandbox instance."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind = ProviderKind.DOCKER
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    network: NetworkPolicy = Field(default_factory=NetworkPolicy)
    environment: EnvironmentPolicy = Field(default_factory=EnvironmentPolicy)
    allowed_root_directory: str = "/workspace"
    container: ContainerSettings = Field(default_factory=ContainerSettings)
    devcontainer: DevContainerSettings = Field(default_factory=DevContainerSettings)


# ---------------------------------------------------------------------------
# Caller-supplied partial configuration
# ---------------------------------------------------------------------------


class ResourceOverrides(BaseModel):
    memory_mb: int | None = None
    cpus: float | None = None
    pids_limit: int | None = None
    disk_mb: int | None = None
    timeout_ms: int | None = None


class NetworkOverrides(BaseModel):
    mode: NetworkMode | None = None
    allowed_hosts: list[str] | None = None
    allowed_ports: list[int] | None = None


class EnvironmentOverrides(BaseModel):
    passthrough: list[str] = Field(default_factory=list)
    set: dict[str, str] = Field(default_factory=dict)
    blocked: list[str] = Field(default_factory=list)
    inherit_all: bool | None = None


class ContainerOverrides(BaseModel):
    image: str | None = None
    runtime_args: list[str] | None = None
    workspace_host_path: str | None = None
    read_only_root: bool | None = None


class SandboxOverrides(BaseModel):
    """Partial configuration a caller passes when requesting a sandbox."""

    provider: ProviderKind | None = None
    resources: ResourceOverrides = Field(default_factory=ResourceOverrides)
    network: NetworkOverrides = Field(default_factory=NetworkOverrides)
    environment: EnvironmentOverrides = Field(default_factory=EnvironmentOverrides)
    allowed_root_directory: str | None = None
    container: ContainerOverrides = Field(default_factory=ContainerOverrides)
    devcontainer: DevContainerSettings = Field(default_factory=DevContainerSettings)


# ---------------------------------------------------------------------------
# Instances and execution
# ---------------------------------------------------------------------------


class SandboxInstance(BaseModel):
    """One isolated execution context.

    Owned by the provider that created it; callers receive copies.
    """

    id: str
    agent_id: str
    project_id: str
    status: SandboxStatus = SandboxStatus.CREATING
    provider: ProviderKind
    handle: str | None = Field(default=None, description="Provider-assigned id (e.g. container id).")
    workspace_path: str
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_activity_at: datetime = Field(default_factory=utcnow)
    error: str | None = None


class ExecOptions(BaseModel):
    """Per-command execution options."""

    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, gt=0, description="Overrides resources.timeout_ms.")
    user: str | None = None
    stdin: str | None = None


class ExecResult(BaseModel):
    """Result of running one command to completion."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False


class StdoutChunk(BaseModel):
    kind: Literal["stdout"] = "stdout"
    data: str


class StderrChunk(BaseModel):
    kind: Literal["stderr"] = "stderr"
    data: str


class ExitEvent(BaseModel):
    kind: Literal["exit"] = "exit"
    exit_code: int
    duration_ms: int
    timed_out: bool = False


ExecStreamEvent = Annotated[
    Union[StdoutChunk, StderrChunk, ExitEvent],
    Field(discriminator="kind"),
]


class ResourceUsage(BaseModel):
    """Point-in-time resource snapshot; never persisted."""

    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    pids: int = 0
    disk_mb: float = 0.0


class HealthStatus(BaseModel):
    healthy: bool
    provider: ProviderKind
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


LifecycleEventType = Literal[
    "sandbox:creating",
    "sandbox:created",
    "sandbox:started",
    "sandbox:paused",
    "sandbox:resumed",
    "sandbox:stopping",
    "sandbox:stopped",
    "sandbox:removed",
    "sandbox:error",
]


class LifecycleEvent(BaseModel):
    """Emitted by providers to registered listeners on every transition."""

    type: LifecycleEventType
    sandbox_id: str
    project_id: str = ""
    detail: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
