"""Compiled-in defaults and the YAML config file that overrides them.

Example ``agentcell.yaml``::

    defaults:
      provider: docker
      resources:
        memory_mb: 2048
        cpus: 1.5
      network:
        mode: restricted
        allowed_hosts: [registry.npmjs.org, pypi.org]
      environment:
        passthrough: [LANG, TERM]
        blocked: [MY_INTERNAL_TOKEN]
      container:
        image: ${SANDBOX_IMAGE}
    restricted_network: agentcell-egress
    stop_grace_seconds: 10

Environment variables in the form ``${VAR}`` are expanded before parsing.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from agentcell.runtime.errors import ConfigValidationError
from agentcell.runtime.sandbox.models import EnvironmentPolicy, SandboxConfig
from agentcell.runtime.sandbox.policy import PolicyResolver, parse_overrides

CONFIG_ENV_VAR = "AGENTCELL_CONFIG"

DEFAULT_PASSTHROUGH: tuple[str, ...] = ("LANG", "LC_ALL", "TERM", "TZ")

# Credentials that must never reach agent-controlled code.
DEFAULT_BLOCKED: tuple[str, ...] = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AZURE_CLIENT_SECRET",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GITHUB_TOKEN",
    "GH_TOKEN",
    "GITLAB_TOKEN",
    "NPM_TOKEN",
    "PYPI_TOKEN",
    "DOCKER_AUTH_CONFIG",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "DATABASE_URL",
    "SSH_AUTH_SOCK",
)


def _default_config() -> SandboxConfig:
    return SandboxConfig(
        environment=EnvironmentPolicy(
            passthrough=DEFAULT_PASSTHROUGH,
            set={"HOME": "/home/agent", "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"},
            blocked=DEFAULT_BLOCKED,
        ),
    )


class SandboxSettings(BaseModel):
    """Process-level settings for the sandbox subsystem.

    Constructed once at startup and handed to providers; there is no
    module-level instance.
    """

    defaults: SandboxConfig = Field(default_factory=_default_config)
    restricted_network: str = Field(
        default="agentcell-restricted",
        description="Pre-provisioned network wired to the egress filter.",
    )
    stop_grace_seconds: float = Field(default=10.0, description="Graceful stop period before force-kill.")
    operation_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Deadline for one container-engine CLI call (create, start, cp, ...).",
    )
    pull_timeout_seconds: float = Field(default=600.0, gt=0, description="Deadline for pulling a missing image.")
    stream_buffer_chunks: int = Field(
        default=64,
        ge=1,
        description="Max chunks buffered per exec_stream before the producer is paused.",
    )
    chunk_size: int = Field(default=8192, ge=1, description="Bytes read per pipe read.")
    container_prefix: str = Field(default="agentcell", description="Prefix for container and volume names.")
    docker_binary: str = "docker"
    disk_quota: bool = Field(
        default=True,
        description="Pass --storage-opt size=...; needs a storage driver with project quotas.",
    )
    local_rlimits: bool = Field(
        default=True,
        description="Install rlimits in local-provider children (RLIMIT_NPROC counts all of the user's processes).",
    )
    local_workspace_root: str | None = Field(
        default=None,
        description="Parent directory for local-provider workspaces (system temp dir when unset).",
    )


def load_settings(path: str | Path | None = None) -> SandboxSettings:
    """Load :class:`SandboxSettings` from YAML.

    Falls back to ``$AGENTCELL_CONFIG`` when *path* is omitted, and to the
    compiled-in defaults when neither is set.

    Raises:
        ConfigValidationError: On unreadable files, YAML errors or schema errors.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if not env_path:
            return SandboxSettings()
        path = env_path

    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError(f"Cannot read {config_path}: {exc}") from exc

    expanded = os.path.expandvars(raw)

    try:
        data: Any = yaml.safe_load(expanded)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"YAML parse error: {exc}") from exc

    if data is None:
        return SandboxSettings()
    if not isinstance(data, dict):
        raise ConfigValidationError("Config file must be a mapping")

    defaults = data.pop("defaults", None)
    try:
        settings = SandboxSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigValidationError(str(exc)) from exc

    if defaults:
        # File defaults layer on top of the compiled-in ones, so the built-in
        # blocked list survives a config file that only adds names.
        resolved = PolicyResolver(settings.defaults).resolve(parse_overrides(defaults))
        settings = settings.model_copy(update={"defaults": resolved})
    return settings
