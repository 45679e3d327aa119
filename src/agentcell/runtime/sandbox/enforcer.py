"""Translate an abstract sandbox policy into provider-native arguments.

One translation function per provider family, so adding a policy field
means touching exactly one place per backend:

* :func:`docker_runtime_args`: ``docker create`` flags (also used by the
  dev-container provider).
* :func:`local_process_limits`: POSIX rlimits for host subprocesses.

Egress allow-lists are *not* enforced here.  In ``restricted`` mode the
container joins a pre-provisioned network whose egress filter reads the
``agentcell.egress.*`` labels.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from agentcell.runtime.sandbox.models import NetworkMode, SandboxConfig

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

EGRESS_HOSTS_LABEL = "agentcell.egress.hosts"
EGRESS_PORTS_LABEL = "agentcell.egress.ports"


def docker_runtime_args(
    config: SandboxConfig,
    *,
    restricted_network: str,
    disk_quota: bool = True,
) -> list[str]:
    """Translate resources, network policy and hardening into docker flags."""
    res = config.resources
    args: list[str] = [
        "--memory", f"{res.memory_mb}m",
        # Same value as --memory disables swap on top of the ceiling.
        "--memory-swap", f"{res.memory_mb}m",
        "--cpus", _format_cpus(res.cpus),
        "--pids-limit", str(res.pids_limit),
    ]
    if disk_quota:
        args.extend(["--storage-opt", f"size={res.disk_mb}m"])

    args.extend(docker_network_args(config, restricted_network=restricted_network))

    args.extend([
        "--cap-drop", "ALL",
        "--security-opt", "no-new-privileges",
    ])
    if config.container.read_only_root:
        args.append("--read-only")
        args.extend(["--tmpfs", "/tmp:rw,nosuid,size=64m"])

    return args


def docker_network_args(config: SandboxConfig, *, restricted_network: str = "") -> list[str]:
    """Network part of :func:`docker_runtime_args`."""
    net = config.network
    if net.mode == NetworkMode.NONE:
        return ["--network", "none"]
    if net.mode == NetworkMode.RESTRICTED:
        return [
            "--network", restricted_network,
            "--label", f"{EGRESS_HOSTS_LABEL}={','.join(net.allowed_hosts)}",
            "--label", f"{EGRESS_PORTS_LABEL}={','.join(str(p) for p in net.allowed_ports)}",
        ]
    return []


@dataclass(frozen=True, slots=True)
class LocalLimits:
    """POSIX rlimits applied to local-provider subprocesses."""

    memory_bytes: int
    max_processes: int
    max_file_bytes: int

    def preexec(self) -> Callable[[], None]:
        """Return a ``preexec_fn`` that installs these limits in the child."""

        def _apply() -> None:
            import resource

            resource.setrlimit(resource.RLIMIT_AS, (self.memory_bytes, self.memory_bytes))
            resource.setrlimit(resource.RLIMIT_NPROC, (self.max_processes, self.max_processes))
            resource.setrlimit(resource.RLIMIT_FSIZE, (self.max_file_bytes, self.max_file_bytes))

        return _apply


def local_process_limits(config: SandboxConfig) -> LocalLimits:
    """Translate resources into rlimits.

    CPU share and network policy have no local equivalent; both are logged
    and otherwise ignored.
    """
    res = config.resources
    if config.network.mode != NetworkMode.FULL:
        logger.warning(
            "Local provider cannot enforce network mode %r; commands have host network access",
            config.network.mode.value,
        )
    return LocalLimits(
        memory_bytes=res.memory_mb * MIB,
        max_processes=res.pids_limit,
        max_file_bytes=res.disk_mb * MIB,
    )


def _format_cpus(cpus: float) -> str:
    return f"{cpus:g}"
