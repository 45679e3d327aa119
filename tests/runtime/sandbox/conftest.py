"""Shared fixtures for sandbox tests.

Real subprocesses are used wherever possible; the only fakes are the
network-enforcing provider and the docker CLI (patched per test).
"""

import os
import stat
import warnings
from pathlib import Path

import pytest

from agentcell.runtime.sandbox.execution import RunningCommand
from agentcell.runtime.sandbox.models import NetworkMode, ProviderKind
from agentcell.runtime.sandbox.policy import PolicyResolver
from agentcell.runtime.sandbox.providers.local import LocalProvider
from agentcell.runtime.sandbox.registry import RegistryEntry
from agentcell.runtime.sandbox.settings import SandboxSettings

HOST_ENV = {
    "LANG": "C.UTF-8",
    "TERM": "xterm",
    "AWS_SECRET_ACCESS_KEY": "hunter2",
    "GITHUB_TOKEN": "ghp_secret",
    "SHELL_ONLY": "not-passed",
}

_CURL_STUB = """#!/bin/sh
echo "curl: (6) Could not resolve host: network disabled in sandbox" >&2
exit 6
"""


def make_settings(workspace_root: Path, **defaults: object) -> SandboxSettings:
    """Settings for host-process providers: small limits, no rlimits, temp workspaces."""
    base = SandboxSettings()
    overrides = {
        "provider": "local",
        "resources": {"memory_mb": 512, "cpus": 0.5, "timeout_ms": 30_000},
        "network": {"mode": "full"},
    }
    overrides.update(defaults)
    resolved = PolicyResolver(base.defaults).resolve(overrides)
    return base.model_copy(update={
        "defaults": resolved,
        "local_rlimits": False,
        "local_workspace_root": str(workspace_root),
        "stop_grace_seconds": 1.0,
    })


def make_local(settings: SandboxSettings, host_env: dict[str, str] | None = None) -> LocalProvider:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return LocalProvider(settings, host_env=HOST_ENV if host_env is None else host_env)


class NetworkEnforcingProvider(LocalProvider):
    """Host-process provider standing in for the container engine.

    Under ``network.mode == none`` a ``curl`` that always fails to resolve
    is placed first on ``PATH``, the way a container without a network
    namespace behaves.
    """

    kind = ProviderKind.DOCKER

    async def _materialize(self, entry: RegistryEntry) -> None:
        await super()._materialize(entry)
        if entry.config.network.mode != NetworkMode.NONE:
            return
        stub_dir = Path(entry.backend["workspace"]) / ".netstub"
        stub_dir.mkdir()
        curl = stub_dir / "curl"
        curl.write_text(_CURL_STUB)
        curl.chmod(curl.stat().st_mode | stat.S_IXUSR)
        entry.backend["stub_dir"] = str(stub_dir)

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
        stub_dir = entry.backend.get("stub_dir")
        if stub_dir:
            env = {**env, "PATH": f"{stub_dir}:{env.get('PATH', os.defpath)}"}
        return await super()._spawn(entry, argv, cwd=cwd, env=env, user=user, stdin=stdin)


@pytest.fixture
def settings(tmp_path: Path) -> SandboxSettings:
    return make_settings(tmp_path)


@pytest.fixture
async def local_provider(settings: SandboxSettings):
    provider = make_local(settings)
    yield provider
    await provider.close()


@pytest.fixture
async def network_provider(tmp_path: Path):
    settings = make_settings(tmp_path, provider="docker")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        provider = NetworkEnforcingProvider(settings, host_env=HOST_ENV)
    yield provider
    await provider.close()


@pytest.fixture
def local_factory():
    """Builds extra local providers for tests that own their lifecycle."""
    return make_local
