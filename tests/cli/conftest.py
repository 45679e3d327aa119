"""Shared fixtures for CLI tests."""

from pathlib import Path

import pytest


@pytest.fixture
def local_config(tmp_path: Path) -> Path:
    """Settings file selecting the local provider with small limits."""
    workspaces = tmp_path / "workspaces"
    workspaces.mkdir()
    path = tmp_path / "agentcell.yaml"
    path.write_text(
        "defaults:\n"
        "  provider: local\n"
        "  resources:\n"
        "    memory_mb: 512\n"
        "    cpus: 0.5\n"
        "    timeout_ms: 30000\n"
        "  network:\n"
        "    mode: full\n"
        "local_rlimits: false\n"
        f"local_workspace_root: {workspaces}\n"
        "stop_grace_seconds: 1\n"
    )
    return path
