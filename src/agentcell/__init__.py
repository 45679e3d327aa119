"""agentcell: isolated sandboxes for running agent-generated commands."""

from __future__ import annotations

__version__ = "0.1.0"
