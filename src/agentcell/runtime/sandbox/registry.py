"""Per-provider instance registry.

Every provider constructs its own :class:`InstanceRegistry`; nothing here is
module-level, so two providers (or two test suites) never share entries.
Synchronization is per instance: each :class:`RegistryEntry` carries its own
locks and operations on different sandboxes never contend.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentcell.runtime.errors import SandboxNotFoundError
from agentcell.runtime.sandbox.models import SandboxInstance, utcnow

if TYPE_CHECKING:
    from agentcell.runtime.sandbox.execution import RunningCommand
    from agentcell.runtime.sandbox.models import SandboxConfig


@dataclass(eq=False)
class RegistryEntry:
    """Provider-private bookkeeping for one sandbox."""

    instance: SandboxInstance
    config: SandboxConfig
    env: dict[str, str]
    # FIFO queue for exec/exec_stream; asyncio.Lock wakes waiters in order.
    exec_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Serializes lifecycle transitions; never held while a command runs.
    state_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    active: set[RunningCommand] = field(default_factory=set)
    backend: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.instance.id

    def touch(self) -> None:
        self.instance.last_activity_at = utcnow()


class InstanceRegistry:
    """Map from sandbox id to :class:`RegistryEntry`."""

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}

    def add(self, entry: RegistryEntry) -> None:
        if entry.id in self._entries:
            msg = f"sandbox id already registered: {entry.id}"
            raise ValueError(msg)
        self._entries[entry.id] = entry

    def get(self, sandbox_id: str) -> RegistryEntry:
        """Return the entry for *sandbox_id* or raise :class:`SandboxNotFoundError`."""
        entry = self._entries.get(sandbox_id)
        if entry is None:
            raise SandboxNotFoundError(sandbox_id)
        return entry

    def discard(self, sandbox_id: str) -> None:
        self._entries.pop(sandbox_id, None)

    def entries(self, project_id: str | None = None) -> list[RegistryEntry]:
        return [
            e for e in self._entries.values()
            if project_id is None or e.instance.project_id == project_id
        ]

    def __contains__(self, sandbox_id: object) -> bool:
        return sandbox_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(list(self._entries.values()))
