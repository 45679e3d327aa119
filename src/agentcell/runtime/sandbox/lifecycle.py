"""Sandbox instance state machine.

::

    creating ──start──▶ running ◀──resume/pause──▶ paused
        │                 │                          │
        │                 └────────stop──────┬───────┘
        │                                    ▼
        └──────start (after stop)◀────── stopped ──remove──▶ removed

``error`` is reachable from every non-terminal state when a provider
fails unrecoverably; from ``error`` only ``stop`` and ``remove`` are legal.
``remove`` is legal from every state except ``removed``.
"""

from __future__ import annotations

from collections.abc import Iterable

from agentcell.runtime.errors import InvalidStateError
from agentcell.runtime.sandbox.models import SandboxInstance, SandboxStatus, utcnow

S = SandboxStatus

TRANSITIONS: dict[SandboxStatus, frozenset[SandboxStatus]] = {
    S.CREATING: frozenset({S.RUNNING, S.ERROR, S.REMOVED}),
    S.RUNNING: frozenset({S.PAUSED, S.STOPPED, S.ERROR, S.REMOVED}),
    S.PAUSED: frozenset({S.RUNNING, S.STOPPED, S.ERROR, S.REMOVED}),
    S.STOPPED: frozenset({S.RUNNING, S.ERROR, S.REMOVED}),
    S.ERROR: frozenset({S.STOPPED, S.REMOVED}),
    S.REMOVED: frozenset(),
}


def can_transition(current: SandboxStatus, target: SandboxStatus) -> bool:
    return target in TRANSITIONS[current]


def require_status(
    instance: SandboxInstance,
    allowed: Iterable[SandboxStatus],
    operation: str,
) -> None:
    """Raise :class:`InvalidStateError` unless *instance* is in *allowed*."""
    if instance.status not in set(allowed):
        raise InvalidStateError(instance.id, instance.status.value, operation)


def transition(instance: SandboxInstance, target: SandboxStatus, operation: str) -> None:
    """Move *instance* to *target*, stamping lifecycle timestamps."""
    if not can_transition(instance.status, target):
        raise InvalidStateError(instance.id, instance.status.value, operation)

    now = utcnow()
    instance.status = target
    instance.last_activity_at = now
    if target == S.RUNNING:
        instance.started_at = now
        instance.error = None
    elif target == S.STOPPED:
        instance.stopped_at = now


def mark_error(instance: SandboxInstance, detail: str) -> None:
    """Force *instance* into ``error``; a removed instance stays removed."""
    if instance.status == S.REMOVED:
        return
    instance.status = S.ERROR
    instance.error = detail
    instance.last_activity_at = utcnow()
