"""Compute the variables a sandbox is allowed to see.

Pure function, no I/O besides logging.  The algorithm runs in phases:

0. ``inherit_all``: copy every host variable that is not blocked.
1. ``passthrough``: copy each named host variable that is present and not
   blocked.
2. ``set``: assign each explicit value that is not blocked.

Later phases overwrite earlier ones, so ``set`` beats ``passthrough``, but
no phase can ever emit a name listed in ``blocked``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from agentcell.runtime.sandbox.models import EnvironmentPolicy

logger = logging.getLogger(__name__)


def sanitize_environment(
    passthrough: Iterable[str],
    host_env: Mapping[str, str],
    set_vars: Mapping[str, str],
    blocked: Iterable[str],
    *,
    inherit_all: bool = False,
) -> dict[str, str]:
    """Return the effective environment for a sandbox."""
    blocked_names = frozenset(blocked)
    env: dict[str, str] = {}

    if inherit_all:
        for name, value in host_env.items():
            if name not in blocked_names:
                env[name] = value

    for name in passthrough:
        if name in blocked_names:
            logger.warning("Environment variable %s is blocked; ignoring passthrough request", name)
            continue
        if name in host_env:
            env[name] = host_env[name]

    for name, value in set_vars.items():
        if name in blocked_names:
            logger.warning("Environment variable %s is blocked; ignoring explicit value", name)
            continue
        env[name] = value

    return env


def sanitize_for_policy(policy: EnvironmentPolicy, host_env: Mapping[str, str]) -> dict[str, str]:
    """Apply :func:`sanitize_environment` to a resolved :class:`EnvironmentPolicy`."""
    return sanitize_environment(
        policy.passthrough,
        host_env,
        policy.set,
        policy.blocked,
        inherit_all=policy.inherit_all,
    )


def filter_exec_env(env: Mapping[str, str], blocked: Iterable[str]) -> dict[str, str]:
    """Drop blocked names from per-command ``ExecOptions.env``."""
    blocked_names = frozenset(blocked)
    out: dict[str, str] = {}
    for name, value in env.items():
        if name in blocked_names:
            logger.warning("Environment variable %s is blocked; dropping it from exec env", name)
            continue
        out[name] = value
    return out
