"""Typed results returned by :class:`~agentcell.runtime.sandbox.manager.SandboxManager`.

The facade never lets a :class:`~agentcell.runtime.errors.SandboxError` escape;
it hands back ``Ok(value)`` or ``Err(error)`` instead::

    result = await manager.remove(sandbox_id)
    if result.ok:
        ...
    elif result.error.code is SandboxErrorCode.NOT_FOUND:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Literal, NoReturn, TypeVar, Union

from agentcell.runtime.errors import SandboxError, SandboxErrorCode

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T
    ok: Literal[True] = True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err:
    error: SandboxError
    ok: Literal[False] = False

    @property
    def code(self) -> SandboxErrorCode:
        return self.error.code

    def unwrap(self) -> NoReturn:
        """Re-raise the wrapped error."""
        raise self.error


Result = Union[Ok[T], Err]
