"""Shared error types for the sandbox runtime."""

from __future__ import annotations

from enum import Enum


class SandboxErrorCode(str, Enum):
    """Failure taxonomy surfaced to sandbox callers."""

    NOT_FOUND = "NOT_FOUND"
    CREATION_FAILED = "CREATION_FAILED"
    START_FAILED = "START_FAILED"
    STOP_FAILED = "STOP_FAILED"
    REMOVAL_FAILED = "REMOVAL_FAILED"
    EXEC_FAILED = "EXEC_FAILED"
    INVALID_STATE = "INVALID_STATE"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    WRITE_FAILED = "WRITE_FAILED"
    COPY_FAILED = "COPY_FAILED"
    STATS_FAILED = "STATS_FAILED"
    RESOURCE_LIMIT_EXCEEDED = "RESOURCE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    INVALID_CONFIG = "INVALID_CONFIG"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"


class RuntimeSafetyError(Exception):
    """Base error for all runtime safety failures."""


class SandboxError(RuntimeSafetyError):
    """A sandbox operation failed.

    Every failure leaving a provider carries a :class:`SandboxErrorCode`, so
    callers never have to inspect raw ``OSError`` or docker CLI output.
    """

    def __init__(
        self,
        code: SandboxErrorCode = SandboxErrorCode.EXEC_FAILED,
        detail: str = "",
        *,
        sandbox_id: str | None = None,
    ) -> None:
        self.code = code
        self.detail = detail
        self.sandbox_id = sandbox_id
        msg = f"Sandbox error [{code.value}]"
        if sandbox_id:
            msg += f" ({sandbox_id})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class SandboxNotFoundError(SandboxError):
    """No sandbox with the given id is registered."""

    def __init__(self, sandbox_id: str) -> None:
        super().__init__(SandboxErrorCode.NOT_FOUND, "unknown sandbox", sandbox_id=sandbox_id)


class InvalidStateError(SandboxError):
    """The operation is illegal in the instance's current lifecycle state."""

    def __init__(self, sandbox_id: str, current: str, operation: str) -> None:
        self.current = current
        self.operation = operation
        super().__init__(
            SandboxErrorCode.INVALID_STATE,
            f"cannot {operation} while {current}",
            sandbox_id=sandbox_id,
        )


class SandboxTimeoutError(SandboxError):
    """A provider operation (not a command) exceeded its deadline."""

    def __init__(self, timeout: float, *, sandbox_id: str | None = None) -> None:
        self.timeout = timeout
        super().__init__(
            SandboxErrorCode.TIMEOUT,
            f"operation timed out after {timeout}s",
            sandbox_id=sandbox_id,
        )


class ConfigValidationError(RuntimeSafetyError):
    """A sandbox configuration failed schema validation."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid sandbox configuration: {detail}")
