"""Runtime safety layer: sandbox isolation and typed results."""

from agentcell.runtime.errors import (
    ConfigValidationError,
    InvalidStateError,
    RuntimeSafetyError,
    SandboxError,
    SandboxErrorCode,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from agentcell.runtime.result import Err, Ok, Result

__all__ = [
    "ConfigValidationError",
    "Err",
    "InvalidStateError",
    "Ok",
    "Result",
    "RuntimeSafetyError",
    "SandboxError",
    "SandboxErrorCode",
    "SandboxNotFoundError",
    "SandboxTimeoutError",
]
