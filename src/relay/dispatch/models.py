"""Result and audit records produced by the command dispatcher."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    NONE = "none"
    TIMEOUT = "timeout"
    PLATFORM_UNSUPPORTED = "platform-unsupported"
    BLOCKED = "blocked"
    RUNTIME_ERROR = "runtime-error"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Normalized outcome of one dispatch, fed back to the reasoning backend."""

    success: bool
    output: str
    error_kind: ErrorKind = ErrorKind.NONE
    duration_ms: int = 0
    error: str | None = None
    stderr: str | None = None


@dataclass(frozen=True, slots=True)
class AuditRecord:
    timestamp: str
    action_type: str
    command_text: str
    success: bool
    error_message: str | None = None
