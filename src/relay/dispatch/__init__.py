"""Command dispatch, audit trail and in-process utilities."""

from .audit import DEFAULT_AUDIT_CAPACITY, AuditSink
from .dispatcher import CommandDispatcher, render_command, sanitize_name
from .models import AuditRecord, ErrorKind, ExecutionResult

__all__ = [
    "DEFAULT_AUDIT_CAPACITY",
    "AuditRecord",
    "AuditSink",
    "CommandDispatcher",
    "ErrorKind",
    "ExecutionResult",
    "render_command",
    "sanitize_name",
]
