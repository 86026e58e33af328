"""Shell adapter implementations."""

from relay.skills.registry import Platform

from .base import (
    DEFAULT_OUTPUT_CAP_BYTES,
    CommandResult,
    ShellAdapter,
    kill_process_tree,
    sanitize_for_log,
)
from .bash_adapter import BashAdapter
from .cmd_adapter import CmdAdapter


def create_shell_adapter(platform: Platform | str) -> ShellAdapter:
    resolved = platform if isinstance(platform, Platform) else Platform.parse(platform)
    if resolved is Platform.WINDOWS:
        return CmdAdapter()
    return BashAdapter()


__all__ = [
    "DEFAULT_OUTPUT_CAP_BYTES",
    "BashAdapter",
    "CmdAdapter",
    "CommandResult",
    "ShellAdapter",
    "create_shell_adapter",
    "kill_process_tree",
    "sanitize_for_log",
]
