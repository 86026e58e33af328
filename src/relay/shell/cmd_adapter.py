"""Windows Command Prompt adapter."""

from __future__ import annotations

from .base import ShellAdapter


class CmdAdapter(ShellAdapter):
    """Adapter for command execution via ``cmd.exe``."""

    def __init__(self, executable: str = "cmd.exe") -> None:
        self.executable = executable

    @property
    def name(self) -> str:
        return "cmd"

    def build_args(self, command: str) -> list[str]:
        return [self.executable, "/d", "/s", "/c", command]
