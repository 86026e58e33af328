"""Base shell adapter with bounded process execution."""

from __future__ import annotations

import abc
import locale
import logging
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO

import psutil

LOGGER = logging.getLogger(__name__)

DEFAULT_OUTPUT_CAP_BYTES = 1024 * 1024
_READ_CHUNK_BYTES = 8192
_POLL_INTERVAL_SECONDS = 0.05
_READER_JOIN_SECONDS = 2.0

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


@dataclass(slots=True)
class CommandResult:
    """Result of a command execution."""

    command: str
    shell: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    output_capped: bool = False
    duration_seconds: float = 0.0
    executed: bool = True


class _CappedBuffer:
    def __init__(self, cap: int) -> None:
        self.cap = cap
        self.chunks: list[bytes] = []
        self.size = 0
        self.overflowed = False

    def feed(self, chunk: bytes) -> None:
        room = self.cap - self.size
        if len(chunk) > room:
            self.overflowed = True
            chunk = chunk[: max(room, 0)]
        if chunk:
            self.chunks.append(chunk)
            self.size += len(chunk)

    def getvalue(self) -> bytes:
        return b"".join(self.chunks)


def _drain(stream: IO[bytes] | None, buffer: _CappedBuffer, overflow: threading.Event) -> None:
    if stream is None:
        return
    try:
        while True:
            chunk = stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            buffer.feed(chunk)
            if buffer.overflowed:
                overflow.set()
    except (OSError, ValueError):
        # pipe closed underneath us after the process tree was killed
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and every descendant, children first."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue
    try:
        parent.kill()
    except psutil.NoSuchProcess:
        pass
    psutil.wait_procs([*children, parent], timeout=_READER_JOIN_SECONDS)


class ShellAdapter(abc.ABC):
    """Abstract adapter for shell-specific command execution."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly shell adapter name."""

    @abc.abstractmethod
    def build_args(self, command: str) -> list[str]:
        """Return the argv that runs ``command`` through this shell."""

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        output_cap_bytes: int = DEFAULT_OUTPUT_CAP_BYTES,
    ) -> CommandResult:
        """Run ``command`` and kill its process tree on timeout or output overflow."""
        self.log_request(command, timeout=timeout, output_cap_bytes=output_cap_bytes)
        started = self.monotonic_now()
        args = self.build_args(command)
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
            )
        except FileNotFoundError:
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=127,
                stdout="",
                stderr=f"{self.name} executable not found: {args[0]}",
                executed=False,
                duration_seconds=self.monotonic_now() - started,
            )
            self.log_result(result)
            return result

        stdout = _CappedBuffer(output_cap_bytes)
        stderr = _CappedBuffer(output_cap_bytes)
        overflow = threading.Event()
        readers = [
            threading.Thread(target=_drain, args=(process.stdout, stdout, overflow), daemon=True),
            threading.Thread(target=_drain, args=(process.stderr, stderr, overflow), daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = None if timeout is None else started + timeout
        timed_out = False
        while True:
            try:
                process.wait(timeout=_POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass
            if overflow.is_set():
                break
            if deadline is not None and self.monotonic_now() >= deadline:
                timed_out = True
                break

        output_capped = overflow.is_set()
        if process.returncode is None:
            kill_process_tree(process.pid)
            process.wait()
        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
        output_capped = output_capped or stdout.overflowed or stderr.overflowed

        result = CommandResult(
            command=command,
            shell=self.name,
            returncode=124 if timed_out else process.returncode,
            stdout=normalize_output(stdout.getvalue()),
            stderr=normalize_output(stderr.getvalue()),
            timed_out=timed_out,
            output_capped=output_capped,
            duration_seconds=self.monotonic_now() - started,
        )
        self.log_result(result)
        return result

    def log_request(self, command: str, *, timeout: float | None, output_cap_bytes: int) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "shell": self.name,
                "command": sanitize_for_log(command),
                "timeout": timeout,
                "output_cap_bytes": output_cap_bytes,
            },
        )

    def log_result(self, result: CommandResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "shell": result.shell,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "output_capped": result.output_capped,
                "duration_seconds": round(result.duration_seconds, 4),
                "executed": result.executed,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()


def sanitize_for_log(command: str) -> str:
    """Mask secret-looking arguments before a command is logged."""
    sanitized = command
    for pattern in _SECRET_PATTERNS:
        sanitized = pattern.sub(r"\1***", sanitized)
    return sanitized


def normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", locale.getpreferredencoding(False), "cp1252"):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
