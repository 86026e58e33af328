"""Platform-aware command dispatch with timeouts, output caps and auditing."""

from __future__ import annotations

import logging
import re
import shlex
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from relay.safety.classifier import RAW_COMMAND_SUBJECT, Verdict
from relay.shell import DEFAULT_OUTPUT_CAP_BYTES, CommandResult, ShellAdapter, create_shell_adapter
from relay.skills.registry import HandlerKind, Platform, RiskClass, Skill, SkillRegistry

from .audit import AuditSink
from .models import ErrorKind, ExecutionResult
from .utilities import UTILITY_HANDLERS, UtilityHandler

LOGGER = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 30.0
MAX_ACTION_TIMEOUT = 60.0
DEFAULT_RESTART_DELAY = 1.0

_UNSAFE_NAME_CHARACTERS = re.compile(r"[^A-Za-z0-9_.\-]")
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
_BOOLEAN_VALUES = {"true", "false", "1", "0", "yes", "no", "on", "off"}
# pkill exits 1 and taskkill 128 when nothing matched the name
_NO_MATCH_RETURN_CODES = {1, 128}

RunnerFactory = Callable[[Platform], ShellAdapter]


def sanitize_name(value: str) -> str:
    """Strip every character outside ``[A-Za-z0-9_.-]``; never rejects."""
    return _UNSAFE_NAME_CHARACTERS.sub("", value)


def quote_argument(value: str, platform: Platform) -> str:
    if platform is Platform.WINDOWS:
        return '"' + value.replace('"', "") + '"'
    return shlex.quote(value)


def render_command(
    template: str,
    skill: Skill,
    parameters: Mapping[str, str],
    platform: Platform,
) -> str:
    """Substitute ``{{name}}`` placeholders with sanitized or quoted values."""

    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        value = parameters.get(key, "")
        declared = skill.parameter(key)
        if declared is not None and declared.type == "name":
            return sanitize_name(value)
        if declared is not None and declared.type == "number":
            return value
        return quote_argument(value, platform)

    return _PLACEHOLDER.sub(substitute, template)


@dataclass(slots=True)
class _Outcome:
    success: bool
    output: str = ""
    error_kind: ErrorKind = ErrorKind.NONE
    error: str | None = None
    stderr: str | None = None
    command_text: str = ""


_Handler = Callable[[Skill, Mapping[str, str], Platform, float], _Outcome]


class CommandDispatcher:
    """Runs approved skills and raw commands.

    Every entry point takes the ``Verdict`` that cleared the request and refuses
    to run anything the verdict does not explicitly allow.
    """

    def __init__(
        self,
        registry: SkillRegistry,
        audit: AuditSink,
        *,
        platform: Platform | None = None,
        runner_factory: RunnerFactory = create_shell_adapter,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        action_timeout: float = MAX_ACTION_TIMEOUT,
        output_cap_bytes: int = DEFAULT_OUTPUT_CAP_BYTES,
        working_directory: str | None = None,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        utilities: Mapping[str, UtilityHandler] = UTILITY_HANDLERS,
    ) -> None:
        self.registry = registry
        self.audit = audit
        self.platform = platform or Platform.current()
        self.runner_factory = runner_factory
        self.query_timeout = query_timeout
        self.action_timeout = min(action_timeout, MAX_ACTION_TIMEOUT)
        self.output_cap_bytes = output_cap_bytes
        self.working_directory = working_directory
        self.restart_delay = restart_delay
        self.sleep = sleep
        self.utilities = utilities
        self._runners: dict[Platform, ShellAdapter] = {}
        self._handlers = self._build_handler_table()

    def execute(
        self,
        skill: Skill,
        bound_parameters: Mapping[str, str],
        platform: Platform | None = None,
        *,
        verdict: Verdict,
    ) -> ExecutionResult:
        target = platform or self.platform
        started = time.monotonic()
        command_text = (
            bound_parameters.get("command", "") if skill.handler is HandlerKind.RAW_COMMAND else None
        )
        if not verdict.permits(skill.id, command_text):
            outcome = _Outcome(
                success=False,
                error_kind=ErrorKind.BLOCKED,
                error=f"Refused to run {skill.id}: {verdict.reason}",
            )
            return self._finish(skill.id, outcome, started)

        handler = self._handlers.get(skill.id)
        if handler is None:
            outcome = _Outcome(
                success=False,
                error_kind=ErrorKind.RUNTIME_ERROR,
                error=f"No handler registered for {skill.id}",
            )
            return self._finish(skill.id, outcome, started)

        try:
            parameters = self._bind(skill, bound_parameters)
            outcome = handler(skill, parameters, target, self._timeout_for(skill))
        except (ValueError, KeyError, OSError) as exc:
            LOGGER.error("dispatch_handler_error", extra={"skill": skill.id, "error": str(exc)})
            outcome = _Outcome(
                success=False,
                error_kind=ErrorKind.RUNTIME_ERROR,
                error=_describe_error(exc),
            )
        return self._finish(skill.id, outcome, started)

    def execute_raw(
        self,
        command_text: str,
        timeout_ms: int,
        output_cap_bytes: int,
        *,
        verdict: Verdict,
    ) -> ExecutionResult:
        started = time.monotonic()
        if not verdict.permits(RAW_COMMAND_SUBJECT, command_text):
            outcome = _Outcome(
                success=False,
                error_kind=ErrorKind.BLOCKED,
                error=f"Refused to run custom command: {verdict.reason}",
                command_text=command_text,
            )
            return self._finish(RAW_COMMAND_SUBJECT, outcome, started)

        timeout = min(max(timeout_ms, 1) / 1000.0, MAX_ACTION_TIMEOUT)
        outcome = self._run_shell(
            command_text, self.platform, timeout, output_cap_bytes=output_cap_bytes
        )
        return self._finish(RAW_COMMAND_SUBJECT, outcome, started)

    def _build_handler_table(self) -> Mapping[str, _Handler]:
        by_kind: dict[HandlerKind, _Handler] = {
            HandlerKind.TEMPLATE: self._run_template,
            HandlerKind.KILL_PROCESS: self._kill_process,
            HandlerKind.RESTART_APP: self._restart_app,
            HandlerKind.RAW_COMMAND: self._run_raw_skill,
            HandlerKind.IN_PROCESS: self._run_in_process,
        }
        table: dict[str, _Handler] = {}
        for skill in self.registry.list_all():
            if skill.handler is HandlerKind.IN_PROCESS and skill.id not in self.utilities:
                msg = f"No in-process handler for skill {skill.id}"
                raise ValueError(msg)
            table[skill.id] = by_kind[skill.handler]
        return MappingProxyType(table)

    def _timeout_for(self, skill: Skill) -> float:
        if skill.risk is RiskClass.SAFE:
            return self.query_timeout
        return self.action_timeout

    @staticmethod
    def _bind(skill: Skill, bound_parameters: Mapping[str, str]) -> dict[str, str]:
        parameters = dict(bound_parameters)
        for declared in skill.parameters:
            value = parameters.get(declared.name)
            if value is None or value == "":
                if declared.default is not None:
                    parameters[declared.name] = declared.default
                    continue
                if declared.required:
                    msg = f"Missing required parameter: {declared.name}"
                    raise ValueError(msg)
                continue
            if declared.type == "name" and not sanitize_name(value):
                msg = f"Parameter {declared.name} has no usable characters: {value!r}"
                raise ValueError(msg)
            if declared.type == "number" and not _NUMBER.match(value.strip()):
                msg = f"Parameter {declared.name} must be a number, got {value!r}"
                raise ValueError(msg)
            if declared.type == "boolean" and value.strip().lower() not in _BOOLEAN_VALUES:
                msg = f"Parameter {declared.name} must be true or false, got {value!r}"
                raise ValueError(msg)
        return parameters

    def _runner(self, platform: Platform) -> ShellAdapter:
        runner = self._runners.get(platform)
        if runner is None:
            runner = self.runner_factory(platform)
            self._runners[platform] = runner
        return runner

    def _render(
        self, skill: Skill, parameters: Mapping[str, str], platform: Platform
    ) -> str | None:
        if (
            skill.variants
            and not skill.command_templates
            and parameters.get(skill.variant_parameter or "") not in skill.variants
        ):
            value = parameters.get(skill.variant_parameter or "")
            msg = f"Unknown {skill.variant_parameter}: {value}"
            raise ValueError(msg)
        template = self.registry.resolve_command(skill, platform, parameters)
        if template is None:
            return None
        return render_command(template, skill, parameters, platform)

    def _run_template(
        self, skill: Skill, parameters: Mapping[str, str], platform: Platform, timeout: float
    ) -> _Outcome:
        command = self._render(skill, parameters, platform)
        if command is None:
            return _unsupported(skill, platform)
        return self._run_shell(command, platform, timeout)

    def _kill_process(
        self, skill: Skill, parameters: Mapping[str, str], platform: Platform, timeout: float
    ) -> _Outcome:
        command = self._render(skill, parameters, platform)
        if command is None:
            return _unsupported(skill, platform)
        result = self._runner(platform).execute(
            command,
            cwd=self.working_directory,
            timeout=timeout,
            output_cap_bytes=self.output_cap_bytes,
        )
        name = sanitize_name(parameters.get("processName", ""))
        if (
            not result.timed_out
            and result.returncode in _NO_MATCH_RETURN_CODES
            and not result.stdout.strip()
        ):
            return _Outcome(success=True, output=f"{name} is not running", command_text=command)
        outcome = self._interpret(result, timeout, self.output_cap_bytes)
        if outcome.success and not outcome.output:
            outcome.output = f"{name} terminated"
        return outcome

    def _restart_app(
        self, skill: Skill, parameters: Mapping[str, str], platform: Platform, timeout: float
    ) -> _Outcome:
        kill_skill = self.registry.get("kill-process")
        open_skill = self.registry.get("open-app")
        if kill_skill is None or open_skill is None:
            return _unsupported(skill, platform)

        name = parameters["appName"]
        closed = self._kill_process(kill_skill, {"processName": name}, platform, timeout)
        if not closed.success:
            LOGGER.warning(
                "restart_close_failed", extra={"app": sanitize_name(name), "error": closed.error}
            )
        self.sleep(self.restart_delay)
        opened = self._run_template(open_skill, {"appName": name}, platform, timeout)
        command_text = "; ".join(
            part for part in (closed.command_text, opened.command_text) if part
        )
        if not opened.success:
            return _Outcome(
                success=False,
                error_kind=opened.error_kind,
                error=f"Closed {sanitize_name(name)} but failed to reopen it: {opened.error}",
                stderr=opened.stderr,
                command_text=command_text,
            )
        return _Outcome(
            success=True,
            output=f"Restarted {sanitize_name(name)} successfully",
            command_text=command_text,
        )

    def _run_raw_skill(
        self, skill: Skill, parameters: Mapping[str, str], platform: Platform, timeout: float
    ) -> _Outcome:
        return self._run_shell(parameters["command"], platform, timeout)

    def _run_in_process(
        self, skill: Skill, parameters: Mapping[str, str], platform: Platform, timeout: float
    ) -> _Outcome:
        handler = self.utilities[skill.id]
        command_text = f"<in-process {skill.id}>"
        box: dict[str, object] = {}

        def work() -> None:
            try:
                box["output"] = handler(parameters)
            except Exception as exc:  # re-raised on the dispatching thread
                box["error"] = exc

        # a stuck handler cannot be interrupted; the daemon worker is abandoned
        worker = threading.Thread(target=work, name=f"relay-{skill.id}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            LOGGER.warning(
                "in_process_timeout", extra={"skill": skill.id, "timeout_seconds": timeout}
            )
            return _Outcome(
                success=False,
                error_kind=ErrorKind.TIMEOUT,
                error=f"Command timed out after {timeout:g}s",
                command_text=command_text,
            )
        error = box.get("error")
        if isinstance(error, Exception):
            raise error
        return _Outcome(success=True, output=str(box["output"]).strip(), command_text=command_text)

    def _run_shell(
        self,
        command: str,
        platform: Platform,
        timeout: float,
        *,
        output_cap_bytes: int | None = None,
    ) -> _Outcome:
        cap = self.output_cap_bytes if output_cap_bytes is None else output_cap_bytes
        result = self._runner(platform).execute(
            command,
            cwd=self.working_directory,
            timeout=timeout,
            output_cap_bytes=cap,
        )
        return self._interpret(result, timeout, cap)

    @staticmethod
    def _interpret(result: CommandResult, timeout: float, cap: int) -> _Outcome:
        stdout = result.stdout.strip()
        stderr = result.stderr.strip() or None
        if result.timed_out:
            return _Outcome(
                success=False,
                output=stdout,
                error_kind=ErrorKind.TIMEOUT,
                error=f"Command timed out after {timeout:g}s",
                stderr=stderr,
                command_text=result.command,
            )
        if result.output_capped:
            return _Outcome(
                success=False,
                output=stdout,
                error_kind=ErrorKind.TIMEOUT,
                error=f"Command output exceeded {cap} bytes and was stopped",
                stderr=stderr,
                command_text=result.command,
            )
        if result.returncode != 0:
            return _Outcome(
                success=False,
                output=stdout,
                error_kind=ErrorKind.RUNTIME_ERROR,
                error=stderr or f"Command exited with status {result.returncode}",
                stderr=stderr,
                command_text=result.command,
            )
        return _Outcome(success=True, output=stdout, stderr=stderr, command_text=result.command)

    def _finish(self, action_type: str, outcome: _Outcome, started: float) -> ExecutionResult:
        duration_ms = int((time.monotonic() - started) * 1000)
        self.audit.record(
            action_type=action_type,
            command_text=outcome.command_text,
            success=outcome.success,
            error_message=outcome.error,
        )
        LOGGER.info(
            "dispatch_finished",
            extra={
                "action_type": action_type,
                "success": outcome.success,
                "error_kind": outcome.error_kind.value,
                "duration_ms": duration_ms,
            },
        )
        return ExecutionResult(
            success=outcome.success,
            output=outcome.output,
            error_kind=outcome.error_kind,
            duration_ms=duration_ms,
            error=outcome.error,
            stderr=outcome.stderr,
        )


def _unsupported(skill: Skill, platform: Platform) -> _Outcome:
    return _Outcome(
        success=False,
        error_kind=ErrorKind.PLATFORM_UNSUPPORTED,
        error=f"{skill.name} is not supported on {platform.value}",
    )


def _describe_error(exc: Exception) -> str:
    if isinstance(exc, KeyError):
        return f"Missing parameter: {exc.args[0]}"
    if isinstance(exc, FileNotFoundError):
        return f"File not found: {exc.filename}"
    return str(exc)
