from __future__ import annotations

import os
import threading
from collections.abc import Callable, Mapping

import pytest

from relay.actions.parser import parse_actions
from relay.dispatch import AuditSink, CommandDispatcher, ErrorKind, render_command, sanitize_name
from relay.safety.classifier import SafetyClassifier
from relay.shell import CommandResult
from relay.skills import (
    HandlerKind,
    Platform,
    RiskClass,
    Skill,
    SkillCategory,
    SkillParameter,
    SkillRegistry,
    default_registry,
)

TOP_PROCESSES_OUTPUT = (
    "USER       PID %MEM COMMAND\n"
    "alice     4242 31.5 chrome\n"
    "alice     1337 12.0 slack\n"
)


class FakeRunner:
    name = "fake"

    def __init__(
        self,
        *,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        timed_out: bool = False,
        output_capped: bool = False,
        respond: Callable[[str], CommandResult] | None = None,
    ) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.timed_out = timed_out
        self.output_capped = output_capped
        self.respond = respond
        self.commands: list[str] = []
        self.calls: list[dict[str, object]] = []

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        output_cap_bytes: int = 0,
    ) -> CommandResult:
        self.commands.append(command)
        self.calls.append({"cwd": cwd, "timeout": timeout, "output_cap_bytes": output_cap_bytes})
        if self.respond is not None:
            return self.respond(command)
        return CommandResult(
            command=command,
            shell=self.name,
            returncode=self.returncode,
            stdout=self.stdout,
            stderr=self.stderr,
            timed_out=self.timed_out,
            output_capped=self.output_capped,
        )


def _dispatcher(
    runner: FakeRunner,
    *,
    registry: SkillRegistry | None = None,
    audit: AuditSink | None = None,
    platforms: list[Platform] | None = None,
    **kwargs: object,
) -> CommandDispatcher:
    requested = platforms if platforms is not None else []

    def factory(platform: Platform) -> FakeRunner:
        requested.append(platform)
        return runner

    return CommandDispatcher(
        registry if registry is not None else default_registry(),
        audit if audit is not None else AuditSink(),
        platform=Platform.LINUX,
        runner_factory=factory,  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def test_scenario_top_processes_on_linux_stub() -> None:
    registry = SkillRegistry(
        [
            Skill(
                id="query-system",
                name="Query System Info",
                category=SkillCategory.SYSTEM,
                description="Get system information",
                parameters=(SkillParameter("queryType", required=True),),
                command_templates={Platform.LINUX: "ps aux --sort=-%mem | head -10"},
            )
        ]
    )
    runner = FakeRunner(stdout=f"\n{TOP_PROCESSES_OUTPUT}\n\n")
    audit = AuditSink()
    dispatcher = _dispatcher(runner, registry=registry, audit=audit)
    parsed = parse_actions(
        'Let me check. [ACTION: type="query-system" queryType="top-processes"]'
    )
    request = parsed.actions[0]
    verdict = SafetyClassifier(registry).classify(request)

    result = dispatcher.execute(
        registry.lookup(request.skill_id), request.bound_parameters, Platform.LINUX, verdict=verdict
    )

    assert result.success is True
    assert result.error_kind is ErrorKind.NONE
    assert result.output == TOP_PROCESSES_OUTPUT.strip()
    assert len(result.output.splitlines()) == 3
    assert runner.commands == ["ps aux --sort=-%mem | head -10"]
    assert [record.action_type for record in audit.records()] == ["query-system"]


def test_scenario_kill_process_name_is_sanitized_not_rejected() -> None:
    registry = default_registry()
    runner = FakeRunner(stdout="")
    dispatcher = _dispatcher(runner, registry=registry)
    request = parse_actions('[ACTION: type="kill-process" processName="Chrome;rm -rf ~"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)

    result = dispatcher.execute(
        registry.lookup("kill-process"), request.bound_parameters, Platform.LINUX, verdict=verdict
    )

    assert result.success is True
    assert runner.commands == ['pkill -x "Chromerm-rf" || pkill "Chromerm-rf"']
    assert sanitize_name("Chrome;rm -rf ~") == "Chromerm-rf"


@pytest.mark.parametrize(
    ("skill_id", "parameter"), [("kill-process", "processName"), ("restart-app", "appName")]
)
def test_name_with_nothing_left_after_sanitizing_runs_nothing(
    skill_id: str, parameter: str
) -> None:
    registry = default_registry()
    runner = FakeRunner()
    audit = AuditSink()
    dispatcher = _dispatcher(runner, registry=registry, audit=audit, sleep=lambda _s: None)
    request = parse_actions(f'[ACTION: type="{skill_id}" {parameter}=";;; "]').actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)

    result = dispatcher.execute(
        registry.lookup(skill_id), request.bound_parameters, Platform.LINUX, verdict=verdict
    )

    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert result.error == f"Parameter {parameter} has no usable characters: ';;; '"
    assert runner.commands == []
    assert len(audit) == 1


def test_unsupported_platform_spawns_no_process() -> None:
    registry = default_registry()
    runner = FakeRunner()
    requested: list[Platform] = []
    audit = AuditSink()
    dispatcher = _dispatcher(runner, registry=registry, audit=audit, platforms=requested)
    skill = registry.lookup("clear-caches")
    verdict = SafetyClassifier(registry).classify(
        parse_actions('[ACTION: type="clear-caches"]').actions[0], approved=True
    )

    result = dispatcher.execute(skill, {}, Platform.LINUX, verdict=verdict)

    assert result.success is False
    assert result.error_kind is ErrorKind.PLATFORM_UNSUPPORTED
    assert runner.commands == []
    assert requested == []
    assert len(audit) == 1
    assert audit.records()[0].success is False


def test_dispatch_refuses_without_matching_allowed_verdict() -> None:
    registry = default_registry()
    classifier = SafetyClassifier(registry)
    runner = FakeRunner()
    audit = AuditSink()
    dispatcher = _dispatcher(runner, registry=registry, audit=audit)
    kill = parse_actions('[ACTION: type="kill-process" processName="Safari"]').actions[0]
    query = parse_actions('[ACTION: type="query-system" queryType="uptime"]').actions[0]

    unapproved = dispatcher.execute(
        registry.lookup("kill-process"),
        kill.bound_parameters,
        verdict=classifier.classify(kill),
    )
    borrowed = dispatcher.execute(
        registry.lookup("kill-process"),
        kill.bound_parameters,
        verdict=classifier.classify(query),
    )

    assert unapproved.error_kind is ErrorKind.BLOCKED
    assert borrowed.error_kind is ErrorKind.BLOCKED
    assert runner.commands == []
    assert len(audit) == 2


def test_timeout_and_output_cap_map_to_timeout() -> None:
    registry = default_registry()
    verdict = SafetyClassifier(registry).classify(
        parse_actions('[ACTION: type="run-deep-scan"]').actions[0]
    )
    skill = registry.lookup("run-deep-scan")

    timed_out = _dispatcher(FakeRunner(returncode=124, timed_out=True)).execute(
        skill, {}, verdict=verdict
    )
    capped = _dispatcher(FakeRunner(returncode=-9, output_capped=True)).execute(
        skill, {}, verdict=verdict
    )

    assert timed_out.error_kind is ErrorKind.TIMEOUT
    assert "timed out after 30s" in (timed_out.error or "")
    assert capped.error_kind is ErrorKind.TIMEOUT
    assert "exceeded" in (capped.error or "")


def test_nonzero_exit_is_runtime_error_and_stderr_alone_is_not() -> None:
    registry = default_registry()
    skill = registry.lookup("check-network-speed")
    verdict = SafetyClassifier(registry).classify(
        parse_actions('[ACTION: type="check-network-speed"]').actions[0]
    )

    failed = _dispatcher(FakeRunner(stderr="ping: unknown host\n", returncode=2)).execute(
        skill, {}, verdict=verdict
    )
    warned = _dispatcher(FakeRunner(stdout=" 4 packets \n", stderr="warning: slow")).execute(
        skill, {}, verdict=verdict
    )

    assert failed.success is False
    assert failed.error_kind is ErrorKind.RUNTIME_ERROR
    assert failed.error == "ping: unknown host"
    assert warned.success is True
    assert warned.output == "4 packets"
    assert warned.stderr == "warning: slow"


def test_safe_skills_use_query_timeout_and_actions_use_capped_action_timeout() -> None:
    registry = default_registry()
    classifier = SafetyClassifier(registry)
    runner = FakeRunner()
    dispatcher = _dispatcher(
        runner, registry=registry, query_timeout=12.0, action_timeout=600.0
    )
    query = parse_actions('[ACTION: type="query-system" queryType="uptime"]').actions[0]
    flush = parse_actions('[ACTION: type="flush-dns"]').actions[0]

    dispatcher.execute(
        registry.lookup("query-system"), query.bound_parameters, verdict=classifier.classify(query)
    )
    dispatcher.execute(
        registry.lookup("flush-dns"), {}, verdict=classifier.classify(flush, approved=True)
    )

    assert [call["timeout"] for call in runner.calls] == [12.0, 60.0]


def test_kill_process_that_is_not_running_succeeds() -> None:
    registry = default_registry()
    request = parse_actions('[ACTION: type="kill-process" processName="Firefox"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)

    result = _dispatcher(FakeRunner(returncode=1)).execute(
        registry.lookup("kill-process"), request.bound_parameters, verdict=verdict
    )

    assert result.success is True
    assert result.output == "Firefox is not running"


def test_restart_app_kills_waits_and_reopens_with_one_audit_record() -> None:
    registry = default_registry()
    runner = FakeRunner()
    audit = AuditSink()
    delays: list[float] = []
    dispatcher = _dispatcher(
        runner, registry=registry, audit=audit, restart_delay=1.5, sleep=delays.append
    )
    request = parse_actions('[ACTION: type="restart-app" appName="Spotify&"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)

    result = dispatcher.execute(
        registry.lookup("restart-app"), request.bound_parameters, verdict=verdict
    )

    assert result.success is True
    assert runner.commands == [
        'pkill -x "Spotify" || pkill "Spotify"',
        'setsid "Spotify" >/dev/null 2>&1 &',
    ]
    assert delays == [1.5]
    assert [record.action_type for record in audit.records()] == ["restart-app"]


def test_restart_app_reopens_even_when_closing_fails() -> None:
    registry = default_registry()

    def respond(command: str) -> CommandResult:
        failed = command.startswith("pkill")
        return CommandResult(
            command=command,
            shell="fake",
            returncode=2 if failed else 0,
            stdout="",
            stderr="pkill: operation not permitted" if failed else "",
        )

    runner = FakeRunner(respond=respond)
    dispatcher = _dispatcher(runner, registry=registry, sleep=lambda _s: None)
    request = parse_actions('[ACTION: type="restart-app" appName="Slack"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)

    result = dispatcher.execute(
        registry.lookup("restart-app"), request.bound_parameters, verdict=verdict
    )

    assert result.success is True
    assert result.output == "Restarted Slack successfully"
    assert runner.commands[-1] == 'setsid "Slack" >/dev/null 2>&1 &'


def test_in_process_utility_runs_without_shell() -> None:
    registry = default_registry()
    runner = FakeRunner()
    audit = AuditSink()
    dispatcher = _dispatcher(runner, registry=registry, audit=audit)
    request = parse_actions('[ACTION: type="base64-encode" text="relay"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request)

    result = dispatcher.execute(
        registry.lookup("base64-encode"), request.bound_parameters, verdict=verdict
    )

    assert result.success is True
    assert result.output == "cmVsYXk="
    assert runner.commands == []
    assert len(audit) == 1


def test_stuck_in_process_handler_times_out() -> None:
    release = threading.Event()

    def wait_forever(_params: Mapping[str, str]) -> str:
        release.wait()
        return "done"

    registry = SkillRegistry(
        [
            Skill(
                id="slow-utility",
                name="Slow Utility",
                category=SkillCategory.UTILITY,
                description="never finishes",
                handler=HandlerKind.IN_PROCESS,
            )
        ]
    )
    audit = AuditSink()
    dispatcher = _dispatcher(
        FakeRunner(),
        registry=registry,
        audit=audit,
        query_timeout=0.05,
        utilities={"slow-utility": wait_forever},
    )
    request = parse_actions('[ACTION: type="slow-utility"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request)

    try:
        result = dispatcher.execute(
            registry.lookup("slow-utility"), request.bound_parameters, verdict=verdict
        )
    finally:
        release.set()

    assert result.success is False
    assert result.error_kind is ErrorKind.TIMEOUT
    assert result.error == "Command timed out after 0.05s"
    assert len(audit) == 1


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="named pipes need a POSIX system")
def test_file_hash_on_named_pipe_fails_fast(tmp_path) -> None:
    pipe = tmp_path / "pipe"
    os.mkfifo(pipe)
    registry = default_registry()
    dispatcher = _dispatcher(FakeRunner(), registry=registry, query_timeout=0.5)
    request = parse_actions(f'[ACTION: type="file-hash" filePath="{pipe}"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request)

    result = dispatcher.execute(
        registry.lookup("file-hash"), request.bound_parameters, verdict=verdict
    )

    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert "Not a regular file" in (result.error or "")


def test_missing_required_parameter_is_runtime_error() -> None:
    registry = default_registry()
    request = parse_actions('[ACTION: type="kill-process"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)
    runner = FakeRunner()

    result = _dispatcher(runner).execute(
        registry.lookup("kill-process"), request.bound_parameters, verdict=verdict
    )

    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert result.error == "Missing required parameter: processName"
    assert runner.commands == []


def test_unknown_query_type_is_runtime_error() -> None:
    registry = default_registry()
    request = parse_actions('[ACTION: type="query-system" queryType="bogus"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request)

    result = _dispatcher(FakeRunner()).execute(
        registry.lookup("query-system"), request.bound_parameters, verdict=verdict
    )

    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert result.error == "Unknown queryType: bogus"


def test_number_parameters_are_validated() -> None:
    registry = default_registry()
    request = parse_actions(
        '[ACTION: type="split-pdf" inputPath="a.pdf" firstPage="1; rm x" lastPage="2"]'
    ).actions[0]
    verdict = SafetyClassifier(registry).classify(request, approved=True)
    runner = FakeRunner()

    result = _dispatcher(runner).execute(
        registry.lookup("split-pdf"), request.bound_parameters, verdict=verdict
    )

    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert "must be a number" in (result.error or "")
    assert runner.commands == []


def test_runner_os_error_becomes_runtime_error() -> None:
    registry = default_registry()

    def explode(_command: str) -> CommandResult:
        raise OSError("resource temporarily unavailable")

    request = parse_actions('[ACTION: type="query-system" queryType="uptime"]').actions[0]
    verdict = SafetyClassifier(registry).classify(request)
    audit = AuditSink()

    result = _dispatcher(FakeRunner(respond=explode), audit=audit).execute(
        registry.lookup("query-system"), request.bound_parameters, verdict=verdict
    )

    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert result.error == "resource temporarily unavailable"
    assert len(audit) == 1


def test_execute_raw_runs_approved_command_with_limits() -> None:
    registry = default_registry()
    classifier = SafetyClassifier(registry)
    runner = FakeRunner(stdout="ok\n")
    audit = AuditSink()
    dispatcher = _dispatcher(runner, registry=registry, audit=audit)

    result = dispatcher.execute_raw(
        "echo ok", 5000, 2048, verdict=classifier.classify("echo ok", approved=True)
    )
    slow = dispatcher.execute_raw(
        "sleep 1", 120_000, 2048, verdict=classifier.classify("sleep 1", approved=True)
    )

    assert result.success is True
    assert result.output == "ok"
    assert runner.calls[0] == {"cwd": None, "timeout": 5.0, "output_cap_bytes": 2048}
    assert runner.calls[1]["timeout"] == 60.0
    assert slow.success is True
    assert [record.action_type for record in audit.records()] == ["custom", "custom"]
    assert audit.records()[0].command_text == "echo ok"


def test_execute_raw_refuses_blocked_or_unapproved_commands() -> None:
    classifier = SafetyClassifier(default_registry())
    runner = FakeRunner()
    dispatcher = _dispatcher(runner)

    blocked = dispatcher.execute_raw(
        "sudo rm -rf /", 1000, 1024, verdict=classifier.classify("sudo rm -rf /", approved=True)
    )
    unapproved = dispatcher.execute_raw("ls", 1000, 1024, verdict=classifier.classify("ls"))
    swapped = dispatcher.execute_raw(
        "ls; reboot", 1000, 1024, verdict=classifier.classify("ls", approved=True)
    )

    assert blocked.error_kind is ErrorKind.BLOCKED
    assert unapproved.error_kind is ErrorKind.BLOCKED
    assert swapped.error_kind is ErrorKind.BLOCKED
    assert runner.commands == []


def test_render_command_quotes_free_text_per_platform() -> None:
    skill = Skill(
        id="show-file",
        name="Show File",
        category=SkillCategory.UTILITY,
        description="print a file",
        parameters=(SkillParameter("path", type="path", required=True),),
        command_templates={Platform.LINUX: "cat {{path}}", Platform.WINDOWS: "type {{path}}"},
    )
    parameters = {"path": 'my "notes";rm.txt'}

    assert render_command("cat {{path}}", skill, parameters, Platform.LINUX) == (
        "cat 'my \"notes\";rm.txt'"
    )
    assert render_command("type {{path}}", skill, parameters, Platform.WINDOWS) == (
        'type "my notes;rm.txt"'
    )


def test_in_process_skill_without_handler_is_rejected_at_startup() -> None:
    registry = SkillRegistry(
        [
            Skill(
                id="make-qr-code",
                name="QR Code",
                category=SkillCategory.UTILITY,
                description="qr",
                risk=RiskClass.SAFE,
                handler=HandlerKind.IN_PROCESS,
            )
        ]
    )

    with pytest.raises(ValueError, match="No in-process handler for skill make-qr-code"):
        _dispatcher(FakeRunner(), registry=registry)
