from __future__ import annotations

import json
from collections.abc import Sequence

import pytest

from relay.agent.loop import MAX_STEPS_MESSAGE, OrchestrationLoop
from relay.agent.models import LoopPhase, TerminationReason
from relay.dispatch import AuditSink, CommandDispatcher, ErrorKind
from relay.errors import BackendUnreachable, SessionTerminated
from relay.llm.client import ChatMessage
from relay.safety.classifier import SafetyClassifier
from relay.shell import CommandResult
from relay.skills import Platform, default_registry

UPTIME_ACTION = 'Checking uptime. [ACTION: type="query-system" queryType="uptime"]'


class FakeRunner:
    name = "fake"

    def __init__(self, stdout: str = "up 3 days") -> None:
        self.stdout = stdout
        self.commands: list[str] = []

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        output_cap_bytes: int = 0,
    ) -> CommandResult:
        self.commands.append(command)
        return CommandResult(
            command=command, shell=self.name, returncode=0, stdout=self.stdout, stderr=""
        )


class FakeBackend:
    model = "fake-model"

    def __init__(self, responses: Sequence[str | Exception], *, repeat_last: bool = False) -> None:
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.calls = 0
        self.histories: list[list[ChatMessage]] = []
        self.system_prompts: list[str] = []

    def complete(self, system_prompt: str, history: Sequence[ChatMessage]) -> str:
        self.system_prompts.append(system_prompt)
        self.histories.append(list(history))
        index = self.calls
        self.calls += 1
        if index >= len(self.responses):
            if not self.repeat_last:
                raise AssertionError("backend called more often than expected")
            index = len(self.responses) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


def _loop(
    backend: FakeBackend,
    tmp_path,
    *,
    runner: FakeRunner | None = None,
    audit: AuditSink | None = None,
) -> tuple[OrchestrationLoop, FakeRunner]:
    registry = default_registry()
    fake_runner = runner or FakeRunner()
    dispatcher = CommandDispatcher(
        registry,
        audit if audit is not None else AuditSink(),
        platform=Platform.LINUX,
        runner_factory=lambda _platform: fake_runner,  # type: ignore[arg-type,return-value]
    )
    loop = OrchestrationLoop(
        backend=backend,
        registry=registry,
        classifier=SafetyClassifier(registry),
        dispatcher=dispatcher,
        platform=Platform.LINUX,
        log_dir=tmp_path,
    )
    return loop, fake_runner


def test_ten_action_responses_terminate_with_summary(tmp_path) -> None:
    backend = FakeBackend([UPTIME_ACTION], repeat_last=True)
    audit = AuditSink()
    loop, runner = _loop(backend, tmp_path, audit=audit)

    outcome = loop.start("My computer is slow")

    assert loop.state is not None
    assert loop.state.step_count == 10
    assert loop.state.termination_reason is TerminationReason.MAX_STEPS_REACHED
    assert loop.state.phase is LoopPhase.TERMINATED
    assert outcome.termination_reason is TerminationReason.MAX_STEPS_REACHED
    assert outcome.messages[-1] == MAX_STEPS_MESSAGE
    assert backend.calls == 10
    assert len(runner.commands) == 10
    assert len(audit) == 10
    assert loop.state.can_dispatch is False


def test_conclusion_without_action_tag(tmp_path) -> None:
    backend = FakeBackend([UPTIME_ACTION, "Your machine has been up for 3 days. Try a restart."])
    loop, runner = _loop(backend, tmp_path)

    outcome = loop.start("Why is it slow?")

    assert outcome.phase is LoopPhase.CONCLUDED
    assert outcome.termination_reason is TerminationReason.ROOT_CAUSE_FOUND
    assert outcome.messages == ["Checking uptime. ", "Your machine has been up for 3 days. Try a restart."]
    assert runner.commands == ["uptime"]
    assert len(outcome.steps) == 1
    assert outcome.steps[0].result.success is True
    second_history = backend.histories[1]
    assert second_history[-1].role == "user"
    assert second_history[-1].content == (
        '[SYSTEM_RESULT: queryType="uptime" output="up 3 days"]'
    )
    assert "AVAILABLE ACTIONS" in backend.system_prompts[0]


def test_only_first_action_is_dispatched_per_step(tmp_path) -> None:
    backend = FakeBackend(
        [
            UPTIME_ACTION + ' [ACTION: type="query-system" queryType="disk-usage"]',
            "All good.",
        ]
    )
    loop, runner = _loop(backend, tmp_path)

    loop.start("check things")

    assert runner.commands == ["uptime"]


def test_approval_required_action_suspends_until_approved(tmp_path) -> None:
    backend = FakeBackend(
        [
            'Chrome is hogging memory. [ACTION: type="kill-process" processName="chrome"]',
            "Closed Chrome. Things should be faster now.",
        ]
    )
    loop, runner = _loop(backend, tmp_path)

    suspended = loop.start("slow")

    assert suspended.pending is not None
    assert suspended.pending.request.skill_id == "kill-process"
    assert suspended.phase is LoopPhase.AWAITING_APPROVAL
    assert runner.commands == []
    assert backend.calls == 1

    resumed = loop.approve()

    assert runner.commands == ['pkill -x "chrome" || pkill "chrome"']
    assert resumed.phase is LoopPhase.CONCLUDED
    assert resumed.steps[0].action_type == "kill-process"
    assert loop.state is not None
    assert loop.state.step_count == 1


def test_declined_action_is_reported_back(tmp_path) -> None:
    backend = FakeBackend(
        [
            '[ACTION: type="empty-trash"]',
            "No problem, I left your trash alone.",
        ]
    )
    loop, runner = _loop(backend, tmp_path)

    loop.start("free up space")
    outcome = loop.decline()

    assert runner.commands == []
    assert outcome.steps[0].result.error_kind is ErrorKind.BLOCKED
    assert "declined" in outcome.steps[0].system_result
    assert 'error="The user declined to run Empty Trash."' in backend.histories[1][-1].content


def test_blocked_action_becomes_synthetic_failure(tmp_path) -> None:
    backend = FakeBackend(
        ['[ACTION: type="format-drive" drive="C:"]', "I can't do that, sorry."]
    )
    audit = AuditSink()
    loop, runner = _loop(backend, tmp_path, audit=audit)

    outcome = loop.start("wipe everything")

    assert runner.commands == []
    assert len(audit) == 0
    assert outcome.steps[0].verdict.blocked
    assert outcome.steps[0].result.error_kind is ErrorKind.BLOCKED
    assert "never allowed" in backend.histories[1][-1].content
    assert outcome.phase is LoopPhase.CONCLUDED


def test_dispatch_failure_is_folded_into_next_turn(tmp_path) -> None:
    backend = FakeBackend(
        ['[ACTION: type="query-system" queryType="not-a-query"]', "Let me try something else."]
    )
    loop, _runner = _loop(backend, tmp_path)

    outcome = loop.start("what is wrong")

    assert outcome.steps[0].result.error_kind is ErrorKind.RUNTIME_ERROR
    assert backend.histories[1][-1].content == (
        '[SYSTEM_RESULT: queryType="not-a-query" error="Unknown queryType: not-a-query"]'
    )


def test_backend_unreachable_propagates_and_marks_state_unresumable(tmp_path) -> None:
    backend = FakeBackend(
        [
            '[ACTION: type="kill-process" processName="chrome"]',
            BackendUnreachable("connection refused"),
            "Fresh start.",
        ]
    )
    loop, runner = _loop(backend, tmp_path)
    loop.start("slow")

    with pytest.raises(BackendUnreachable):
        loop.decline()

    assert loop.state is not None
    assert loop.state.resumable is False
    with pytest.raises(SessionTerminated):
        loop.approve()

    restarted = loop.start("try again")
    assert restarted.phase is LoopPhase.CONCLUDED
    assert runner.commands == []


def test_checklist_is_tracked_across_steps(tmp_path) -> None:
    backend = FakeBackend(
        [
            "Plan:\n- [ ] Check uptime\n- [ ] Check disk space\n" + UPTIME_ACTION,
            "- [x] Check uptime\n- [ ] Check disk space\n"
            '[ACTION: type="query-system" queryType="disk-usage"]',
            "- [x] Check disk space\nYour disk is nearly full.",
        ]
    )
    loop, _runner = _loop(backend, tmp_path)

    loop.start("slow")

    assert loop.state is not None
    assert [(item.label, item.done) for item in loop.state.checklist] == [
        ("Check uptime", True),
        ("Check disk space", True),
    ]


def test_session_log_records_each_step(tmp_path) -> None:
    backend = FakeBackend([UPTIME_ACTION, "Done."])
    loop, _runner = _loop(backend, tmp_path)

    loop.start("uptime please")

    log_files = list(tmp_path.glob("session-*.log"))
    assert len(log_files) == 1
    entries = [json.loads(line) for line in log_files[0].read_text(encoding="utf-8").splitlines()]
    steps = [entry for entry in entries if entry["event"] == "step"]
    assert len(steps) == 1
    assert steps[0]["log_version"] == 1
    assert steps[0]["action_type"] == "query-system"
    assert steps[0]["verdict"] == "allowed"
    assert steps[0]["error_kind"] == "none"
    assert steps[0]["model"] == "fake-model"
    assert entries[-1]["event"] == "concluded"
    assert entries[-1]["termination_reason"] == "root-cause-found"


def test_end_session_marks_user_idle(tmp_path) -> None:
    backend = FakeBackend(['[ACTION: type="flush-dns"]'])
    loop, _runner = _loop(backend, tmp_path)
    loop.start("websites won't load")

    loop.end_session()

    assert loop.state is not None
    assert loop.state.termination_reason is TerminationReason.USER_IDLE
    assert loop.state.pending is None
    with pytest.raises(SessionTerminated):
        loop.approve()


def test_approve_without_pending_action_raises(tmp_path) -> None:
    loop, _runner = _loop(FakeBackend(["Hello!"]), tmp_path)

    with pytest.raises(SessionTerminated):
        loop.approve()

    loop.start("hi")
    with pytest.raises(SessionTerminated):
        loop.approve()


def test_unwritable_session_log_does_not_interrupt_the_loop(tmp_path, caplog) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")
    backend = FakeBackend([UPTIME_ACTION, "Your computer has been up for 3 days."])
    loop, runner = _loop(backend, blocker)

    with caplog.at_level("WARNING", logger="relay.agent.loop"):
        outcome = loop.start("Is my computer old?")

    assert runner.commands
    assert outcome.steps[0].result.success is True
    assert outcome.termination_reason is TerminationReason.ROOT_CAUSE_FOUND
    assert loop.state is not None
    assert loop.state.phase is LoopPhase.CONCLUDED
    assert "session_log_write_failed" in caplog.messages
