"""Bounded diagnose, act and reinterpret loop."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from relay.actions.parser import (
    DEFAULT_RESULT_CHAR_LIMIT,
    ActionRequest,
    format_system_result,
    parse_actions,
)
from relay.agent.checklist import merge_checklist
from relay.agent.models import (
    MAX_STEPS,
    LoopOutcome,
    LoopPhase,
    LoopState,
    PendingApproval,
    StepRecord,
    TerminationReason,
)
from relay.dispatch import CommandDispatcher, ErrorKind, ExecutionResult
from relay.errors import BackendUnreachable, SessionTerminated
from relay.llm.client import ChatMessage, ReasoningBackend, build_system_prompt
from relay.safety.classifier import SafetyClassifier, Verdict
from relay.skills.registry import Platform, SkillRegistry

LOGGER = logging.getLogger(__name__)

MAX_STEPS_MESSAGE = (
    "I've run several diagnostics but haven't pinpointed the issue yet. "
    "Let me summarize what I found and we can discuss next steps."
)
LOG_VERSION = 1


class OrchestrationLoop:
    """Runs one diagnostic session against a reasoning backend.

    Each call to ``start``, ``approve`` or ``decline`` drives the loop until it
    concludes, terminates or suspends on an action that needs the user's approval.
    At most one action is dispatched per backend response.
    """

    def __init__(
        self,
        *,
        backend: ReasoningBackend,
        registry: SkillRegistry,
        classifier: SafetyClassifier,
        dispatcher: CommandDispatcher,
        platform: Platform,
        log_dir: str | Path,
        max_steps: int = MAX_STEPS,
        result_char_limit: int = DEFAULT_RESULT_CHAR_LIMIT,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.platform = platform
        self.log_dir = Path(log_dir)
        self.max_steps = min(max(max_steps, 1), MAX_STEPS)
        self.result_char_limit = result_char_limit
        self.system_prompt = system_prompt or build_system_prompt(
            registry.render_manifest(), platform=platform.value
        )
        self.history: list[ChatMessage] = []
        self.state: LoopState | None = None

    def start(self, message: str) -> LoopOutcome:
        """Begin a new top-level query, discarding any previous loop state."""
        self.state = LoopState(session_id=uuid.uuid4().hex)
        self.history.append(ChatMessage(role="user", content=message))
        LOGGER.info("loop_started", extra={"session_id": self.state.session_id})
        return self._drive(LoopOutcome())

    def approve(self) -> LoopOutcome:
        """Re-submit the pending action with the user's approval and continue."""
        state, pending = self._take_pending()
        outcome = LoopOutcome()
        verdict = self.classifier.classify(pending.request, approved=True)
        self._dispatch(state, pending.request, verdict, outcome)
        return self._drive(outcome)

    def decline(self) -> LoopOutcome:
        state, pending = self._take_pending()
        outcome = LoopOutcome()
        skill = self.registry.get(pending.request.skill_id)
        label = skill.name if skill is not None else pending.request.skill_id
        result = ExecutionResult(
            success=False,
            output="",
            error_kind=ErrorKind.BLOCKED,
            error=f"The user declined to run {label}.",
        )
        self._interpret(state, pending.request, pending.verdict, result, outcome)
        return self._drive(outcome)

    def end_session(self) -> None:
        state = self.state
        if state is None:
            return
        state.pending = None
        if state.termination_reason is TerminationReason.NONE:
            state.termination_reason = TerminationReason.USER_IDLE
        state.phase = LoopPhase.TERMINATED
        self._append_log(state, event="session_ended")
        self.history.clear()

    def _drive(self, outcome: LoopOutcome) -> LoopOutcome:
        state = self._require_state()
        while True:
            if state.step_count >= self.max_steps:
                state.termination_reason = TerminationReason.MAX_STEPS_REACHED
                state.phase = LoopPhase.TERMINATED
                outcome.messages.append(MAX_STEPS_MESSAGE)
                self.history.append(ChatMessage(role="assistant", content=MAX_STEPS_MESSAGE))
                self._append_log(state, event="max_steps_reached")
                return self._finish(state, outcome)

            state.phase = LoopPhase.PLANNING
            text = self._ask_backend(state)
            parsed = parse_actions(text)
            merge_checklist(state.checklist, parsed.display_text)
            outcome.messages.append(parsed.display_text)

            if not parsed.actions:
                state.termination_reason = TerminationReason.ROOT_CAUSE_FOUND
                state.phase = LoopPhase.CONCLUDED
                self._append_log(state, event="concluded")
                return self._finish(state, outcome)

            if len(parsed.actions) > 1:
                LOGGER.info(
                    "extra_actions_ignored",
                    extra={
                        "session_id": state.session_id,
                        "ignored": [action.skill_id for action in parsed.actions[1:]],
                    },
                )
            request = parsed.actions[0]
            state.phase = LoopPhase.EXECUTING
            verdict = self.classifier.classify(request)
            if verdict.requires_approval:
                state.pending = PendingApproval(request=request, verdict=verdict)
                state.phase = LoopPhase.AWAITING_APPROVAL
                outcome.pending = state.pending
                self._append_log(
                    state, event="awaiting_approval", action_type=request.skill_id, verdict=verdict
                )
                return self._finish(state, outcome)
            self._dispatch(state, request, verdict, outcome)

    def _ask_backend(self, state: LoopState) -> str:
        try:
            text = self.backend.complete(self.system_prompt, self.history)
        except BackendUnreachable as exc:
            state.resumable = False
            state.pending = None
            state.phase = LoopPhase.TERMINATED
            LOGGER.error(
                "backend_unreachable",
                extra={"session_id": state.session_id, "error": str(exc)},
            )
            self._append_log(state, event="backend_unreachable")
            raise
        self.history.append(ChatMessage(role="assistant", content=text))
        return text

    def _dispatch(
        self,
        state: LoopState,
        request: ActionRequest,
        verdict: Verdict,
        outcome: LoopOutcome,
    ) -> None:
        if not state.can_dispatch:
            raise SessionTerminated("This session has ended; send a new message to start over.")
        if verdict.allowed:
            skill = self.registry.lookup(request.skill_id)
            result = self.dispatcher.execute(
                skill, request.bound_parameters, self.platform, verdict=verdict
            )
        else:
            result = ExecutionResult(
                success=False,
                output="",
                error_kind=ErrorKind.BLOCKED,
                error=verdict.reason,
            )
        self._interpret(state, request, verdict, result, outcome)

    def _interpret(
        self,
        state: LoopState,
        request: ActionRequest,
        verdict: Verdict,
        result: ExecutionResult,
        outcome: LoopOutcome,
    ) -> None:
        state.phase = LoopPhase.INTERPRETING
        state.last_result = result
        state.step_count += 1
        query_type = request.bound_parameters.get("queryType") or request.skill_id
        if result.success:
            system_result = format_system_result(
                query_type, output=result.output, limit=self.result_char_limit
            )
        else:
            system_result = format_system_result(
                query_type,
                error=result.error or "The action failed.",
                limit=self.result_char_limit,
            )
        self.history.append(ChatMessage(role="user", content=system_result))
        outcome.steps.append(
            StepRecord(
                step_index=state.step_count,
                action_type=request.skill_id,
                verdict=verdict,
                result=result,
                system_result=system_result,
            )
        )
        self._append_log(
            state,
            event="step",
            action_type=request.skill_id,
            verdict=verdict,
            result=result,
            system_result=system_result,
        )

    def _take_pending(self) -> tuple[LoopState, PendingApproval]:
        state = self._require_state()
        if not state.can_dispatch:
            raise SessionTerminated("This session has ended; send a new message to start over.")
        pending = state.pending
        if pending is None:
            raise SessionTerminated("No action is waiting for approval.")
        state.pending = None
        return state, pending

    def _require_state(self) -> LoopState:
        if self.state is None:
            raise SessionTerminated("No active session; send a message to start one.")
        return self.state

    @staticmethod
    def _finish(state: LoopState, outcome: LoopOutcome) -> LoopOutcome:
        outcome.phase = state.phase
        outcome.termination_reason = state.termination_reason
        return outcome

    def _append_log(
        self,
        state: LoopState,
        *,
        event: str,
        action_type: str | None = None,
        verdict: Verdict | None = None,
        result: ExecutionResult | None = None,
        system_result: str | None = None,
    ) -> None:
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": LOG_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": state.session_id,
            "event": event,
            "model": getattr(self.backend, "model", None),
            "platform": self.platform.value,
            "step_index": state.step_count,
            "phase": state.phase.value,
            "action_type": action_type,
            "verdict": verdict.kind.value if verdict is not None else None,
            "verdict_reason": verdict.reason if verdict is not None else None,
            "success": result.success if result is not None else None,
            "error_kind": result.error_kind.value if result is not None else None,
            "duration_ms": result.duration_ms if result is not None else None,
            "system_result": system_result,
            "termination_reason": state.termination_reason.value,
            "checklist": [{"label": item.label, "done": item.done} for item in state.checklist],
        }
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
        except OSError as exc:
            LOGGER.warning(
                "session_log_write_failed",
                extra={"session_id": state.session_id, "path": str(day_file), "error": str(exc)},
            )
