"""Data models used by the orchestration loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from relay.actions.parser import ActionRequest
from relay.dispatch.models import ExecutionResult
from relay.safety.classifier import Verdict

MAX_STEPS = 10


class LoopPhase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    INTERPRETING = "interpreting"
    AWAITING_APPROVAL = "awaiting-approval"
    CONCLUDED = "concluded"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    NONE = "none"
    ROOT_CAUSE_FOUND = "root-cause-found"
    MAX_STEPS_REACHED = "max-steps-reached"
    USER_IDLE = "user-idle"


@dataclass(slots=True)
class ChecklistItem:
    label: str
    done: bool = False


@dataclass(slots=True)
class PendingApproval:
    """An action held back until the user approves or declines it."""

    request: ActionRequest
    verdict: Verdict


@dataclass(slots=True)
class LoopState:
    """Per-query diagnostic state; replaced whenever a new top-level message arrives."""

    session_id: str
    step_count: int = 0
    checklist: list[ChecklistItem] = field(default_factory=list)
    last_result: ExecutionResult | None = None
    termination_reason: TerminationReason = TerminationReason.NONE
    phase: LoopPhase = LoopPhase.IDLE
    pending: PendingApproval | None = None
    resumable: bool = True

    @property
    def can_dispatch(self) -> bool:
        return self.resumable and self.termination_reason is TerminationReason.NONE


@dataclass(slots=True)
class StepRecord:
    step_index: int
    action_type: str
    verdict: Verdict
    result: ExecutionResult
    system_result: str


@dataclass(slots=True)
class LoopOutcome:
    """What one call into the loop produced for the caller to render."""

    messages: list[str] = field(default_factory=list)
    steps: list[StepRecord] = field(default_factory=list)
    pending: PendingApproval | None = None
    phase: LoopPhase = LoopPhase.IDLE
    termination_reason: TerminationReason = TerminationReason.NONE
