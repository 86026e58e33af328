"""Two-layer risk classification for action requests and raw commands."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from relay.actions.parser import ActionRequest
from relay.skills.registry import HandlerKind, RiskClass, SkillRegistry

BLOCKED_ACTION_TYPES = frozenset(
    {
        "delete-system-file",
        "modify-registry",
        "format-drive",
        "disable-security",
    }
)

DANGEROUS_COMMAND_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rm\s+-rf",
        r"rmdir",
        r"del\s+/s",
        r"format",
        r"mkfs",
        r"dd\s+if=",
        r">\s*/dev/",
        r"sudo",
        r"chmod\s+777",
        r"killall",
        r"shutdown",
        r"reboot",
    )
)

SECURITY_BLOCK_REASON = "blocked for security reasons"
RAW_COMMAND_SUBJECT = "custom"


class VerdictKind(str, Enum):
    ALLOWED = "allowed"
    REQUIRES_APPROVAL = "requires-approval"
    BLOCKED = "blocked"


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of classifying one request.

    ``subject`` names what was classified (a skill id, or ``custom`` for a raw
    command) and ``command_text`` carries the raw command when there is one, so
    the dispatcher can refuse a verdict issued for something else.
    """

    kind: VerdictKind
    reason: str
    subject: str
    command_text: str | None = None

    @property
    def allowed(self) -> bool:
        return self.kind is VerdictKind.ALLOWED

    @property
    def blocked(self) -> bool:
        return self.kind is VerdictKind.BLOCKED

    @property
    def requires_approval(self) -> bool:
        return self.kind is VerdictKind.REQUIRES_APPROVAL

    def permits(self, subject: str, command_text: str | None = None) -> bool:
        if not self.allowed or self.subject != subject:
            return False
        return self.command_text == command_text


def matches_dangerous_pattern(command: str) -> bool:
    return any(pattern.search(command) for pattern in DANGEROUS_COMMAND_PATTERNS)


class SafetyClassifier:
    """Stateless classifier; approval is re-asserted by the caller on every call."""

    def __init__(self, registry: SkillRegistry) -> None:
        self.registry = registry

    def classify(self, request: ActionRequest | str, *, approved: bool = False) -> Verdict:
        if isinstance(request, str):
            return self.classify_raw(request, approved=approved)
        return self.classify_action(request, approved=approved)

    def classify_action(self, request: ActionRequest, *, approved: bool = False) -> Verdict:
        skill_id = request.skill_id
        if skill_id in BLOCKED_ACTION_TYPES:
            return self._blocked(skill_id, f"The action '{skill_id}' is never allowed.")

        skill = self.registry.get(skill_id)
        if skill is None:
            return self._blocked(skill_id, f"Unknown action type: {skill_id}")
        if skill.risk is RiskClass.BLOCKED_TYPE:
            return self._blocked(skill_id, f"The action '{skill_id}' is never allowed.")

        command_text: str | None = None
        if skill.handler is HandlerKind.RAW_COMMAND:
            command_text = request.bound_parameters.get("command", "")
            if matches_dangerous_pattern(command_text):
                return self._blocked(
                    skill_id, f"This command is {SECURITY_BLOCK_REASON}.", command_text
                )

        if skill.risk is RiskClass.APPROVAL_REQUIRED and not approved:
            return Verdict(
                kind=VerdictKind.REQUIRES_APPROVAL,
                reason=f"'{skill.name}' changes your system and needs your approval.",
                subject=skill_id,
                command_text=command_text,
            )
        return Verdict(
            kind=VerdictKind.ALLOWED,
            reason="approved by user" if approved else "safe action",
            subject=skill_id,
            command_text=command_text,
        )

    def classify_raw(self, command: str, *, approved: bool = False) -> Verdict:
        if matches_dangerous_pattern(command):
            return self._blocked(
                RAW_COMMAND_SUBJECT, f"This command is {SECURITY_BLOCK_REASON}.", command
            )
        if not approved:
            return Verdict(
                kind=VerdictKind.REQUIRES_APPROVAL,
                reason="Custom commands need your approval.",
                subject=RAW_COMMAND_SUBJECT,
                command_text=command,
            )
        return Verdict(
            kind=VerdictKind.ALLOWED,
            reason="approved by user",
            subject=RAW_COMMAND_SUBJECT,
            command_text=command,
        )

    @staticmethod
    def _blocked(subject: str, reason: str, command_text: str | None = None) -> Verdict:
        return Verdict(
            kind=VerdictKind.BLOCKED,
            reason=reason,
            subject=subject,
            command_text=command_text,
        )
