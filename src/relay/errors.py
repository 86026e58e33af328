"""Exceptions that cross component boundaries."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class UnknownSkill(RelayError, KeyError):
    """Raised when a skill id is not present in the registry."""

    def __init__(self, skill_id: str) -> None:
        super().__init__(skill_id)
        self.skill_id = skill_id

    def __str__(self) -> str:
        return f"Unknown skill: {self.skill_id}"


class BackendUnreachable(RelayError):
    """The reasoning backend could not produce a response."""


class SessionTerminated(RelayError):
    """An action was submitted to a loop state that can no longer dispatch."""
