"""Skill registry exports."""

from relay.skills.catalog import BUILTIN_SKILLS, default_registry
from relay.skills.registry import (
    HandlerKind,
    Platform,
    RiskClass,
    Skill,
    SkillCategory,
    SkillParameter,
    SkillRegistry,
    render_manifest,
)

__all__ = [
    "BUILTIN_SKILLS",
    "HandlerKind",
    "Platform",
    "RiskClass",
    "Skill",
    "SkillCategory",
    "SkillParameter",
    "SkillRegistry",
    "default_registry",
    "render_manifest",
]
