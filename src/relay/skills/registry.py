"""Static catalog of invokable skills and the capability manifest."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from relay.errors import UnknownSkill


class Platform(str, Enum):
    LINUX = "linux"
    DARWIN = "darwin"
    WINDOWS = "windows"

    @classmethod
    def current(cls, sys_platform: str | None = None) -> Platform:
        name = sys.platform if sys_platform is None else sys_platform
        if name.startswith("win"):
            return cls.WINDOWS
        if name == "darwin":
            return cls.DARWIN
        return cls.LINUX

    @classmethod
    def parse(cls, value: str) -> Platform:
        normalized = value.strip().lower()
        aliases = {
            "linux": cls.LINUX,
            "darwin": cls.DARWIN,
            "macos": cls.DARWIN,
            "mac": cls.DARWIN,
            "windows": cls.WINDOWS,
            "win32": cls.WINDOWS,
            "win": cls.WINDOWS,
        }
        if normalized not in aliases:
            msg = f"Unsupported platform: {value}"
            raise ValueError(msg)
        return aliases[normalized]


class SkillCategory(str, Enum):
    SYSTEM = "system"
    NETWORK = "network"
    UTILITY = "utility"
    MEDIA = "media"


class RiskClass(str, Enum):
    SAFE = "safe"
    APPROVAL_REQUIRED = "approval-required"
    BLOCKED_TYPE = "blocked-type"


class HandlerKind(str, Enum):
    """How the dispatcher carries out a skill."""

    TEMPLATE = "template"
    KILL_PROCESS = "kill-process"
    RESTART_APP = "restart-app"
    RAW_COMMAND = "raw-command"
    IN_PROCESS = "in-process"


PARAMETER_TYPES = frozenset({"string", "name", "path", "number", "boolean"})


@dataclass(frozen=True, slots=True)
class SkillParameter:
    """One declared parameter of a skill.

    ``name`` typed parameters are process or application names; the dispatcher
    strips them to a safe character set before template substitution.
    """

    name: str
    type: str = "string"
    required: bool = False
    default: str | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.type not in PARAMETER_TYPES:
            msg = f"Unsupported parameter type for {self.name}: {self.type}"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class Skill:
    """Immutable descriptor for one capability."""

    id: str
    name: str
    category: SkillCategory
    description: str
    risk: RiskClass = RiskClass.SAFE
    parameters: tuple[SkillParameter, ...] = ()
    command_templates: Mapping[Platform, str] = field(default_factory=dict)
    handler: HandlerKind = HandlerKind.TEMPLATE
    variant_parameter: str | None = None
    variants: Mapping[str, Mapping[Platform, str]] = field(default_factory=dict)
    ai_description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "command_templates", MappingProxyType(dict(self.command_templates))
        )
        object.__setattr__(
            self,
            "variants",
            MappingProxyType(
                {key: MappingProxyType(dict(value)) for key, value in self.variants.items()}
            ),
        )

    def parameter(self, name: str) -> SkillParameter | None:
        for parameter in self.parameters:
            if parameter.name == name:
                return parameter
        return None

    @property
    def required_parameters(self) -> tuple[SkillParameter, ...]:
        return tuple(parameter for parameter in self.parameters if parameter.required)

    @property
    def optional_parameters(self) -> tuple[SkillParameter, ...]:
        return tuple(parameter for parameter in self.parameters if not parameter.required)


class SkillRegistry:
    """Read-only registry, fixed at construction time."""

    def __init__(self, skills: Iterable[Skill]) -> None:
        ordered: list[Skill] = []
        by_id: dict[str, Skill] = {}
        for skill in skills:
            if skill.id in by_id:
                msg = f"Duplicate skill id: {skill.id}"
                raise ValueError(msg)
            by_id[skill.id] = skill
            ordered.append(skill)
        self._skills = tuple(ordered)
        self._by_id = MappingProxyType(by_id)

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._by_id

    def __len__(self) -> int:
        return len(self._skills)

    def lookup(self, skill_id: str) -> Skill:
        try:
            return self._by_id[skill_id]
        except KeyError:
            raise UnknownSkill(skill_id) from None

    def get(self, skill_id: str) -> Skill | None:
        return self._by_id.get(skill_id)

    def list_all(self) -> tuple[Skill, ...]:
        return self._skills

    def by_category(self, category: SkillCategory) -> tuple[Skill, ...]:
        return tuple(skill for skill in self._skills if skill.category is category)

    def available_on(self, platform: Platform) -> tuple[Skill, ...]:
        """Skills that can run on ``platform`` (in-process skills run anywhere)."""
        return tuple(skill for skill in self._skills if _supports(skill, platform))

    @staticmethod
    def resolve_command(
        skill: Skill,
        platform: Platform,
        parameters: Mapping[str, str] | None = None,
    ) -> str | None:
        """Return the raw command template for ``platform`` or ``None`` when unsupported.

        Skills with a ``variant_parameter`` pick their template from ``variants``
        using the bound value of that parameter; the plain ``command_templates``
        map is the fallback when no variant applies.
        """
        if skill.variant_parameter and parameters is not None:
            variant = parameters.get(skill.variant_parameter)
            if variant is not None and variant in skill.variants:
                return skill.variants[variant].get(platform)
        return skill.command_templates.get(platform)

    def render_manifest(self) -> str:
        return render_manifest(self._skills)


def _supports(skill: Skill, platform: Platform) -> bool:
    if skill.handler in (HandlerKind.IN_PROCESS, HandlerKind.RAW_COMMAND):
        return True
    if platform in skill.command_templates:
        return True
    return any(platform in templates for templates in skill.variants.values())


_CATEGORY_HEADINGS = (
    ("SYSTEM DIAGNOSTICS", (SkillCategory.SYSTEM, SkillCategory.NETWORK)),
    ("UTILITY TOOLS", (SkillCategory.UTILITY,)),
    ("MEDIA & FILE TOOLS", (SkillCategory.MEDIA,)),
)


def render_manifest(skills: Iterable[Skill]) -> str:
    """Render the capability block handed verbatim to the reasoning backend."""
    ordered = tuple(skills)
    lines = ["CAPABILITIES - You can:"]
    for heading, categories in _CATEGORY_HEADINGS:
        described = [
            skill
            for category in categories
            for skill in ordered
            if skill.category is category and skill.ai_description
        ]
        if not described:
            continue
        lines.append("")
        lines.append(f"{heading}:")
        lines.extend(f"- {skill.ai_description}" for skill in described)

    lines.append("")
    lines.append("AVAILABLE ACTIONS (use these exact IDs in your response):")
    for skill in ordered:
        hint = ""
        required = ", ".join(parameter.name for parameter in skill.required_parameters)
        optional = ", ".join(
            f"{parameter.name}={parameter.default if parameter.default is not None else '...'}"
            for parameter in skill.optional_parameters
        )
        if required:
            hint = f" (required: {required})"
        if optional:
            hint += f" (optional: {optional})"
        if skill.variants:
            hint += f" ({skill.variant_parameter}: {', '.join(skill.variants)})"
        lines.append(f'- "{skill.id}" - {skill.description}{hint}')

    lines.extend(
        [
            "",
            "When you want to perform an action, include it in your response like this:",
            '[ACTION: type="action-id" param1="value1" param2="value2"]',
            "",
            "Examples:",
            (
                "- \"Let me check what's using your memory. "
                '[ACTION: type="query-system" queryType="top-processes"]"'
            ),
            (
                "- \"Here's a secure password for you! "
                '[ACTION: type="generate-password" length="16"]"'
            ),
        ]
    )
    return "\n".join(lines)
