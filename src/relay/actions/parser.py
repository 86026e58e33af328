"""Action tag tokenizer for reasoning-backend text.

Grammar::

    tag   := "[ACTION:" pair* "]"
    pair  := ws* key "=" '"' value '"'
    key   := [A-Za-z_][A-Za-z0-9_]*
    value := any characters except '"'

There is no escape sequence for ``"``: the first quote after the opening one
closes the value. Anything in a tag body that is not a pair is skipped one
character at a time and recorded as an anomaly, so the scanner resynchronises
on the next ``key="`` in the same tag. A tag whose body never reaches a closing
``]`` is not a tag and stays in the display text.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

LOGGER = logging.getLogger(__name__)

ACTION_TAG_OPEN = "[ACTION:"
SYSTEM_RESULT_OPEN = "[SYSTEM_RESULT:"
DEFAULT_RESULT_CHAR_LIMIT = 1500
NO_DATA_OUTPUT = "No data returned"


@dataclass(frozen=True, slots=True)
class ActionRequest:
    """A concrete request for one skill, extracted from backend text."""

    skill_id: str
    bound_parameters: Mapping[str, str] = field(default_factory=dict)
    raw_text: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "bound_parameters", MappingProxyType(dict(self.bound_parameters))
        )


@dataclass(frozen=True, slots=True)
class ParseResult:
    display_text: str
    actions: tuple[ActionRequest, ...] = ()
    anomalies: tuple[str, ...] = ()


@dataclass(slots=True)
class _Tag:
    start: int
    end: int
    pairs: dict[str, str]


def parse_actions(text: str) -> ParseResult:
    """Split ``text`` into display text and the ordered action requests it carries.

    Never raises: malformed input yields the text unchanged and no actions.
    """
    if not isinstance(text, str) or not text:
        return ParseResult(display_text=text if isinstance(text, str) else "")

    anomalies: list[str] = []
    tags: list[_Tag] = []
    cursor = 0
    while True:
        start = text.find(ACTION_TAG_OPEN, cursor)
        if start < 0:
            break
        tag = _scan_tag(text, start, anomalies)
        if tag is None:
            cursor = start + len(ACTION_TAG_OPEN)
            continue
        tags.append(tag)
        cursor = tag.end

    actions: list[ActionRequest] = []
    pieces: list[str] = []
    previous_end = 0
    for tag in tags:
        pieces.append(text[previous_end : tag.start])
        previous_end = tag.end
        skill_id = tag.pairs.pop("type", None)
        if skill_id is None:
            anomalies.append(f"action tag without type at offset {tag.start}")
            continue
        actions.append(ActionRequest(skill_id=skill_id, bound_parameters=tag.pairs, raw_text=text))
    pieces.append(text[previous_end:])

    for anomaly in anomalies:
        LOGGER.warning("action_tag_anomaly", extra={"anomaly": anomaly})

    return ParseResult(
        display_text="".join(pieces),
        actions=tuple(actions),
        anomalies=tuple(anomalies),
    )


def _scan_tag(text: str, start: int, anomalies: list[str]) -> _Tag | None:
    position = start + len(ACTION_TAG_OPEN)
    length = len(text)
    pairs: dict[str, str] = {}
    while position < length:
        char = text[position]
        if char == "]":
            return _Tag(start=start, end=position + 1, pairs=pairs)
        if char.isspace():
            position += 1
            continue
        if _is_key_start(char):
            key_end = position + 1
            while key_end < length and _is_key_char(text[key_end]):
                key_end += 1
            if text.startswith('="', key_end):
                value_start = key_end + 2
                value_end = text.find('"', value_start)
                if value_end < 0:
                    anomalies.append(f"unterminated value in action tag at offset {start}")
                    return None
                pairs[text[position:key_end]] = text[value_start:value_end]
                position = value_end + 1
                continue
            anomalies.append(
                f"malformed pair {text[position:key_end]!r} in action tag at offset {start}"
            )
            position = key_end
            continue
        anomalies.append(f"unexpected {char!r} in action tag at offset {start}")
        position += 1
    anomalies.append(f"unterminated action tag at offset {start}")
    return None


def _is_key_start(char: str) -> bool:
    return char == "_" or ("a" <= char.lower() <= "z")


def _is_key_char(char: str) -> bool:
    return _is_key_start(char) or char.isdigit()


def format_system_result(
    query_type: str,
    *,
    output: str | None = None,
    error: str | None = None,
    limit: int = DEFAULT_RESULT_CHAR_LIMIT,
) -> str:
    """Build the ``[SYSTEM_RESULT: ...]`` block fed back to the reasoning backend.

    Values follow the action tag quoting rules, so ``"`` inside them is replaced
    with ``'`` to keep the block well formed.
    """
    fields = [f'queryType="{_quote_safe(query_type)}"']
    if error:
        fields.append(f'error="{_quote_safe(error)[:limit]}"')
    else:
        body = output if output else NO_DATA_OUTPUT
        fields.append(f'output="{_quote_safe(body)[:limit]}"')
    return f"{SYSTEM_RESULT_OPEN} {' '.join(fields)}]"


def _quote_safe(value: str) -> str:
    return value.replace('"', "'")
