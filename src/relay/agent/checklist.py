"""Markdown checkbox tracking for diagnostic plans."""

from __future__ import annotations

import re

from relay.agent.models import ChecklistItem

_CHECKBOX_LINE = re.compile(r"^\s*[-*+]\s+\[([ xX])\]\s+(.+?)\s*$", re.MULTILINE)
_EMPHASIS = re.compile(r"[*_`]+")


def normalize_label(label: str) -> str:
    cleaned = _EMPHASIS.sub("", label)
    return " ".join(cleaned.split()).rstrip(".:;").lower()


def parse_checklist(text: str) -> list[ChecklistItem]:
    """Return checkbox items in the order they appear in ``text``."""
    items: list[ChecklistItem] = []
    for match in _CHECKBOX_LINE.finditer(text):
        label = match.group(2).strip()
        if not normalize_label(label):
            continue
        items.append(ChecklistItem(label=label, done=match.group(1) in "xX"))
    return items


def merge_checklist(checklist: list[ChecklistItem], text: str) -> list[ChecklistItem]:
    """Fold the checkboxes found in ``text`` into ``checklist`` in place.

    Unknown labels are appended; a checked box marks the matching item done.
    Items never go back to pending.
    """
    index = {normalize_label(item.label): item for item in checklist}
    for parsed in parse_checklist(text):
        key = normalize_label(parsed.label)
        existing = index.get(key)
        if existing is None:
            checklist.append(parsed)
            index[key] = parsed
        elif parsed.done:
            existing.done = True
    return checklist
