"""Helpers for the ``[[Sheet!A1]]`` citation markers embedded in model answers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

__all__ = ["Citation", "CITATION_PATTERN", "extract_citations", "normalize_citation", "split_by_citations"]

CITATION_PATTERN = re.compile(r"\[\[([^\]]+)\]\]")

SegmentKind = Literal["text", "citation"]


@dataclass(slots=True, frozen=True)
class Citation:
    """A single cited range; ``label`` is what the UI shows, ``address`` is what it selects."""

    label: str
    address: str

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "address": self.address}


def normalize_citation(raw: str) -> str:
    """Collapse ``'Sheet Name'!A1`` into ``Sheet Name!A1`` so quoted and bare forms dedupe."""

    value = raw.strip()
    if value.startswith("'"):
        value = value[1:]
    return value.replace("'!", "!", 1)


def extract_citations(text: str) -> list[Citation]:
    """Return unique citations in first-seen order."""

    seen: dict[str, Citation] = {}
    for match in CITATION_PATTERN.finditer(text or ""):
        raw = match.group(1).strip()
        if not raw:
            continue
        address = normalize_citation(raw)
        if address not in seen:
            seen[address] = Citation(label=address, address=address)
    return list(seen.values())


def split_by_citations(text: str) -> list[tuple[SegmentKind, str]]:
    """Split ``text`` into alternating plain-text and citation segments for rendering."""

    parts: list[tuple[SegmentKind, str]] = []
    cursor = 0
    for match in CITATION_PATTERN.finditer(text or ""):
        start, end = match.span()
        if start > cursor:
            parts.append(("text", text[cursor:start]))
        value = match.group(1).strip()
        parts.append(("citation", value) if value else ("text", match.group(0)))
        cursor = end
    if cursor < len(text or ""):
        parts.append(("text", text[cursor:]))
    return parts
