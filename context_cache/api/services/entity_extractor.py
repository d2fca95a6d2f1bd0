"""Pattern-based entity extraction and the incremental session entity map."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Pattern, Sequence, Tuple

from .cache_models import EntityInfo

_STOP = r"\s,，。！!?？"

_DATE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(
        r"\d{4}[-/年]\d{1,2}[-/月]\d{1,2}[日号]?"
        r"|\d{1,2}月\d{1,2}[日号]"
        r"|今天|明天|昨天|下周|本周"
        r"|\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*\.?\s\d{1,2}(?:st|nd|rd|th)?(?:,\s\d{4})?\b"
        r"|\b(?:today|tomorrow|yesterday|next week|this week)\b",
        re.IGNORECASE,
    ),
)

_NUMBER_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\d+(?:\.\d+)?(?:个|条|篇|次|元|块|万|亿|%|分钟|小时|天|周|月|年|k|K|M|G|T)?"),
)

_NAME_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(rf"(?:叫|是|给|找|问)\s*([^{_STOP}@]{{2,4}})"),
    re.compile(rf"@([^{_STOP}@]{{2,32}})"),
    re.compile(r"\b(?:[Mm]y name is|named|called|ask|tell|contact|cc)\s+([A-Z][a-z]+(?:\s[A-Z][a-z]+)?)"),
)

_PREFERENCE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(rf"(?:喜欢|偏好|习惯|倾向于?)\s*([^{_STOP}]+)"),
    re.compile(rf"\b(?:prefers?|preferred|like to use|favou?rite\s(?:\w+\s)?is)\s+([^{_STOP}.;:]+)", re.IGNORECASE),
)

_PREFERENCE_KEY_CHARS = 10
_ENTITY_MAP_PREFERENCE_LIMIT = 5


@dataclass
class ExtractedEntities:
    dates: List[str] = field(default_factory=list)
    numbers: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)
    preferences: List[str] = field(default_factory=list)

    def flatten(self, number_limit: int = 5) -> List[str]:
        """Names, dates, the first few numbers, then preferences."""
        return [*self.names, *self.dates, *self.numbers[:number_limit], *self.preferences]


def _collect(patterns: Sequence[Pattern[str]], text: str) -> List[str]:
    found: List[str] = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = match.group(1) if pattern.groups else match.group(0)
            if value and value not in found:
                found.append(value)
    return found


def extract(text: str) -> ExtractedEntities:
    """Extract dates, numbers, names and preferences (deduplicated, first-seen order)."""
    if not text:
        return ExtractedEntities()
    return ExtractedEntities(
        dates=_collect(_DATE_PATTERNS, text),
        numbers=_collect(_NUMBER_PATTERNS, text),
        names=_collect(_NAME_PATTERNS, text),
        preferences=_collect(_PREFERENCE_PATTERNS, text),
    )


def classify_entity(value: str) -> str:
    """Best-effort type for a bare entity string: date, number, else person."""
    if any(pattern.fullmatch(value) for pattern in _DATE_PATTERNS):
        return "date"
    if any(pattern.fullmatch(value) for pattern in _NUMBER_PATTERNS):
        return "number"
    return "person"


def update_entity_map(
    entity_map: Dict[str, EntityInfo],
    extracted: ExtractedEntities,
    layer_index: int,
) -> List[str]:
    """Merge extracted entities into the map and return the keys that changed.

    Persons are inserted once and never overwritten. Preferences are keyed by
    their first characters and replaced when the existing entry was last
    updated at an earlier layer; ``first_seen_layer_index`` is kept.
    """
    updated_keys: List[str] = []

    for name in extracted.names:
        key = f"person:{name}"
        if key not in entity_map:
            entity_map[key] = EntityInfo(
                name=name,
                type="person",
                value=name,
                first_seen_layer_index=layer_index,
                last_updated_layer_index=layer_index,
            )
            updated_keys.append(key)

    for pref in extracted.preferences:
        short_name = pref[:_PREFERENCE_KEY_CHARS]
        key = f"preference:{short_name}"
        existing = entity_map.get(key)
        if existing is None or existing.last_updated_layer_index < layer_index:
            entity_map[key] = EntityInfo(
                name=short_name,
                type="preference",
                value=pref,
                first_seen_layer_index=existing.first_seen_layer_index if existing else layer_index,
                last_updated_layer_index=layer_index,
            )
            updated_keys.append(key)

    return updated_keys


def seed_entity_map(entity_map: Dict[str, EntityInfo], values: Iterable[str]) -> None:
    """Insert bare entity strings (e.g. from persisted milestones) at layer 0."""
    for value in values:
        entity_type = classify_entity(value)
        key = f"{entity_type}:{value}"
        if key not in entity_map:
            entity_map[key] = EntityInfo(
                name=value,
                type=entity_type,
                value=value,
                first_seen_layer_index=0,
                last_updated_layer_index=0,
            )


def build_entity_map_text(entity_map: Dict[str, EntityInfo]) -> str:
    """Render persons and recent preferences as a ``<global_knowledge>`` block."""
    if not entity_map:
        return ""

    persons = [e for e in entity_map.values() if e.type == "person"]
    # Newest insertion first among equal layer indexes.
    prefs = sorted(
        reversed([e for e in entity_map.values() if e.type == "preference"]),
        key=lambda e: e.last_updated_layer_index,
        reverse=True,
    )[:_ENTITY_MAP_PREFERENCE_LIMIT]

    parts: List[str] = []
    if persons:
        parts.append("People: " + ", ".join(p.name for p in persons))
    if prefs:
        parts.append("Preferences: " + ", ".join(p.value for p in prefs))

    if not parts:
        return ""

    body = "\n".join(parts)
    return f"\n\n<global_knowledge>\n### Known Entities\n{body}\n</global_knowledge>\n"
