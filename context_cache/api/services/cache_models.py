"""Data model for the tiered context cache."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .service_contracts import MessagePayload


@dataclass
class EntityInfo:
    """One entry in the session entity map. Updated in place, never removed."""
    name: str
    type: str
    value: str
    first_seen_layer_index: int
    last_updated_layer_index: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityInfo":
        return cls(
            name=str(data.get("name", "")),
            type=str(data.get("type", "person")),
            value=str(data.get("value", data.get("name", ""))),
            first_seen_layer_index=int(data.get("first_seen_layer_index", 0)),
            last_updated_layer_index=int(data.get("last_updated_layer_index", 0)),
        )


@dataclass(frozen=True)
class SummaryLayer:
    """An immutable compressed block covering messages[start:end].

    ``summary_text`` is already formatted and token-aligned; it is sent
    verbatim as part of the cached prompt prefix.
    """
    id: str
    summary_text: str
    token_count: int
    message_range: Tuple[int, int]
    created_at: float
    is_milestone: bool = False
    entities: Tuple[str, ...] = ()
    decisions: Tuple[str, ...] = ()

    def contains(self, message_index: int) -> bool:
        start, end = self.message_range
        return start <= message_index < end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "summary_text": self.summary_text,
            "token_count": self.token_count,
            "message_range": [self.message_range[0], self.message_range[1]],
            "created_at": self.created_at,
            "is_milestone": self.is_milestone,
            "entities": list(self.entities),
            "decisions": list(self.decisions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummaryLayer":
        start, end = data.get("message_range") or (0, 0)
        return cls(
            id=str(data.get("id", "")),
            summary_text=str(data.get("summary_text", "")),
            token_count=int(data.get("token_count", 0)),
            message_range=(int(start), int(end)),
            created_at=float(data.get("created_at", 0.0)),
            is_milestone=bool(data.get("is_milestone", False)),
            entities=tuple(data.get("entities") or ()),
            decisions=tuple(data.get("decisions") or ()),
        )


@dataclass
class SessionCache:
    """Mutable per-session state owned by the compression pipeline."""
    layers: List[SummaryLayer] = field(default_factory=list)
    milestones: List[SummaryLayer] = field(default_factory=list)
    entity_map: Dict[str, EntityInfo] = field(default_factory=dict)
    processed_count: int = 0
    # Monotonic layer counter; entity-map indices keep growing across milestone merges
    layer_sequence: int = 0
    last_update_at: float = field(default_factory=time.time)
    pending_compression: bool = False
    async_compression_in_progress: bool = False
    # Calibration
    calibration_offset: int = 0
    consecutive_misses: int = 0
    token_bias_factor: float = 1.0
    bias_calibration_samples: int = 0
    cumulative_bias_sum: float = 0.0

    def middle_layer_tokens(self) -> int:
        return sum(m.token_count for m in self.milestones) + sum(l.token_count for l in self.layers)

    def all_blocks(self) -> List[SummaryLayer]:
        return [*self.milestones, *self.layers]


@dataclass
class CompressionStats:
    total_tokens: int
    summary_tokens: int
    recent_tokens: int
    layer_count: int
    milestone_count: int
    compressed: bool
    entities: List[str]
    pending_compression: bool
    strategy: str
    entity_map_position: str = "after_system"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CompressionResult:
    summary_text: Optional[str]
    entity_map_text: str
    recent_messages: List[MessagePayload]
    stats: CompressionStats


@dataclass(frozen=True)
class LayerLocation:
    """Where a message index currently lives in the cache."""
    layer_type: str  # "milestone" | "layer" | "recent"
    layer_index: int
    message_range: Tuple[int, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layer_type": self.layer_type,
            "layer_index": self.layer_index,
            "message_range": list(self.message_range),
        }
