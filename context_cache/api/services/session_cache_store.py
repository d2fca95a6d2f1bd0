"""In-memory store of per-session caches with export/import for persistence."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .cache_models import EntityInfo, SessionCache, SummaryLayer
from .entity_extractor import seed_entity_map
from .service_contracts import SerializedCache

logger = logging.getLogger(__name__)

LayerLike = Union[SummaryLayer, Dict[str, Any]]


def _to_layer(item: LayerLike) -> SummaryLayer:
    return item if isinstance(item, SummaryLayer) else SummaryLayer.from_dict(item)


def _next_layer_sequence(entity_map: Dict[str, EntityInfo]) -> int:
    return max((info.last_updated_layer_index for info in entity_map.values()), default=-1) + 1


class SessionCacheStore:
    """Owns the session id -> SessionCache table."""

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._caches: Dict[str, SessionCache] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._caches)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._caches

    def items(self) -> Iterator[Tuple[str, SessionCache]]:
        return iter(list(self._caches.items()))

    def get(self, session_id: str) -> Optional[SessionCache]:
        return self._caches.get(session_id)

    def get_or_create(self, session_id: str) -> SessionCache:
        cache = self._caches.get(session_id)
        if cache is None:
            cache = SessionCache(last_update_at=self._clock())
            self._caches[session_id] = cache
        return cache

    def clear(self, session_id: str) -> bool:
        return self._caches.pop(session_id, None) is not None

    def clear_all(self) -> int:
        count = len(self._caches)
        self._caches.clear()
        return count

    def export(self, session_id: str) -> Optional[SerializedCache]:
        """Serialize a session cache into a flat JSON-safe dict."""
        cache = self._caches.get(session_id)
        if cache is None:
            return None

        return {
            "milestones": [m.to_dict() for m in cache.milestones],
            "layers": [l.to_dict() for l in cache.layers],
            "entity_map": [[key, info.to_dict()] for key, info in cache.entity_map.items()],
            "processed_count": cache.processed_count,
            "layer_sequence": cache.layer_sequence,
            "last_update_at": cache.last_update_at,
        }

    def prewarm(self, session_id: str, data: SerializedCache) -> SessionCache:
        """Restore a session from exported data.

        Calibration state and the pending flag of an existing in-memory cache
        for the same session are carried over; the async flag starts cleared.
        """
        data = data or {}
        previous = self._caches.get(session_id)

        cache = SessionCache(
            milestones=[_to_layer(m) for m in data.get("milestones") or []],
            layers=[_to_layer(l) for l in data.get("layers") or []],
            entity_map={
                str(key): info if isinstance(info, EntityInfo) else EntityInfo.from_dict(info)
                for key, info in data.get("entity_map") or []
            },
            processed_count=int(data.get("processed_count") or 0),
            last_update_at=float(data.get("last_update_at") or self._clock()),
        )
        sequence = data.get("layer_sequence")
        cache.layer_sequence = int(sequence) if sequence is not None else _next_layer_sequence(cache.entity_map)
        if previous is not None:
            cache.calibration_offset = previous.calibration_offset
            cache.consecutive_misses = previous.consecutive_misses
            cache.token_bias_factor = previous.token_bias_factor
            cache.bias_calibration_samples = previous.bias_calibration_samples
            cache.cumulative_bias_sum = previous.cumulative_bias_sum
            cache.pending_compression = previous.pending_compression

        self._caches[session_id] = cache
        logger.info(
            "[COMPRESSION] Cache prewarmed for session %s: %d milestones, %d layers, %d tokens",
            session_id,
            len(cache.milestones),
            len(cache.layers),
            cache.middle_layer_tokens(),
        )
        return cache

    def prewarm_milestones_only(
        self,
        session_id: str,
        milestones: Sequence[LayerLike],
        processed_count: int,
    ) -> SessionCache:
        """Restore only milestones; the entity map is rebuilt from their entities."""
        restored: List[SummaryLayer] = [_to_layer(m) for m in milestones or []]
        cache = SessionCache(
            milestones=restored,
            processed_count=max(0, int(processed_count)),
            last_update_at=self._clock(),
        )
        for milestone in restored:
            seed_entity_map(cache.entity_map, milestone.entities)
        cache.layer_sequence = _next_layer_sequence(cache.entity_map)

        self._caches[session_id] = cache
        logger.info(
            "[COMPRESSION] Milestones prewarmed for session %s: %d milestones",
            session_id,
            len(restored),
        )
        return cache
