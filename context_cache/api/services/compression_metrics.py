"""Per-session compression counters for observability."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class CompressionMetrics:
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    layer_creations: int = 0
    milestone_creations: int = 0
    hard_limit_triggers: int = 0
    # Hit rate captured when the latest milestone was created
    last_milestone_hit_rate: float = 1.0
    milestone_distillations: int = 0
    calibration_adjustments: int = 0

    @property
    def cache_hit_rate(self) -> float:
        if self.total_requests <= 0:
            return 1.0
        return self.cache_hits / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cache_hit_rate"] = self.cache_hit_rate
        return data


class CompressionMetricsStore:
    """Owns the session id -> CompressionMetrics table."""

    def __init__(self):
        self._metrics: Dict[str, CompressionMetrics] = {}

    def get(self, session_id: str) -> Optional[CompressionMetrics]:
        return self._metrics.get(session_id)

    def get_or_create(self, session_id: str) -> CompressionMetrics:
        metrics = self._metrics.get(session_id)
        if metrics is None:
            metrics = CompressionMetrics()
            self._metrics[session_id] = metrics
        return metrics

    def record_request(self, session_id: str, hit: bool) -> CompressionMetrics:
        metrics = self.get_or_create(session_id)
        metrics.total_requests += 1
        if hit:
            metrics.cache_hits += 1
        else:
            metrics.cache_misses += 1
        return metrics

    def record_layer_creation(self, session_id: str) -> None:
        self.get_or_create(session_id).layer_creations += 1

    def record_milestone_creation(self, session_id: str) -> None:
        metrics = self.get_or_create(session_id)
        metrics.milestone_creations += 1
        metrics.last_milestone_hit_rate = metrics.cache_hit_rate

    def record_hard_limit_trigger(self, session_id: str) -> None:
        self.get_or_create(session_id).hard_limit_triggers += 1

    def record_milestone_distillation(self, session_id: str) -> None:
        self.get_or_create(session_id).milestone_distillations += 1

    def record_calibration_adjustment(self, session_id: str) -> None:
        self.get_or_create(session_id).calibration_adjustments += 1

    def clear(self, session_id: str) -> None:
        self._metrics.pop(session_id, None)

    def clear_all(self) -> None:
        self._metrics.clear()
