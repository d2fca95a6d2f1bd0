"""Context cache API router."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..config import settings
from ..services.compression_strategy import StrategyType
from ..services.context_cache_config_service import ContextCacheConfigService
from ..services.context_compression_service import ContextCompressionService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/context-cache", tags=["context-cache"])

_service: Optional[ContextCompressionService] = None


class SummaryLayerPayload(BaseModel):
    id: str
    summary_text: str
    token_count: int = Field(default=0, ge=0)
    message_range: List[int] = Field(..., min_length=2, max_length=2)
    created_at: float = 0.0
    is_milestone: bool = False
    entities: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)


class PrewarmRequest(BaseModel):
    milestones: List[SummaryLayerPayload] = Field(default_factory=list)
    layers: List[SummaryLayerPayload] = Field(default_factory=list)
    entity_map: List[List[Any]] = Field(default_factory=list)
    processed_count: int = Field(default=0, ge=0)
    layer_sequence: Optional[int] = Field(default=None, ge=0)
    last_update_at: Optional[float] = None
    milestones_only: bool = False


class CalibrateRequest(BaseModel):
    cache_hit_tokens: Optional[int] = Field(default=None, ge=0)
    expected_cache_tokens: int = Field(..., ge=0)
    actual_prompt_tokens: Optional[int] = Field(default=None, ge=0)
    estimated_prompt_tokens: Optional[int] = Field(default=None, ge=0)


class CalibrateResponse(BaseModel):
    adjusted: bool


class EstimateRequest(BaseModel):
    raw_estimate: int = Field(..., ge=0)


class EstimateResponse(BaseModel):
    raw_estimate: int
    calibrated_estimate: int


class StrategyUpdate(BaseModel):
    strategy: StrategyType


class LayerLocationResponse(BaseModel):
    layer_type: str
    layer_index: int
    message_range: List[int]


def get_context_compression_service() -> ContextCompressionService:
    global _service
    if _service is None:
        config_path = settings.context_cache_config_path
        _service = ContextCompressionService(
            config_service=ContextCacheConfigService(str(config_path) if config_path else None),
        )
    return _service


def _require_session(service: ContextCompressionService, session_id: str) -> None:
    if service.store.get(session_id) is None:
        raise HTTPException(status_code=404, detail=f"No context cache for session {session_id}")


@router.get("/metrics")
async def get_global_metrics(
    service: ContextCompressionService = Depends(get_context_compression_service),
) -> Dict[str, Any]:
    return service.get_global_compression_metrics()


@router.get("/strategies")
async def list_strategies(
    service: ContextCompressionService = Depends(get_context_compression_service),
) -> Dict[str, Dict[str, Any]]:
    return service.get_strategy_summary()


@router.get("/{session_id}/stats")
async def get_session_stats(
    session_id: str,
    service: ContextCompressionService = Depends(get_context_compression_service),
) -> Dict[str, Any]:
    stats = service.get_cache_stats(session_id)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No context cache for session {session_id}")
    return stats


@router.get("/{session_id}/export")
async def export_session_cache(
    session_id: str,
    service: ContextCompressionService = Depends(get_context_compression_service),
) -> Dict[str, Any]:
    data = service.export_cache(session_id)
    if data is None:
        raise HTTPException(status_code=404, detail=f"No context cache for session {session_id}")
    return data


@router.put("/{session_id}/prewarm")
async def prewarm_session_cache(
    session_id: str,
    request: PrewarmRequest,
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    milestones = [m.model_dump() for m in request.milestones]
    if request.milestones_only:
        service.prewarm_milestones_only(session_id, milestones, request.processed_count)
    else:
        data = request.model_dump(exclude={"milestones_only"})
        data["milestones"] = milestones
        service.prewarm_cache(session_id, data)

    logger.info("Prewarmed context cache for session %s", session_id)
    return {"message": "Context cache prewarmed", "stats": service.get_cache_stats(session_id)}


@router.post("/{session_id}/calibrate", response_model=CalibrateResponse)
async def calibrate_session(
    session_id: str,
    request: CalibrateRequest,
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    _require_session(service, session_id)
    adjusted = service.calibrate_token_offset(
        session_id,
        request.cache_hit_tokens,
        request.expected_cache_tokens,
        actual_prompt_tokens=request.actual_prompt_tokens,
        estimated_prompt_tokens=request.estimated_prompt_tokens,
    )
    return CalibrateResponse(adjusted=adjusted)


@router.post("/{session_id}/estimate", response_model=EstimateResponse)
async def estimate_tokens(
    session_id: str,
    request: EstimateRequest,
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    return EstimateResponse(
        raw_estimate=request.raw_estimate,
        calibrated_estimate=service.get_calibrated_token_estimate(session_id, request.raw_estimate),
    )


@router.put("/{session_id}/strategy")
async def set_session_strategy(
    session_id: str,
    request: StrategyUpdate,
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    service.set_session_strategy(session_id, request.strategy)
    return {"message": f"Strategy set to {request.strategy.value}"}


@router.get("/{session_id}/layers/{message_index}", response_model=LayerLocationResponse)
async def find_layer(
    session_id: str,
    message_index: int,
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    location = service.find_layer_by_message_index(session_id, message_index)
    if location is None:
        raise HTTPException(status_code=404, detail=f"No context cache for session {session_id}")
    return LayerLocationResponse(**location.to_dict())


@router.delete("/{session_id}")
async def clear_session_cache(
    session_id: str,
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    if not service.clear_summary_cache(session_id):
        raise HTTPException(status_code=404, detail=f"No context cache for session {session_id}")
    return {"message": "Context cache cleared"}


@router.delete("")
async def clear_all_caches(
    service: ContextCompressionService = Depends(get_context_compression_service),
):
    count = service.clear_all_summary_cache()
    return {"message": "All context caches cleared", "cleared": count}
