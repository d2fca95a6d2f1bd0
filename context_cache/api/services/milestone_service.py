"""Milestone merge and distillation."""

import asyncio
import logging
import time
import uuid
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from context_cache.providers.types import ApiConfig, CompletionAbortedError

from .cache_models import SummaryLayer
from .summary_generator import DISTILL_PROMPT, MILESTONE_PROMPT, SummaryGenerator

logger = logging.getLogger(__name__)

_SUMMARY_SEPARATOR = "\n---\n"


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return tuple(seen)


def _span(blocks: Sequence[SummaryLayer]) -> Tuple[int, int]:
    return (blocks[0].message_range[0], blocks[-1].message_range[1])


class MilestoneService:
    """Folds layers into milestones and milestones into a distilled core."""

    def __init__(self, generator: SummaryGenerator, *, clock: Callable[[], float] = time.time):
        self.generator = generator
        self._clock = clock

    def _build_block(
        self,
        *,
        prefix: str,
        summary: str,
        milestone_index: int,
        message_range: Tuple[int, int],
        entities: Tuple[str, ...],
        decisions: Tuple[str, ...],
        enable_alignment: bool,
        align_unit: int,
        calibration_offset: int,
    ) -> SummaryLayer:
        formatted = self.generator.format_summary_output(
            summary,
            milestone_index,
            message_range,
            is_milestone=True,
            enable_alignment=enable_alignment,
            align_unit=align_unit,
            calibration_offset=calibration_offset,
        )
        return SummaryLayer(
            id=f"{prefix}_{uuid.uuid4().hex[:12]}",
            summary_text=formatted,
            token_count=self.generator.estimate_tokens(formatted),
            message_range=message_range,
            created_at=self._clock(),
            is_milestone=True,
            entities=entities,
            decisions=decisions,
        )

    async def merge_layers(
        self,
        layers: Sequence[SummaryLayer],
        api_config: ApiConfig,
        *,
        milestone_index: int = 0,
        max_tokens: int = 600,
        enable_alignment: bool = True,
        align_unit: int = 64,
        calibration_offset: int = 0,
        abort_event: Optional[asyncio.Event] = None,
    ) -> Optional[SummaryLayer]:
        """Merge layers into one milestone spanning their full range.

        An upstream failure falls back to concatenating the layers' bare
        summaries so a valid milestone is still produced.
        """
        if not layers:
            return None

        combined = _SUMMARY_SEPARATOR.join(layer.summary_text for layer in layers)
        try:
            result = await self.generator.complete_text(
                api_config=api_config,
                system_prompt=MILESTONE_PROMPT,
                user_text=combined,
                max_tokens=max_tokens,
                abort_event=abort_event,
            )
        except CompletionAbortedError:
            raise
        except Exception as e:
            logger.error(f"[COMPRESSION] Milestone merge failed, falling back to concatenation: {e}")
            result = "\n".join(self.generator.strip_block_decorations(layer.summary_text) for layer in layers)

        return self._build_block(
            prefix="milestone",
            summary=result.strip(),
            milestone_index=milestone_index,
            message_range=_span(layers),
            entities=_unique(e for layer in layers for e in layer.entities),
            decisions=_unique(d for layer in layers for d in layer.decisions),
            enable_alignment=enable_alignment,
            align_unit=align_unit,
            calibration_offset=calibration_offset,
        )

    async def distill_milestones(
        self,
        milestones: Sequence[SummaryLayer],
        api_config: ApiConfig,
        *,
        max_tokens: int = 300,
        enable_alignment: bool = True,
        align_unit: int = 64,
        calibration_offset: int = 0,
        abort_event: Optional[asyncio.Event] = None,
    ) -> Optional[SummaryLayer]:
        """Distill every milestone except the most recent one.

        Returns None when there is nothing to distill or the upstream call
        fails; the caller then keeps its milestones unchanged.
        """
        if len(milestones) < 2:
            return None

        to_distill = list(milestones[:-1])
        combined = _SUMMARY_SEPARATOR.join(m.summary_text for m in to_distill)
        try:
            result = await self.generator.complete_text(
                api_config=api_config,
                system_prompt=DISTILL_PROMPT,
                user_text=combined,
                max_tokens=max_tokens,
                abort_event=abort_event,
            )
        except CompletionAbortedError:
            raise
        except Exception as e:
            logger.error(f"[COMPRESSION] Milestone distillation failed: {e}")
            return None

        return self._build_block(
            prefix="distilled",
            summary=result.strip(),
            milestone_index=0,
            message_range=_span(to_distill),
            entities=_unique(e for m in to_distill for e in m.entities),
            decisions=(),
            enable_alignment=enable_alignment,
            align_unit=align_unit,
            calibration_offset=calibration_offset,
        )
