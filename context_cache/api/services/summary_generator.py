"""
Summary Generator

Turns a slice of old messages into one formatted, token-aligned summary
block. Also hosts the shared streaming helper and block formatting used by
milestone merge/distillation.
"""
import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from context_cache.providers.openai_stream import stream_chat_completion
from context_cache.providers.types import ApiConfig, ChunkType, CompletionAbortedError

from .entity_extractor import extract
from .service_contracts import CompletionStream, MessagePayload, TokenEstimator
from .token_estimation import estimate_tokens as default_estimate_tokens
from .token_estimation import message_text

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_END_MARKER = "\n<!-- END -->\n"
_PADDING_CHARS_PER_TOKEN = 4
_KNOWN_ENTITY_HINT_LIMIT = 10
_MIN_CONTENT_CHARS = 3

SUMMARY_PROMPT = """You are a conversation compression expert. Compress the conversation below into a structured summary.

## Must keep (by priority):
1. **Entities**: names, numbers, dates, concrete preferences (highest priority, keep verbatim)
2. **Consensus**: confirmed conclusions, decisions, agreements
3. **Todo**: unfinished tasks and open questions

## Output format (follow strictly):
- Entities: [item1] [item2]
- Consensus: [point1], [point2]
- Todo: [point1]

## Rules:
- Drop pleasantries, repetition and attempts that were later rejected
- Omit a category when it has nothing
- Keep the same language as the conversation
- End the output with a newline"""

MILESTONE_PROMPT = """You are a conversation compression expert. Merge the summaries below into one milestone summary.

## Milestone structure (required):
1. **Stage goal**: what this stage accomplished (high level)
2. **Key conclusions**: the most important decisions and consensus
3. **Open items**: unresolved questions and todos
4. **Timeline**: important dates

## Output format:
- Stage goal: [one sentence]
- Key conclusions: [point1] [point2]
- Open items: [point1]
- Timeline: [date1: event] [date2: event]

## Rules:
1. Merge duplicate entity facts, keeping the latest value
2. Keep every unfinished todo
3. Drop decisions that were superseded
4. Prefer stage-level abstraction over concrete details
5. Stay under 300 words"""

DISTILL_PROMPT = """You are a conversation compression expert. Distill the milestone summaries below down to their core.

## Keep only:
- Consensus that is still valid
- Unfinished todos
- Key entities (names, numbers, dates)

## Drop:
- Completed tasks, outdated decisions, intermediate steps

## Output format:
- Core consensus: [1-3 most important conclusions]
- Key entities: [names/numbers/dates]
- Open todos: [unfinished items]

## Rules:
- Stay under 150 words
- Prefer losing detail over losing accuracy of the core facts"""

_VERBOSITY_HINTS = {
    "minimal": "## Verbosity: minimal. Keep each point under 10 words and skip anything not strictly needed later.",
    "medium": "## Verbosity: medium. Keep each point under 20 words.",
    "detailed": "## Verbosity: detailed. Keep reasoning steps and supporting details that later turns may rely on.",
}

_COMPACT_HINT = "## Note: use the most compact form, 150 words at most."

LOW_PRIORITY_PATTERNS = (
    re.compile(r"^(?:好的|好|ok|OK|嗯|哦|行|可以|没问题|收到|明白|了解|知道了)[\s。！!,.，]*$"),
    re.compile(r"^(?:谢谢|感谢|多谢|thanks|thank you|thx|ty)[\s。！!,.，]*$", re.IGNORECASE),
    re.compile(r"^(?:你好|您好|hi|hello|hey)[\s。！!,.，]*$", re.IGNORECASE),
    re.compile(r"^(?:是的|对|没错|确实|同意)[\s。！!,.，]*$"),
    re.compile(r"^(?:okay|sure|yes|yep|yeah|got it|cool|nice|fine|alright|agreed|right)[\s.!,]*$", re.IGNORECASE),
)

_DECISION_RE = re.compile(r"(?:Consensus|共识)\s*[:：]\s*(.+?)(?=\n|$)", re.IGNORECASE)
_DECISION_SPLIT_RE = re.compile(r"[,，]")
_BLOCK_LABEL_RE = re.compile(r"^### (?:Layer|Milestone) Summary #\d+\n", re.MULTILINE)
_RANGE_RE = re.compile(r"^<!-- range: \d+-\d+ -->\n?", re.MULTILINE)
_PADDING_RE = re.compile(r"<!-- padding: -* -->\n?")


@dataclass
class SummaryResult:
    summary: str
    entities: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)


def is_low_priority(content: Optional[str]) -> bool:
    """Filler such as short acknowledgements, greetings and thanks."""
    if not content or len(content.strip()) < _MIN_CONTENT_CHARS:
        return True
    stripped = content.strip()
    return any(pattern.search(stripped) for pattern in LOW_PRIORITY_PATTERNS)


def extract_decisions(text: str) -> List[str]:
    match = _DECISION_RE.search(text or "")
    if not match:
        return []
    return [part.strip() for part in _DECISION_SPLIT_RE.split(match.group(1)) if part.strip()]


def build_layer_id(messages: Sequence[MessagePayload]) -> str:
    """Stable id derived from the ids and roles of the covered messages."""
    content = "|".join(f"{m.get('id', '')}:{m.get('role', '')}" for m in messages)
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()
    return f"layer_{digest[:12]}_{len(messages)}"


class SummaryGenerator:
    """Builds compression prompts, drives the completion stream and formats blocks."""

    def __init__(
        self,
        complete: CompletionStream = stream_chat_completion,
        *,
        estimate_tokens: TokenEstimator = default_estimate_tokens,
        block_end_marker: str = DEFAULT_BLOCK_END_MARKER,
        message_char_limit: int = 300,
        temperature: float = 0.2,
    ):
        self._complete = complete
        self._estimate_tokens = estimate_tokens
        self.block_end_marker = block_end_marker
        self.message_char_limit = message_char_limit
        self.temperature = temperature

    async def complete_text(
        self,
        *,
        api_config: ApiConfig,
        system_prompt: str,
        user_text: str,
        max_tokens: int,
        abort_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Run one streaming completion and return the concatenated content."""
        result = ""
        async for chunk in self._complete(
            api_url=api_config.api_url,
            api_key=api_config.api_key,
            model=api_config.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_text},
            ],
            temperature=self.temperature,
            max_tokens=max_tokens,
            abort_event=abort_event,
        ):
            if abort_event is not None and abort_event.is_set():
                raise CompletionAbortedError("Summarization aborted by caller")
            if chunk.type == ChunkType.CONTENT:
                result += chunk.content or ""
        return result

    def build_transcript(self, messages: Sequence[MessagePayload]) -> str:
        lines = []
        for msg in messages:
            content = message_text(msg)
            if msg.get("role") == "tool" or not content.strip():
                continue
            prefix = "U" if msg.get("role") == "user" else "A"
            lines.append(f"{prefix}: {content[: self.message_char_limit]}")
        return "\n".join(lines)

    async def generate_summary(
        self,
        messages: Sequence[MessagePayload],
        api_config: ApiConfig,
        known_entities: Sequence[str] = (),
        max_tokens: int = 500,
        *,
        compact_max_tokens: int = 300,
        verbosity: str = "medium",
        abort_event: Optional[asyncio.Event] = None,
    ) -> SummaryResult:
        """Summarize a batch of old messages.

        Upstream failures degrade to an entity bullet (or an empty summary);
        ``CompletionAbortedError`` is re-raised so the caller creates no layer.
        """
        filtered = [
            m
            for m in messages
            if m.get("role") == "assistant" or (m.get("role") == "user" and not is_low_priority(message_text(m)))
        ]
        if not filtered:
            return SummaryResult(summary="")

        all_text = " ".join(message_text(m) for m in filtered)
        entities = extract(all_text).flatten()

        prompt = SUMMARY_PROMPT
        verbosity_hint = _VERBOSITY_HINTS.get(verbosity)
        if verbosity_hint:
            prompt += f"\n\n{verbosity_hint}"
        if known_entities:
            hint = ", ".join(list(known_entities)[:_KNOWN_ENTITY_HINT_LIMIT])
            prompt += f"\n\n## Known entities (do not repeat, record only updates):\n{hint}"
        if max_tokens <= compact_max_tokens:
            prompt += f"\n\n{_COMPACT_HINT}"

        try:
            result = await self.complete_text(
                api_config=api_config,
                system_prompt=prompt,
                user_text=self.build_transcript(filtered),
                max_tokens=max_tokens,
                abort_event=abort_event,
            )
        except CompletionAbortedError:
            raise
        except Exception as e:
            logger.error(f"[COMPRESSION] Summary generation failed: {e}")
            result = f"- Entities: {' '.join(entities)}" if entities else ""

        return SummaryResult(
            summary=result.strip(),
            entities=entities,
            decisions=extract_decisions(result),
        )

    def align_to_token_boundary(
        self,
        text: str,
        enable_alignment: bool = True,
        align_unit: int = 64,
        calibration_offset: int = 0,
    ) -> str:
        """Pad ``text`` with an inert comment until its token count hits a unit multiple."""
        if not enable_alignment or align_unit <= 1:
            return text
        if (self._estimate_tokens(text) + calibration_offset) % align_unit == 0:
            return text

        base = text.rstrip() + "\n"

        def padded(width: int) -> str:
            return f"{base}<!-- padding: {'-' * width} -->\n"

        deficit = -(self._estimate_tokens(padded(0)) + calibration_offset) % align_unit
        first_guess = deficit * _PADDING_CHARS_PER_TOKEN
        # The estimate is not linear for every estimator; walk forward when the guess misses.
        for width in range(first_guess, first_guess + align_unit * _PADDING_CHARS_PER_TOKEN + 1):
            candidate = padded(width)
            if (self._estimate_tokens(candidate) + calibration_offset) % align_unit == 0:
                return candidate

        logger.warning("[COMPRESSION] Could not align block to %s-token boundary", align_unit)
        return padded(first_guess)

    def format_summary_output(
        self,
        summary: str,
        layer_index: int,
        message_range: Tuple[int, int],
        is_milestone: bool = False,
        enable_alignment: bool = True,
        align_unit: int = 64,
        calibration_offset: int = 0,
    ) -> str:
        cleaned = summary.replace("\r\n", "\n").replace("\r", "\n").strip()
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)

        label = (
            f"### Milestone Summary #{layer_index + 1}"
            if is_milestone
            else f"### Layer Summary #{layer_index + 1}"
        )
        meta = f"<!-- range: {message_range[0]}-{message_range[1]} -->"
        formatted = f"\n\n{label}\n{meta}\n{cleaned}{self.block_end_marker}"

        return self.align_to_token_boundary(formatted, enable_alignment, align_unit, calibration_offset)

    def strip_block_decorations(self, summary_text: str) -> str:
        """Recover the bare summary from a formatted block."""
        text = _BLOCK_LABEL_RE.sub("", summary_text)
        text = _RANGE_RE.sub("", text)
        text = _PADDING_RE.sub("", text)
        marker = self.block_end_marker.strip()
        if marker:
            text = text.replace(marker, "")
        return text.strip()

    def estimate_tokens(self, text: str) -> int:
        return self._estimate_tokens(text)
