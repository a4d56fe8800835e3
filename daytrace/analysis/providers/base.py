"""
Provider protocol plus the prompt building and response parsing every
provider shares.

A provider does two things for a batch: transcribe the combined video into
timestamped observations, then synthesize observations into timeline cards.
Both return the parsed result together with an LLMCall record.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ...config import CategoryConfig
from ...errors import MalformedResponseError
from ...storage.models import Distraction, LLMCall, Observation, TimelineCard
from ...timeutil import format_clock, format_offset, parse_clock, parse_video_timestamp
from ..media import MediaBundle
from ..prompts import CURRENT_CARD_PROMPT, CURRENT_RETRY_FEEDBACK, CURRENT_TRANSCRIPTION_PROMPT

logger = logging.getLogger(__name__)

IDLE_CATEGORY = CategoryConfig(
    name="Idle",
    description="Screen idle, locked or unchanged for a long stretch",
)


@dataclass
class SynthesisContext:
    """Everything a provider needs to (re)write cards for one window."""
    existing_cards: list[TimelineCard] = field(default_factory=list)
    window_start_ts: int = 0
    window_end_ts: int = 0
    categories: list[CategoryConfig] = field(default_factory=list)
    min_card_minutes: float = 10.0
    distraction_min_seconds: int = 30
    retry_feedback: Optional[str] = None
    attempt: int = 1


class LLMProvider(Protocol):
    name: str
    model: str

    def transcribe(
        self, media: MediaBundle, prompt: str, origin_ts: int
    ) -> tuple[list[Observation], LLMCall]:
        ...

    def synthesize(
        self, observations: list[Observation], context: SynthesisContext
    ) -> tuple[list[TimelineCard], LLMCall]:
        ...


# ── Prompt building ───────────────────────────────────────────────────────────

def transcription_prompt(duration: float) -> str:
    return CURRENT_TRANSCRIPTION_PROMPT.format(duration=format_offset(duration))


def card_prompt(observations: list[Observation], context: SynthesisContext) -> str:
    categories = list(context.categories)
    if not any(c.name.lower() == IDLE_CATEGORY.name.lower() for c in categories):
        categories.append(IDLE_CATEGORY)

    category_lines = "\n".join(
        f"- {c.name}: {c.description}" if c.description else f"- {c.name}" for c in categories
    )
    if context.existing_cards:
        card_lines = "\n".join(
            f"- {format_clock(c.start_ts)} - {format_clock(c.end_ts)} [{c.category}] {c.title}: {c.summary}"
            for c in context.existing_cards
        )
    else:
        card_lines = "(none)"
    observation_lines = "\n".join(
        f"[{format_clock(o.start_ts)} - {format_clock(o.end_ts)}] {o.text}" for o in observations
    )

    prompt = CURRENT_CARD_PROMPT.format(
        categories=category_lines,
        existing_cards=card_lines,
        observations=observation_lines or "(none)",
        min_card_minutes=f"{context.min_card_minutes:g}",
        distraction_min_seconds=context.distraction_min_seconds,
    )
    if context.retry_feedback:
        prompt += CURRENT_RETRY_FEEDBACK.format(errors=context.retry_feedback)
    return prompt


# ── Response parsing ──────────────────────────────────────────────────────────

def parse_json(raw: str) -> Any:
    """
    Robust JSON extraction from LLM output.
    Handles models that wrap JSON in markdown fences or prose.
    """
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        pass

    fenced = re.sub(r"```(?:json)?", "", raw or "", flags=re.IGNORECASE).strip()
    try:
        return json.loads(fenced)
    except json.JSONDecodeError:
        pass

    for pattern in (r"\[[\s\S]*\]", r"\{[\s\S]*\}"):
        match = re.search(pattern, raw or "")
        if match:
            try:
                return json.loads(match.group())
            except json.JSONDecodeError:
                pass

    logger.warning(f"Failed to parse LLM JSON. Raw output (first 300 chars): {(raw or '')[:300]}")
    return None


def _as_list(data: Any, key: str) -> Optional[list]:
    """Accept a bare array or an object wrapping one under `key`."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return None


def _offset(value: Any) -> Optional[int]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        return parse_video_timestamp(value)
    return None


def parse_segments(
    raw: str,
    origin_ts: int,
    duration: float,
    tolerance: int = 120,
    model_id: str = "",
) -> list[Observation]:
    """
    Turn a transcription response into absolute-time observations.

    Offsets are relative to the start of the combined video. Any segment
    further than `tolerance` seconds past the video's end means the model
    was describing something else; the whole response is rejected.
    """
    items = _as_list(parse_json(raw), "segments")
    if items is None:
        raise MalformedResponseError("Transcription response is not a JSON array")

    segments: list[tuple[int, int, str]] = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedResponseError(f"Transcription segment is not an object: {item!r}")
        start = _offset(item.get("start", item.get("startTimestamp")))
        end = _offset(item.get("end", item.get("endTimestamp")))
        text = str(item.get("description", "")).strip()
        if start is None or end is None:
            raise MalformedResponseError(f"Unreadable segment timestamps: {item!r}")
        if start > duration + tolerance or end > duration + tolerance:
            raise MalformedResponseError(
                f"Segment {format_offset(start)}-{format_offset(end)} is outside the "
                f"{format_offset(duration)} video"
            )
        if not text or end < start:
            continue
        segments.append((start, min(end, int(duration)), text))

    if not segments:
        raise MalformedResponseError("Transcription produced no observations")

    observations: list[Observation] = []
    previous_end = 0
    for start, end, text in sorted(segments):
        start = max(start, previous_end)
        if end <= start:
            continue
        observations.append(
            Observation(
                batch_id=0,
                start_ts=origin_ts + start,
                end_ts=origin_ts + end,
                text=text,
                model_id=model_id,
            )
        )
        previous_end = end

    if not observations:
        raise MalformedResponseError("Transcription produced no observations")
    return observations


def parse_cards(raw: str, base_ts: int) -> list[TimelineCard]:
    """
    Turn a synthesis response into cards. Clock times resolve relative to
    base_ts. Cards with unreadable times are dropped here and show up as
    coverage problems during validation.
    """
    items = _as_list(parse_json(raw), "cards")
    if items is None:
        raise MalformedResponseError("Card response is not a JSON array")

    cards: list[TimelineCard] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        start = parse_clock(str(item.get("start_time", item.get("startTime", ""))), base_ts)
        end = parse_clock(str(item.get("end_time", item.get("endTime", ""))), base_ts)
        if start is None or end is None:
            logger.warning(f"Dropping card with unreadable times: {str(item)[:200]}")
            continue
        if end < start:
            end += 24 * 3600  # crossed midnight

        distractions = []
        for d in item.get("distractions") or []:
            if not isinstance(d, dict):
                continue
            d_start = parse_clock(str(d.get("start_time", d.get("startTime", ""))), start)
            d_end = parse_clock(str(d.get("end_time", d.get("endTime", ""))), start)
            if d_start is None or d_end is None:
                continue
            distractions.append(
                Distraction(
                    start_ts=d_start,
                    end_ts=d_end,
                    title=str(d.get("title", "")),
                    summary=str(d.get("summary", "")),
                )
            )

        cards.append(
            TimelineCard(
                start_ts=start,
                end_ts=end,
                category=str(item.get("category", "")) or "Uncategorized",
                subcategory=str(item.get("subcategory", "")),
                title=str(item.get("title", "")).strip() or "Untitled",
                summary=str(item.get("summary", "")),
                detailed_summary=str(item.get("detailed_summary", item.get("detailedSummary", ""))),
                distractions=distractions,
            )
        )
    return cards


# ── Call records ──────────────────────────────────────────────────────────────

def record_call(
    operation: str,
    model: str,
    started: float,
    input_text: str = "",
    output_text: str = "",
    error: Optional[BaseException] = None,
    attempt: int = 1,
) -> LLMCall:
    """Build an LLMCall from a monotonic start time."""
    return LLMCall(
        operation=operation,
        model=model,
        attempt=attempt,
        status="failure" if error else "success",
        latency=time.monotonic() - started,
        input=input_text[:4000],
        output=output_text[:8000],
        error=str(error) if error else None,
    )
