"""
Structural checks on synthesized timeline cards.

Every check returns a list of human-readable problems (empty when fine).
The messages are fed back verbatim to the model on the next attempt, so
they name cards and clock times the way the model wrote them.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, Optional

from ..storage.models import TimelineCard
from ..timeutil import format_clock

logger = logging.getLogger(__name__)

Range = tuple[int, int]

# Ranges closer than this are treated as one when building the coverage reference
MERGE_ADJACENCY_SECONDS = 60


# ── Range helpers ─────────────────────────────────────────────────────────────

def merge_ranges(ranges: Iterable[Range], adjacency: int = MERGE_ADJACENCY_SECONDS) -> list[Range]:
    merged: list[Range] = []
    for start, end in sorted(r for r in ranges if r[1] > r[0]):
        if merged and start <= merged[-1][1] + adjacency:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def uncovered_segments(reference: list[Range], covering: list[Range]) -> list[Range]:
    """Parts of the reference ranges that no covering range touches."""
    cover = merge_ranges(covering, adjacency=0)
    gaps: list[Range] = []
    for ref_start, ref_end in reference:
        cursor = ref_start
        for c_start, c_end in cover:
            if c_end <= cursor:
                continue
            if c_start >= ref_end:
                break
            if c_start > cursor:
                gaps.append((cursor, min(c_start, ref_end)))
            cursor = max(cursor, c_end)
            if cursor >= ref_end:
                break
        if cursor < ref_end:
            gaps.append((cursor, ref_end))
    return gaps


def coverage_ratio(reference: list[Range], cards: list[TimelineCard]) -> float:
    total = sum(end - start for start, end in reference)
    if total <= 0:
        return 1.0
    missing = sum(end - start for start, end in uncovered_segments(reference, _card_ranges(cards)))
    return max(0.0, 1.0 - missing / total)


def _card_ranges(cards: Iterable[TimelineCard]) -> list[Range]:
    return [(c.start_ts, c.end_ts) for c in cards if c.end_ts > c.start_ts]


def _describe(cards: list[TimelineCard]) -> str:
    if not cards:
        return "  (none)"
    return "\n".join(
        f"  {i}. {format_clock(c.start_ts)} - {format_clock(c.end_ts)}: {c.title}"
        for i, c in enumerate(cards, 1)
    )


# ── Checks ────────────────────────────────────────────────────────────────────

def check_overlap(cards: list[TimelineCard]) -> list[str]:
    problems = []
    ordered = sorted(cards, key=lambda c: c.start_ts)
    for prev, card in zip(ordered, ordered[1:]):
        if card.start_ts < prev.end_ts:
            problems.append(
                f"Card '{card.title}' ({format_clock(card.start_ts)} - {format_clock(card.end_ts)}) "
                f"overlaps '{prev.title}' ({format_clock(prev.start_ts)} - {format_clock(prev.end_ts)})"
            )
    return problems


def check_coverage(
    cards: list[TimelineCard],
    reference: list[Range],
    input_cards: Optional[list[TimelineCard]] = None,
    flex_minutes: float = 3.0,
    tolerance: float = 0.1,
) -> list[str]:
    """
    Cards must cover the reference span. Gaps up to flex_minutes are
    forgiven, but the covered share must still reach 1 - tolerance.
    """
    reference = merge_ranges(reference)
    if not reference:
        return []

    flex = flex_minutes * 60
    gaps = [g for g in uncovered_segments(reference, _card_ranges(cards)) if g[1] - g[0] > flex]
    ratio = coverage_ratio(reference, cards)
    if not gaps and ratio >= 1.0 - tolerance:
        return []

    if gaps:
        listed = ", ".join(
            f"{format_clock(s)}-{format_clock(e)} ({(e - s) // 60} min)" for s, e in gaps
        )
        message = f"Missing coverage for time segments: {listed}"
    else:
        message = f"Cards cover only {ratio:.0%} of the observed period"

    message += f"\n\nINPUT CARDS:\n{_describe(input_cards or [])}"
    message += f"\n\nOUTPUT CARDS:\n{_describe(sorted(cards, key=lambda c: c.start_ts))}"
    return [message]


def check_durations(cards: list[TimelineCard], min_card_minutes: float = 10.0) -> list[str]:
    problems = []
    ordered = sorted(cards, key=lambda c: c.start_ts)
    for index, card in enumerate(ordered):
        minutes = card.duration / 60
        if card.duration <= 0:
            problems.append(
                f"Card {index + 1} '{card.title}' ends before it starts "
                f"({format_clock(card.start_ts)} - {format_clock(card.end_ts)})"
            )
        elif minutes < min_card_minutes and index < len(ordered) - 1:
            problems.append(f"Card {index + 1} '{card.title}' is only {minutes:.1f} minutes long")
    return problems


def check_continuity(cards: list[TimelineCard], preceding: Optional[TimelineCard]) -> list[str]:
    """
    preceding is the existing card that was running when the window opened.
    A new card that continues it must keep its start time rather than
    starting part-way through it.
    """
    if preceding is None or not cards:
        return []
    first = min(cards, key=lambda c: c.start_ts)
    if preceding.start_ts < first.start_ts < preceding.end_ts:
        return [
            f"Card '{first.title}' starts at {format_clock(first.start_ts)}, part-way through "
            f"'{preceding.title}' which started at {format_clock(preceding.start_ts)}. "
            f"If it continues that activity keep the start time {format_clock(preceding.start_ts)}"
        ]
    return []


def validate_cards(
    cards: list[TimelineCard],
    reference: list[Range],
    input_cards: Optional[list[TimelineCard]] = None,
    preceding: Optional[TimelineCard] = None,
    min_card_minutes: float = 10.0,
    flex_minutes: float = 3.0,
    tolerance: float = 0.1,
) -> list[str]:
    if not cards:
        return ["No cards were returned"]
    return (
        check_overlap(cards)
        + check_coverage(cards, reference, input_cards, flex_minutes, tolerance)
        + check_durations(cards, min_card_minutes)
        + check_continuity(cards, preceding)
    )


# ── Normalization ─────────────────────────────────────────────────────────────

def normalize_cards(
    cards: list[TimelineCard],
    min_card_minutes: float = 10.0,
    distraction_min_seconds: int = 30,
) -> list[TimelineCard]:
    """
    Sort, clamp overlaps (a card starts where the previous one ended), drop
    cards left with no duration, and keep only distractions that sit inside
    their card and last between distraction_min_seconds and the card minimum.
    """
    max_distraction = int(min_card_minutes * 60)
    result: list[TimelineCard] = []
    for card in sorted(cards, key=lambda c: (c.start_ts, c.end_ts)):
        start = card.start_ts
        if result and start < result[-1].end_ts:
            start = result[-1].end_ts
        if card.end_ts <= start:
            logger.debug(f"Dropping card '{card.title}' with no remaining duration")
            continue
        distractions = [
            d for d in card.distractions
            if d.start_ts >= start
            and d.end_ts <= card.end_ts
            and distraction_min_seconds <= d.duration < max_distraction
        ]
        result.append(replace(card, start_ts=start, distractions=list(distractions)))
    return result
