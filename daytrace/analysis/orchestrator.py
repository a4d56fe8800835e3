"""
Drives one analysis batch from pending to a terminal state.

  load → (failed_empty | skipped_short) → resolve provider → claim
       → combine video → transcribe → save observations
       → synthesize + validate (retry with feedback) → replace cards
       → optional timelapses → analyzed

Anything that goes wrong after the claim marks the batch failed with a
readable reason and, when enabled, writes a "Processing failed" card over
the batch span so the gap is visible on the timeline.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from typing import Callable, Optional, TypeVar

from ..config import Config
from ..errors import DaytraceError, MediaError, human_readable
from ..storage.db import Database
from ..storage.models import (
    AnalysisBatch,
    BatchStatus,
    LLMCall,
    Observation,
    RecordingChunk,
    TimelineCard,
)
from ..timeutil import logical_day
from .media import MediaBundle, combine_chunks, delete_media_files, render_timelapse
from .providers.base import LLMProvider, SynthesisContext, record_call, transcription_prompt
from .retry import call_with_retry
from .validation import normalize_cards, validate_cards

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_CATEGORY = "System"
ERROR_SUBCATEGORY = "Error"
ERROR_TITLE = "Processing failed"


def _close_provider(provider: LLMProvider) -> None:
    close = getattr(provider, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as e:
        logger.warning(f"Could not close {provider.name} provider: {e}")


class Orchestrator:
    def __init__(
        self,
        db: Database,
        provider_factory: Callable[[], LLMProvider],
        config: Config,
        media_builder: Callable[[list[RecordingChunk]], MediaBundle] = combine_chunks,
    ):
        self.db = db
        self.provider_factory = provider_factory
        self.config = config
        self.media_builder = media_builder
        # Window consolidation reads and rewrites neighbouring cards
        self._window_lock = threading.Lock()

    # ── Entry point ───────────────────────────────────────────────────────────

    def run(self, batch_id: int) -> BatchStatus:
        """
        Process one batch. Returns the batch's status afterwards.
        Raises ProviderNotConfiguredError (batch left pending) and
        sqlite3.Error; every other failure is recorded on the batch.
        """
        batch = self.db.get_batch(batch_id)
        if batch is None:
            raise DaytraceError(f"Batch {batch_id} does not exist")
        if batch.status != BatchStatus.PENDING:
            logger.debug(f"Batch {batch_id} is {batch.status.value}, nothing to do")
            return batch.status

        chunks = self.db.chunks_for_batch(batch_id)
        if not chunks:
            return self._finish_without_analysis(
                batch_id, BatchStatus.FAILED_EMPTY, "Batch has no recording chunks"
            )
        recorded = sum(c.duration for c in chunks)
        minimum = self.config.batching.min_batch_seconds
        if recorded < minimum:
            return self._finish_without_analysis(
                batch_id,
                BatchStatus.SKIPPED_SHORT,
                f"Only {recorded}s of recording (minimum {minimum}s)",
            )

        provider = self.provider_factory()
        try:
            return self._claim_and_process(batch, chunks, recorded, provider)
        finally:
            _close_provider(provider)

    def _claim_and_process(
        self,
        batch: AnalysisBatch,
        chunks: list[RecordingChunk],
        recorded: int,
        provider: LLMProvider,
    ) -> BatchStatus:
        batch_id = batch.id
        if not self.db.claim_batch(batch_id):
            logger.info(f"Batch {batch_id} was claimed by another run")
            return self.db.get_batch_status(batch_id) or BatchStatus.PROCESSING

        logger.info(
            f"Analyzing batch {batch_id} ({recorded}s, {len(chunks)} chunk(s)) with {provider.name}"
        )
        started = time.monotonic()
        calls: list[LLMCall] = []
        try:
            status = self._process(batch, chunks, provider, calls)
            logger.info(
                f"Batch {batch_id} {status.value} in {time.monotonic() - started:.1f}s"
            )
        except Exception as exc:
            reason = human_readable(exc)
            logger.error(f"Batch {batch_id} failed: {reason}", exc_info=True)
            self.db.mark_batch_failed(batch_id, reason)
            self._write_error_card(batch, reason)
            status = BatchStatus.FAILED
        finally:
            self.db.set_batch_call_log(batch_id, calls)
        return status

    def _finish_without_analysis(self, batch_id: int, status: BatchStatus, reason: str) -> BatchStatus:
        if self.db.claim_batch(batch_id):
            self.db.update_batch_status(batch_id, status, reason=reason)
            logger.info(f"Batch {batch_id} {status.value}: {reason}")
        return self.db.get_batch_status(batch_id) or status

    # ── Pipeline ──────────────────────────────────────────────────────────────

    def _process(
        self,
        batch: AnalysisBatch,
        chunks: list[RecordingChunk],
        provider: LLMProvider,
        calls: list[LLMCall],
    ) -> BatchStatus:
        media = self.media_builder(chunks)
        try:
            prompt = transcription_prompt(media.duration)
            observations = self._call(
                lambda: provider.transcribe(media, prompt, batch.start_ts),
                "transcribe", provider, calls,
            )
        finally:
            media.cleanup()

        for obs in observations:
            obs.batch_id = batch.id
        self.db.save_observations(batch.id, observations)

        if not observations:
            logger.info(f"Batch {batch.id}: no observations, no cards to write")
            self.db.update_batch_status(batch.id, BatchStatus.ANALYZED)
            return BatchStatus.ANALYZED

        if self.config.analysis.mode == "whole_batch":
            card_ids, cards = self._synthesize_batch(batch, observations, provider, calls)
        else:
            # windows of neighbouring batches overlap
            with self._window_lock:
                card_ids, cards = self._synthesize_window(batch, provider, calls)

        if self.config.analysis.timelapses:
            self._render_timelapses(card_ids, cards)

        self.db.update_batch_status(batch.id, BatchStatus.ANALYZED)
        return BatchStatus.ANALYZED

    def _synthesize_window(
        self, batch: AnalysisBatch, provider: LLMProvider, calls: list[LLMCall]
    ) -> tuple[list[int], list[TimelineCard]]:
        """Rewrite every card in the trailing window ending at the batch end."""
        window_end = batch.end_ts
        window_start = window_end - self.config.analysis.window_seconds
        observations = self.db.observations_in_range(window_start, window_end)
        existing = self.db.cards_in_range(window_start, window_end)

        reference = [(o.start_ts, o.end_ts) for o in observations]
        reference += [(c.start_ts, c.end_ts) for c in existing]
        first_observed = min(o.start_ts for o in observations)
        preceding = next(
            (c for c in existing if c.start_ts < first_observed < c.end_ts), None
        )

        cards = self._synthesize_validated(
            batch, provider, observations, existing, reference, preceding,
            window_start, window_end, calls,
        )
        return self._replace(batch, cards, window_start, window_end)

    def _synthesize_batch(
        self,
        batch: AnalysisBatch,
        observations: list[Observation],
        provider: LLMProvider,
        calls: list[LLMCall],
    ) -> tuple[list[int], list[TimelineCard]]:
        """Synthesize this batch alone, with the day's earlier cards as context."""
        day_cards = [
            c for c in self.db.cards_for_day(logical_day(batch.start_ts))
            if c.start_ts < batch.start_ts
        ]
        overlapping = [c for c in day_cards if c.end_ts > batch.start_ts]
        reference = [(o.start_ts, o.end_ts) for o in observations]
        reference += [(c.start_ts, c.end_ts) for c in overlapping]
        preceding = overlapping[-1] if overlapping else None

        cards = self._synthesize_validated(
            batch, provider, observations, day_cards, reference, preceding,
            batch.start_ts, batch.end_ts, calls,
        )
        return self._replace(batch, cards, batch.start_ts, batch.end_ts)

    def _synthesize_validated(
        self,
        batch: AnalysisBatch,
        provider: LLMProvider,
        observations: list[Observation],
        existing: list[TimelineCard],
        reference: list[tuple[int, int]],
        preceding: Optional[TimelineCard],
        window_start: int,
        window_end: int,
        calls: list[LLMCall],
    ) -> list[TimelineCard]:
        cfg = self.config.analysis
        attempts = max(1, cfg.max_validation_attempts)
        feedback: Optional[str] = None
        cards: list[TimelineCard] = []

        for attempt in range(1, attempts + 1):
            context = SynthesisContext(
                existing_cards=existing,
                window_start_ts=window_start,
                window_end_ts=window_end,
                categories=list(cfg.categories),
                min_card_minutes=cfg.min_card_minutes,
                distraction_min_seconds=cfg.distraction_min_seconds,
                retry_feedback=feedback,
                attempt=attempt,
            )
            cards = self._call(
                lambda: provider.synthesize(observations, context),
                "synthesize", provider, calls,
            )
            problems = validate_cards(
                cards,
                reference,
                input_cards=existing,
                preceding=preceding,
                min_card_minutes=cfg.min_card_minutes,
                flex_minutes=cfg.coverage_flex_minutes,
                tolerance=cfg.coverage_tolerance,
            )
            if not problems:
                return normalize_cards(cards, cfg.min_card_minutes, cfg.distraction_min_seconds)

            logger.warning(
                f"Batch {batch.id}: cards failed validation "
                f"(attempt {attempt}/{attempts}): {problems[0].splitlines()[0]}"
            )
            feedback = "\n".join(f"- {p}" for p in problems)

        accepted = normalize_cards(cards, cfg.min_card_minutes, cfg.distraction_min_seconds)
        if not accepted:
            raise DaytraceError("Card generation returned no usable cards")
        logger.warning(
            f"Batch {batch.id}: keeping {len(accepted)} unvalidated card(s) after {attempts} attempts"
        )
        for card in accepted:
            card.validated = False
        return accepted

    def _replace(
        self, batch: AnalysisBatch, cards: list[TimelineCard], range_start: int, range_end: int
    ) -> tuple[list[int], list[TimelineCard]]:
        start = min([range_start] + [c.start_ts for c in cards])
        end = max([range_end] + [c.end_ts for c in cards])
        for card in cards:
            card.batch_id = batch.id
            card.day = logical_day(card.start_ts)
        card_ids, reclaimed = self.db.replace_cards_in_range(start, end, cards, batch.id)
        delete_media_files(reclaimed)
        logger.info(f"Batch {batch.id}: wrote {len(card_ids)} card(s)")
        return card_ids, cards

    # ── Provider calls ────────────────────────────────────────────────────────

    def _call(
        self,
        fn: Callable[[], tuple[T, LLMCall]],
        operation: str,
        provider: LLMProvider,
        calls: list[LLMCall],
    ) -> T:
        """
        Retry transient failures; log every attempt into the batch call log.
        Attempts are numbered per operation across the whole batch run.
        """

        def attempt() -> T:
            attempt_number = 1 + sum(1 for c in calls if c.operation == operation)
            started = time.monotonic()
            try:
                result, call = fn()
            except Exception as exc:
                calls.append(
                    record_call(operation, provider.model, started, error=exc, attempt=attempt_number)
                )
                raise
            call.attempt = attempt_number
            calls.append(call)
            return result

        cfg = self.config.analysis
        return call_with_retry(
            attempt,
            attempts=cfg.max_transient_attempts,
            base_delay=cfg.retry_base_delay,
            operation=f"{provider.name} {operation}",
        )

    # ── Side outputs ──────────────────────────────────────────────────────────

    def _render_timelapses(self, card_ids: list[int], cards: list[TimelineCard]) -> None:
        out_dir = self.config.storage.timelapse_path
        for card_id, card in zip(card_ids, cards):
            try:
                chunks = self.db.chunks_in_range(card.start_ts, card.end_ts)
                path = render_timelapse(
                    chunks,
                    card.start_ts,
                    card.end_ts,
                    out_dir / f"card_{card_id}.mp4",
                    speedup=self.config.analysis.timelapse_speedup,
                )
            except (MediaError, OSError) as e:
                logger.warning(f"Timelapse for card {card_id} failed: {e}")
                continue
            if path is not None:
                self.db.update_card_video(card_id, str(path))

    def _write_error_card(self, batch: AnalysisBatch, reason: str) -> None:
        if not self.config.analysis.error_cards:
            return
        card = TimelineCard(
            start_ts=batch.start_ts,
            end_ts=batch.end_ts,
            category=ERROR_CATEGORY,
            subcategory=ERROR_SUBCATEGORY,
            title=ERROR_TITLE,
            summary=reason,
            detailed_summary=(
                f"This period could not be analyzed: {reason}\n"
                "Reprocess the day once the problem is fixed."
            ),
            batch_id=batch.id,
        )
        try:
            _, reclaimed = self.db.replace_cards_in_range(
                batch.start_ts, batch.end_ts, [card], batch.id
            )
            delete_media_files(reclaimed)
        except sqlite3.Error as e:
            logger.error(f"Could not write error card for batch {batch.id}: {e}")
