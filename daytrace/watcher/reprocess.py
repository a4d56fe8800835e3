"""
Reprocessing: throw away a day's (or some batches') analysis and run it again.

Steps: resolve batches → delete the days' cards and their video files →
delete the batches' observations → reset batches to pending → run each
batch in order, waiting for it to finish before starting the next.

Batches run one at a time so each sliding window sees the cards written by
the batch before it.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..analysis.media import delete_media_files
from ..analysis.retry import poll_until
from ..config import Config
from ..errors import DaytraceError, ProviderNotConfiguredError, ProviderTimeoutError, human_readable
from ..storage.db import Database
from ..storage.models import AnalysisBatch, BatchStatus
from ..timeutil import format_clock, format_duration, logical_day
from .scheduler import AnalysisScheduler

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


@dataclass
class BatchTiming:
    batch_id: int
    seconds: float
    status: Optional[BatchStatus]


@dataclass
class ReprocessResult:
    success: bool
    total: int = 0
    processed: int = 0
    timings: list[BatchTiming] = field(default_factory=list)
    elapsed: float = 0.0
    error: Optional[str] = None

    @property
    def average(self) -> float:
        return sum(t.seconds for t in self.timings) / len(self.timings) if self.timings else 0.0

    @property
    def failed(self) -> int:
        return sum(1 for t in self.timings if t.status not in (BatchStatus.ANALYZED, BatchStatus.COMPLETED))

    def summary(self) -> str:
        lines = ["Reprocessing complete" if self.success else "Reprocessing stopped"]
        lines.append(f"Total batches: {self.total}")
        lines.append(f"Processed: {self.processed}")
        if self.failed:
            lines.append(f"Not analyzed: {self.failed}")
        lines.append(f"Total time: {format_duration(self.elapsed)}")
        if self.timings:
            lines.append(f"Average per batch: {format_duration(self.average)}")
            lines.append("Batch timings:")
            for t in self.timings:
                status = t.status.value if t.status else "unfinished"
                lines.append(f"  #{t.batch_id}: {format_duration(t.seconds)} ({status})")
        if self.error:
            lines.append(f"Error: {self.error}")
        return "\n".join(lines)


class ReprocessCoordinator:
    def __init__(self, db: Database, scheduler: AnalysisScheduler, config: Config):
        self.db = db
        self.scheduler = scheduler
        self.config = config

    def reprocess_day(self, day: str, progress: Optional[ProgressCallback] = None) -> ReprocessResult:
        batches = self.db.batches_for_day(day)
        if not batches:
            return self._fail(progress, f"No batches found for {day}")
        return self._reprocess(batches, [day], progress)

    def reprocess_batches(
        self, batch_ids: list[int], progress: Optional[ProgressCallback] = None
    ) -> ReprocessResult:
        batches = self.db.batches_by_ids(batch_ids)
        missing = sorted(set(batch_ids) - {b.id for b in batches})
        if missing:
            logger.warning(f"Unknown batch id(s) ignored: {missing}")
        if not batches:
            return self._fail(progress, "None of the requested batches exist")
        days = sorted({logical_day(b.start_ts) for b in batches})
        return self._reprocess(batches, days, progress)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _fail(self, progress: Optional[ProgressCallback], error: str) -> ReprocessResult:
        if progress:
            progress(f"Error: {error}")
        return ReprocessResult(success=False, error=error)

    def _reprocess(
        self,
        batches: list[AnalysisBatch],
        days: list[str],
        progress: Optional[ProgressCallback],
    ) -> ReprocessResult:
        emit = progress or (lambda message: None)
        started = time.monotonic()
        batch_ids = [b.id for b in batches]
        result = ReprocessResult(success=False, total=len(batches))

        try:
            emit(f"Preparing to reprocess {len(batches)} batch(es) for {', '.join(days)}")
            reclaimed: list[str] = []
            for day in days:
                reclaimed += self.db.delete_cards_for_day(day)
            delete_media_files(reclaimed)
            emit(f"Deleted timeline cards for {', '.join(days)}")

            removed = self.db.delete_observations_for_batches(batch_ids)
            emit(f"Deleted {removed} observation(s)")

            self.db.reset_batches(batch_ids)
            emit("Reset batch statuses to pending")
        except sqlite3.Error as e:
            logger.error(f"Reprocess preparation failed: {e}", exc_info=True)
            result.error = human_readable(e)
            result.elapsed = time.monotonic() - started
            emit(f"Error: {result.error}")
            return result

        for index, batch in enumerate(batches, 1):
            emit(
                f"Processing batch {index}/{len(batches)} "
                f"(#{batch.id}, {format_clock(batch.start_ts)} - {format_clock(batch.end_ts)})"
            )
            batch_started = time.monotonic()
            try:
                status = self._run_and_wait(batch.id)
            except ProviderTimeoutError as e:
                # The batch is still running; starting the next one would overlap it
                logger.error(f"Batch {batch.id}: {e}")
                result.timings.append(
                    BatchTiming(batch_id=batch.id, seconds=time.monotonic() - batch_started, status=None)
                )
                result.processed += 1
                result.error = f"{e}. Stopping so batches do not overlap."
                result.elapsed = time.monotonic() - started
                emit(f"Error: {result.error}")
                return result
            except (DaytraceError, sqlite3.Error) as e:
                result.error = human_readable(e)
                result.elapsed = time.monotonic() - started
                emit(f"Error: {result.error}")
                return result

            seconds = time.monotonic() - batch_started
            result.timings.append(BatchTiming(batch_id=batch.id, seconds=seconds, status=status))
            result.processed += 1
            label = status.value if status else "removed"
            emit(f"Batch {index}/{len(batches)} {label} in {format_duration(seconds)}")

        result.success = True
        result.elapsed = time.monotonic() - started
        logger.info(result.summary())
        return result

    def _run_and_wait(self, batch_id: int) -> BatchStatus:
        """Dispatch one batch and block until it is terminal or the timeout passes."""
        timeout = self.config.scheduler.batch_timeout_seconds
        deadline = time.monotonic() + timeout
        future = self.scheduler.dispatch(batch_id)
        try:
            status = future.result(timeout=timeout)
        except FutureTimeout as e:
            raise ProviderTimeoutError(f"Batch {batch_id} did not finish within {timeout}s") from e

        if status == BatchStatus.PENDING:
            raise ProviderNotConfiguredError("No AI provider is configured")
        if status.is_terminal:
            return status

        # Another run holds the claim; wait for it to land
        return poll_until(
            lambda: self.db.get_batch_status(batch_id),
            done=lambda s: s is None or s.is_terminal,
            timeout=max(0.0, deadline - time.monotonic()),
            interval=self.config.scheduler.status_poll_seconds,
            what=f"batch {batch_id} to finish",
        )
