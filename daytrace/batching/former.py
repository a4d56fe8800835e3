"""
Batch formation: group completed, unbatched chunks into analysis batches.

A batch closes when the next chunk starts more than max_gap after the
previous one ended (capture was paused) or when adding it would push the
batch past the target duration. The newest batch is held back while it is
still shorter than the target, since more chunks are probably on the way.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..config import BatchingConfig
from ..storage.db import Database
from ..storage.models import RecordingChunk

logger = logging.getLogger(__name__)


@dataclass
class FormedBatch:
    chunk_ids: list[int] = field(default_factory=list)
    start_ts: int = 0
    end_ts: int = 0
    duration: int = 0


def form_batches(
    chunks: list[RecordingChunk],
    max_gap: int = 120,
    target_duration: int = 900,
    drop_short_tail: bool = True,
) -> list[FormedBatch]:
    """Pure batching over already-loaded chunks. Same input, same boundaries."""
    if not chunks:
        return []

    ordered = sorted(chunks, key=lambda c: (c.start_ts, c.id or 0))
    batches: list[FormedBatch] = []
    bucket: list[RecordingChunk] = []
    bucket_duration = 0

    def flush() -> None:
        if not bucket:
            return
        batches.append(
            FormedBatch(
                chunk_ids=[c.id for c in bucket],
                start_ts=min(c.start_ts for c in bucket),
                end_ts=max(c.end_ts for c in bucket),
                duration=bucket_duration,
            )
        )

    for chunk in ordered:
        if bucket:
            gap = chunk.start_ts - bucket[-1].end_ts
            if gap > max_gap or bucket_duration + chunk.duration > target_duration:
                flush()
                bucket = []
                bucket_duration = 0
        bucket.append(chunk)
        bucket_duration += chunk.duration

    flush()

    if drop_short_tail and batches and batches[-1].duration < target_duration:
        batches.pop()

    return batches


class BatchFormer:
    """Loads the lookback horizon from the store and persists new batches."""

    def __init__(self, db: Database, config: BatchingConfig):
        self.db = db
        self.config = config

    def form_and_save(self, now: Optional[int] = None) -> list[int]:
        now = int(now if now is not None else time.time())
        since = now - self.config.lookback_hours * 3600
        chunks = self.db.fetch_unbatched_chunks(since)
        if not chunks:
            return []

        formed = form_batches(
            chunks,
            max_gap=self.config.max_gap_seconds,
            target_duration=self.config.target_batch_seconds,
        )

        batch_ids = []
        for batch in formed:
            batch_id = self.db.save_batch(batch.start_ts, batch.end_ts, batch.chunk_ids)
            if batch_id is not None:
                batch_ids.append(batch_id)

        if batch_ids:
            logger.info(
                f"Formed {len(batch_ids)} batch(es) from {len(chunks)} unbatched chunk(s)"
            )
        return batch_ids
