"""
SQLite storage layer for daytrace.

Uses WAL journal mode so the scheduler, batch workers and CLI can share the
file. Every public method opens its own connection; multi-row writes
(batch + membership, card replacement) run in one transaction.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..timeutil import day_bounds, logical_day
from .models import (
    AnalysisBatch,
    BatchStatus,
    ChunkStatus,
    Distraction,
    LLMCall,
    Observation,
    RecordingChunk,
    TimelineCard,
)

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS chunks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    start_ts    INTEGER NOT NULL,
    end_ts      INTEGER NOT NULL,
    file_ref    TEXT NOT NULL UNIQUE,
    status      TEXT NOT NULL DEFAULT 'recording',
    is_deleted  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS analysis_batches (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    start_ts    INTEGER NOT NULL,
    end_ts      INTEGER NOT NULL,
    status      TEXT NOT NULL DEFAULT 'pending',
    reason      TEXT,
    call_log    TEXT,
    created_at  TEXT NOT NULL
);

-- chunk_id is UNIQUE: a chunk belongs to at most one batch
CREATE TABLE IF NOT EXISTS batch_chunks (
    batch_id    INTEGER NOT NULL REFERENCES analysis_batches(id) ON DELETE CASCADE,
    chunk_id    INTEGER NOT NULL UNIQUE REFERENCES chunks(id) ON DELETE RESTRICT,
    PRIMARY KEY (batch_id, chunk_id)
);

CREATE TABLE IF NOT EXISTS observations (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id    INTEGER NOT NULL REFERENCES analysis_batches(id) ON DELETE CASCADE,
    start_ts    INTEGER NOT NULL,
    end_ts      INTEGER NOT NULL,
    text        TEXT NOT NULL,
    model_id    TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS timeline_cards (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id            INTEGER REFERENCES analysis_batches(id) ON DELETE SET NULL,
    start_ts            INTEGER NOT NULL,
    end_ts              INTEGER NOT NULL,
    day                 TEXT NOT NULL,
    title               TEXT NOT NULL,
    category            TEXT NOT NULL,
    subcategory         TEXT NOT NULL DEFAULT '',
    summary             TEXT NOT NULL DEFAULT '',
    detailed_summary    TEXT NOT NULL DEFAULT '',
    distractions        TEXT NOT NULL DEFAULT '[]',
    video_summary_ref   TEXT,
    validated           INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_status        ON chunks(status, start_ts);
CREATE INDEX IF NOT EXISTS idx_batches_status       ON analysis_batches(status);
CREATE INDEX IF NOT EXISTS idx_batches_range        ON analysis_batches(start_ts, end_ts);
CREATE INDEX IF NOT EXISTS idx_observations_batch   ON observations(batch_id);
CREATE INDEX IF NOT EXISTS idx_observations_range   ON observations(start_ts, end_ts);
CREATE INDEX IF NOT EXISTS idx_cards_day            ON timeline_cards(day);
CREATE INDEX IF NOT EXISTS idx_cards_range          ON timeline_cards(start_ts, end_ts);
"""


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._apply_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _apply_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def register_chunk(self, file_ref: str, start_ts: int) -> int:
        """Capture started writing a clip. The chunk stays 'recording' until completed."""
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO chunks (start_ts, end_ts, file_ref, status) VALUES (?, ?, ?, ?)",
                (start_ts, start_ts, file_ref, ChunkStatus.RECORDING.value),
            )
            return cursor.lastrowid

    def mark_chunk_completed(self, file_ref: str, end_ts: int) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE chunks SET end_ts = ?, status = ? WHERE file_ref = ? AND status = ?",
                (end_ts, ChunkStatus.COMPLETED.value, file_ref, ChunkStatus.RECORDING.value),
            )

    def mark_chunk_failed(self, file_ref: str) -> None:
        """A failed capture leaves nothing behind: row and file are both removed."""
        with self._conn() as conn:
            conn.execute(
                "DELETE FROM chunks WHERE file_ref = ? AND id NOT IN (SELECT chunk_id FROM batch_chunks)",
                (file_ref,),
            )
        try:
            Path(file_ref).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete failed chunk file {file_ref}: {e}")

    def add_completed_chunk(self, file_ref: str, start_ts: int, end_ts: int) -> int:
        """Register an already-recorded clip in one step."""
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO chunks (start_ts, end_ts, file_ref, status) VALUES (?, ?, ?, ?)",
                (start_ts, end_ts, file_ref, ChunkStatus.COMPLETED.value),
            )
            return cursor.lastrowid

    def get_chunk(self, chunk_id: int) -> Optional[RecordingChunk]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM chunks WHERE id = ?", (chunk_id,)).fetchone()
            return _row_to_chunk(row) if row else None

    def fetch_unbatched_chunks(self, since_ts: int) -> list[RecordingChunk]:
        """Completed chunks started at or after since_ts that no batch owns yet."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM chunks
                   WHERE start_ts >= ?
                     AND status = ?
                     AND is_deleted = 0
                     AND id NOT IN (SELECT chunk_id FROM batch_chunks)
                   ORDER BY start_ts ASC""",
                (since_ts, ChunkStatus.COMPLETED.value),
            ).fetchall()
            return [_row_to_chunk(r) for r in rows]

    def chunks_for_batch(self, batch_id: int) -> list[RecordingChunk]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT c.* FROM chunks c
                   JOIN batch_chunks bc ON bc.chunk_id = c.id
                   WHERE bc.batch_id = ? AND c.is_deleted = 0
                   ORDER BY c.start_ts ASC""",
                (batch_id,),
            ).fetchall()
            return [_row_to_chunk(r) for r in rows]

    def chunks_in_range(self, start_ts: int, end_ts: int) -> list[RecordingChunk]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM chunks
                   WHERE status = ? AND is_deleted = 0
                     AND start_ts < ? AND end_ts > ?
                   ORDER BY start_ts ASC""",
                (ChunkStatus.COMPLETED.value, end_ts, start_ts),
            ).fetchall()
            return [_row_to_chunk(r) for r in rows]

    def recording_chunks(self) -> list[RecordingChunk]:
        """Chunks whose capture never reported completion."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE status = ? ORDER BY start_ts",
                (ChunkStatus.RECORDING.value,),
            ).fetchall()
            return [_row_to_chunk(r) for r in rows]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def save_batch(self, start_ts: int, end_ts: int, chunk_ids: list[int]) -> Optional[int]:
        """Insert a batch and its membership rows atomically. Never creates an empty batch."""
        if not chunk_ids:
            return None
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO analysis_batches (start_ts, end_ts, status, created_at) VALUES (?, ?, ?, ?)",
                (start_ts, end_ts, BatchStatus.PENDING.value, datetime.now().isoformat()),
            )
            batch_id = cursor.lastrowid
            conn.executemany(
                "INSERT INTO batch_chunks (batch_id, chunk_id) VALUES (?, ?)",
                [(batch_id, cid) for cid in chunk_ids],
            )
            return batch_id

    def get_batch(self, batch_id: int) -> Optional[AnalysisBatch]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_batches WHERE id = ?", (batch_id,)
            ).fetchone()
            return _row_to_batch(row) if row else None

    def get_batch_status(self, batch_id: int) -> Optional[BatchStatus]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT status FROM analysis_batches WHERE id = ?", (batch_id,)
            ).fetchone()
            return BatchStatus(row["status"]) if row else None

    def list_batches(
        self, status: Optional[BatchStatus] = None, limit: int = 50
    ) -> list[AnalysisBatch]:
        with self._conn() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM analysis_batches ORDER BY start_ts DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM analysis_batches WHERE status = ? ORDER BY start_ts DESC LIMIT ?",
                    (status.value, limit),
                ).fetchall()
            return [_row_to_batch(r) for r in rows]

    def batches_by_ids(self, batch_ids: Iterable[int]) -> list[AnalysisBatch]:
        ids = list(batch_ids)
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM analysis_batches WHERE id IN ({placeholders}) ORDER BY start_ts",
                ids,
            ).fetchall()
            return [_row_to_batch(r) for r in rows]

    def batches_for_day(self, day: str) -> list[AnalysisBatch]:
        """Batches lying entirely inside a logical day, oldest first."""
        start, end = day_bounds(day)
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM analysis_batches
                   WHERE start_ts >= ? AND end_ts <= ?
                   ORDER BY start_ts ASC""",
                (start, end),
            ).fetchall()
            return [_row_to_batch(r) for r in rows]

    def pending_batch_ids(self) -> list[int]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT id FROM analysis_batches WHERE status = ? ORDER BY start_ts",
                (BatchStatus.PENDING.value,),
            ).fetchall()
            return [r["id"] for r in rows]

    def claim_batch(self, batch_id: int) -> bool:
        """Atomically move a batch pending → processing. False if someone else got it."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE analysis_batches SET status = ?, reason = NULL WHERE id = ? AND status = ?",
                (BatchStatus.PROCESSING.value, batch_id, BatchStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def update_batch_status(
        self, batch_id: int, status: BatchStatus, reason: Optional[str] = None
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE analysis_batches SET status = ?, reason = ? WHERE id = ?",
                (status.value, reason, batch_id),
            )

    def mark_batch_failed(self, batch_id: int, reason: str) -> None:
        self.update_batch_status(batch_id, BatchStatus.FAILED, reason=reason)

    def set_batch_call_log(self, batch_id: int, calls: list[LLMCall]) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE analysis_batches SET call_log = ? WHERE id = ?",
                (json.dumps([c.to_dict() for c in calls]), batch_id),
            )

    def reset_batches(self, batch_ids: Iterable[int]) -> list[int]:
        """Return batches to pending for reprocessing. Clears reason and call log."""
        ids = list(batch_ids)
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT id FROM analysis_batches WHERE id IN ({placeholders})", ids
            ).fetchall()
            found = [r["id"] for r in rows]
            conn.execute(
                f"""UPDATE analysis_batches
                    SET status = ?, reason = NULL, call_log = NULL
                    WHERE id IN ({placeholders})""",
                [BatchStatus.PENDING.value, *ids],
            )
            return found

    def requeue_interrupted_batches(self) -> list[int]:
        """
        Batches stuck in 'processing' belong to a run that died with the
        process. They never reached a terminal state, so they go back to pending.
        """
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT id FROM analysis_batches WHERE status = ?",
                (BatchStatus.PROCESSING.value,),
            ).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                conn.execute(
                    "UPDATE analysis_batches SET status = ? WHERE status = ?",
                    (BatchStatus.PENDING.value, BatchStatus.PROCESSING.value),
                )
            return ids

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def save_observations(self, batch_id: int, observations: list[Observation]) -> None:
        if not observations:
            return
        with self._conn() as conn:
            conn.executemany(
                """INSERT INTO observations
                   (batch_id, start_ts, end_ts, text, model_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (
                        batch_id,
                        o.start_ts,
                        o.end_ts,
                        o.text,
                        o.model_id,
                        o.created_at.isoformat(),
                    )
                    for o in observations
                ],
            )

    def observations_for_batch(self, batch_id: int) -> list[Observation]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM observations WHERE batch_id = ? ORDER BY start_ts",
                (batch_id,),
            ).fetchall()
            return [_row_to_observation(r) for r in rows]

    def observations_in_range(self, start_ts: int, end_ts: int) -> list[Observation]:
        """Observations overlapping [start_ts, end_ts], possibly from several batches."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM observations
                   WHERE start_ts < ? AND end_ts > ?
                   ORDER BY start_ts""",
                (end_ts, start_ts),
            ).fetchall()
            return [_row_to_observation(r) for r in rows]

    def delete_observations_for_batches(self, batch_ids: Iterable[int]) -> int:
        ids = list(batch_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        with self._conn() as conn:
            cursor = conn.execute(
                f"DELETE FROM observations WHERE batch_id IN ({placeholders})", ids
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Timeline cards
    # ------------------------------------------------------------------

    def replace_cards_in_range(
        self,
        start_ts: int,
        end_ts: int,
        cards: list[TimelineCard],
        batch_id: Optional[int],
    ) -> tuple[list[int], list[str]]:
        """
        Delete every card overlapping [start_ts, end_ts) and insert the new ones,
        in one transaction. Returns (inserted ids, video files now orphaned).
        """
        overlap = "(start_ts < ? AND end_ts > ?) OR (start_ts >= ? AND start_ts < ?)"
        params = (end_ts, start_ts, start_ts, end_ts)
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT video_summary_ref FROM timeline_cards WHERE ({overlap}) "
                "AND video_summary_ref IS NOT NULL",
                params,
            ).fetchall()
            reclaimed = [r["video_summary_ref"] for r in rows]
            deleted = conn.execute(f"DELETE FROM timeline_cards WHERE {overlap}", params).rowcount
            inserted = [_insert_card(conn, card, batch_id) for card in cards]

        logger.debug(
            f"Replaced {deleted} card(s) with {len(inserted)} in range {start_ts}-{end_ts}"
        )
        return inserted, reclaimed

    def cards_for_day(self, day: str) -> list[TimelineCard]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM timeline_cards WHERE day = ? ORDER BY start_ts", (day,)
            ).fetchall()
            return [_row_to_card(r) for r in rows]

    def cards_in_range(self, start_ts: int, end_ts: int) -> list[TimelineCard]:
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM timeline_cards
                   WHERE start_ts < ? AND end_ts > ?
                   ORDER BY start_ts""",
                (end_ts, start_ts),
            ).fetchall()
            return [_row_to_card(r) for r in rows]

    def get_card(self, card_id: int) -> Optional[TimelineCard]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM timeline_cards WHERE id = ?", (card_id,)
            ).fetchone()
            return _row_to_card(row) if row else None

    def update_card_video(self, card_id: int, video_summary_ref: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE timeline_cards SET video_summary_ref = ? WHERE id = ?",
                (video_summary_ref, card_id),
            )

    def delete_cards_for_day(self, day: str) -> list[str]:
        """Delete a logical day's cards; returns video files that can be reclaimed."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT video_summary_ref FROM timeline_cards "
                "WHERE day = ? AND video_summary_ref IS NOT NULL",
                (day,),
            ).fetchall()
            conn.execute("DELETE FROM timeline_cards WHERE day = ?", (day,))
            return [r["video_summary_ref"] for r in rows]

    # ------------------------------------------------------------------
    # Cleanup (auto-delete old recordings)
    # ------------------------------------------------------------------

    def expired_recordings(self, max_age_days: int) -> list[RecordingChunk]:
        """Chunks older than max_age_days whose batch reached a terminal state."""
        if max_age_days <= 0:
            return []

        cutoff = int((datetime.now() - timedelta(days=max_age_days)).timestamp())
        finished = [s.value for s in BatchStatus if s.is_terminal]
        placeholders = ",".join("?" * len(finished))

        with self._conn() as conn:
            rows = conn.execute(
                f"""SELECT c.* FROM chunks c
                    JOIN batch_chunks bc ON bc.chunk_id = c.id
                    JOIN analysis_batches b ON b.id = bc.batch_id
                    WHERE c.end_ts < ? AND c.is_deleted = 0
                      AND b.status IN ({placeholders})
                    ORDER BY c.start_ts""",
                (cutoff, *finished),
            ).fetchall()
            return [_row_to_chunk(r) for r in rows]

    def cleanup_old_recordings(self, max_age_days: int) -> int:
        """
        Delete chunk files older than max_age_days whose batch is finished.
        Observations and cards stay (text is tiny; video is large).
        Returns number of files removed.
        """
        cleaned = []
        for chunk in self.expired_recordings(max_age_days):
            path = Path(chunk.file_ref)
            try:
                path.unlink(missing_ok=True)
                cleaned.append(chunk.id)
            except OSError as e:
                logger.warning(f"Could not delete {path}: {e}")

        if cleaned:
            with self._conn() as conn:
                conn.executemany(
                    "UPDATE chunks SET is_deleted = 1 WHERE id = ?", [(cid,) for cid in cleaned]
                )
            logger.info(f"Cleaned {len(cleaned)} recording file(s) older than {max_age_days} days")

        return len(cleaned)


# ------------------------------------------------------------------
# Row → model converters
# ------------------------------------------------------------------

def _insert_card(conn: sqlite3.Connection, card: TimelineCard, batch_id: Optional[int]) -> int:
    cursor = conn.execute(
        """INSERT INTO timeline_cards
           (batch_id, start_ts, end_ts, day, title, category, subcategory,
            summary, detailed_summary, distractions, video_summary_ref,
            validated, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            batch_id if batch_id is not None else card.batch_id,
            card.start_ts,
            card.end_ts,
            logical_day(card.start_ts),
            card.title,
            card.category,
            card.subcategory,
            card.summary,
            card.detailed_summary,
            json.dumps([d.to_dict() for d in card.distractions]),
            card.video_summary_ref,
            1 if card.validated else 0,
            datetime.now().isoformat(),
        ),
    )
    return cursor.lastrowid


def _row_to_chunk(row: sqlite3.Row) -> RecordingChunk:
    return RecordingChunk(
        id=row["id"],
        start_ts=row["start_ts"],
        end_ts=row["end_ts"],
        file_ref=row["file_ref"],
        status=ChunkStatus(row["status"]),
    )


def _row_to_batch(row: sqlite3.Row) -> AnalysisBatch:
    calls = json.loads(row["call_log"]) if row["call_log"] else []
    return AnalysisBatch(
        id=row["id"],
        start_ts=row["start_ts"],
        end_ts=row["end_ts"],
        status=BatchStatus(row["status"]),
        reason=row["reason"],
        call_log=[LLMCall.from_dict(c) for c in calls],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_observation(row: sqlite3.Row) -> Observation:
    return Observation(
        id=row["id"],
        batch_id=row["batch_id"],
        start_ts=row["start_ts"],
        end_ts=row["end_ts"],
        text=row["text"],
        model_id=row["model_id"] or "",
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_card(row: sqlite3.Row) -> TimelineCard:
    return TimelineCard(
        id=row["id"],
        batch_id=row["batch_id"],
        start_ts=row["start_ts"],
        end_ts=row["end_ts"],
        day=row["day"],
        title=row["title"],
        category=row["category"],
        subcategory=row["subcategory"] or "",
        summary=row["summary"] or "",
        detailed_summary=row["detailed_summary"] or "",
        distractions=[Distraction.from_dict(d) for d in json.loads(row["distractions"] or "[]")],
        video_summary_ref=row["video_summary_ref"],
        validated=bool(row["validated"]),
    )
