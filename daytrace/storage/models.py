"""
Data models for chunks, batches, observations, and timeline cards.
Plain dataclasses, no ORM.
All timestamps are Unix seconds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ChunkStatus(str, Enum):
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    ANALYZED = "analyzed"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_EMPTY = "failed_empty"
    SKIPPED_SHORT = "skipped_short"

    @property
    def is_terminal(self) -> bool:
        return self not in (BatchStatus.PENDING, BatchStatus.PROCESSING)


TERMINAL_STATUSES = frozenset(s for s in BatchStatus if s.is_terminal)


@dataclass
class RecordingChunk:
    start_ts: int
    end_ts: int
    file_ref: str
    status: ChunkStatus = ChunkStatus.RECORDING
    id: Optional[int] = None

    @property
    def duration(self) -> int:
        return self.end_ts - self.start_ts


@dataclass
class LLMCall:
    """One provider round-trip, kept on the batch for later inspection."""
    operation: str
    model: str = ""
    attempt: int = 1
    status: str = "success"
    latency: float = 0.0
    input: str = ""
    output: str = ""
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "model": self.model,
            "attempt": self.attempt,
            "status": self.status,
            "latency": round(self.latency, 3),
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LLMCall":
        return cls(
            operation=data.get("operation", ""),
            model=data.get("model", ""),
            attempt=data.get("attempt", 1),
            status=data.get("status", "success"),
            latency=data.get("latency", 0.0),
            input=data.get("input", ""),
            output=data.get("output", ""),
            error=data.get("error"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.now(),
        )


@dataclass
class AnalysisBatch:
    start_ts: int
    end_ts: int
    status: BatchStatus = BatchStatus.PENDING
    reason: Optional[str] = None
    call_log: list[LLMCall] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    @property
    def duration(self) -> int:
        return self.end_ts - self.start_ts


@dataclass
class Observation:
    batch_id: int
    start_ts: int
    end_ts: int
    text: str
    model_id: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None


@dataclass
class Distraction:
    start_ts: int
    end_ts: int
    title: str
    summary: str = ""

    @property
    def duration(self) -> int:
        return self.end_ts - self.start_ts

    def to_dict(self) -> dict:
        return {
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
            "title": self.title,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Distraction":
        return cls(
            start_ts=int(data["start_ts"]),
            end_ts=int(data["end_ts"]),
            title=data.get("title", ""),
            summary=data.get("summary", ""),
        )


@dataclass
class TimelineCard:
    start_ts: int
    end_ts: int
    category: str
    title: str
    subcategory: str = ""
    summary: str = ""
    detailed_summary: str = ""
    distractions: list[Distraction] = field(default_factory=list)
    video_summary_ref: Optional[str] = None
    batch_id: Optional[int] = None
    day: str = ""
    validated: bool = True
    id: Optional[int] = None

    @property
    def duration(self) -> int:
        return self.end_ts - self.start_ts
