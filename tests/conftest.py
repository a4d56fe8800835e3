"""
Shared pytest fixtures for daytrace tests.

Provides a fake LLM provider and an in-place media builder so no test needs
network access, API keys or ffmpeg.
"""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import pytest

from daytrace.analysis.media import MediaBundle
from daytrace.analysis.orchestrator import Orchestrator
from daytrace.analysis.providers.base import SynthesisContext
from daytrace.config import Config
from daytrace.storage.db import Database
from daytrace.storage.models import LLMCall, Observation, RecordingChunk, TimelineCard

# 9:00 AM local on a day with no DST change; logical day "2024-05-01"
BASE_TS = int(datetime(2024, 5, 1, 9, 0, 0).timestamp())
BASE_DAY = "2024-05-01"


class FakeProvider:
    """
    Scriptable stand-in for an LLM provider.

    Each script entry is either a value to return, an exception to raise,
    or a callable taking the call's arguments. Once a script runs out the
    provider falls back to well-behaved defaults: one observation per five
    minutes of video, and a single card spanning everything it was shown.
    """

    name = "fake"
    model = "fake-model"

    def __init__(self):
        self.transcribe_script: list = []
        self.synthesize_script: list = []
        self.transcribe_calls: list[tuple[MediaBundle, str, int]] = []
        self.synthesize_calls: list[tuple[list[Observation], SynthesisContext]] = []
        self.closed = 0

    def transcribe(self, media: MediaBundle, prompt: str, origin_ts: int):
        self.transcribe_calls.append((media, prompt, origin_ts))
        if self.transcribe_script:
            item = self.transcribe_script.pop(0)
            if isinstance(item, Exception):
                raise item
            observations = item(media, origin_ts) if callable(item) else item
        else:
            observations = default_observations(origin_ts, int(media.duration))
        return observations, LLMCall(operation="transcribe", model=self.model)

    def synthesize(self, observations: list[Observation], context: SynthesisContext):
        self.synthesize_calls.append((list(observations), context))
        if self.synthesize_script:
            item = self.synthesize_script.pop(0)
            if isinstance(item, Exception):
                raise item
            cards = item(observations, context) if callable(item) else item
        else:
            cards = spanning_cards(observations, context)
        return cards, LLMCall(operation="synthesize", model=self.model, attempt=context.attempt)

    def close(self):
        self.closed += 1


def default_observations(origin_ts: int, duration: int, step: int = 300) -> list[Observation]:
    observations = []
    for offset in range(0, duration, step):
        observations.append(
            Observation(
                batch_id=0,
                start_ts=origin_ts + offset,
                end_ts=origin_ts + min(offset + step, duration),
                text=f"Editing code at +{offset}s",
                model_id=FakeProvider.model,
            )
        )
    return observations


def spanning_cards(observations: list[Observation], context: SynthesisContext) -> list[TimelineCard]:
    starts = [o.start_ts for o in observations] + [c.start_ts for c in context.existing_cards]
    ends = [o.end_ts for o in observations] + [c.end_ts for c in context.existing_cards]
    return [make_card(min(starts), max(ends), title="Writing code")]


def make_card(start_ts: int, end_ts: int, title: str = "Card", category: str = "Work", **kwargs) -> TimelineCard:
    return TimelineCard(start_ts=start_ts, end_ts=end_ts, category=category, title=title, **kwargs)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.storage.data_dir = str(tmp_path / "data")
    cfg.storage.auto_delete_recordings_days = 0
    cfg.batching.lookback_hours = 24 * 365 * 50
    cfg.analysis.retry_base_delay = 0.0
    cfg.scheduler.status_poll_seconds = 0.01
    cfg.scheduler.batch_timeout_seconds = 30
    return cfg


@pytest.fixture
def db(config) -> Database:
    return Database(config.storage.db_path)


@pytest.fixture
def make_chunks(db, tmp_path) -> Callable[..., list[int]]:
    """Create completed chunks (with empty files on disk) starting at start_ts."""
    def _make(start_ts: int, count: int, length: int = 60, gap: int = 0) -> list[int]:
        recordings = tmp_path / "recordings"
        recordings.mkdir(parents=True, exist_ok=True)
        ids = []
        ts = start_ts
        for _ in range(count):
            path = recordings / f"chunk_{ts}.mp4"
            path.write_bytes(b"")
            ids.append(db.add_completed_chunk(str(path), ts, ts + length))
            ts += length + gap
        return ids
    return _make


def fake_media(chunks: list[RecordingChunk]) -> MediaBundle:
    ordered = sorted(chunks, key=lambda c: c.start_ts)
    return MediaBundle(
        path=Path(ordered[0].file_ref),
        duration=float(sum(c.duration for c in ordered)),
        origin_ts=ordered[0].start_ts,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


class CountingFactory:
    """Provider factory that counts how often the orchestrator resolved a provider."""

    def __init__(self, provider: Optional[FakeProvider] = None, error: Optional[Exception] = None):
        self.provider = provider
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.provider


@pytest.fixture
def factory(provider) -> CountingFactory:
    return CountingFactory(provider)


@pytest.fixture
def orchestrator(db, factory, config) -> Orchestrator:
    return Orchestrator(db, factory, config, media_builder=fake_media)
