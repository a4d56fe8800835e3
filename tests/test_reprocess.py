"""Tests for reprocessing a day or a set of batches."""
import threading

import pytest

from daytrace.analysis.orchestrator import Orchestrator
from daytrace.batching.former import BatchFormer
from daytrace.errors import ProviderError, ProviderNotConfiguredError
from daytrace.storage.models import BatchStatus
from daytrace.watcher.reprocess import ReprocessCoordinator
from daytrace.watcher.scheduler import AnalysisScheduler

from conftest import BASE_DAY, BASE_TS, CountingFactory, fake_media


@pytest.fixture
def batches(db, make_chunks, orchestrator):
    """Two analyzed 15-minute batches on BASE_DAY."""
    ids = make_chunks(BASE_TS, 30)
    first = db.save_batch(BASE_TS, BASE_TS + 900, ids[:15])
    second = db.save_batch(BASE_TS + 900, BASE_TS + 1800, ids[15:])
    orchestrator.run(first)
    orchestrator.run(second)
    return first, second


@pytest.fixture
def coordinator_for(db, config):
    schedulers = []

    def _make(orchestrator):
        scheduler = AnalysisScheduler(config, db, BatchFormer(db, config.batching), orchestrator)
        schedulers.append(scheduler)
        return ReprocessCoordinator(db, scheduler, config)

    yield _make
    for scheduler in schedulers:
        scheduler.stop(wait_for_batches=True)


class TestReprocessDay:
    def test_rebuilds_the_day_in_order(self, db, batches, orchestrator, provider, coordinator_for):
        first, second = batches
        provider.transcribe_calls.clear()
        messages = []

        result = coordinator_for(orchestrator).reprocess_day(BASE_DAY, progress=messages.append)

        assert result.success
        assert (result.total, result.processed) == (2, 2)
        assert [t.batch_id for t in result.timings] == [first, second]
        assert all(t.status == BatchStatus.ANALYZED for t in result.timings)
        assert [origin for _, _, origin in provider.transcribe_calls] == [BASE_TS, BASE_TS + 900]

        assert messages[0] == f"Preparing to reprocess 2 batch(es) for {BASE_DAY}"
        assert f"Deleted timeline cards for {BASE_DAY}" in messages
        assert "Deleted 6 observation(s)" in messages
        assert "Reset batch statuses to pending" in messages
        assert any(m.startswith("Processing batch 1/2 (#") for m in messages)
        assert any(m.startswith("Batch 2/2 analyzed in") for m in messages)

        assert len(db.observations_for_batch(first)) == 3
        cards = db.cards_for_day(BASE_DAY)
        assert [(c.start_ts, c.end_ts) for c in cards] == [(BASE_TS, BASE_TS + 1800)]

    def test_failed_batch_gets_another_chance(self, db, batches, orchestrator, coordinator_for):
        first, _ = batches
        db.mark_batch_failed(first, "earlier outage")

        result = coordinator_for(orchestrator).reprocess_day(BASE_DAY)

        assert result.success
        batch = db.get_batch(first)
        assert batch.status == BatchStatus.ANALYZED
        assert batch.reason is None

    def test_card_videos_are_deleted(self, db, batches, orchestrator, coordinator_for, tmp_path):
        video = tmp_path / "lapse.mp4"
        video.write_bytes(b"mp4")
        db.update_card_video(db.cards_for_day(BASE_DAY)[0].id, str(video))

        coordinator_for(orchestrator).reprocess_day(BASE_DAY)

        assert not video.exists()

    def test_no_batches(self, orchestrator, coordinator_for):
        messages = []
        result = coordinator_for(orchestrator).reprocess_day("2023-01-01", progress=messages.append)

        assert not result.success
        assert result.error == "No batches found for 2023-01-01"
        assert messages == ["Error: No batches found for 2023-01-01"]

    def test_batch_failures_are_reported_not_fatal(self, db, batches, orchestrator, provider, coordinator_for):
        provider.transcribe_script = [ProviderError("400 bad request")]

        result = coordinator_for(orchestrator).reprocess_day(BASE_DAY)

        assert result.success
        assert result.processed == 2
        assert result.failed == 1
        assert "Not analyzed: 1" in result.summary()

    def test_missing_provider_stops_reprocessing(self, db, batches, config, coordinator_for):
        first, second = batches
        factory = CountingFactory(error=ProviderNotConfiguredError("no provider"))
        orchestrator = Orchestrator(db, factory, config, media_builder=fake_media)
        messages = []

        result = coordinator_for(orchestrator).reprocess_day(BASE_DAY, progress=messages.append)

        assert not result.success
        assert result.error == "No AI provider is configured."
        assert result.processed == 0
        assert messages[-1] == "Error: No AI provider is configured."
        assert db.get_batch_status(first) == BatchStatus.PENDING
        assert db.get_batch_status(second) == BatchStatus.PENDING

    def test_timed_out_batch_stops_the_run(self, db, batches, config, coordinator_for):
        """The next batch must not start while the previous one is still running."""
        first, second = batches
        config.scheduler.batch_timeout_seconds = 1
        release = threading.Event()
        started = []

        class StuckOrchestrator:
            def run(self, batch_id):
                started.append(batch_id)
                release.wait(5)
                return BatchStatus.ANALYZED

        try:
            result = coordinator_for(StuckOrchestrator()).reprocess_day(BASE_DAY)
        finally:
            release.set()

        assert not result.success
        assert started == [first]
        assert result.processed == 1
        assert result.timings[0].status is None
        assert f"Batch {first} did not finish within 1s" in result.error
        assert db.get_batch_status(second) == BatchStatus.PENDING


class TestReprocessBatches:
    def test_selected_batches_only(self, db, batches, orchestrator, provider, coordinator_for):
        _, second = batches
        provider.transcribe_calls.clear()

        result = coordinator_for(orchestrator).reprocess_batches([second, 999])

        assert result.success
        assert result.total == 1
        assert [origin for _, _, origin in provider.transcribe_calls] == [BASE_TS + 900]
        assert db.get_batch_status(second) == BatchStatus.ANALYZED

    def test_unknown_batches(self, orchestrator, coordinator_for):
        result = coordinator_for(orchestrator).reprocess_batches([404])
        assert not result.success
        assert result.error == "None of the requested batches exist"
