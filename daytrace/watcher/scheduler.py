"""
AnalysisScheduler: forms batches on a fixed cadence and fans them out to a
worker pool.

Each cycle:
  1. delete old recording files (if enabled)
  2. form batches from completed, unbatched chunks
  3. dispatch each new batch to the pool (one orchestrator run per batch)

A cycle never overlaps another; a batch id is never running twice at once.
On start, batches left 'processing' by a crash go back to pending and every
pending batch is dispatched.

The scheduler runs via 'daytrace run', or embedded with start()/stop().
"""
from __future__ import annotations

import logging
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Iterable, Optional

from ..analysis.orchestrator import Orchestrator
from ..batching.former import BatchFormer
from ..config import Config
from ..errors import ProviderNotConfiguredError
from ..storage.db import Database
from ..storage.models import BatchStatus

logger = logging.getLogger(__name__)


class AnalysisScheduler:
    def __init__(
        self,
        config: Config,
        db: Database,
        former: BatchFormer,
        orchestrator: Orchestrator,
    ):
        self.config = config
        self.db = db
        self.former = former
        self.orchestrator = orchestrator

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.scheduler.max_concurrent_batches),
            thread_name_prefix="daytrace-batch",
        )
        self._in_flight: dict[int, Future] = {}
        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def run(self) -> None:
        """Blocking loop. Returns after stop() or SIGINT/SIGTERM."""
        self._setup_signal_handlers()
        logger.info(
            f"daytrace scheduler started — checking every {self.config.scheduler.check_interval_seconds}s"
        )
        self.recover()
        self._loop()
        logger.info("daytrace scheduler stopped")

    def start(self) -> None:
        """Run the loop on a background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.recover()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="daytrace-scheduler")
        self._thread.start()

    def stop(self, wait_for_batches: bool = False) -> None:
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._executor.shutdown(wait=wait_for_batches, cancel_futures=not wait_for_batches)

    def _loop(self) -> None:
        interval = self.config.scheduler.check_interval_seconds
        while not self._stop.is_set():
            try:
                self._tick()
            except Exception as exc:
                logger.error(f"Scheduler tick error: {exc}", exc_info=True)
            self._stop.wait(interval)

    def _tick(self) -> None:
        days = self.config.storage.auto_delete_recordings_days
        if days > 0:
            self.db.cleanup_old_recordings(days)
        self.trigger_now()

    # ── Cycle ─────────────────────────────────────────────────────────────────

    def trigger_now(self, include_pending: bool = False) -> list[Future]:
        """
        Run one formation cycle immediately. Returns futures for the batches
        dispatched. If a cycle is already running this is a no-op.
        include_pending also dispatches older pending batches.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Analysis cycle already in flight, skipping")
            return []
        try:
            batch_ids = self.former.form_and_save()
            if include_pending:
                batch_ids = sorted(set(batch_ids) | set(self.db.pending_batch_ids()))
            return [self.dispatch(batch_id) for batch_id in batch_ids]
        finally:
            self._cycle_lock.release()

    def recover(self) -> list[Future]:
        """Requeue crash leftovers and dispatch every pending batch."""
        requeued = self.db.requeue_interrupted_batches()
        if requeued:
            logger.warning(f"Requeued {len(requeued)} batch(es) interrupted mid-analysis: {requeued}")

        for chunk in self.db.recording_chunks():
            if not Path(chunk.file_ref).exists():
                logger.info(f"Removing chunk {chunk.id}: recording never finished")
                self.db.mark_chunk_failed(chunk.file_ref)

        return [self.dispatch(batch_id) for batch_id in self.db.pending_batch_ids()]

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def dispatch(self, batch_id: int) -> Future:
        """Submit a batch to the pool. Returns the running future if already in flight."""
        with self._lock:
            running = self._in_flight.get(batch_id)
            if running is not None and not running.done():
                return running
            future = self._executor.submit(self._run_batch, batch_id)
            self._in_flight[batch_id] = future
        future.add_done_callback(lambda f, bid=batch_id: self._forget(bid, f))
        return future

    def in_flight(self) -> list[int]:
        with self._lock:
            return [bid for bid, f in self._in_flight.items() if not f.done()]

    def wait_for(self, futures: Iterable[Future], timeout: Optional[float] = None) -> None:
        wait(list(futures), timeout=timeout)

    def _run_batch(self, batch_id: int) -> BatchStatus:
        try:
            return self.orchestrator.run(batch_id)
        except ProviderNotConfiguredError as e:
            logger.warning(f"Batch {batch_id} left pending: {e}")
            return BatchStatus.PENDING

    def _forget(self, batch_id: int, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(batch_id) is future:
                del self._in_flight[batch_id]
        if not future.cancelled() and future.exception() is not None:
            exc = future.exception()
            logger.error(f"Batch {batch_id} run crashed: {exc}", exc_info=exc)

    # ── Signal handlers ───────────────────────────────────────────────────────

    def _setup_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle_sigterm(signum, frame):
            logger.info("Signal received — shutting down scheduler")
            self._stop.set()

        signal.signal(signal.SIGTERM, _handle_sigterm)
        signal.signal(signal.SIGINT, _handle_sigterm)
