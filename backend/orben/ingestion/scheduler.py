"""APScheduler-driven ingestion control loop.

One fixed-period tick job selects the due sources and spawns one
ingestion task per source without waiting for them, so a slow source
never holds up the next tick. Distinct sources run concurrently under a
global cap; a per-source lock keeps overlapping polls of the same source
from interleaving. A separate job sweeps expired deals.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from orben.config import settings
from orben.core.exceptions import PersistenceError
from orben.ingestion.pipeline import IngestionPipeline, RunOutcome
from orben.ingestion.registry import SourceSnapshot, select_due
from orben.models.base import utcnow
from orben.services.deal_store import DealStore
from orben.services.feed_service import FeedService

logger = structlog.get_logger(__name__)

TICK_JOB_ID = "ingestion_tick"
SWEEP_JOB_ID = "deal_expiry_sweep"


class IngestionScheduler:
    """Manages the periodic ingestion tick and the expiry sweep.

    All state (locks, semaphore, clock) belongs to the instance, so tests
    can build isolated schedulers and drive ``tick`` directly.
    """

    def __init__(
        self,
        store: DealStore,
        pipeline: IngestionPipeline,
        feed_service: Optional[FeedService] = None,
        clock: Callable[[], datetime] = utcnow,
        max_concurrent: Optional[int] = None,
        tick_seconds: Optional[int] = None,
        sweep_minutes: Optional[int] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.feed_service = feed_service
        self.clock = clock
        self.tick_seconds = tick_seconds or settings.SCHEDULER_TICK_SECONDS
        self.sweep_minutes = sweep_minutes or settings.DEAL_SWEEP_INTERVAL_MINUTES
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.MAX_CONCURRENT_SOURCES)
        self._source_locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._runs: Dict[uuid.UUID, asyncio.Task] = {}
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="ingestion_scheduler")

    def start(self) -> None:
        """Register the tick and sweep jobs and start APScheduler."""
        if self.scheduler.running:
            self.logger.warning("scheduler_already_running")
            return

        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id=TICK_JOB_ID,
            name="Ingestion tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=utcnow(),
        )
        if self.feed_service is not None:
            self.scheduler.add_job(
                self.sweep,
                trigger=IntervalTrigger(minutes=self.sweep_minutes),
                id=SWEEP_JOB_ID,
                name="Deal expiry sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        self.logger.info("scheduler_started", tick_seconds=self.tick_seconds, sweep_minutes=self.sweep_minutes)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    def _lock_for(self, source_id: uuid.UUID) -> asyncio.Lock:
        lock = self._source_locks.get(source_id)
        if lock is None:
            lock = asyncio.Lock()
            self._source_locks[source_id] = lock
        return lock

    def is_running(self, source_id: uuid.UUID) -> bool:
        if source_id in self._runs:
            return True
        lock = self._source_locks.get(source_id)
        return lock is not None and lock.locked()

    def _spawn(self, source: SourceSnapshot) -> asyncio.Task:
        task = asyncio.create_task(self.run_source(source), name=f"ingest:{source.slug}")
        self._runs[source.id] = task
        task.add_done_callback(lambda t: self._run_finished(source, t))
        return task

    def _run_finished(self, source: SourceSnapshot, task: asyncio.Task) -> None:
        if self._runs.get(source.id) is task:
            del self._runs[source.id]
        if task.cancelled():
            self.logger.warning("source_run_cancelled", source=source.slug)
        elif task.exception() is not None:
            self.logger.error("source_run_task_failed", source=source.slug, error=repr(task.exception()))

    async def drain(self, timeout: Optional[float] = None) -> List[RunOutcome]:
        """Wait for in-flight runs; cancel those still running after ``timeout``.

        Returns:
            Outcomes of the runs that finished
        """
        tasks: Set[asyncio.Task] = set(self._runs.values())
        if not tasks:
            return []
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.warning("source_runs_cancelled_on_drain", count=len(pending))
            await asyncio.wait(pending)
        return [
            task.result() for task in done
            if not task.cancelled() and task.exception() is None and task.result() is not None
        ]

    async def tick(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """Start one run for every due source that is not already running.

        Never raises: a store outage skips the tick and per-source failures
        are contained in their own runs. The runs are not awaited.

        Args:
            now: Tick time (defaults to the scheduler clock)

        Returns:
            Tasks started by this tick, each resolving to a RunOutcome or None
        """
        now = now or self.clock()
        try:
            sources = await self.store.list_enabled_sources()
        except PersistenceError as e:
            self.logger.error("tick_skipped_store_unavailable", error=e.message)
            return []

        pollable = self.pipeline.fetcher_factory.registered_types() if self.pipeline.fetcher_factory else []
        due = [s for s in select_due(sources, now, pollable_types=pollable) if not self.is_running(s.id)]
        if not due:
            self.logger.debug("tick_no_due_sources", enabled=len(sources))
            return []

        self.logger.info("tick_started", due=len(due), enabled=len(sources), in_flight=len(self._runs))
        return [self._spawn(source) for source in due]

    async def run_source(self, source: SourceSnapshot) -> Optional[RunOutcome]:
        """Run one ingestion attempt unless one is already in flight.

        Returns:
            RunOutcome, or None if the source was already running or the
            run could not be opened
        """
        lock = self._lock_for(source.id)
        if lock.locked():
            self.logger.info("source_run_skipped_in_flight", source=source.slug)
            return None

        async with lock:
            async with self._semaphore:
                try:
                    return await self.pipeline.execute(source)
                except PersistenceError as e:
                    self.logger.error("source_run_not_started", source=source.slug, error=e.message)
                    return None
                except Exception as e:
                    self.logger.error("source_run_crashed", source=source.slug, error=str(e), exc_info=True)
                    return None

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Expire stale deals. Failures are logged and retried next sweep."""
        if self.feed_service is None:
            return 0
        try:
            return await self.feed_service.sweep_expired(now or self.clock())
        except PersistenceError as e:
            self.logger.error("expiry_sweep_failed", error=e.message)
            return 0
