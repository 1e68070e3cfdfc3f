"""
Scheduler: APScheduler-based periodic refresh of the active topics.

Jobs:
- Topic refresh pass: every topic_refresh_interval_seconds, first run on start
- Competition monitor: every competition_refresh_interval_minutes
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from topic_sync.config import Settings, get_settings
from topic_sync.errors import SchedulerAlreadyRunning, SchedulerNotRunning
from topic_sync.monitor import CompetitionMonitor
from topic_sync.sync.refresher import PassSummary, TopicRefresher
from topic_sync.utils import LogContext, log_error

logger = structlog.get_logger()


class RefreshScheduler:
    """
    Stopped -> Running -> Stopped state machine around an AsyncIOScheduler.

    start() and stop() must be called from within the running event loop.
    stop() only prevents new ticks: a pass already in progress is shielded
    from the executor's cancellation and runs to completion.
    """

    REFRESH_JOB_ID = "topic_refresh"
    MONITOR_JOB_ID = "competition_monitor"

    def __init__(
        self,
        refresher: TopicRefresher,
        monitor: Optional[CompetitionMonitor] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.refresher = refresher
        self.monitor = monitor
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_pass: Optional[PassSummary] = None
        self._current_pass: Optional[asyncio.Task] = None
        self._running = False

    def _build_scheduler(self) -> AsyncIOScheduler:
        return AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": max(self.settings.topic_refresh_interval_seconds, 30),
            },
        )

    def _setup_jobs(self):
        """Configure the refresh job and, if enabled, the competition monitor job."""
        now = datetime.now(timezone.utc)

        # =================================================================
        # TOPIC REFRESH - immediate first pass, then every interval
        # =================================================================

        self.scheduler.add_job(
            self._run_refresh_pass,
            trigger=IntervalTrigger(seconds=self.settings.topic_refresh_interval_seconds),
            id=self.REFRESH_JOB_ID,
            name="Topic inference refresh",
            next_run_time=now,
            replace_existing=True,
        )
        logger.info(
            "Scheduled topic refresh job",
            interval=f"{self.settings.topic_refresh_interval_seconds}s",
        )

        # =================================================================
        # COMPETITION MONITOR
        # =================================================================

        if self.monitor is not None and self.settings.competition_monitor_enabled:
            interval = timedelta(minutes=self.settings.competition_refresh_interval_minutes)
            self.scheduler.add_job(
                self._run_monitor_job,
                trigger=IntervalTrigger(minutes=self.settings.competition_refresh_interval_minutes),
                id=self.MONITOR_JOB_ID,
                name="Competition monitor",
                next_run_time=now + interval,
                replace_existing=True,
            )
            logger.info(
                "Scheduled competition monitor job",
                interval=f"{self.settings.competition_refresh_interval_minutes}m",
            )

    async def _run_refresh_pass(self):
        """Execute one refresh pass over the active topics."""
        with LogContext(job=self.REFRESH_JOB_ID):
            task = asyncio.ensure_future(self.refresher.refresh_all())
        task.add_done_callback(self._on_pass_done)
        self._current_pass = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.info("Scheduler stopped during a refresh pass, letting it finish")
            raise

    def _on_pass_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_error(logger, "Scheduled refresh pass failed", error)
            return
        self.last_pass = task.result()

    async def _run_monitor_job(self):
        """Refresh the active topic set from the competition listing."""
        with LogContext(job=self.MONITOR_JOB_ID):
            try:
                await self.monitor.run_once()
            except Exception as e:
                log_error(logger, "Scheduled competition monitor failed", e)

    # =========================================================================
    # JOB MANAGEMENT
    # =========================================================================

    def trigger_refresh_now(self):
        """Pull the next refresh tick forward to now."""
        if not self._running:
            raise SchedulerNotRunning("scheduler is not running")
        job = self.scheduler.get_job(self.REFRESH_JOB_ID)
        if job:
            job.modify(next_run_time=datetime.now(timezone.utc))
            logger.info("Triggered immediate refresh pass")

    def get_job_status(self) -> list[dict]:
        """Get status of all scheduled jobs."""
        if self.scheduler is None or not self._running:
            return []
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            })
        return jobs

    async def wait_for_current_pass(self) -> Optional[PassSummary]:
        """Wait for the pass in progress, if any, and return its summary."""
        if self._current_pass is None:
            return None
        return await self._current_pass

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self):
        """Start the scheduler; the first refresh pass runs immediately."""
        if self._running:
            raise SchedulerAlreadyRunning("scheduler is already running")

        self.scheduler = self._build_scheduler()
        self._setup_jobs()
        self.scheduler.start()
        self._running = True

        logger.info("Scheduler started", jobs=len(self.scheduler.get_jobs()))

    def stop(self):
        """Stop scheduling new ticks. Does not wait for an in-flight pass."""
        if not self._running:
            raise SchedulerNotRunning("scheduler is not running")

        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
