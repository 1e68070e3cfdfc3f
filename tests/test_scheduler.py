"""
Refresh Scheduler Tests
=======================

Start/stop state machine, immediate first pass, and in-flight passes
surviving stop().
"""

import asyncio
from datetime import datetime, timezone

import pytest

from topic_sync.errors import SchedulerAlreadyRunning, SchedulerNotRunning
from topic_sync.scheduler import RefreshScheduler
from topic_sync.sync.refresher import PassSummary

from tests.factories import make_settings


class CountingRefresher:
    """Stands in for TopicRefresher; optionally blocks inside a pass."""

    def __init__(self, gate: asyncio.Event = None):
        self.passes = 0
        self.completed = 0
        self.started = asyncio.Event()
        self.gate = gate

    async def refresh_all(self) -> PassSummary:
        self.passes += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        self.completed += 1
        return PassSummary(started_at=datetime.now(timezone.utc), finished_at=datetime.now(timezone.utc))


class CountingMonitor:
    def __init__(self):
        self.runs = 0

    async def run_once(self):
        self.runs += 1
        return []


def settings(**overrides):
    return make_settings(topic_refresh_interval_seconds=3600, **overrides)


class TestSchedulerStateMachine:

    def test_stop_before_start_fails(self):
        scheduler = RefreshScheduler(CountingRefresher(), settings=settings())
        with pytest.raises(SchedulerNotRunning):
            scheduler.stop()

    def test_double_start_fails(self):
        async def run():
            scheduler = RefreshScheduler(CountingRefresher(), settings=settings())
            scheduler.start()
            try:
                with pytest.raises(SchedulerAlreadyRunning):
                    scheduler.start()
            finally:
                scheduler.stop()
            return scheduler

        scheduler = asyncio.run(run())
        assert not scheduler.is_running

    def test_double_stop_fails(self):
        async def run():
            scheduler = RefreshScheduler(CountingRefresher(), settings=settings())
            scheduler.start()
            scheduler.stop()
            with pytest.raises(SchedulerNotRunning):
                scheduler.stop()

        asyncio.run(run())

    def test_restart_after_stop(self):
        async def run():
            refresher = CountingRefresher()
            scheduler = RefreshScheduler(refresher, settings=settings())
            scheduler.start()
            await asyncio.wait_for(refresher.started.wait(), timeout=5)
            scheduler.stop()

            refresher.started.clear()
            scheduler.start()
            await asyncio.wait_for(refresher.started.wait(), timeout=5)
            scheduler.stop()
            return refresher

        refresher = asyncio.run(run())
        assert refresher.passes == 2


class TestSchedulerPasses:

    def test_first_pass_runs_immediately(self):
        async def run():
            refresher = CountingRefresher()
            scheduler = RefreshScheduler(refresher, settings=settings())
            scheduler.start()
            await asyncio.wait_for(refresher.started.wait(), timeout=5)
            await scheduler.wait_for_current_pass()
            await asyncio.sleep(0.05)
            jobs = scheduler.get_job_status()
            scheduler.stop()
            return refresher, scheduler, jobs

        refresher, scheduler, jobs = asyncio.run(run())

        assert refresher.passes == 1
        assert scheduler.last_pass is not None
        assert [j["id"] for j in jobs] == [RefreshScheduler.REFRESH_JOB_ID]

    def test_stop_does_not_cancel_in_flight_pass(self):
        async def run():
            gate = asyncio.Event()
            refresher = CountingRefresher(gate=gate)
            scheduler = RefreshScheduler(refresher, settings=settings())
            scheduler.start()
            await asyncio.wait_for(refresher.started.wait(), timeout=5)

            scheduler.stop()
            await asyncio.sleep(0.01)
            gate.set()
            summary = await asyncio.wait_for(scheduler.wait_for_current_pass(), timeout=5)
            return refresher, summary

        refresher, summary = asyncio.run(run())

        assert refresher.completed == 1
        assert summary is not None

    def test_monitor_job_is_scheduled_when_enabled(self):
        async def run():
            scheduler = RefreshScheduler(
                CountingRefresher(),
                monitor=CountingMonitor(),
                settings=settings(competition_monitor_enabled=True),
            )
            scheduler.start()
            jobs = scheduler.get_job_status()
            scheduler.stop()
            return jobs

        jobs = asyncio.run(run())

        assert sorted(j["id"] for j in jobs) == [
            RefreshScheduler.MONITOR_JOB_ID,
            RefreshScheduler.REFRESH_JOB_ID,
        ]

    def test_trigger_refresh_requires_running(self):
        scheduler = RefreshScheduler(CountingRefresher(), settings=settings())
        with pytest.raises(SchedulerNotRunning):
            scheduler.trigger_refresh_now()
