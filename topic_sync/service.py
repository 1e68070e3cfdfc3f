"""
TopicSyncService: wires the registry, cache, clients, store, refresher,
monitor and scheduler together and exposes the read/write surface used by
the HTTP API and the CLI.
"""
import asyncio
from typing import Iterable, Optional

import structlog

from topic_sync.clients import AlloraChainClient, ForgeClient
from topic_sync.config import Settings, get_settings
from topic_sync.database import TopicDatabase
from topic_sync.models import CachedTopicState
from topic_sync.monitor import CompetitionMonitor
from topic_sync.scheduler import RefreshScheduler
from topic_sync.sync.cache import SnapshotCache, SnapshotStore
from topic_sync.sync.refresher import RefreshResult, TopicRefresher
from topic_sync.sync.registry import ActiveTopicRegistry, TopicRegistry

logger = structlog.get_logger()


class TopicSyncService:
    """Facade over the synchronization engine."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[TopicRegistry] = None,
        cache: Optional[SnapshotStore] = None,
        chain: Optional[AlloraChainClient] = None,
        forge: Optional[ForgeClient] = None,
        database: Optional[TopicDatabase] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or ActiveTopicRegistry(self.settings.default_active_topics)
        self.cache = cache or SnapshotCache()
        self.chain = chain or AlloraChainClient(settings=self.settings)
        self.forge = forge or ForgeClient(settings=self.settings)
        self.database = database or TopicDatabase(self.settings.database_url)

        self.refresher = TopicRefresher(
            registry=self.registry,
            cache=self.cache,
            chain=self.chain,
            store=self.database,
            leaderboards=self.forge,
            settings=self.settings,
        )
        self.monitor = CompetitionMonitor(
            source=self.forge,
            registry=self.registry,
            store=self.database,
            settings=self.settings,
        )
        self.scheduler = RefreshScheduler(self.refresher, self.monitor, self.settings)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self) -> None:
        """Connect the clients and make sure the schema exists."""
        await asyncio.to_thread(self.database.init_schema)
        await self.chain.connect()
        await self.forge.connect()

    async def close(self) -> None:
        """Close the clients and the database engine."""
        await self.chain.close()
        await self.forge.close()
        await asyncio.to_thread(self.database.close)

    async def start(self) -> None:
        """Open resources, run one competition sync, then start the scheduler."""
        await self.open()
        if self.settings.competition_monitor_enabled:
            await self.monitor.run_once()
        self.scheduler.start()
        logger.info("Topic sync service started", active_topics=self.registry.list())

    async def stop(self) -> None:
        """Stop the scheduler if it runs and release resources."""
        if self.scheduler.is_running:
            self.scheduler.stop()
        await self.close()
        logger.info("Topic sync service stopped")

    # =========================================================================
    # READS
    # =========================================================================

    def get_active_topics(self) -> list[str]:
        return self.registry.list()

    def get_latest_for(self, topic_id: str) -> Optional[CachedTopicState]:
        return self.cache.get(str(topic_id))

    def get_all_latest(self) -> dict[str, CachedTopicState]:
        return self.cache.items()

    # =========================================================================
    # WRITES
    # =========================================================================

    async def force_refresh(self, topic_id: str) -> RefreshResult:
        """
        Refresh one topic now, outside the timer cadence.

        Raises:
            FetchFailure: the snapshot could not be fetched or decoded
        """
        return await self.refresher.refresh_topic(topic_id, raise_on_fetch_error=True)

    def set_active_topics(self, topic_ids: Iterable[str]) -> None:
        self.registry.set_active(topic_ids)

    def add_active_topic(self, topic_id: str) -> None:
        self.registry.add(topic_id)

    def remove_active_topic(self, topic_id: str) -> None:
        self.registry.remove(topic_id)

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> dict:
        last_pass = self.scheduler.last_pass
        return {
            "scheduler_running": self.scheduler.is_running,
            "jobs": self.scheduler.get_job_status(),
            "active_topics": self.registry.list(),
            "cached_topics": sorted(self.cache.items()),
            "last_pass": last_pass.to_dict() if last_pass else None,
            "clients": [self.chain.get_metrics(), self.forge.get_metrics()],
        }
