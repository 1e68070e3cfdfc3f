"""
Competition monitor: keeps the active topic set in line with Forge.

Each run fetches the competition listing, stores it, replaces the registry
with the topics of active and upcoming competitions, and prunes topic
history past the retention window.
"""
import asyncio
from datetime import timedelta
from typing import Optional, Protocol

import structlog

from topic_sync.config import Settings, get_settings
from topic_sync.errors import FetchFailure, PersistFailure
from topic_sync.models import CompetitionListing
from topic_sync.sync.registry import TopicRegistry
from topic_sync.utils import log_error

logger = structlog.get_logger()


class CompetitionSource(Protocol):
    async def fetch_competitions(self) -> CompetitionListing: ...


class CompetitionStore(Protocol):
    def save_competitions(self, listing: CompetitionListing) -> int: ...

    def prune_old_topic_data(self, retention: timedelta, topic_id: Optional[str] = None) -> int: ...


class CompetitionMonitor:
    """Discovers active topics from the Forge competition listing."""

    def __init__(
        self,
        source: CompetitionSource,
        registry: TopicRegistry,
        store: Optional[CompetitionStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.source = source
        self.registry = registry
        self.store = store
        self.last_listing: Optional[CompetitionListing] = None

    async def run_once(self) -> Optional[list[str]]:
        """
        Run one monitor cycle.

        Returns the new active topic ids, or None when the listing could not
        be fetched or stored; the registry is left as it was in that case.
        """
        try:
            listing = await self.source.fetch_competitions()
        except FetchFailure as e:
            log_error(logger, "Competition listing fetch failed", e)
            return None

        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.save_competitions, listing)
            except PersistFailure as e:
                logger.error("Saving competitions failed", error=str(e))
                return None

        topics = listing.active_topic_ids()
        self.registry.set_active(topics)
        self.last_listing = listing

        await self.prune()
        return topics

    async def prune(self) -> int:
        """Delete topic history older than data_retention_days."""
        if self.store is None:
            return 0
        retention = timedelta(days=self.settings.data_retention_days)
        try:
            return await asyncio.to_thread(self.store.prune_old_topic_data, retention)
        except PersistFailure as e:
            logger.error("Pruning topic history failed", error=str(e))
            return 0
