"""
Topic refresher: the fetch -> detect -> merge -> cache -> persist pipeline.

Network calls (snapshot, leaderboard, block time) run before the cache is
touched; the cache only ever sees a finished CachedTopicState, swapped in
under its write lock. Two refreshes of the same topic may interleave unless
serialize_topic_refresh is enabled, in which case a per-topic asyncio.Lock
covers the whole pipeline.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol

import structlog

from topic_sync.config import Settings, get_settings
from topic_sync.errors import FetchFailure, PersistFailure
from topic_sync.models import ChangeDecision, LeaderboardEntry, MaterializedRecord, RawSnapshot
from topic_sync.sync.cache import SnapshotStore
from topic_sync.sync.change_detector import should_accept
from topic_sync.sync.merge import build_record
from topic_sync.sync.registry import TopicRegistry
from topic_sync.utils import log_error

logger = structlog.get_logger()


# =============================================================================
# COLLABORATORS
# =============================================================================

class SnapshotSource(Protocol):
    async def fetch_raw_snapshot(self, topic_id: str) -> RawSnapshot: ...

    async def fetch_block_time(self, height: str) -> str: ...


class LeaderboardSource(Protocol):
    async def fetch_leaderboard(self, competition_id: str) -> dict[str, LeaderboardEntry]: ...


class DurableStore(Protocol):
    def save_topic_snapshot(self, record: MaterializedRecord) -> None: ...

    def resolve_competition_id(self, topic_id: str) -> Optional[str]: ...


# =============================================================================
# RESULTS
# =============================================================================

def rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class RefreshResult:
    """Outcome of refreshing one topic."""
    topic_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    decision: Optional[ChangeDecision] = None
    success: bool = False
    error: Optional[str] = None

    inference_block_height: Optional[str] = None
    loss_block_height: Optional[str] = None
    workers: int = 0
    enriched: bool = False
    persisted: bool = False

    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic_id": self.topic_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "decision": self.decision.value if self.decision else None,
            "success": self.success,
            "error": self.error,
            "inference_block_height": self.inference_block_height,
            "loss_block_height": self.loss_block_height,
            "workers": self.workers,
            "enriched": self.enriched,
            "persisted": self.persisted,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class PassSummary:
    """Outcome of one refresh pass over the active topics."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: list[RefreshResult] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return sum(1 for r in self.results if r.decision == ChangeDecision.ACCEPT)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.decision == ChangeDecision.SKIP)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "topics": len(self.results),
            "accepted": self.accepted,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


# =============================================================================
# REFRESHER
# =============================================================================

class TopicRefresher:
    """Runs single-topic refreshes and full passes over the registry."""

    def __init__(
        self,
        registry: TopicRegistry,
        cache: SnapshotStore,
        chain: SnapshotSource,
        store: Optional[DurableStore] = None,
        leaderboards: Optional[LeaderboardSource] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.cache = cache
        self.chain = chain
        self.store = store
        self.leaderboards = leaderboards
        self._topic_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, topic_id: str) -> asyncio.Lock:
        lock = self._topic_locks.get(topic_id)
        if lock is None:
            lock = self._topic_locks[topic_id] = asyncio.Lock()
        return lock

    async def refresh_topic(self, topic_id: str, raise_on_fetch_error: bool = False) -> RefreshResult:
        """
        Refresh one topic.

        Fetch failures leave the cache untouched and are reported on the
        result; with raise_on_fetch_error they propagate instead.
        """
        topic_id = str(topic_id)
        if self.settings.serialize_topic_refresh:
            async with self._lock_for(topic_id):
                return await self._refresh(topic_id, raise_on_fetch_error)
        return await self._refresh(topic_id, raise_on_fetch_error)

    async def _refresh(self, topic_id: str, raise_on_fetch_error: bool) -> RefreshResult:
        result = RefreshResult(topic_id=topic_id, started_at=datetime.now(timezone.utc))
        log = logger.bind(topic_id=topic_id)
        start = time.monotonic()

        try:
            try:
                snapshot = await self.chain.fetch_raw_snapshot(topic_id)
            except FetchFailure as e:
                result.error = str(e)
                log.warning("Snapshot fetch failed", error_type=type(e).__name__, error=str(e))
                if raise_on_fetch_error:
                    raise
                return result

            result.inference_block_height = snapshot.inference_block_height
            result.loss_block_height = snapshot.loss_block_height
            result.decision = should_accept(self.cache.get(topic_id), snapshot)

            if result.decision == ChangeDecision.SKIP:
                log.debug(
                    "Snapshot unchanged",
                    inference_block_height=snapshot.inference_block_height,
                    loss_block_height=snapshot.loss_block_height,
                )
                result.success = True
                return result

            leaderboard = await self._load_leaderboard(topic_id, log)
            timestamp = await self._resolve_block_time(snapshot, log)
            record = build_record(snapshot, timestamp, leaderboard)

            self.cache.store(snapshot, record)
            result.workers = len(record.workers)
            result.enriched = bool(leaderboard)
            result.success = True

            log.info(
                "Topic snapshot accepted",
                inference_block_height=snapshot.inference_block_height,
                loss_block_height=snapshot.loss_block_height,
                workers=result.workers,
                enriched=result.enriched,
            )

            result.persisted = await self._persist(record, log)
            return result
        finally:
            result.finished_at = datetime.now(timezone.utc)
            result.duration_seconds = time.monotonic() - start

    async def _load_leaderboard(self, topic_id: str, log) -> Optional[Mapping[str, LeaderboardEntry]]:
        """Leaderboard of the topic's competition, or None when unavailable."""
        if (
            self.leaderboards is None
            or self.store is None
            or not self.settings.leaderboard_enrichment_enabled
        ):
            return None

        try:
            competition_id = await asyncio.to_thread(self.store.resolve_competition_id, topic_id)
        except Exception as e:
            log.warning("Competition lookup failed", error_type=type(e).__name__, error=str(e))
            return None

        if not competition_id:
            return None

        try:
            return await self.leaderboards.fetch_leaderboard(competition_id)
        except FetchFailure as e:
            log.warning("Leaderboard fetch failed", competition_id=competition_id, error=str(e))
            return None

    async def _resolve_block_time(self, snapshot: RawSnapshot, log) -> str:
        if not snapshot.inference_block_height:
            return rfc3339_now()
        try:
            return await self.chain.fetch_block_time(snapshot.inference_block_height)
        except FetchFailure as e:
            log.debug("Block time unavailable, using now", error=str(e))
            return rfc3339_now()

    async def _persist(self, record: MaterializedRecord, log) -> bool:
        """Best-effort write; the cache keeps the record either way."""
        if self.store is None:
            return False
        try:
            await asyncio.to_thread(self.store.save_topic_snapshot, record)
        except PersistFailure as e:
            log.error("Persisting topic snapshot failed", error=str(e))
            return False
        return True

    async def refresh_all(self) -> PassSummary:
        """Refresh every active topic in turn; one topic's failure never stops the pass."""
        summary = PassSummary(started_at=datetime.now(timezone.utc))
        topics = self.registry.list()

        for topic_id in topics:
            try:
                result = await self.refresh_topic(topic_id)
            except Exception as e:
                log_error(logger, "Topic refresh failed", e, topic_id=topic_id)
                result = RefreshResult(
                    topic_id=topic_id,
                    started_at=summary.started_at,
                    finished_at=datetime.now(timezone.utc),
                    error=str(e),
                )
            summary.results.append(result)

        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Refresh pass complete",
            topics=len(topics),
            accepted=summary.accepted,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary
