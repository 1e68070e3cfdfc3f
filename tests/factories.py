"""
Shared builders and fakes for the test suite.
"""
import asyncio
from datetime import timedelta
from typing import Optional

from topic_sync.config import Settings
from topic_sync.errors import FetchFailure, PersistFailure
from topic_sync.models import (
    Competition,
    CompetitionListing,
    LeaderboardEntry,
    MaterializedRecord,
    RawSnapshot,
    WorkerValue,
    WorkerWeight,
)


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment, with instant retries."""
    values = {
        "backoff_base_seconds": 0.0,
        "backoff_max_seconds": 0.0,
        "backoff_jitter": 0.0,
        "retry_max_attempts": 3,
        "allora_rate_limit_rps": 100.0,
        "forge_rate_limit_rps": 50.0,
        "competition_monitor_enabled": False,
        "topic_refresh_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_snapshot(
    topic_id: str = "13",
    inference_height: str = "100",
    loss_height: str = "90",
    inferers: Optional[dict] = None,
    one_out: Optional[dict] = None,
    weights: Optional[dict] = None,
    values: tuple = ("10", "20", "30"),
    percentiles: tuple = ("10", "50", "90"),
) -> RawSnapshot:
    """Factory for raw snapshots; worker maps keep insertion order."""
    inferers = {"A": "15", "B": "25"} if inferers is None else inferers
    one_out = {"B": "24", "C": "31"} if one_out is None else one_out
    weights = {"A": "0.4", "C": "0.6"} if weights is None else weights

    return RawSnapshot(
        topic_id=topic_id,
        inference_block_height=inference_height,
        loss_block_height=loss_height,
        combined_value="21.5",
        naive_value="20.1",
        inferer_values=tuple(WorkerValue(worker=w, value=v) for w, v in inferers.items()),
        one_out_inferer_values=tuple(WorkerValue(worker=w, value=v) for w, v in one_out.items()),
        inferer_weights=tuple(WorkerWeight(worker=w, weight=v) for w, v in weights.items()),
        confidence_values=tuple(values),
        confidence_percentiles=tuple(percentiles),
        reputer="allo1reputer",
        reputer_block_height="95",
    )


def make_entry(address: str, rank: str = "1") -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=rank,
        cosmos_address=address,
        username=f"user-{address}",
        first_name=None,
        last_name="Doe",
        points=10.5,
        score=0.9,
        loss=0.01,
        is_active=True,
    )


def make_listing() -> CompetitionListing:
    return CompetitionListing(
        active_and_upcoming=[
            Competition(id=1, name="ETH 10m", topic_id=13),
            Competition(id=2, name="Announcement", topic_id=0),
            Competition(id=3, name="BTC 1h", topic_id=14),
            Competition(id=4, name="ETH 10m again", topic_id=13),
        ],
        past=[Competition(id=5, name="Old", topic_id=9)],
    )


def inference_payload(
    topic_id: str = "13",
    inference_height: str = "100",
    loss_height: str = "90",
) -> dict:
    """Chain JSON document for latest_network_inferences."""
    return {
        "network_inferences": {
            "topic_id": topic_id,
            "reputer_request_nonce": {"reputer_nonce": {"block_height": "95"}},
            "reputer": "allo1reputer",
            "extra_data": None,
            "combined_value": "21.5",
            "inferer_values": [
                {"worker": "A", "value": "15"},
                {"worker": "B", "value": "25"},
            ],
            "forecaster_values": [{"worker": "F", "value": "22"}],
            "naive_value": "20.1",
            "one_out_inferer_values": [
                {"worker": "B", "value": "24"},
                {"worker": "C", "value": "31"},
            ],
            "one_out_forecaster_values": [],
            "one_in_forecaster_values": [],
            "one_out_inferer_forecaster_values": [],
        },
        "inferer_weights": [
            {"worker": "A", "weight": "0.4"},
            {"worker": "C", "weight": "0.6"},
        ],
        "forecaster_weights": [],
        "inference_block_height": inference_height,
        "loss_block_height": loss_height,
        "confidence_interval_raw_percentiles": ["10", "50", "90"],
        "confidence_interval_values": ["10", "20", "30"],
    }


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeChain:
    """Serves queued snapshots (or exceptions) per topic."""

    def __init__(self, block_time: Optional[str] = "2025-01-01T00:00:00Z"):
        self.snapshots: dict[str, list] = {}
        self.block_time = block_time
        self.fetch_calls: list[str] = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def queue(self, topic_id: str, *items) -> None:
        self.snapshots.setdefault(topic_id, []).extend(items)

    async def fetch_raw_snapshot(self, topic_id: str) -> RawSnapshot:
        self.fetch_calls.append(topic_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            items = self.snapshots.get(topic_id) or []
            if not items:
                raise FetchFailure(f"no snapshot for topic {topic_id}")
            item = items.pop(0) if len(items) > 1 else items[0]
            if isinstance(item, Exception):
                raise item
            return item
        finally:
            self.in_flight -= 1

    async def fetch_block_time(self, height: str) -> str:
        await asyncio.sleep(0)
        if self.block_time is None:
            raise FetchFailure("block lookup failed")
        return self.block_time


class FakeStore:
    """In-memory durable store."""

    def __init__(self, competition_id: Optional[str] = None):
        self.saved: list[MaterializedRecord] = []
        self.competition_id = competition_id
        self.fail_saves = False
        self.fail_lookup = False
        self.listings: list[CompetitionListing] = []
        self.pruned: list[timedelta] = []

    def save_topic_snapshot(self, record: MaterializedRecord) -> None:
        if self.fail_saves:
            raise PersistFailure("disk full")
        self.saved.append(record)

    def resolve_competition_id(self, topic_id: str) -> Optional[str]:
        if self.fail_lookup:
            raise RuntimeError("competition table locked")
        return self.competition_id

    def save_competitions(self, listing: CompetitionListing) -> int:
        if self.fail_saves:
            raise PersistFailure("disk full")
        self.listings.append(listing)
        return len(listing.active_and_upcoming) + len(listing.past)

    def prune_old_topic_data(self, retention: timedelta, topic_id: Optional[str] = None) -> int:
        self.pruned.append(retention)
        return 0


class FakeLeaderboards:
    def __init__(self, entries: Optional[dict] = None, error: Optional[Exception] = None):
        self.entries = entries or {}
        self.error = error
        self.calls: list[str] = []

    async def fetch_leaderboard(self, competition_id: str) -> dict:
        self.calls.append(competition_id)
        if self.error is not None:
            raise self.error
        return dict(self.entries)


class FakeCompetitionSource:
    def __init__(self, listing: Optional[CompetitionListing] = None, error: Optional[Exception] = None):
        self.listing = listing
        self.error = error

    async def fetch_competitions(self) -> CompetitionListing:
        if self.error is not None:
            raise self.error
        return self.listing
