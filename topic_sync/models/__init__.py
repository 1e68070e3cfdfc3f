"""
Pydantic models for topic inference data.
Provides typed records for raw chain snapshots, merged worker rows,
leaderboard entries and Forge competitions.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeDecision(str, Enum):
    """Outcome of comparing an incoming snapshot against cached state."""
    ACCEPT = "accept"
    SKIP = "skip"


# =============================================================================
# RAW CHAIN SNAPSHOT
# =============================================================================

class WorkerValue(BaseModel):
    """A (worker, value) pair as published by the chain."""
    model_config = ConfigDict(frozen=True)

    worker: str = ""
    value: str = ""


class WorkerWeight(BaseModel):
    """A (worker, weight) pair as published by the chain."""
    model_config = ConfigDict(frozen=True)

    worker: str = ""
    weight: str = ""


class RawSnapshot(BaseModel):
    """
    Latest network inference for one topic, as fetched from the chain.

    Immutable once constructed. The confidence ladder is kept as the raw
    decimal strings; band assignment parses it on demand.
    """
    model_config = ConfigDict(frozen=True)

    topic_id: str
    inference_block_height: str = ""
    loss_block_height: str = ""
    combined_value: str = ""
    naive_value: str = ""

    inferer_values: tuple[WorkerValue, ...] = ()
    one_out_inferer_values: tuple[WorkerValue, ...] = ()
    inferer_weights: tuple[WorkerWeight, ...] = ()

    confidence_values: tuple[str, ...] = ()
    confidence_percentiles: tuple[str, ...] = ()

    # Pass-through fields, stored verbatim
    reputer: str = ""
    reputer_block_height: str = ""
    extra_data: Any = None
    forecaster_values: tuple[Any, ...] = ()
    one_out_forecaster_values: tuple[Any, ...] = ()
    one_in_forecaster_values: tuple[Any, ...] = ()
    one_out_inferer_forecaster_values: tuple[Any, ...] = ()
    forecaster_weights: tuple[Any, ...] = ()


# =============================================================================
# LEADERBOARD
# =============================================================================

class LeaderboardEntry(BaseModel):
    """One row of a Forge competition leaderboard."""
    model_config = ConfigDict(frozen=True)

    rank: str = ""
    cosmos_address: str = ""
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    points: float = 0.0
    score: float = 0.0
    loss: float = 0.0
    is_active: bool = False

    @field_validator("first_name", "last_name", "username", "cosmos_address", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("rank", mode="before")
    @classmethod
    def rank_to_str(cls, v):
        return "" if v is None else str(v)

    @field_validator("points", "score", "loss", mode="before")
    @classmethod
    def none_to_zero(cls, v):
        return 0.0 if v is None else v


class LeaderboardPage(BaseModel):
    """A single page of leaderboard results."""
    entries: list[LeaderboardEntry] = Field(default_factory=list)
    next_token: str = ""
    ok: bool = True


# =============================================================================
# MATERIALIZED RECORDS
# =============================================================================

class WorkerRecord(BaseModel):
    """
    Merged view of one worker across the sparse per-worker lists.
    Any field may be absent; a worker exists iff it appeared in at least one list.
    """
    model_config = ConfigDict(frozen=True)

    worker: str
    inferer_value: Optional[str] = None
    one_out_inferer_value: Optional[str] = None
    weight: Optional[str] = None
    leaderboard: Optional[LeaderboardEntry] = None
    nearest_percentile: Optional[str] = None
    band: Optional[str] = None

    def to_storage_dict(self) -> dict[str, Any]:
        """Serialize with the keys used in stored payloads; absent fields are omitted."""
        data: dict[str, Any] = {"worker": self.worker}
        if self.inferer_value is not None:
            data["inferer_values"] = self.inferer_value
        if self.one_out_inferer_value is not None:
            data["one_out_inferer_values"] = self.one_out_inferer_value
        if self.weight is not None:
            data["weight"] = self.weight
        if self.leaderboard is not None:
            data["leaderboard"] = self.leaderboard.model_dump()
        if self.nearest_percentile is not None:
            data["confidence_interval_raw_percentiles"] = self.nearest_percentile
        if self.band is not None:
            data["confidential_percentiles"] = self.band
        return data


class MaterializedRecord(BaseModel):
    """Merged, band-annotated result of one accepted snapshot."""
    model_config = ConfigDict(frozen=True)

    topic_id: str
    timestamp: str
    inference_block_height: str
    loss_block_height: str
    combined_value: str = ""
    naive_value: str = ""
    reputer: str = ""
    reputer_block_height: str = ""
    extra_data: Any = None
    forecaster_values: tuple[Any, ...] = ()
    one_out_forecaster_values: tuple[Any, ...] = ()
    one_in_forecaster_values: tuple[Any, ...] = ()
    one_out_inferer_forecaster_values: tuple[Any, ...] = ()
    confidence_values: tuple[str, ...] = ()
    confidence_percentiles: tuple[str, ...] = ()
    workers: tuple[WorkerRecord, ...] = ()

    def to_storage_dict(self) -> dict[str, Any]:
        """Serialize into the JSON document kept in the durable store."""
        return {
            "topic_id": self.topic_id,
            "timestamp": self.timestamp,
            "network_inferences": {
                "reputer_request_nonce": {
                    "reputer_nonce": {"block_height": self.reputer_block_height},
                },
                "reputer": self.reputer,
                "extra_data": self.extra_data,
                "combined_value": self.combined_value,
                "naive_value": self.naive_value,
                "forecaster_values": list(self.forecaster_values),
                "one_out_forecaster_values": list(self.one_out_forecaster_values),
                "one_in_forecaster_values": list(self.one_in_forecaster_values),
                "one_out_inferer_forecaster_values": list(self.one_out_inferer_forecaster_values),
                "synthesis_value": [w.to_storage_dict() for w in self.workers],
            },
            "inference_block_height": self.inference_block_height,
            "loss_block_height": self.loss_block_height,
            "confidence_interval_raw_percentiles": list(self.confidence_percentiles),
            "confidence_interval_values": list(self.confidence_values),
        }


class CachedTopicState(BaseModel):
    """Last accepted snapshot of a topic and its materialized record."""
    model_config = ConfigDict(frozen=True)

    snapshot: RawSnapshot
    record: MaterializedRecord
    updated_at: datetime


# =============================================================================
# FORGE COMPETITIONS
# =============================================================================

class Competition(BaseModel):
    """A Forge competition bound to a topic."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str = ""
    preview_image_url: str = ""
    description: str = ""
    detailed_description: str = ""
    topic_id: int = 0
    prize_pool: int = 0
    start_date: str = ""
    end_date: str = ""
    season_id: int = 0
    tags: list[str] = Field(default_factory=list)

    @field_validator(
        "name", "preview_image_url", "description", "detailed_description",
        "start_date", "end_date", mode="before",
    )
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("tags", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return [] if v is None else v

    @field_validator("prize_pool", "season_id", "topic_id", mode="before")
    @classmethod
    def none_to_zero(cls, v):
        return 0 if v is None else v


class CompetitionListing(BaseModel):
    """Active/upcoming and past competitions as listed by Forge."""
    active_and_upcoming: list[Competition] = Field(default_factory=list)
    past: list[Competition] = Field(default_factory=list)

    def is_active(self, competition: Competition) -> bool:
        """A competition is active when it has a topic, is not past, and carries no tags."""
        if competition.topic_id == 0:
            return False
        if any(p.id == competition.id for p in self.past):
            return False
        return len(competition.tags) == 0

    def active_topic_ids(self) -> list[str]:
        """Distinct topic ids of active and upcoming competitions, in listing order."""
        seen: list[str] = []
        for competition in self.active_and_upcoming:
            if competition.topic_id == 0:
                continue
            topic_id = str(competition.topic_id)
            if topic_id not in seen:
                seen.append(topic_id)
        return seen


__all__ = [
    "CachedTopicState",
    "ChangeDecision",
    "Competition",
    "CompetitionListing",
    "LeaderboardEntry",
    "LeaderboardPage",
    "MaterializedRecord",
    "RawSnapshot",
    "WorkerRecord",
    "WorkerValue",
    "WorkerWeight",
]
