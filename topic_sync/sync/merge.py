"""
Worker merge: reshapes the sparse per-worker lists of a snapshot into one
record per worker and annotates each with its confidence band.
"""
from dataclasses import dataclass
from typing import Mapping, Optional

from topic_sync.models import LeaderboardEntry, MaterializedRecord, RawSnapshot, WorkerRecord
from topic_sync.sync.bands import assign_band, assign_band_range


@dataclass
class WorkerSlot:
    """Mutable accumulator for one worker while the lists are walked."""
    worker: str
    inferer_value: Optional[str] = None
    one_out_inferer_value: Optional[str] = None
    weight: Optional[str] = None

    def to_record(
        self,
        snapshot: RawSnapshot,
        leaderboard: Optional[Mapping[str, LeaderboardEntry]] = None,
    ) -> WorkerRecord:
        """Freeze the slot, attaching its leaderboard entry and band labels."""
        entry = leaderboard.get(self.worker) if leaderboard else None

        nearest: Optional[str] = None
        band: Optional[str] = None
        if self.inferer_value is not None:
            nearest = assign_band(
                self.inferer_value,
                snapshot.confidence_values,
                snapshot.confidence_percentiles,
            )
            band = assign_band_range(
                self.inferer_value,
                snapshot.confidence_values,
                snapshot.confidence_percentiles,
            )

        return WorkerRecord(
            worker=self.worker,
            inferer_value=self.inferer_value,
            one_out_inferer_value=self.one_out_inferer_value,
            weight=self.weight,
            leaderboard=entry,
            nearest_percentile=nearest,
            band=band,
        )


def merge_workers(
    snapshot: RawSnapshot,
    leaderboard: Optional[Mapping[str, LeaderboardEntry]] = None,
) -> list[WorkerRecord]:
    """
    Merge inferer values, one-out inferer values and weights by worker.

    Lists are visited in that order and each list in source order; a worker
    is created on first sight and later entries overwrite the same field.
    Empty worker ids are ignored. Workers are returned in discovery order.

    Workers that carry an inferer value get a nearest percentile label and a
    band range label computed against the snapshot's confidence ladder.
    """
    slots: dict[str, WorkerSlot] = {}

    def _slot(worker: str) -> WorkerSlot:
        if worker not in slots:
            slots[worker] = WorkerSlot(worker=worker)
        return slots[worker]

    for item in snapshot.inferer_values:
        if item.worker:
            _slot(item.worker).inferer_value = item.value

    for item in snapshot.one_out_inferer_values:
        if item.worker:
            _slot(item.worker).one_out_inferer_value = item.value

    for item in snapshot.inferer_weights:
        if item.worker:
            _slot(item.worker).weight = item.weight

    return [slot.to_record(snapshot, leaderboard) for slot in slots.values()]


def build_record(
    snapshot: RawSnapshot,
    timestamp: str,
    leaderboard: Optional[Mapping[str, LeaderboardEntry]] = None,
) -> MaterializedRecord:
    """Build the materialized record for an accepted snapshot."""
    return MaterializedRecord(
        topic_id=snapshot.topic_id,
        timestamp=timestamp,
        inference_block_height=snapshot.inference_block_height,
        loss_block_height=snapshot.loss_block_height,
        combined_value=snapshot.combined_value,
        naive_value=snapshot.naive_value,
        reputer=snapshot.reputer,
        reputer_block_height=snapshot.reputer_block_height,
        extra_data=snapshot.extra_data,
        forecaster_values=snapshot.forecaster_values,
        one_out_forecaster_values=snapshot.one_out_forecaster_values,
        one_in_forecaster_values=snapshot.one_in_forecaster_values,
        one_out_inferer_forecaster_values=snapshot.one_out_inferer_forecaster_values,
        confidence_values=snapshot.confidence_values,
        confidence_percentiles=snapshot.confidence_percentiles,
        workers=tuple(merge_workers(snapshot, leaderboard)),
    )
