"""
Snapshot cache: the latest materialized state of every refreshed topic.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from topic_sync.models import CachedTopicState, MaterializedRecord, RawSnapshot
from topic_sync.sync.locks import ReadWriteLock


class SnapshotStore(ABC):
    """Interface for per-topic cached state."""

    @abstractmethod
    def get(self, topic_id: str) -> Optional[CachedTopicState]:
        pass

    @abstractmethod
    def put(self, state: CachedTopicState) -> None:
        """Replace the state of state.record.topic_id as one unit."""
        pass

    @abstractmethod
    def items(self) -> dict[str, CachedTopicState]:
        """Point-in-time copy of every cached topic."""
        pass

    def store(self, snapshot: RawSnapshot, record: MaterializedRecord) -> CachedTopicState:
        """Wrap an accepted snapshot and its record, stamp it, and put it."""
        state = CachedTopicState(
            snapshot=snapshot,
            record=record,
            updated_at=datetime.now(timezone.utc),
        )
        self.put(state)
        return state


class SnapshotCache(SnapshotStore):
    """
    In-memory, RW-locked topic -> CachedTopicState map.

    States are immutable, so the write lock only covers swapping one
    reference; readers never see a partially built worker set. Entries for
    topics that leave the active set are kept until restart.
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._states: dict[str, CachedTopicState] = {}

    def get(self, topic_id: str) -> Optional[CachedTopicState]:
        with self._lock.read_locked():
            return self._states.get(str(topic_id))

    def put(self, state: CachedTopicState) -> None:
        with self._lock.write_locked():
            self._states[state.record.topic_id] = state

    def items(self) -> dict[str, CachedTopicState]:
        with self._lock.read_locked():
            return dict(self._states)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._states)
