"""
Active topic registry: the ordered set of topic ids the refresher polls.
"""
from abc import ABC, abstractmethod
from typing import Iterable

import structlog

from topic_sync.sync.locks import ReadWriteLock

logger = structlog.get_logger()


class TopicRegistry(ABC):
    """Interface for the set of tracked topics."""

    @abstractmethod
    def set_active(self, topic_ids: Iterable[str]) -> None:
        """Replace the whole set."""
        pass

    @abstractmethod
    def add(self, topic_id: str) -> None:
        pass

    @abstractmethod
    def remove(self, topic_id: str) -> None:
        pass

    @abstractmethod
    def list(self) -> list[str]:
        """Return a point-in-time copy of the set, in insertion order."""
        pass


class ActiveTopicRegistry(TopicRegistry):
    """
    Thread-safe ordered set of topic ids.

    Writers replace the backing list wholesale, so a reader always sees
    either the old set or the new one.
    """

    def __init__(self, topic_ids: Iterable[str] = ()):
        self._lock = ReadWriteLock()
        self._topics: list[str] = self._dedupe(topic_ids)

    @staticmethod
    def _dedupe(topic_ids: Iterable[str]) -> list[str]:
        return list(dict.fromkeys(str(t) for t in topic_ids))

    def set_active(self, topic_ids: Iterable[str]) -> None:
        topics = self._dedupe(topic_ids)
        with self._lock.write_locked():
            self._topics = topics
        logger.info("Active topics updated", count=len(topics), topics=topics)

    def add(self, topic_id: str) -> None:
        topic_id = str(topic_id)
        with self._lock.write_locked():
            if topic_id in self._topics:
                return
            self._topics = [*self._topics, topic_id]
        logger.info("Active topic added", topic_id=topic_id)

    def remove(self, topic_id: str) -> None:
        topic_id = str(topic_id)
        with self._lock.write_locked():
            if topic_id not in self._topics:
                return
            self._topics = [t for t in self._topics if t != topic_id]
        logger.info("Active topic removed", topic_id=topic_id)

    def list(self) -> list[str]:
        with self._lock.read_locked():
            return list(self._topics)

    def __contains__(self, topic_id: object) -> bool:
        with self._lock.read_locked():
            return str(topic_id) in self._topics

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._topics)
