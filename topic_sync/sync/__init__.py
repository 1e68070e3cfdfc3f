"""Topic synchronization core: registry, cache, change detection, merge and bands."""
from topic_sync.sync.bands import DEFAULT_BAND, assign_band, assign_band_range, parse_ladder
from topic_sync.sync.cache import SnapshotCache, SnapshotStore
from topic_sync.sync.change_detector import should_accept
from topic_sync.sync.locks import ReadWriteLock
from topic_sync.sync.merge import build_record, merge_workers
from topic_sync.sync.refresher import PassSummary, RefreshResult, TopicRefresher
from topic_sync.sync.registry import ActiveTopicRegistry, TopicRegistry

__all__ = [
    "DEFAULT_BAND",
    "ActiveTopicRegistry",
    "PassSummary",
    "ReadWriteLock",
    "RefreshResult",
    "SnapshotCache",
    "SnapshotStore",
    "TopicRefresher",
    "TopicRegistry",
    "assign_band",
    "assign_band_range",
    "build_record",
    "merge_workers",
    "parse_ladder",
    "should_accept",
]
