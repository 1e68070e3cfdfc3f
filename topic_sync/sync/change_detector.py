"""
Change detection between a topic's cached state and a freshly fetched snapshot.
"""
from typing import Optional

from topic_sync.models import CachedTopicState, ChangeDecision, RawSnapshot


def should_accept(cached: Optional[CachedTopicState], incoming: RawSnapshot) -> ChangeDecision:
    """
    Decide whether an incoming snapshot replaces the cached one.

    Only the two block heights are compared. A different inference height
    is always accepted, including one lower than the cached height; at the
    same inference height the snapshot is accepted only when the loss height
    moved.
    """
    if cached is None:
        return ChangeDecision.ACCEPT

    previous = cached.snapshot
    if previous.inference_block_height != incoming.inference_block_height:
        return ChangeDecision.ACCEPT
    if previous.loss_block_height != incoming.loss_block_height:
        return ChangeDecision.ACCEPT
    return ChangeDecision.SKIP
