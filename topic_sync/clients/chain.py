"""
Allora chain REST client.

Fetches the latest network inference for a topic and block header times.

API Endpoints:
- /emissions/{version}/latest_network_inferences/{topic_id}
- /cosmos/base/tendermint/v1beta1/blocks/{height}
"""
from typing import Any

import structlog
from pydantic import ValidationError

from topic_sync.clients.base import BaseAPIClient
from topic_sync.errors import DecodeFailure
from topic_sync.models import RawSnapshot, WorkerValue, WorkerWeight

logger = structlog.get_logger()


class AlloraChainClient(BaseAPIClient):
    """Client for the Allora chain REST API."""

    NAME = "allora_chain"

    def _get_default_base_url(self) -> str:
        return self._settings.allora_api_base_url

    def _get_default_rate_limit(self) -> float:
        return self._settings.allora_rate_limit_rps

    # =========================================================================
    # NETWORK INFERENCES
    # =========================================================================

    async def fetch_raw_snapshot(self, topic_id: str) -> RawSnapshot:
        """
        Fetch the latest network inference for a topic.

        Raises:
            FetchFailure: network error or non-success status
            DecodeFailure: body is not the expected inference document
        """
        path = self._settings.inference_path_template.format(topic_id=topic_id)
        payload = await self.get_json(path)
        snapshot = self.normalize_snapshot(topic_id, payload)

        logger.debug(
            "Fetched raw snapshot",
            topic_id=topic_id,
            inference_block_height=snapshot.inference_block_height,
            loss_block_height=snapshot.loss_block_height,
            inferers=len(snapshot.inferer_values),
        )
        return snapshot

    @staticmethod
    def normalize_snapshot(topic_id: str, payload: Any) -> RawSnapshot:
        """Convert the chain's inference document into a RawSnapshot."""
        if not isinstance(payload, dict):
            raise DecodeFailure(f"topic {topic_id}: inference payload is not an object")

        inferences = payload.get("network_inferences")
        if not isinstance(inferences, dict):
            raise DecodeFailure(f"topic {topic_id}: missing network_inferences")

        try:
            nonce = (inferences.get("reputer_request_nonce") or {}).get("reputer_nonce") or {}
            return RawSnapshot(
                topic_id=str(topic_id),
                inference_block_height=_str(payload.get("inference_block_height")),
                loss_block_height=_str(payload.get("loss_block_height")),
                combined_value=_str(inferences.get("combined_value")),
                naive_value=_str(inferences.get("naive_value")),
                inferer_values=tuple(
                    WorkerValue(worker=_str(v.get("worker")), value=_str(v.get("value")))
                    for v in inferences.get("inferer_values") or []
                ),
                one_out_inferer_values=tuple(
                    WorkerValue(worker=_str(v.get("worker")), value=_str(v.get("value")))
                    for v in inferences.get("one_out_inferer_values") or []
                ),
                inferer_weights=tuple(
                    WorkerWeight(worker=_str(w.get("worker")), weight=_str(w.get("weight")))
                    for w in payload.get("inferer_weights") or []
                ),
                confidence_values=tuple(
                    _str(v) for v in payload.get("confidence_interval_values") or []
                ),
                confidence_percentiles=tuple(
                    _str(p) for p in payload.get("confidence_interval_raw_percentiles") or []
                ),
                reputer=_str(inferences.get("reputer")),
                reputer_block_height=_str(nonce.get("block_height")),
                extra_data=inferences.get("extra_data"),
                forecaster_values=tuple(inferences.get("forecaster_values") or ()),
                one_out_forecaster_values=tuple(inferences.get("one_out_forecaster_values") or ()),
                one_in_forecaster_values=tuple(inferences.get("one_in_forecaster_values") or ()),
                one_out_inferer_forecaster_values=tuple(
                    inferences.get("one_out_inferer_forecaster_values") or ()
                ),
                forecaster_weights=tuple(payload.get("forecaster_weights") or ()),
            )
        except (AttributeError, TypeError, ValidationError) as e:
            raise DecodeFailure(f"topic {topic_id}: malformed inference payload: {e}") from e

    # =========================================================================
    # BLOCKS
    # =========================================================================

    async def fetch_block_time(self, height: str) -> str:
        """
        Fetch the header time of a block.

        Raises:
            FetchFailure: network error or non-success status
            DecodeFailure: the block carries no header time
        """
        if not height:
            raise DecodeFailure("empty block height")

        payload = await self.get_json(f"/cosmos/base/tendermint/v1beta1/blocks/{height}")
        try:
            block_time = payload["block"]["header"]["time"]
        except (KeyError, TypeError) as e:
            raise DecodeFailure(f"block {height}: missing header time") from e

        if not block_time:
            raise DecodeFailure(f"block {height}: empty header time")
        return str(block_time)


def _str(value: Any) -> str:
    return "" if value is None else str(value)
