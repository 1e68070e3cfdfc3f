"""
HTTP API Tests
==============

FastAPI routes against a service wired to mocked Allora and Forge
transports and a temporary SQLite database. The scheduler is not started.
"""

from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from topic_sync.api import create_app
from topic_sync.clients import AlloraChainClient, ForgeClient
from topic_sync.database import TopicDatabase, utc_now
from topic_sync.service import TopicSyncService

from tests.factories import inference_payload, make_listing, make_settings

LEADERBOARD_PATH = "/api/upshot-api-proxy/allora/forge/competition/4/leaderboard"


def chain_route(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/emissions/v9/latest_network_inferences/13":
        return httpx.Response(200, json=inference_payload())
    if request.url.path == "/cosmos/base/tendermint/v1beta1/blocks/100":
        return httpx.Response(200, json={"block": {"header": {"time": "2025-01-01T00:00:00Z"}}})
    return httpx.Response(404, text="not found")


def forge_route(request: httpx.Request) -> httpx.Response:
    if request.url.path == LEADERBOARD_PATH:
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {
                    "leaderboard": [{"rank": 1, "cosmos_address": "A", "username": "alice", "points": 3}],
                    "continuation_token": "",
                },
            },
        )
    return httpx.Response(404)


@pytest.fixture
def service(tmp_path):
    settings = make_settings(default_active_topics=["13"])
    return TopicSyncService(
        settings=settings,
        chain=AlloraChainClient(
            base_url="https://chain.test",
            transport=httpx.MockTransport(chain_route),
            settings=settings,
        ),
        forge=ForgeClient(
            base_url="https://forge.test",
            transport=httpx.MockTransport(forge_route),
            settings=settings,
        ),
        database=TopicDatabase(f"sqlite:///{tmp_path / 'api.db'}", echo=False),
    )


@pytest.fixture
def client(service):
    with TestClient(create_app(service, run_background=False)) as test_client:
        yield test_client


class TestHealth:

    def test_root(self, client):
        assert client.get("/").json()["name"] == "allora-topic-sync"

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "ok"
        assert body["database"] is True
        assert body["scheduler_running"] is False

    def test_status(self, client):
        body = client.get("/api/status").json()
        assert body["success"]
        assert body["active_topics"] == ["13"]
        assert body["last_pass"] is None
        assert [c["client"] for c in body["clients"]] == ["allora_chain", "forge"]


class TestActiveTopics:

    def test_list(self, client):
        assert client.get("/api/topics/active").json() == {"success": True, "topics": ["13"], "count": 1}

    def test_add_set_remove(self, client):
        assert client.post("/api/topics/active", json={"topic_id": "14"}).json()["topics"] == ["13", "14"]
        assert client.put("/api/topics/active", json={"topic_ids": ["20", "21", "20"]}).json()["topics"] == [
            "20",
            "21",
        ]
        assert client.delete("/api/topics/active/20").json()["topics"] == ["21"]

    def test_add_requires_topic_id(self, client):
        assert client.post("/api/topics/active", json={"topic_id": ""}).status_code == 422


class TestRefreshAndLatest:

    def test_latest_before_refresh(self, client):
        assert client.get("/api/topics/latest/13").status_code == 404
        assert client.get("/api/topics/latest").json()["count"] == 0

    def test_force_refresh_populates_cache_and_store(self, client):
        response = client.post("/api/topics/13/refresh")

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["decision"] == "accept"
        assert result["workers"] == 3
        assert result["persisted"] is True
        assert result["enriched"] is False

        latest = client.get("/api/topics/latest/13").json()["data"]
        assert latest["timestamp"] == "2025-01-01T00:00:00Z"
        assert [w["worker"] for w in latest["network_inferences"]["synthesis_value"]] == ["A", "B", "C"]
        assert "updated_at" in latest

        assert list(client.get("/api/topics/latest").json()["topics"]) == ["13"]

        stored = client.get("/api/topics/inference", params={"topic_id": "13"}).json()["data"]
        assert stored["inference_block_height"] == "100"
        assert stored["prev_height"] is None

    def test_repeat_refresh_is_skipped(self, client):
        client.post("/api/topics/13/refresh")
        result = client.post("/api/topics/13/refresh").json()["result"]

        assert result["decision"] == "skip"

    def test_refresh_enriches_with_leaderboard(self, client, service):
        service.database.save_competitions(make_listing())

        result = client.post("/api/topics/13/refresh").json()["result"]

        assert result["enriched"] is True
        workers = {
            w["worker"]: w
            for w in client.get("/api/topics/latest/13").json()["data"]["network_inferences"]["synthesis_value"]
        }
        assert workers["A"]["leaderboard"]["username"] == "alice"
        assert "leaderboard" not in workers["B"]

    def test_refresh_of_unknown_topic_is_bad_gateway(self, client):
        response = client.post("/api/topics/999/refresh")

        assert response.status_code == 502
        assert client.get("/api/topics/latest/999").status_code == 404


class TestHistory:

    def test_inference_missing(self, client):
        assert client.get("/api/topics/inference", params={"topic_id": "13"}).status_code == 404

    def test_inference_by_height_and_heights(self, client):
        client.post("/api/topics/13/refresh")

        by_height = client.get("/api/topics/inference", params={"topic_id": "13", "height": "100"})
        missing = client.get("/api/topics/inference", params={"topic_id": "13", "height": "1"})
        heights = client.get("/api/topics/heights", params={"topic_id": "13"}).json()

        assert by_height.status_code == 200
        assert missing.status_code == 404
        assert heights["block_heights"] == ["100"]
        assert heights["total_count"] == 1

    def test_competitions(self, client, service):
        service.database.save_competitions(make_listing())

        everything = client.get("/api/competitions").json()
        active = client.get("/api/competitions", params={"active": "true"}).json()

        assert everything["count"] == 5
        assert [c["id"] for c in active["competitions"]] == [1, 3, 4]

    def test_stats(self, client):
        client.post("/api/topics/13/refresh")

        stats = client.get("/api/stats").json()["stats"]

        assert stats["topic_inference_rows"] == 1

    def test_topic_stats(self, client):
        client.post("/api/topics/13/refresh")

        body = client.get("/api/topics/stats", params={"topic_id": "13"}).json()
        empty = client.get("/api/topics/stats", params={"topic_id": "99"}).json()

        assert body["success"] is True
        assert body["record_count"] == 1
        assert body["oldest_timestamp"] == "2025-01-01T00:00:00"
        assert body["total_size_bytes"] > 0
        assert empty["record_count"] == 0
        assert empty["newest_timestamp"] is None

    def test_topic_stats_requires_topic_id(self, client):
        assert client.get("/api/topics/stats").status_code == 422


class TestCompetitionHistory:

    def test_explicit_window(self, client, service):
        service.database.save_competitions(make_listing(), timestamp=datetime(2025, 1, 1, 6, 0))
        service.database.save_competitions(make_listing(), timestamp=datetime(2025, 1, 3, 6, 0))

        body = client.get(
            "/api/competitions/range",
            params={"start": "2025-01-01T00:00:00Z", "end": "2025-01-02T00:00:00Z"},
        ).json()

        assert body["count"] == 1
        assert body["start"] == "2025-01-01T00:00:00"
        assert body["snapshots"][0]["timestamp"] == "2025-01-01T06:00:00"
        assert [c["id"] for c in body["snapshots"][0]["active_and_upcoming"]] == [1, 2, 3, 4]

    def test_default_window_is_last_day(self, client, service):
        service.database.save_competitions(make_listing(), timestamp=utc_now() - timedelta(days=3))
        service.database.save_competitions(make_listing())

        body = client.get("/api/competitions/range").json()

        assert body["count"] == 1

    def test_bad_time_is_rejected(self, client):
        response = client.get("/api/competitions/range", params={"start": "yesterday"})

        assert response.status_code == 400
        assert "RFC3339" in response.json()["detail"]
