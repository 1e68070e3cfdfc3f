"""
HTTP API for the topic sync service.

In-memory endpoints read the snapshot cache and registry; history endpoints
read the durable store. Store-backed handlers are plain functions so FastAPI
runs them in its threadpool.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from topic_sync import __version__
from topic_sync.database import parse_timestamp, utc_now
from topic_sync.errors import FetchFailure
from topic_sync.models import CachedTopicState
from topic_sync.service import TopicSyncService

logger = structlog.get_logger()

router = APIRouter(prefix="/api")


class TopicRequest(BaseModel):
    topic_id: str = Field(..., min_length=1)


class TopicSetRequest(BaseModel):
    topic_ids: list[str] = Field(default_factory=list)


def get_service(request: Request) -> TopicSyncService:
    return request.app.state.service


def _state_payload(state: CachedTopicState) -> dict:
    data = state.record.to_storage_dict()
    data["updated_at"] = state.updated_at.isoformat()
    return data


# =============================================================================
# HEALTH & STATUS
# =============================================================================

@router.get("/health")
def health(service: TopicSyncService = Depends(get_service)):
    """Liveness plus database connectivity."""
    database_ok = service.database.health_check()
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "scheduler_running": service.scheduler.is_running,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/status")
async def status(service: TopicSyncService = Depends(get_service)):
    """Scheduler jobs, last pass summary and client metrics."""
    return {"success": True, **service.get_status()}


@router.get("/stats")
def stats(service: TopicSyncService = Depends(get_service)):
    """Row counts of the durable store."""
    return {"success": True, "stats": service.database.get_database_stats()}


# =============================================================================
# ACTIVE TOPICS
# =============================================================================

@router.get("/topics/active")
async def list_active_topics(service: TopicSyncService = Depends(get_service)):
    topics = service.get_active_topics()
    return {"success": True, "topics": topics, "count": len(topics)}


@router.post("/topics/active")
async def add_active_topic(body: TopicRequest, service: TopicSyncService = Depends(get_service)):
    service.add_active_topic(body.topic_id)
    return {"success": True, "topics": service.get_active_topics()}


@router.put("/topics/active")
async def set_active_topics(body: TopicSetRequest, service: TopicSyncService = Depends(get_service)):
    service.set_active_topics(body.topic_ids)
    return {"success": True, "topics": service.get_active_topics()}


@router.delete("/topics/active/{topic_id}")
async def remove_active_topic(topic_id: str, service: TopicSyncService = Depends(get_service)):
    service.remove_active_topic(topic_id)
    return {"success": True, "topics": service.get_active_topics()}


# =============================================================================
# LATEST SNAPSHOTS (in-memory)
# =============================================================================

@router.get("/topics/latest")
async def get_all_latest(service: TopicSyncService = Depends(get_service)):
    """Latest materialized record of every cached topic."""
    states = service.get_all_latest()
    return {
        "success": True,
        "topics": {topic_id: _state_payload(state) for topic_id, state in states.items()},
        "count": len(states),
    }


@router.get("/topics/latest/{topic_id}")
async def get_latest(topic_id: str, service: TopicSyncService = Depends(get_service)):
    state = service.get_latest_for(topic_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No cached data for topic {topic_id}")
    return {"success": True, "data": _state_payload(state)}


@router.post("/topics/{topic_id}/refresh")
async def force_refresh(topic_id: str, service: TopicSyncService = Depends(get_service)):
    """Refresh one topic immediately."""
    try:
        result = await service.force_refresh(topic_id)
    except FetchFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": result.success, "result": result.to_dict()}


# =============================================================================
# HISTORY (durable store)
# =============================================================================

@router.get("/topics/inference")
def get_topic_inference(
    topic_id: str = Query(..., min_length=1),
    height: Optional[str] = Query(None, description="Inference block height; latest when omitted"),
    service: TopicSyncService = Depends(get_service),
):
    """Stored record at a height (or the newest) with prev/next heights for paging."""
    if height:
        data = service.database.get_topic_snapshot_by_height(topic_id, height)
    else:
        data = service.database.get_latest_topic_snapshot(topic_id)
    if data is None:
        raise HTTPException(status_code=404, detail=f"No stored data for topic {topic_id}")
    return {"success": True, "data": data}


@router.get("/topics/heights")
def get_topic_heights(
    topic_id: str = Query(..., min_length=1),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: TopicSyncService = Depends(get_service),
):
    return {"success": True, **service.database.get_topic_block_heights(topic_id, limit, offset)}


@router.get("/topics/stats")
def get_topic_stats(
    topic_id: str = Query(..., min_length=1),
    service: TopicSyncService = Depends(get_service),
):
    """Stored record count, time span and payload size of one topic."""
    return {"success": True, **service.database.get_topic_stats(topic_id)}


@router.get("/competitions")
def get_competitions(
    active: bool = Query(False, description="Only active competitions"),
    service: TopicSyncService = Depends(get_service),
):
    competitions = service.database.get_competitions(active_only=active)
    return {"success": True, "competitions": competitions, "count": len(competitions)}


@router.get("/competitions/range")
def get_competitions_by_time_range(
    start: Optional[str] = Query(None, description="RFC3339; defaults to 24 hours ago"),
    end: Optional[str] = Query(None, description="RFC3339; defaults to now"),
    service: TopicSyncService = Depends(get_service),
):
    """Competition listings captured by the monitor within a time window."""
    try:
        start_at = parse_timestamp(start) if start else utc_now() - timedelta(hours=24)
        end_at = parse_timestamp(end) if end else utc_now()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid time format. Use RFC3339 format.")

    snapshots = service.database.get_competitions_by_time_range(start_at, end_at)
    return {
        "success": True,
        "start": start_at.isoformat(),
        "end": end_at.isoformat(),
        "snapshots": snapshots,
        "count": len(snapshots),
    }


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(
    service: Optional[TopicSyncService] = None,
    run_background: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    With run_background the lifespan starts the competition monitor and the
    refresh scheduler; otherwise it only opens and closes the service's
    clients and database.
    """
    service = service or TopicSyncService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting topic sync API", run_background=run_background)
        if run_background:
            await service.start()
        else:
            await service.open()

        yield

        if run_background:
            await service.stop()
        else:
            await service.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Allora Topic Sync",
        version=__version__,
        description="Latest network inferences per Allora topic, merged by worker",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {"name": "allora-topic-sync", "version": __version__, "docs": "/docs"}

    app.include_router(router)
    return app
