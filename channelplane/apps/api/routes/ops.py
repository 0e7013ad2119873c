from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.apps.api.deps import get_db, require_ops_token
from channelplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from channelplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from channelplane.core.errors import NotFoundError
from channelplane.persistence.db import pool_stats
from channelplane.persistence.repos import events as events_repo
from channelplane.services.backoff import get_backoff_engine
from channelplane.services.events import queue_stats, replay_dead_letter
from channelplane.services.scheduling import KNOWN_TASKS, get_task_status, list_task_statuses
from channelplane.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_latency_summary,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class TaskStatusResponse(BaseModel):
    name: str
    is_running: bool
    last_run_time: datetime | None
    failure_count: int
    last_finished_at: datetime | None
    last_summary: dict[str, Any]


class DeadLetterResponse(BaseModel):
    id: str
    job_id: str
    reason: str
    last_error: str | None
    attempt_count: int
    created_at: datetime
    replayed_at: datetime | None
    replayed_job_id: str | None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterResponse]


class ReplayResponse(BaseModel):
    dead_letter_id: str
    job_id: str


@router.get("/tasks", response_model=SuccessEnvelope[list[TaskStatusResponse]])
async def tasks(request: Request, actor_id: str = Depends(require_ops_token)) -> dict:
    statuses = await list_task_statuses()
    return success_response(request=request, data=[status.as_dict() for status in statuses])


@router.get("/tasks/{name}", response_model=SuccessEnvelope[TaskStatusResponse])
async def task_status(request: Request, name: str, actor_id: str = Depends(require_ops_token)) -> dict:
    if name not in KNOWN_TASKS:
        raise NotFoundError(f"task {name} not found")
    status = await get_task_status(name)
    return success_response(request=request, data=status.as_dict())


@router.get("/events/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def event_stats(
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    return success_response(request=request, data=await queue_stats(db))


@router.get("/events/dead-letters", response_model=SuccessEnvelope[DeadLetterListResponse])
async def dead_letters(
    request: Request,
    include_replayed: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    rows = await events_repo.list_dead_letters(db, include_replayed=include_replayed, limit=limit)
    items = [
        DeadLetterResponse(
            id=row.id,
            job_id=row.job_id,
            reason=row.reason,
            last_error=row.last_error,
            attempt_count=row.attempt_count,
            created_at=row.created_at,
            replayed_at=row.replayed_at,
            replayed_job_id=row.replayed_job_id,
        )
        for row in rows
    ]
    return success_response(request=request, data=DeadLetterListResponse(items=items))


@router.post("/events/dead-letters/{dead_letter_id}/replay", response_model=SuccessEnvelope[ReplayResponse])
async def replay(
    request: Request,
    dead_letter_id: str,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    job_id = await replay_dead_letter(
        db, dead_letter_id=dead_letter_id, actor_id=actor_id, request_id=get_request_id(request)
    )
    return success_response(request=request, data=ReplayResponse(dead_letter_id=dead_letter_id, job_id=job_id))


@router.get("/backoff", response_model=SuccessEnvelope[dict[str, Any]])
async def backoff_snapshot(
    request: Request,
    prefix: str | None = Query(default=None),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    # In-memory state of this process only; workers keep their own.
    return success_response(request=request, data=get_backoff_engine().snapshot(prefix=prefix))


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=10, le=86400),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    payload = {
        "requests": request_latency_summary(window_s),
        "external": external_latency_by_integration(window_s),
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "db_pool": pool_stats(),
    }
    return success_response(request=request, data=payload)
