from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.apps.api.deps import Principal, get_db, require_admin
from printvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from printvault.apps.api.response import SuccessEnvelope, success_response
from printvault.core.config import get_settings
from printvault.services.queue import get_task_queue
from printvault.services.telemetry import set_gauge, snapshot


router = APIRouter(tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_WORKERS = ("render", "merge")


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


async def _check_db_health(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


@router.get("/ops/health", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
) -> dict:
    settings = get_settings()
    queue = get_task_queue()
    now = datetime.now(timezone.utc)
    db_ok = await _check_db_health(db)
    depths = {
        "render": await queue.queue_depth(settings.render_queue_name),
        "merge": await queue.queue_depth(settings.merge_queue_name),
    }
    redis_ok = all(depth is not None for depth in depths.values())
    for name, depth in depths.items():
        if depth is not None:
            set_gauge(f"queue_depth.{name}", float(depth))
    inline = settings.task_execution_mode.lower() == "inline"

    heartbeats: dict[str, float | None] = {}
    for worker in _WORKERS:
        beat = await queue.get_heartbeat(worker) if redis_ok else None
        heartbeats[worker] = (now - beat).total_seconds() if beat else None
    # Inline mode has no separate workers to report on.
    stale = not inline and any(
        age is None or age > settings.worker_heartbeat_stale_after_s for age in heartbeats.values()
    )

    payload = {
        "status": "ok" if db_ok and redis_ok and not stale else "degraded",
        "db": "ok" if db_ok else "degraded",
        "queue": "inline" if inline else ("ok" if redis_ok else "degraded"),
        "queue_depth": depths,
        "worker_heartbeat_age_s": heartbeats,
        "timestamp": now.isoformat(),
    }
    return success_response(request=request, data=payload)


@router.get("/ops/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=10, le=86400),
    principal: Principal = Depends(require_admin),
) -> dict:
    return success_response(request=request, data=snapshot(window_s))
