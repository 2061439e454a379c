"""Analytics API routes.

User views are limited to the caller (or an admin); the platform-wide
view is admin-only and served from the Redis cache when warm.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ensure_self_or_admin, get_current_user_id, is_admin, require_admin
from app.dependencies import get_redis
from db.session import get_db_session
from services.analytics import AnalyticsService

router = APIRouter()


class AnalyticsResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


@router.get("/analytics/user/{user_id}", response_model=AnalyticsResponse)
async def user_analytics(
    user_id: str,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> AnalyticsResponse:
    ensure_self_or_admin(user_id, caller_id, admin)
    analytics = await AnalyticsService(session).get_user_analytics(user_id)
    return AnalyticsResponse(data=analytics.model_dump(mode="json"), meta={"user_id": user_id})


@router.get("/analytics/user/{user_id}/trends", response_model=AnalyticsResponse)
async def user_trends(
    user_id: str,
    days: Optional[int] = Query(None, ge=1, le=365),
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> AnalyticsResponse:
    ensure_self_or_admin(user_id, caller_id, admin)
    points = await AnalyticsService(session).get_user_trends(user_id, days)
    return AnalyticsResponse(
        data=[point.model_dump() for point in points],
        meta={"user_id": user_id, "days": days},
    )


@router.get("/analytics/group/{group_id}", response_model=AnalyticsResponse)
async def group_analytics(
    group_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> AnalyticsResponse:
    analytics = await AnalyticsService(session).get_group_analytics(group_id)
    return AnalyticsResponse(data=analytics.model_dump(), meta={"group_id": group_id})


@router.get("/analytics/sector/{sector_id}", response_model=AnalyticsResponse)
async def sector_analytics(
    sector_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> AnalyticsResponse:
    analytics = await AnalyticsService(session).get_sector_analytics(sector_id)
    return AnalyticsResponse(data=analytics.model_dump(), meta={"sector_id": sector_id})


@router.get(
    "/analytics/global",
    response_model=AnalyticsResponse,
    dependencies=[Depends(require_admin)],
)
async def global_analytics(
    refresh: bool = Query(False, description="Drop the cached view and recompute"),
    session: AsyncSession = Depends(get_db_session),
    redis: Any = Depends(get_redis),
) -> AnalyticsResponse:
    service = AnalyticsService(session, redis)
    if refresh:
        await service.invalidate_global_analytics()
    analytics = await service.get_global_analytics()
    return AnalyticsResponse(
        data=analytics.model_dump(), meta={"generated_at": analytics.generated_at}
    )
