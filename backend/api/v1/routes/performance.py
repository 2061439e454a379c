"""Performance snapshot and comparison routes."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ensure_self_or_admin, get_current_user_id, is_admin
from app.exceptions import ScoreNotFoundError
from db.session import get_db_session
from services.performance import PerformanceService

router = APIRouter()


class PerformanceResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


async def authorized_user(
    user_id: str,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
) -> str:
    ensure_self_or_admin(user_id, caller_id, admin)
    return user_id


@router.post(
    "/performance/{user_id}/snapshot", response_model=PerformanceResponse, status_code=201
)
async def create_snapshot(
    user_id: str = Depends(authorized_user),
    session: AsyncSession = Depends(get_db_session),
) -> PerformanceResponse:
    snapshot = await PerformanceService(session).create_performance_snapshot(user_id)
    if snapshot is None:
        raise ScoreNotFoundError()
    return PerformanceResponse(
        data={
            "id": snapshot.id,
            "snapshot_date": snapshot.snapshot_date.isoformat(),
            "metrics": snapshot.metrics,
        },
        meta={"user_id": user_id},
    )


@router.get("/performance/{user_id}/trends", response_model=PerformanceResponse)
async def performance_trends(
    days: Optional[int] = Query(None, ge=1, le=365),
    user_id: str = Depends(authorized_user),
    session: AsyncSession = Depends(get_db_session),
) -> PerformanceResponse:
    trends = await PerformanceService(session).get_performance_trends(user_id, days)
    return PerformanceResponse(data=trends, meta={"user_id": user_id, "count": len(trends)})


@router.get(
    "/performance/{user_id}/compare/{compared_user_id}", response_model=PerformanceResponse
)
async def compare_users(
    compared_user_id: str,
    user_id: str = Depends(authorized_user),
    session: AsyncSession = Depends(get_db_session),
) -> PerformanceResponse:
    comparison = await PerformanceService(session).compare_users(user_id, compared_user_id)
    return PerformanceResponse(data=comparison, meta={"user_id": user_id})


@router.get("/performance/{user_id}/groups/{group_id}", response_model=PerformanceResponse)
async def compare_with_group(
    group_id: str,
    user_id: str = Depends(authorized_user),
    session: AsyncSession = Depends(get_db_session),
) -> PerformanceResponse:
    result = await PerformanceService(session).compare_with_group_average(user_id, group_id)
    return PerformanceResponse(
        data=result.model_dump(), meta={"user_id": user_id, "group_id": group_id}
    )


@router.get("/performance/{user_id}/strengths-weaknesses", response_model=PerformanceResponse)
async def strengths_weaknesses(
    user_id: str = Depends(authorized_user),
    session: AsyncSession = Depends(get_db_session),
) -> PerformanceResponse:
    report = await PerformanceService(session).get_strengths_weaknesses(user_id)
    return PerformanceResponse(data=report.model_dump(), meta={"user_id": user_id})
