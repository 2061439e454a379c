"""Badge routes."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ensure_self_or_admin, get_current_user_id, is_admin, require_admin
from db.session import get_db_session
from services.badges import BadgeService

router = APIRouter()


class BadgeCheckRequest(BaseModel):
    force_refresh: bool = False


class BadgeResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


@router.get("/badges/user/{user_id}", response_model=BadgeResponse)
async def user_badges(
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> BadgeResponse:
    rows = await BadgeService(session).get_user_badges(user_id)
    data = [
        {
            "badge_id": row.badge_id,
            "name": row.badge.name,
            "icon": row.badge.icon,
            "rarity": row.badge.rarity,
            "progress": row.progress,
            "earned_at": row.earned_at.isoformat(),
        }
        for row in rows
    ]
    return BadgeResponse(data=data, meta={"user_id": user_id, "count": len(data)})


@router.get("/badges/available", response_model=BadgeResponse)
async def available_badges(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> BadgeResponse:
    badges = await BadgeService(session).get_available_badges(user_id)
    return BadgeResponse(data=badges, meta={"user_id": user_id, "count": len(badges)})


@router.post("/badges/check/{user_id}", response_model=BadgeResponse)
async def check_badges(
    user_id: str,
    request: BadgeCheckRequest,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> BadgeResponse:
    ensure_self_or_admin(user_id, caller_id, admin)
    summary = await BadgeService(session).check_and_award_badges(
        user_id, force_refresh=request.force_refresh
    )
    return BadgeResponse(data=asdict(summary), meta={"user_id": user_id})


@router.post(
    "/badges/init",
    response_model=BadgeResponse,
    dependencies=[Depends(require_admin)],
)
async def init_badges(
    session: AsyncSession = Depends(get_db_session),
) -> BadgeResponse:
    count = await BadgeService(session).initialize_default_badges()
    return BadgeResponse(data={"initialized": count})
