"""Score API routes: recalculation, sync, breakdowns and leaderboards.

Recalculation is rate limited per caller. Bulk sync is admin-only.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ensure_self_or_admin, get_current_user_id, is_admin, rate_limit_recalculate
from app.config import get_settings
from app.exceptions import ForbiddenError
from app.logging_config import get_logger
from db.models import GroupMembership, GroupScore, Score, User
from db.session import get_db_session
from services.global_scoring import GlobalScoreCalculator
from services.group_scoring import GroupScoreCalculator, active_membership_join
from services.groups import GroupService
from services.score_sync import ScoreSyncService

logger = get_logger(__name__)
router = APIRouter()


class RecalculateRequest(BaseModel):
    """Recalculate one group, or every active group when group_id is omitted."""

    user_id: Optional[str] = Field(None, description="Defaults to the caller")
    group_id: Optional[str] = None


class SyncRequest(BaseModel):
    user_id: Optional[str] = None
    all_users: bool = False


class ScoreResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


def group_score_payload(row: GroupScore) -> dict[str, Any]:
    return {
        "group_id": row.group_id,
        "user_id": row.user_id,
        "courses_started": row.courses_started,
        "average_course_completion": row.average_course_completion,
        "projects_started": row.projects_started,
        "projects_completed": row.projects_completed,
        "total_ai_evaluation_score": row.total_ai_evaluation_score,
        "final_score": row.final_score,
        "rank": row.rank,
        "last_updated_date": row.last_updated_date.isoformat(),
    }


@router.post(
    "/scores/recalculate",
    response_model=ScoreResponse,
    dependencies=[Depends(rate_limit_recalculate)],
)
async def recalculate_scores(
    request: RecalculateRequest,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ScoreResponse:
    """Recompute group scores then force a global recomputation."""
    user_id = request.user_id or caller_id
    ensure_self_or_admin(user_id, caller_id, admin)

    if request.group_id:
        group = await GroupService(session).get_group(request.group_id)
        group_ids = [group.id]
    else:
        group_ids = await GroupService(session).active_group_ids(user_id)

    calculator = GroupScoreCalculator(session)
    rows = [await calculator.update_group_score(user_id, gid) for gid in group_ids]

    global_calculator = GlobalScoreCalculator(session)
    await global_calculator.update_global_score(user_id, force=True)
    breakdown = await global_calculator.calculate_global_score(user_id)

    logger.info("scores_recalculated", user_id=user_id, groups=len(rows))
    return ScoreResponse(
        data={
            "group_scores": [group_score_payload(row) for row in rows],
            "global": asdict(breakdown),
        },
        meta={"user_id": user_id, "groups_recalculated": len(rows)},
    )


@router.post("/scores/sync", response_model=ScoreResponse)
async def sync_scores(
    request: SyncRequest,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ScoreResponse:
    service = ScoreSyncService(session)
    if request.all_users:
        if not admin:
            raise ForbiddenError("Admin access required for a bulk sync")
        bulk = await service.sync_all_group_scores()
        return ScoreResponse(data=asdict(bulk), meta={"scope": "all"})

    user_id = request.user_id or caller_id
    ensure_self_or_admin(user_id, caller_id, admin)
    result = await service.sync_user_group_scores(user_id)
    return ScoreResponse(data=asdict(result), meta={"scope": "user", "user_id": user_id})


@router.get("/scores/{user_id}", response_model=ScoreResponse)
async def get_score(
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> ScoreResponse:
    """Stored global score with the breakdown it is derived from."""
    score = (
        await session.execute(select(Score).where(Score.user_id == user_id))
    ).scalar_one_or_none()
    breakdown = await GlobalScoreCalculator(session).calculate_global_score(user_id)
    data: dict[str, Any] = {"breakdown": asdict(breakdown)}
    if score is not None:
        data.update(
            final_score=score.final_score,
            github_score=score.github_score,
            rank=score.rank,
            last_updated_date=(
                score.last_updated_date.isoformat() if score.last_updated_date else None
            ),
        )
    return ScoreResponse(data=data, meta={"user_id": user_id, "has_score": score is not None})


@router.get("/leaderboard", response_model=ScoreResponse)
async def global_leaderboard(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
) -> ScoreResponse:
    size = page_size or get_settings().leaderboard_page_size
    result = await session.execute(
        select(Score, User)
        .join(User, User.id == Score.user_id)
        .order_by(Score.rank.asc().nulls_last(), Score.final_score.desc(), Score.user_id.asc())
        .offset((page - 1) * size)
        .limit(size)
    )
    entries = [
        {
            "rank": score.rank,
            "user_id": score.user_id,
            "user_name": user.user_name,
            "name": user.display_name,
            "avatar": user.avatar,
            "final_score": score.final_score,
        }
        for score, user in result.all()
    ]
    return ScoreResponse(data=entries, meta={"page": page, "page_size": size})


@router.get("/groups/{group_id}/leaderboard", response_model=ScoreResponse)
async def group_leaderboard(
    group_id: str,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
) -> ScoreResponse:
    group = await GroupService(session).get_group(group_id)
    size = page_size or get_settings().leaderboard_page_size
    result = await session.execute(
        select(GroupScore, User)
        .join(GroupMembership, active_membership_join(group.id))
        .join(User, User.id == GroupScore.user_id)
        .order_by(GroupScore.rank.asc().nulls_last(), GroupScore.final_score.desc())
        .offset((page - 1) * size)
        .limit(size)
    )
    entries = [
        {**group_score_payload(row), "user_name": user.user_name, "name": user.display_name}
        for row, user in result.all()
    ]
    return ScoreResponse(
        data=entries,
        meta={"group_id": group.id, "group_name": group.name, "page": page, "page_size": size},
    )
