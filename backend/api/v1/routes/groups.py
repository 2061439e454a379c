"""Group membership and category group routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user_id, require_admin
from api.v1.routes.scores import group_score_payload
from app.logging_config import get_logger
from db.session import get_db_session
from services.groups import GroupService
from services.progress import ProgressService

logger = get_logger(__name__)
router = APIRouter()


class GroupResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


@router.post("/groups/{group_id}/join", response_model=GroupResponse)
async def join_group(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> GroupResponse:
    """Join a group; the new group score flows into the global score."""
    row = await GroupService(session).join_group(user_id, group_id)
    refreshed = await ProgressService(session).refresh_global_score(user_id)
    return GroupResponse(
        data=group_score_payload(row),
        meta={"group_id": group_id, "global_score_refreshed": refreshed},
    )


@router.post("/groups/{group_id}/leave", response_model=GroupResponse)
async def leave_group(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> GroupResponse:
    await GroupService(session).leave_group(user_id, group_id)
    refreshed = await ProgressService(session).refresh_global_score(user_id)
    return GroupResponse(
        data={"status": "left"},
        meta={"group_id": group_id, "global_score_refreshed": refreshed},
    )


@router.get("/categories", response_model=GroupResponse)
async def list_categories(
    session: AsyncSession = Depends(get_db_session),
) -> GroupResponse:
    categories = await GroupService(session).get_category_groups()
    return GroupResponse(data=categories, meta={"count": len(categories)})


@router.post(
    "/categories/init",
    response_model=GroupResponse,
    dependencies=[Depends(require_admin)],
)
async def init_categories(
    session: AsyncSession = Depends(get_db_session),
) -> GroupResponse:
    count = await GroupService(session).initialize_default_category_groups()
    return GroupResponse(data={"initialized": count})
