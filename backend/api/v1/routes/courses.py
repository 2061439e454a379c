"""Course and project mutation routes.

Every mutation here recomputes the affected group scores and the
caller's global score before responding.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import ensure_self_or_admin, get_current_user_id, is_admin, rate_limit_by_ip
from app.logging_config import get_logger
from db.models import Batch, Course, Project
from db.session import get_db_session
from services.progress import CourseDraft, ProgressService

logger = get_logger(__name__)
router = APIRouter(dependencies=[Depends(rate_limit_by_ip)])


class ProjectUpdateRequest(BaseModel):
    status: Optional[str] = Field(None, description="not started | in progress | completed")
    ai_evaluation_score: Optional[float] = Field(None, ge=0, le=100)


class CourseResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


def project_payload(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "title": project.title,
        "status": project.status,
        "ai_evaluation_score": project.ai_evaluation_score,
        "evaluated_at": project.evaluated_at.isoformat() if project.evaluated_at else None,
    }


def batch_payload(batch: Batch) -> dict[str, Any]:
    return {
        "id": batch.id,
        "title": batch.title,
        "projects": [project_payload(p) for p in batch.projects],
    }


def course_payload(course: Course) -> dict[str, Any]:
    return {
        "id": course.id,
        "user_id": course.user_id,
        "title": course.title,
        "status": course.status,
        "group_id": course.group_id,
        "sector_id": course.sector_id,
        "batches": [batch_payload(b) for b in course.batches],
    }


@router.post("/courses", response_model=CourseResponse, status_code=201)
async def create_course(
    draft: CourseDraft,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> CourseResponse:
    course = await ProgressService(session).create_course(user_id, draft)
    return CourseResponse(data=course_payload(course), meta={"user_id": user_id})


@router.delete("/courses/{course_id}", response_model=CourseResponse)
async def delete_course(
    course_id: str,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> CourseResponse:
    service = ProgressService(session)
    course = await service.get_course(course_id)
    ensure_self_or_admin(course.user_id, caller_id, admin)
    await service.delete_course(course_id)
    return CourseResponse(data={"id": course_id, "deleted": True})


@router.patch("/projects/{project_id}", response_model=CourseResponse)
async def update_project(
    project_id: str,
    request: ProjectUpdateRequest,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> CourseResponse:
    service = ProgressService(session)
    owner_id = await service.project_owner(project_id)
    ensure_self_or_admin(owner_id, caller_id, admin)

    project = await service.update_project(
        project_id,
        status=request.status,
        ai_evaluation_score=request.ai_evaluation_score,
    )
    return CourseResponse(data=project_payload(project), meta={"user_id": owner_id})
