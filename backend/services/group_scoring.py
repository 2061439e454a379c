"""Group Score Calculator.

Scores a user inside one group from the courses they own in it:

- courses started
- average completion percentage of started courses
- projects started
- projects completed
- sum of AI evaluation scores of completed projects
- a flat bonus per batch whose projects are all completed

A group score is always recomputed from the course tables, never
accumulated, so repeating an update on unchanged data is a no-op apart
from the timestamp. After every upsert the group's ranks are rewritten.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.logging_config import get_logger
from app.metrics import RANK_UPDATES, SCORE_RECALCULATION_DURATION, SCORE_RECALCULATIONS
from db.models import Batch, Course, GroupMembership, GroupScore, ProjectStatus

logger = get_logger(__name__)

GROUP_SCORE_WEIGHTS = {
    "courses_started": 5.0,
    "course_completion": 2.0,  # per percentage point of average completion
    "projects_started": 3.0,
    "projects_completed": 8.0,
    "ai_evaluation_score": 0.1,  # per point of AI evaluation score
}

BATCH_COMPLETION_BONUS = 5.0


def round_half_up(value: float) -> int:
    """Round .5 upwards, the way leaderboard scores have always been rounded."""
    return int(math.floor(value + 0.5))


def round_2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


@dataclass(frozen=True)
class GroupScoreBreakdown:
    """Counters behind one user's score in one group."""

    courses_started: int = 0
    average_course_completion: float = 0.0
    projects_started: int = 0
    projects_completed: int = 0
    total_ai_evaluation_score: float = 0.0
    completed_batches: int = 0
    final_score: int = 0

    def to_row(self) -> dict[str, Any]:
        """Column values for the GroupScore row."""
        data = asdict(self)
        data.pop("completed_batches")
        return data


def score_courses(courses: Iterable[Any]) -> GroupScoreBreakdown:
    """Compute a group score breakdown from loaded courses.

    Each course needs ``status`` and ``batches``; each batch needs
    ``projects``; each project needs ``status`` and ``ai_evaluation_score``.
    """
    completed = ProjectStatus.COMPLETED.value
    not_started = ProjectStatus.NOT_STARTED.value

    courses_started = 0
    total_completion = 0.0
    courses_with_projects = 0
    projects_started = 0
    projects_completed = 0
    total_ai_score = 0.0
    completed_batches = 0

    for course in courses:
        if course.status != not_started:
            courses_started += 1
            total = sum(len(batch.projects) for batch in course.batches)
            if total > 0:
                done = sum(
                    1
                    for batch in course.batches
                    for project in batch.projects
                    if project.status == completed
                )
                total_completion += done / total * 100
                courses_with_projects += 1

        for batch in course.batches:
            if batch.projects and all(p.status == completed for p in batch.projects):
                completed_batches += 1

            for project in batch.projects:
                if project.status == not_started:
                    continue
                projects_started += 1
                if project.status == completed:
                    projects_completed += 1
                    if project.ai_evaluation_score is not None:
                        total_ai_score += project.ai_evaluation_score

    average_completion = (
        total_completion / courses_with_projects if courses_with_projects > 0 else 0.0
    )

    weighted = (
        courses_started * GROUP_SCORE_WEIGHTS["courses_started"]
        + average_completion * GROUP_SCORE_WEIGHTS["course_completion"]
        + projects_started * GROUP_SCORE_WEIGHTS["projects_started"]
        + projects_completed * GROUP_SCORE_WEIGHTS["projects_completed"]
        + total_ai_score * GROUP_SCORE_WEIGHTS["ai_evaluation_score"]
    )

    return GroupScoreBreakdown(
        courses_started=courses_started,
        average_course_completion=round_2(average_completion),
        projects_started=projects_started,
        projects_completed=projects_completed,
        total_ai_evaluation_score=round_2(total_ai_score),
        completed_batches=completed_batches,
        final_score=round_half_up(weighted + completed_batches * BATCH_COMPLETION_BONUS),
    )


def active_membership_join(group_id: str | None = None):
    """Join condition from GroupScore to the matching active membership."""
    condition = and_(
        GroupMembership.user_id == GroupScore.user_id,
        GroupMembership.group_id == GroupScore.group_id,
        GroupMembership.left_at.is_(None),
    )
    if group_id is not None:
        condition = and_(condition, GroupMembership.group_id == group_id)
    return condition


class GroupScoreCalculator:
    """Computes, stores and ranks per-group scores."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def calculate_group_score(self, user_id: str, group_id: str) -> GroupScoreBreakdown:
        """Score a user's courses in a group.

        Courses count when attached to the group directly or through their
        category (``sector_id``). Unknown groups simply score zero.
        """
        await self._session.flush()
        stmt = (
            select(Course)
            .where(
                Course.user_id == user_id,
                Course.is_deleted.is_(False),
                or_(Course.group_id == group_id, Course.sector_id == group_id),
            )
            .options(selectinload(Course.batches).selectinload(Batch.projects))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return score_courses(result.scalars().all())

    async def update_group_score(self, user_id: str, group_id: str) -> GroupScore:
        """Recompute and upsert a user's GroupScore, then re-rank the group."""
        with SCORE_RECALCULATION_DURATION.labels(kind="group").time():
            breakdown = await self.calculate_group_score(user_id, group_id)

            row = await self._get_row(user_id, group_id)
            if row is None:
                row = GroupScore(user_id=user_id, group_id=group_id)
                self._session.add(row)

            for column, value in breakdown.to_row().items():
                setattr(row, column, value)
            row.last_updated_date = datetime.now(UTC)
            await self._session.flush()

            await self.update_group_ranks(group_id)

        SCORE_RECALCULATIONS.labels(kind="group").inc()
        logger.info(
            "group_score_updated",
            user_id=user_id,
            group_id=group_id,
            final_score=breakdown.final_score,
            rank=row.rank,
        )
        return row

    async def update_group_ranks(self, group_id: str) -> int:
        """Write dense 1..N ranks over the group's active members.

        Order is final score desc, last update desc, id asc. Rows of members
        who left keep whatever rank they had. Returns the number ranked.
        """
        await self._session.flush()
        stmt = (
            select(GroupScore)
            .join(GroupMembership, active_membership_join(group_id))
            .where(GroupScore.group_id == group_id)
            .order_by(
                GroupScore.final_score.desc(),
                GroupScore.last_updated_date.desc(),
                GroupScore.id.asc(),
            )
        )
        result = await self._session.execute(stmt)
        rows = result.scalars().all()

        for position, row in enumerate(rows, start=1):
            row.rank = position
        await self._session.flush()

        RANK_UPDATES.labels(scope="group").inc()
        logger.debug("group_ranks_updated", group_id=group_id, ranked=len(rows))
        return len(rows)

    async def recalculate_group_scores(self, group_id: str) -> int:
        """Recompute every active member's score in a group."""
        result = await self._session.execute(
            select(GroupMembership.user_id).where(
                GroupMembership.group_id == group_id,
                GroupMembership.left_at.is_(None),
            )
        )
        user_ids = list(result.scalars().all())

        for user_id in user_ids:
            await self.update_group_score(user_id, group_id)

        await self.update_group_ranks(group_id)
        logger.info("group_scores_recalculated", group_id=group_id, members=len(user_ids))
        return len(user_ids)

    async def get_group_score(self, user_id: str, group_id: str) -> GroupScore | None:
        return await self._get_row(user_id, group_id)

    async def _get_row(self, user_id: str, group_id: str) -> GroupScore | None:
        result = await self._session.execute(
            select(GroupScore).where(
                GroupScore.user_id == user_id,
                GroupScore.group_id == group_id,
            )
        )
        return result.scalar_one_or_none()
