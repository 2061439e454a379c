"""Learner progress mutations and the score chain they trigger.

Creating or deleting a course and moving a project forward all end the
same way: the group scores the course feeds are recomputed (which re-ranks
those groups), then the global score is recomputed. Score refreshes,
contribution tracking and challenge progress are best-effort: each runs in
its own savepoint, so a failure is logged and rolled back while the
mutation itself still stands.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.exceptions import CourseNotFoundError, ProjectNotFoundError, ValidationError
from app.logging_config import get_logger
from app.metrics import SIDE_EFFECT_FAILURES
from db.models import Batch, Course, GroupType, Project, ProjectStatus
from services.challenges import ChallengeEvent, ChallengeService
from services.contributions import ContributionService, ContributionType
from services.global_scoring import GlobalScoreCalculator
from services.group_scoring import GroupScoreCalculator
from services.groups import GroupService

logger = get_logger(__name__)

VALID_STATUSES = {status.value for status in ProjectStatus}


class ProjectDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class BatchDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    projects: list[ProjectDraft] = Field(default_factory=list)


class CourseDraft(BaseModel):
    """A generated roadmap ready to be stored as a course."""

    title: str = Field(..., min_length=1, max_length=200)
    group_id: str | None = None
    sector_id: str | None = None
    batches: list[BatchDraft] = Field(default_factory=list)


def derive_course_status(course: Course) -> str:
    """completed when every project is done, in progress once any started."""
    projects = [p for batch in course.batches for p in batch.projects]
    if projects and all(p.status == ProjectStatus.COMPLETED.value for p in projects):
        return ProjectStatus.COMPLETED.value
    if any(p.status != ProjectStatus.NOT_STARTED.value for p in projects):
        return ProjectStatus.IN_PROGRESS.value
    if course.status == ProjectStatus.COMPLETED.value:
        return ProjectStatus.IN_PROGRESS.value
    return course.status


class ProgressService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_course(self, user_id: str, draft: CourseDraft) -> Course:
        """Store a course; creating a course starts it."""
        groups = GroupService(self._session)
        if draft.group_id:
            await groups.get_group(draft.group_id)
        if draft.sector_id:
            await groups.get_group(draft.sector_id, GroupType.CATEGORY)

        course = Course(
            user_id=user_id,
            title=draft.title,
            group_id=draft.group_id,
            sector_id=draft.sector_id,
            status=ProjectStatus.IN_PROGRESS.value,
            batches=[
                Batch(
                    title=batch.title,
                    position=b_index,
                    projects=[
                        Project(title=project.title, position=p_index)
                        for p_index, project in enumerate(batch.projects)
                    ],
                )
                for b_index, batch in enumerate(draft.batches)
            ],
        )
        self._session.add(course)
        await self._session.flush()

        await self._track(user_id, ContributionType.COURSE_CREATED, {"course_id": course.id})
        await self._track(user_id, ContributionType.COURSE_STARTED, {"course_id": course.id})
        await self.refresh_scores_after_mutation(user_id, course.group_ids)

        logger.info("course_created", user_id=user_id, course_id=course.id)
        return course

    async def delete_course(self, course_id: str) -> Course:
        course = await self.get_course(course_id)
        course.is_deleted = True
        await self._session.flush()

        await self.refresh_scores_after_mutation(course.user_id, course.group_ids)
        logger.info("course_deleted", course_id=course_id)
        return course

    async def update_project(
        self,
        project_id: str,
        status: str | None = None,
        ai_evaluation_score: float | None = None,
    ) -> Project:
        """Change a project's status and/or attach its AI evaluation."""
        if status is not None and status not in VALID_STATUSES:
            raise ValidationError(
                "Invalid project status",
                details={"allowed": sorted(VALID_STATUSES)},
            )
        if ai_evaluation_score is not None and not 0 <= ai_evaluation_score <= 100:
            raise ValidationError("AI evaluation score must be between 0 and 100")

        project = await self._session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError()
        batch = await self._session.get(Batch, project.batch_id)
        course = await self.get_course(batch.course_id)

        previous = project.status
        previous_course_status = course.status
        if status is not None:
            project.status = status
        if ai_evaluation_score is not None:
            project.ai_evaluation_score = ai_evaluation_score
            project.evaluated_at = datetime.now(UTC)

        course.status = derive_course_status(course)
        await self._session.flush()

        events: list[ChallengeEvent] = []
        if project.status != previous:
            if project.status == ProjectStatus.COMPLETED.value:
                events.append(ChallengeEvent.PROJECT_COMPLETED)
                await self._track(
                    course.user_id, ContributionType.PROJECT_COMPLETED, {"project_id": project.id}
                )
            elif previous == ProjectStatus.NOT_STARTED.value:
                await self._track(
                    course.user_id, ContributionType.PROJECT_STARTED, {"project_id": project.id}
                )
        if (
            course.status == ProjectStatus.COMPLETED.value
            and previous_course_status != ProjectStatus.COMPLETED.value
        ):
            events.append(ChallengeEvent.COURSE_COMPLETED)

        await self.advance_challenges(
            course.user_id,
            events,
            course_id=course.id if ai_evaluation_score is not None else None,
        )
        await self.refresh_scores_after_mutation(course.user_id, course.group_ids)
        logger.info(
            "project_updated",
            project_id=project.id,
            status=project.status,
            evaluated=project.ai_evaluation_score is not None,
        )
        return project

    async def refresh_scores_after_mutation(
        self, user_id: str, group_ids: Iterable[str]
    ) -> None:
        """Recompute the touched group scores, then the global score."""
        group_calculator = GroupScoreCalculator(self._session)
        for group_id in group_ids:
            try:
                async with self._session.begin_nested():
                    await group_calculator.update_group_score(user_id, group_id)
            except Exception:
                SIDE_EFFECT_FAILURES.labels(effect="group_score").inc()
                logger.exception("group_score_refresh_failed", user_id=user_id, group_id=group_id)

        await self.refresh_global_score(user_id)

    async def refresh_global_score(self, user_id: str) -> bool:
        """Force a global recomputation; False when it could not run."""
        try:
            async with self._session.begin_nested():
                return await GlobalScoreCalculator(self._session).update_global_score(
                    user_id, force=True
                )
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="global_score").inc()
            logger.exception("global_score_refresh_failed", user_id=user_id)
            return False

    async def advance_challenges(
        self,
        user_id: str,
        events: Iterable[ChallengeEvent],
        course_id: str | None = None,
    ) -> None:
        """Feed progress events to challenges; rescore challenge entries on evaluation."""
        challenges = ChallengeService(self._session)
        for event in events:
            try:
                async with self._session.begin_nested():
                    await challenges.auto_update_challenge_progress(user_id, event)
            except Exception:
                SIDE_EFFECT_FAILURES.labels(effect="challenge_progress").inc()
                logger.exception("challenge_progress_failed", user_id=user_id, event=event.value)

        if course_id is None:
            return
        try:
            async with self._session.begin_nested():
                await challenges.refresh_course_points(course_id)
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="challenge_points").inc()
            logger.exception("challenge_points_failed", user_id=user_id, course_id=course_id)

    async def get_course(self, course_id: str) -> Course:
        result = await self._session.execute(
            select(Course)
            .where(Course.id == course_id, Course.is_deleted.is_(False))
            .options(selectinload(Course.batches).selectinload(Batch.projects))
        )
        course = result.scalar_one_or_none()
        if course is None:
            raise CourseNotFoundError()
        return course

    async def project_owner(self, project_id: str) -> str:
        result = await self._session.execute(
            select(Course.user_id)
            .join(Batch, Batch.course_id == Course.id)
            .join(Project, Project.batch_id == Batch.id)
            .where(Project.id == project_id)
        )
        owner_id = result.scalar_one_or_none()
        if owner_id is None:
            raise ProjectNotFoundError()
        return owner_id

    async def _track(
        self, user_id: str, contribution_type: ContributionType, metadata: dict
    ) -> None:
        try:
            async with self._session.begin_nested():
                await ContributionService(self._session).track_contribution(
                    user_id, contribution_type, metadata
                )
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="contribution_tracking").inc()
            logger.exception("contribution_tracking_failed", user_id=user_id)
