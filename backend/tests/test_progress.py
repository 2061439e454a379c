"""Tests for course/project mutations and the score refresh chain."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.exceptions import (
    CourseNotFoundError,
    GroupNotFoundError,
    ProjectNotFoundError,
    ValidationError,
)
from db.models import (
    Badge,
    DailyContribution,
    GroupScore,
    GroupType,
    Project,
    Score,
    UserBadge,
)
from services.badges import BadgeService
from services.group_scoring import GroupScoreCalculator
from services.progress import (
    BatchDraft,
    CourseDraft,
    ProgressService,
    ProjectDraft,
    derive_course_status,
)


def _course(status, *project_statuses):
    return SimpleNamespace(
        status=status,
        batches=[SimpleNamespace(projects=[SimpleNamespace(status=s) for s in project_statuses])],
    )


def _draft(group_id=None, sector_id=None, projects=2):
    return CourseDraft(
        title="Backend roadmap",
        group_id=group_id,
        sector_id=sector_id,
        batches=[
            BatchDraft(
                title="Foundations",
                projects=[ProjectDraft(title=f"Project {n}") for n in range(projects)],
            )
        ],
    )


async def _contribution_types(session, user_id) -> dict[str, int]:
    result = await session.execute(
        select(DailyContribution).where(DailyContribution.user_id == user_id)
    )
    return {row.contribution_type: row.count for row in result.scalars().all()}


async def _score_of(session, user_id) -> Score:
    result = await session.execute(select(Score).where(Score.user_id == user_id))
    return result.scalar_one()


class TestDeriveCourseStatus:
    def test_all_completed(self):
        course = _course("in progress", "completed", "completed")
        assert derive_course_status(course) == "completed"

    def test_any_started(self):
        course = _course("not started", "not started", "in progress")
        assert derive_course_status(course) == "in progress"

    def test_completed_course_reopens(self):
        course = _course("completed", "not started", "not started")
        assert derive_course_status(course) == "in progress"

    def test_untouched_course_keeps_status(self):
        assert derive_course_status(_course("not started", "not started")) == "not started"
        assert derive_course_status(_course("in progress")) == "in progress"


class TestCreateCourse:
    @pytest.mark.asyncio
    async def test_creates_tree_and_starts_course(self, session, seed):
        user = await seed.user()

        course = await ProgressService(session).create_course(user.id, _draft(projects=3))

        assert course.status == "in progress"
        assert [p.position for p in course.batches[0].projects] == [0, 1, 2]
        assert all(p.status == "not started" for p in course.batches[0].projects)
        assert await _contribution_types(session, user.id) == {
            "COURSE_CREATED": 1,
            "COURSE_STARTED": 1,
        }

    @pytest.mark.asyncio
    async def test_refreshes_group_and_global_scores(self, session, seed):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)

        await ProgressService(session).create_course(user.id, _draft(group_id=group.id))

        row = await GroupScoreCalculator(session).get_group_score(user.id, group.id)
        # Started course, nothing completed yet
        assert row.final_score == 5
        assert row.rank == 1
        # round(0 * 0.4 + 5 * 0.6)
        assert (await _score_of(session, user.id)).final_score == 3

    @pytest.mark.asyncio
    async def test_unknown_group_is_rejected(self, session, seed):
        user = await seed.user()
        with pytest.raises(GroupNotFoundError):
            await ProgressService(session).create_course(user.id, _draft(group_id="missing"))

    @pytest.mark.asyncio
    async def test_sector_must_be_category_group(self, session, seed):
        user = await seed.user()
        custom = await seed.group()
        with pytest.raises(GroupNotFoundError):
            await ProgressService(session).create_course(user.id, _draft(sector_id=custom.id))

    @pytest.mark.asyncio
    async def test_sector_course_scores_in_category(self, session, seed):
        user = await seed.user()
        sector = await seed.group("DevOps", GroupType.CATEGORY)
        await seed.member(user, sector)

        await ProgressService(session).create_course(user.id, _draft(sector_id=sector.id))

        row = await GroupScoreCalculator(session).get_group_score(user.id, sector.id)
        assert row.final_score == 5

    @pytest.mark.asyncio
    async def test_global_failure_keeps_course(self, session, seed):
        user = await seed.user()
        with patch(
            "services.global_scoring.GlobalScoreCalculator.update_global_score",
            side_effect=RuntimeError("db hiccup"),
        ):
            course = await ProgressService(session).create_course(user.id, _draft())

        assert (await ProgressService(session).get_course(course.id)).id == course.id


class TestUpdateProject:
    @pytest.mark.asyncio
    async def test_completing_projects_reaches_reference_score(self, session, seed):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)
        service = ProgressService(session)
        course = await service.create_course(user.id, _draft(group_id=group.id))
        first, second = course.batches[0].projects

        await service.update_project(first.id, status="completed", ai_evaluation_score=80)
        await service.update_project(second.id, status="completed", ai_evaluation_score=90)

        row = await GroupScoreCalculator(session).get_group_score(user.id, group.id)
        assert row.final_score == 249
        assert course.status == "completed"
        assert first.evaluated_at is not None
        # round(0 * 0.4 + 249 * 0.6)
        assert (await _score_of(session, user.id)).final_score == 149

    @pytest.mark.asyncio
    async def test_tracks_started_and_completed(self, session, seed):
        user = await seed.user()
        service = ProgressService(session)
        course = await service.create_course(user.id, _draft())
        first, second = course.batches[0].projects

        await service.update_project(first.id, status="in progress")
        await service.update_project(first.id, status="completed")
        await service.update_project(second.id, status="completed")

        types = await _contribution_types(session, user.id)
        assert types["PROJECT_STARTED"] == 1
        assert types["PROJECT_COMPLETED"] == 2

    @pytest.mark.asyncio
    async def test_reopening_a_project_reopens_course(self, session, seed):
        user = await seed.user()
        service = ProgressService(session)
        course = await service.create_course(user.id, _draft(projects=1))
        (project,) = course.batches[0].projects

        await service.update_project(project.id, status="completed")
        assert course.status == "completed"
        await service.update_project(project.id, status="in progress")
        assert course.status == "in progress"

    @pytest.mark.asyncio
    async def test_invalid_status(self, session, seed):
        user = await seed.user()
        course = await seed.course(user, batches=[[("not started", None)]])
        project = course.batches[0].projects[0]

        with pytest.raises(ValidationError):
            await ProgressService(session).update_project(project.id, status="done")

    @pytest.mark.asyncio
    async def test_ai_score_out_of_range(self, session, seed):
        user = await seed.user()
        course = await seed.course(user, batches=[[("completed", None)]])
        project = course.batches[0].projects[0]

        with pytest.raises(ValidationError):
            await ProgressService(session).update_project(project.id, ai_evaluation_score=101)

    @pytest.mark.asyncio
    async def test_unknown_project(self, session):
        with pytest.raises(ProjectNotFoundError):
            await ProgressService(session).update_project("missing", status="completed")

    @pytest.mark.asyncio
    async def test_project_owner(self, session, seed):
        user = await seed.user()
        course = await seed.course(user, batches=[[("not started", None)]])
        project = course.batches[0].projects[0]

        assert await ProgressService(session).project_owner(project.id) == user.id
        with pytest.raises(ProjectNotFoundError):
            await ProgressService(session).project_owner("missing")


class TestDeleteCourse:
    @pytest.mark.asyncio
    async def test_soft_delete_drops_score(self, session, seed):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)
        course = await seed.course(
            user, group=group, batches=[[("completed", 80), ("completed", 90)]]
        )
        service = ProgressService(session)
        await service.refresh_scores_after_mutation(user.id, [group.id])

        await service.delete_course(course.id)

        row = await GroupScoreCalculator(session).get_group_score(user.id, group.id)
        assert course.is_deleted is True
        assert row.final_score == 0
        with pytest.raises(CourseNotFoundError):
            await service.get_course(course.id)


class TestSideEffectIsolation:
    @pytest.mark.asyncio
    async def test_duplicate_badge_keeps_project_update(self, session_factory, session, seed):
        user = await seed.user()
        course = await seed.course(user, batches=[[("in progress", None)]])
        project = course.batches[0].projects[0]
        badges = BadgeService(session)
        await badges.initialize_default_badges()
        welcome = await session.scalar(select(Badge).where(Badge.name == "Welcome!"))
        session.add(UserBadge(user_id=user.id, badge_id=welcome.id))
        await session.flush()

        # The award loop believes nothing is earned yet, so the insert collides
        with patch.object(BadgeService, "_earned_badge_ids", return_value=set()):
            await ProgressService(session).update_project(project.id, status="completed")
        await session.commit()

        async with session_factory() as fresh:
            stored = await fresh.get(Project, project.id)
            earned = await fresh.scalars(
                select(Badge.name)
                .join(UserBadge, UserBadge.badge_id == Badge.id)
                .where(UserBadge.user_id == user.id)
            )
            assert stored.status == "completed"
            assert sorted(earned.all()) == ["First Steps", "Welcome!"]

    @pytest.mark.asyncio
    async def test_group_refresh_error_keeps_course(self, session_factory, session, seed):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)
        await seed.group_score(user, group, 7)
        real_update = GroupScoreCalculator.update_group_score

        async def colliding_update(calculator, user_id, group_id):
            await real_update(calculator, user_id, group_id)
            # Second row for the same (user, group) violates the unique constraint
            session.add(GroupScore(user_id=user_id, group_id=group_id))
            await session.flush()

        with patch.object(GroupScoreCalculator, "update_group_score", colliding_update):
            course = await ProgressService(session).create_course(
                user.id, _draft(group_id=group.id)
            )
        await session.commit()

        async with session_factory() as fresh:
            assert (await ProgressService(fresh).get_course(course.id)).title == "Backend roadmap"
            row = await GroupScoreCalculator(fresh).get_group_score(user.id, group.id)
            assert row.final_score == 7
