"""Tests for user, group and platform analytics."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from app.exceptions import GroupNotFoundError, UserNotFoundError
from db.models import DailyContribution, GroupType, PerformanceSnapshot
from services.analytics import GLOBAL_ANALYTICS_KEY, TOP_N, AnalyticsService
from services.badges import BadgeService


class TestUserAnalytics:
    @pytest.mark.asyncio
    async def test_counts_projects_courses_and_badges(self, session, seed):
        user = await seed.user(final_score=42, commits=9, rank=500, current_streak=2)
        await seed.course(
            user, batches=[[("completed", 80), ("in progress", None)]], status="in progress"
        )
        await seed.course(user, batches=[[("completed", 60)]], status="completed")
        badges = BadgeService(session)
        await badges.initialize_default_badges()
        await badges.check_and_award_badges(user.id)

        analytics = await AnalyticsService(session).get_user_analytics(user.id)

        assert analytics.total_projects == 3
        assert analytics.completed_projects == 2
        assert analytics.total_courses == 2
        assert analytics.completed_courses == 1
        assert analytics.badges_earned == 2
        assert analytics.total_contributions == 2
        assert analytics.rank == 500
        assert analytics.score.final_score == 42
        assert analytics.score.commits == 9

    @pytest.mark.asyncio
    async def test_user_without_score(self, session, seed):
        user = await seed.user(with_score=False)
        with pytest.raises(UserNotFoundError):
            await AnalyticsService(session).get_user_analytics(user.id)


class TestUserTrends:
    @pytest.mark.asyncio
    async def test_merges_snapshots_and_activity(self, session, seed):
        user = await seed.user()
        now = datetime.now(UTC)
        yesterday = now - timedelta(days=1)
        session.add_all(
            [
                PerformanceSnapshot(
                    user_id=user.id,
                    snapshot_date=yesterday,
                    metrics={"finalScore": 40, "projectsCount": 2, "coursesCount": 1},
                ),
                PerformanceSnapshot(
                    user_id=user.id,
                    snapshot_date=now - timedelta(days=90),
                    metrics={"finalScore": 1},
                ),
                DailyContribution(
                    user_id=user.id,
                    day=now.date(),
                    contribution_type="PROJECT_STARTED",
                    count=2,
                ),
            ]
        )
        await session.flush()
        badges = BadgeService(session)
        await badges.initialize_default_badges()
        await badges.check_and_award_badges(user.id)

        points = await AnalyticsService(session).get_user_trends(user.id)

        assert [p.date for p in points] == [
            yesterday.date().isoformat(),
            now.date().isoformat(),
        ]
        assert (points[0].score, points[0].projects, points[0].courses) == (40, 2, 1)
        assert points[1].score == 0
        assert points[1].badges == 1

    @pytest.mark.asyncio
    async def test_no_activity(self, session, seed):
        user = await seed.user()
        assert await AnalyticsService(session).get_user_trends(user.id, days=7) == []


class TestGroupAnalytics:
    @pytest.mark.asyncio
    async def test_top_members_and_average(self, session, seed):
        group = await seed.group()
        users = [await seed.user() for _ in range(12)]
        for n, user in enumerate(users):
            await seed.member(user, group)
            await seed.group_score(user, group, (n + 1) * 10)
        departed = await seed.user()
        await seed.member(departed, group, left=True)
        await seed.group_score(departed, group, 1000)
        await seed.course(users[0], group=group, batches=[[("completed", None)] * 3])

        analytics = await AnalyticsService(session).get_group_analytics(group.id)

        assert analytics.total_members == 12
        assert analytics.total_projects == 3
        assert len(analytics.top_members) == TOP_N
        assert analytics.top_members[0].final_score == 120
        assert analytics.top_members[0].rank == 1
        assert departed.id not in {m.user_id for m in analytics.top_members}
        # Average of 30..120
        assert analytics.average_score == 75.0

    @pytest.mark.asyncio
    async def test_empty_group(self, session, seed):
        group = await seed.group()
        analytics = await AnalyticsService(session).get_group_analytics(group.id)
        assert analytics.total_members == 0
        assert analytics.average_score == 0.0
        assert analytics.top_members == []

    @pytest.mark.asyncio
    async def test_sector_requires_category(self, session, seed):
        custom = await seed.group()
        sector = await seed.group("Cybersecurity", GroupType.CATEGORY)
        service = AnalyticsService(session)

        analytics = await service.get_sector_analytics(sector.id)

        assert analytics.group_type == "CATEGORY"
        with pytest.raises(GroupNotFoundError):
            await service.get_sector_analytics(custom.id)


class TestGlobalAnalytics:
    @pytest.mark.asyncio
    async def test_totals_and_top_users(self, session, seed):
        a = await seed.user(final_score=10)
        await seed.user(final_score=30)
        await seed.user(with_score=False)
        await seed.group()
        await seed.course(a, batches=[[("completed", None), ("not started", None)]])

        analytics = await AnalyticsService(session).get_global_analytics()

        assert analytics.total_users == 3
        assert analytics.total_courses == 1
        assert analytics.total_projects == 2
        assert analytics.total_groups == 1
        assert analytics.average_score == 20.0
        assert [u.final_score for u in analytics.top_users] == [30, 10]

    @pytest.mark.asyncio
    async def test_cached_in_redis(self, session, seed, fake_redis):
        await seed.user(final_score=10)
        service = AnalyticsService(session, fake_redis)

        first = await service.get_global_analytics()
        await seed.user(final_score=50)
        second = await service.get_global_analytics()

        assert second.total_users == first.total_users == 1
        assert second.generated_at == first.generated_at
        cached = json.loads(await fake_redis.get(GLOBAL_ANALYTICS_KEY))
        assert cached["total_users"] == 1
        assert 0 < await fake_redis.ttl(GLOBAL_ANALYTICS_KEY) <= 300

    @pytest.mark.asyncio
    async def test_invalidate_forces_recompute(self, session, seed, fake_redis):
        await seed.user()
        service = AnalyticsService(session, fake_redis)
        await service.get_global_analytics()
        await seed.user()

        await service.invalidate_global_analytics()

        assert (await service.get_global_analytics()).total_users == 2
