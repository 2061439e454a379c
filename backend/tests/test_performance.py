"""Tests for performance snapshots and comparisons."""

import pytest
from sqlalchemy import func, select

from app.exceptions import NotGroupMemberError, UserNotFoundError
from db.models import PerformanceComparison
from services.performance import PerformanceService, metric_delta


class TestMetricDelta:
    def test_higher_is_better(self):
        assert metric_delta(10, 4) == {"user": 10, "compared": 4, "difference": 6}

    def test_rank_sign_is_inverted(self):
        assert metric_delta(2, 5, inverse=True)["difference"] == 3

    def test_missing_values_count_as_zero(self):
        assert metric_delta(None, 3)["difference"] == -3


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshot_captures_metrics(self, session, seed):
        user = await seed.user(final_score=77, commits=12, rank=4)
        group = await seed.group("Study circle")
        await seed.group_score(user, group, 249)
        await seed.course(user, batches=[[("completed", None), ("not started", None)]])

        snapshot = await PerformanceService(session).create_performance_snapshot(user.id)

        metrics = snapshot.metrics
        assert metrics["finalScore"] == 77
        assert metrics["commits"] == 12
        assert metrics["rank"] == 4
        assert metrics["coursesCount"] == 1
        assert metrics["projectsCount"] == 2
        assert metrics["completedProjects"] == 1
        assert metrics["groupScores"] == [
            {"groupId": group.id, "groupName": "Study circle", "score": 249, "rank": None}
        ]

    @pytest.mark.asyncio
    async def test_snapshot_skipped_without_score(self, session, seed):
        user = await seed.user(with_score=False)
        assert await PerformanceService(session).create_performance_snapshot(user.id) is None
        assert await PerformanceService(session).create_performance_snapshot("missing") is None

    @pytest.mark.asyncio
    async def test_trends_list_snapshots_in_order(self, session, seed):
        user = await seed.user(final_score=1)
        service = PerformanceService(session)
        await service.create_performance_snapshot(user.id)
        await service.create_performance_snapshot(user.id)

        trends = await service.get_performance_trends(user.id, days=7)

        assert len(trends) == 2
        assert trends[0]["date"] <= trends[1]["date"]
        assert trends[0]["metrics"]["finalScore"] == 1


class TestComparisons:
    @pytest.mark.asyncio
    async def test_compare_users_stores_latest(self, session, seed):
        a = await seed.user(final_score=100, rank=2, commits=30)
        b = await seed.user(final_score=60, rank=5, commits=40)
        service = PerformanceService(session)

        await service.compare_users(a.id, b.id)
        result = await service.compare_users(a.id, b.id)

        metrics = result["metrics"]
        assert metrics["finalScore"]["difference"] == 40
        assert metrics["rank"]["difference"] == 3
        assert metrics["commits"]["difference"] == -10
        assert result["compared_user"]["id"] == b.id
        stored = await session.scalar(select(func.count(PerformanceComparison.id)))
        assert stored == 1

    @pytest.mark.asyncio
    async def test_compare_unknown_user(self, session, seed):
        a = await seed.user()
        with pytest.raises(UserNotFoundError):
            await PerformanceService(session).compare_users(a.id, "missing")

    @pytest.mark.asyncio
    async def test_group_average_and_percentile(self, session, seed):
        group = await seed.group()
        users = [await seed.user() for _ in range(4)]
        for user, score in zip(users, (10, 20, 30, 40)):
            await seed.group_score(user, group, score)

        comparison = await PerformanceService(session).compare_with_group_average(
            users[2].id, group.id
        )

        assert comparison.user_score == 30
        assert comparison.group_average == 25.0
        assert comparison.difference == 5.0
        assert comparison.percentile == 50.0

    @pytest.mark.asyncio
    async def test_group_average_requires_score_row(self, session, seed):
        user = await seed.user()
        group = await seed.group()
        with pytest.raises(NotGroupMemberError):
            await PerformanceService(session).compare_with_group_average(user.id, group.id)


class TestStrengthsWeaknesses:
    @pytest.mark.asyncio
    async def test_against_population_average(self, session, seed):
        user = await seed.user(commits=100, pull_requests=0, current_streak=5, final_score=9)
        await seed.user(commits=10, pull_requests=10, current_streak=5, final_score=8)

        report = await PerformanceService(session).get_strengths_weaknesses(user.id)

        assert report.strengths == ["High commit activity"]
        assert report.weaknesses == ["Few pull requests"]
        assert report.recommendations == ["Create more pull requests to collaborate"]

    @pytest.mark.asyncio
    async def test_unknown_user(self, session):
        with pytest.raises(UserNotFoundError):
            await PerformanceService(session).get_strengths_weaknesses("missing")
