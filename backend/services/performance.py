"""Performance snapshots and user comparisons."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import get_settings
from app.exceptions import NotGroupMemberError, UserNotFoundError
from app.logging_config import get_logger
from db.models import (
    GroupScore,
    PerformanceComparison,
    PerformanceSnapshot,
    Score,
    User,
)
from services.analytics import all_projects, count_completed, load_user_courses

logger = get_logger(__name__)

# Share of the population average above/below which a metric counts
STRENGTH_FACTOR = 1.2
WEAKNESS_FACTOR = 0.8
POPULATION_SAMPLE = 1000

# metric -> (score attribute, strength label, weakness label, recommendation)
STRENGTH_METRICS: dict[str, tuple[str, str, str, str]] = {
    "commits": (
        "commits",
        "High commit activity",
        "Low commit activity",
        "Try to commit code more regularly",
    ),
    "pullRequests": (
        "pull_requests",
        "Active in pull requests",
        "Few pull requests",
        "Create more pull requests to collaborate",
    ),
    "currentStreak": (
        "current_streak",
        "Consistent daily activity",
        "Inconsistent activity",
        "Maintain a daily coding streak",
    ),
}


class GroupComparison(BaseModel):
    user_score: int
    group_average: float
    difference: float
    percentile: float


class StrengthsWeaknesses(BaseModel):
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


def metric_delta(user: float | None, compared: float | None, inverse: bool = False) -> dict:
    """``{user, compared, difference}``; for ranks lower is better so the sign flips."""
    if inverse:
        difference = (compared or 0) - (user or 0)
    else:
        difference = (user or 0) - (compared or 0)
    return {"user": user, "compared": compared, "difference": difference}


class PerformanceService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_performance_snapshot(self, user_id: str) -> PerformanceSnapshot | None:
        """Store today's metrics for a user. Does nothing without a score."""
        user = await self._load_user(user_id)
        if user is None or user.score is None:
            logger.debug("performance_snapshot_skipped", user_id=user_id)
            return None
        score: Score = user.score

        courses = await load_user_courses(self._session, [user_id])
        projects = all_projects(courses)
        group_rows = await self._session.execute(
            select(GroupScore)
            .where(GroupScore.user_id == user_id)
            .options(selectinload(GroupScore.group))
        )

        metrics = {
            "finalScore": score.final_score,
            "githubScore": score.github_score,
            "rank": score.rank,
            "commits": score.commits,
            "pullRequests": score.pull_requests,
            "reviews": score.reviews,
            "issues": score.issues,
            "currentStreak": score.current_streak,
            "longestStreak": score.longest_streak,
            "totalActiveDays": score.total_active_days,
            "coursesCount": len(courses),
            "completedCourses": count_completed(courses),
            "projectsCount": len(projects),
            "completedProjects": count_completed(projects),
            "groupScores": [
                {
                    "groupId": row.group_id,
                    "groupName": row.group.name,
                    "score": row.final_score,
                    "rank": row.rank,
                }
                for row in group_rows.scalars()
            ],
        }

        snapshot = PerformanceSnapshot(
            user_id=user_id, metrics=metrics, snapshot_date=datetime.now(UTC)
        )
        self._session.add(snapshot)
        await self._session.flush()
        logger.info("performance_snapshot_created", user_id=user_id)
        return snapshot

    async def compare_users(self, user_id: str, compared_user_id: str) -> dict[str, Any]:
        user = await self._load_user(user_id)
        compared = await self._load_user(compared_user_id)
        if user is None or user.score is None or compared is None or compared.score is None:
            raise UserNotFoundError("User or compared user not found")

        completed = await self._completed_projects(user_id)
        compared_completed = await self._completed_projects(compared_user_id)
        a, b = user.score, compared.score

        metrics = {
            "finalScore": metric_delta(a.final_score, b.final_score),
            "githubScore": metric_delta(a.github_score, b.github_score),
            "rank": metric_delta(a.rank, b.rank, inverse=True),
            "commits": metric_delta(a.commits, b.commits),
            "pullRequests": metric_delta(a.pull_requests, b.pull_requests),
            "completedProjects": metric_delta(completed, compared_completed),
            "currentStreak": metric_delta(a.current_streak, b.current_streak),
        }

        result = await self._session.execute(
            select(PerformanceComparison).where(
                PerformanceComparison.user_id == user_id,
                PerformanceComparison.compared_user_id == compared_user_id,
            )
        )
        comparison = result.scalar_one_or_none()
        if comparison is None:
            self._session.add(
                PerformanceComparison(
                    user_id=user_id, compared_user_id=compared_user_id, metrics=metrics
                )
            )
        else:
            comparison.metrics = metrics
            comparison.updated_at = datetime.now(UTC)
        await self._session.flush()

        return {
            "user": self._profile(user),
            "compared_user": self._profile(compared),
            "metrics": metrics,
        }

    async def get_performance_trends(
        self, user_id: str, days: int | None = None
    ) -> list[dict[str, Any]]:
        days = days or get_settings().trend_default_days
        since = datetime.now(UTC) - timedelta(days=days)
        result = await self._session.execute(
            select(PerformanceSnapshot)
            .where(
                PerformanceSnapshot.user_id == user_id,
                PerformanceSnapshot.snapshot_date >= since,
            )
            .order_by(PerformanceSnapshot.snapshot_date)
        )
        return [
            {"date": snapshot.snapshot_date.isoformat(), "metrics": snapshot.metrics}
            for snapshot in result.scalars()
        ]

    async def compare_with_group_average(self, user_id: str, group_id: str) -> GroupComparison:
        """Position of the user's group score among all rows of the group."""
        result = await self._session.execute(
            select(GroupScore).where(
                GroupScore.user_id == user_id, GroupScore.group_id == group_id
            )
        )
        own = result.scalar_one_or_none()
        if own is None:
            raise NotGroupMemberError()

        scores = (
            await self._session.execute(
                select(GroupScore.final_score).where(GroupScore.group_id == group_id)
            )
        ).scalars().all()
        average = sum(scores) / len(scores)
        below = sum(1 for value in scores if value < own.final_score)

        return GroupComparison(
            user_score=own.final_score,
            group_average=average,
            difference=own.final_score - average,
            percentile=below / len(scores) * 100,
        )

    async def get_strengths_weaknesses(self, user_id: str) -> StrengthsWeaknesses:
        user = await self._load_user(user_id)
        if user is None or user.score is None:
            raise UserNotFoundError()

        top = (
            select(Score.commits, Score.pull_requests, Score.current_streak)
            .order_by(Score.final_score.desc())
            .limit(POPULATION_SAMPLE)
            .subquery()
        )
        averages = (
            await self._session.execute(
                select(
                    func.avg(top.c.commits),
                    func.avg(top.c.pull_requests),
                    func.avg(top.c.current_streak),
                )
            )
        ).one()
        population = dict(zip(("commits", "pull_requests", "current_streak"), averages))

        report = StrengthsWeaknesses()
        for attribute, strength, weakness, recommendation in STRENGTH_METRICS.values():
            value = getattr(user.score, attribute)
            average = float(population[attribute] or 0)
            if value > average * STRENGTH_FACTOR:
                report.strengths.append(strength)
            elif value < average * WEAKNESS_FACTOR:
                report.weaknesses.append(weakness)
                report.recommendations.append(recommendation)
        return report

    async def _load_user(self, user_id: str) -> User | None:
        result = await self._session.execute(
            select(User).where(User.id == user_id).options(selectinload(User.score))
        )
        return result.scalar_one_or_none()

    async def _completed_projects(self, user_id: str) -> int:
        courses = await load_user_courses(self._session, [user_id])
        return count_completed(all_projects(courses))

    @staticmethod
    def _profile(user: User) -> dict[str, Any]:
        return {
            "id": user.id,
            "user_name": user.user_name,
            "name": user.display_name,
            "avatar": user.avatar,
        }
