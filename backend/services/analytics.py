"""Read-only analytics over scores, courses and activity.

User, group and sector views are computed per request. The platform-wide
view is cached in Redis for ``analytics_cache_ttl`` seconds.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import get_settings
from app.exceptions import UserNotFoundError
from app.logging_config import get_logger
from app.metrics import ANALYTICS_CACHE_HITS, ANALYTICS_CACHE_MISSES
from db.models import (
    Badge,
    Batch,
    Course,
    DailyContribution,
    Group,
    GroupMembership,
    GroupScore,
    GroupType,
    PerformanceSnapshot,
    Project,
    ProjectStatus,
    Score,
    User,
    UserBadge,
)
from services.group_scoring import active_membership_join
from services.groups import GroupService

logger = get_logger(__name__)

GLOBAL_ANALYTICS_KEY = "analytics:global"
TOP_N = 10


class ScoreSummary(BaseModel):
    final_score: int = 0
    github_score: int = 0
    commits: int = 0
    pull_requests: int = 0


class UserAnalytics(BaseModel):
    total_projects: int = 0
    completed_projects: int = 0
    total_courses: int = 0
    completed_courses: int = 0
    badges_earned: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    total_contributions: int = 0
    average_project_score: float = 0.0
    rank: int | None = None
    score: ScoreSummary = Field(default_factory=ScoreSummary)


class TrendPoint(BaseModel):
    date: str
    score: int = 0
    projects: int = 0
    courses: int = 0
    badges: int = 0


class RankedMember(BaseModel):
    rank: int
    user_id: str
    final_score: int
    user_name: str | None = None
    name: str | None = None


class GroupAnalytics(BaseModel):
    group_id: str
    group_name: str
    group_type: str
    total_members: int = 0
    total_projects: int = 0
    average_score: float = 0.0
    top_members: list[RankedMember] = Field(default_factory=list)


class GlobalAnalytics(BaseModel):
    total_users: int = 0
    total_courses: int = 0
    total_projects: int = 0
    total_badges: int = 0
    total_groups: int = 0
    average_score: float = 0.0
    top_users: list[RankedMember] = Field(default_factory=list)
    generated_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


async def load_user_courses(session: AsyncSession, user_ids: Sequence[str]) -> list[Course]:
    """Live courses of the given users with their batches and projects."""
    if not user_ids:
        return []
    result = await session.execute(
        select(Course)
        .where(Course.user_id.in_(user_ids), Course.is_deleted.is_(False))
        .options(selectinload(Course.batches).selectinload(Batch.projects))
    )
    return list(result.scalars().all())


def all_projects(courses: Sequence[Course]) -> list[Project]:
    return [p for course in courses for batch in course.batches for p in batch.projects]


def count_completed(items: Sequence[Any]) -> int:
    return sum(1 for item in items if item.status == ProjectStatus.COMPLETED.value)


class AnalyticsService:
    def __init__(self, session: AsyncSession, redis: Any | None = None) -> None:
        self._session = session
        self._redis = redis
        self._settings = get_settings()

    async def get_user_analytics(self, user_id: str) -> UserAnalytics:
        result = await self._session.execute(
            select(User).where(User.id == user_id).options(selectinload(User.score))
        )
        user = result.scalar_one_or_none()
        if user is None or user.score is None:
            raise UserNotFoundError("User not found or has no score")
        score: Score = user.score

        courses = await load_user_courses(self._session, [user_id])
        projects = all_projects(courses)
        evaluated = [p.ai_evaluation_score for p in projects if p.ai_evaluation_score is not None]

        badges_earned = await self._session.scalar(
            select(func.count(UserBadge.id)).where(UserBadge.user_id == user_id)
        )
        contributions = await self._session.scalar(
            select(func.coalesce(func.sum(DailyContribution.count), 0)).where(
                DailyContribution.user_id == user_id
            )
        )

        return UserAnalytics(
            total_projects=len(projects),
            completed_projects=count_completed(projects),
            total_courses=len(courses),
            completed_courses=count_completed(courses),
            badges_earned=badges_earned or 0,
            current_streak=score.current_streak,
            longest_streak=score.longest_streak,
            total_contributions=int(contributions or 0),
            average_project_score=sum(evaluated) / len(evaluated) if evaluated else 0.0,
            rank=score.rank,
            score=ScoreSummary(
                final_score=score.final_score,
                github_score=score.github_score,
                commits=score.commits,
                pull_requests=score.pull_requests,
            ),
        )

    async def get_user_trends(self, user_id: str, days: int | None = None) -> list[TrendPoint]:
        """Per-day merge of snapshots, active contribution days and badges."""
        days = days or self._settings.trend_default_days
        since = datetime.now(UTC) - timedelta(days=days)
        points: dict[str, TrendPoint] = {}

        snapshots = await self._session.execute(
            select(PerformanceSnapshot)
            .where(
                PerformanceSnapshot.user_id == user_id,
                PerformanceSnapshot.snapshot_date >= since,
            )
            .order_by(PerformanceSnapshot.snapshot_date)
        )
        for snapshot in snapshots.scalars():
            key = snapshot.snapshot_date.date().isoformat()
            metrics = snapshot.metrics or {}
            points[key] = TrendPoint(
                date=key,
                score=metrics.get("finalScore", 0),
                projects=metrics.get("projectsCount", 0),
                courses=metrics.get("coursesCount", 0),
            )

        contribution_days = await self._session.execute(
            select(DailyContribution.day)
            .where(DailyContribution.user_id == user_id, DailyContribution.day >= since.date())
            .distinct()
        )
        for day in contribution_days.scalars():
            key = day.isoformat()
            points.setdefault(key, TrendPoint(date=key))

        earned = await self._session.execute(
            select(UserBadge.earned_at).where(
                UserBadge.user_id == user_id, UserBadge.earned_at >= since
            )
        )
        for earned_at in earned.scalars():
            key = earned_at.date().isoformat()
            points.setdefault(key, TrendPoint(date=key)).badges += 1

        return sorted(points.values(), key=lambda point: point.date)

    async def get_group_analytics(self, group_id: str) -> GroupAnalytics:
        group = await GroupService(self._session).get_group(group_id)
        return await self._group_analytics(group)

    async def get_sector_analytics(self, sector_id: str) -> GroupAnalytics:
        """Group analytics restricted to category groups."""
        group = await GroupService(self._session).get_group(sector_id, GroupType.CATEGORY)
        return await self._group_analytics(group)

    async def get_global_analytics(self) -> GlobalAnalytics:
        if self._redis is not None:
            cached = await self._redis.get(GLOBAL_ANALYTICS_KEY)
            if cached is not None:
                ANALYTICS_CACHE_HITS.inc()
                return GlobalAnalytics.model_validate(json.loads(cached))
            ANALYTICS_CACHE_MISSES.inc()

        analytics = await self._compute_global_analytics()

        if self._redis is not None:
            await self._redis.setex(
                GLOBAL_ANALYTICS_KEY,
                self._settings.analytics_cache_ttl,
                analytics.model_dump_json(),
            )
        return analytics

    async def invalidate_global_analytics(self) -> None:
        if self._redis is not None:
            await self._redis.delete(GLOBAL_ANALYTICS_KEY)

    async def _group_analytics(self, group: Group) -> GroupAnalytics:
        member_rows = await self._session.execute(
            select(GroupMembership.user_id).where(
                GroupMembership.group_id == group.id,
                GroupMembership.left_at.is_(None),
            )
        )
        member_ids = list(member_rows.scalars().all())
        courses = await load_user_courses(self._session, member_ids)

        top = await self._session.execute(
            select(GroupScore, User)
            .join(GroupMembership, active_membership_join(group.id))
            .join(User, User.id == GroupScore.user_id)
            .order_by(
                GroupScore.final_score.desc(),
                GroupScore.last_updated_date.desc(),
                GroupScore.id.asc(),
            )
            .limit(TOP_N)
        )
        top_rows = top.all()
        top_members = [
            RankedMember(
                rank=index,
                user_id=row.user_id,
                final_score=row.final_score,
                user_name=user.user_name,
                name=user.display_name,
            )
            for index, (row, user) in enumerate(top_rows, start=1)
        ]
        average = (
            sum(member.final_score for member in top_members) / len(top_members)
            if top_members
            else 0.0
        )

        return GroupAnalytics(
            group_id=group.id,
            group_name=group.name,
            group_type=group.type.value,
            total_members=len(member_ids),
            total_projects=len(all_projects(courses)),
            average_score=average,
            top_members=top_members,
        )

    async def _compute_global_analytics(self) -> GlobalAnalytics:
        session = self._session
        total_users = await session.scalar(select(func.count(User.id)))
        total_courses = await session.scalar(
            select(func.count(Course.id)).where(Course.is_deleted.is_(False))
        )
        total_projects = await session.scalar(select(func.count(Project.id)))
        total_badges = await session.scalar(select(func.count(Badge.id)))
        total_groups = await session.scalar(
            select(func.count(Group.id)).where(Group.is_deleted.is_(False))
        )
        average = await session.scalar(select(func.avg(Score.final_score)))

        top = await session.execute(
            select(Score, User)
            .join(User, User.id == Score.user_id)
            .order_by(Score.final_score.desc(), Score.user_id.asc())
            .limit(TOP_N)
        )
        top_users = [
            RankedMember(
                rank=index,
                user_id=score.user_id,
                final_score=score.final_score,
                user_name=user.user_name,
                name=user.display_name,
            )
            for index, (score, user) in enumerate(top.all(), start=1)
        ]

        logger.info("global_analytics_computed", users=total_users)
        return GlobalAnalytics(
            total_users=total_users or 0,
            total_courses=total_courses or 0,
            total_projects=total_projects or 0,
            total_badges=total_badges or 0,
            total_groups=total_groups or 0,
            average_score=float(average or 0),
            top_users=top_users,
        )
