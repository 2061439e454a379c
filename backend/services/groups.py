"""Group membership and category groups.

Category groups (type CATEGORY) are what used to be sectors: a course
points at one through ``sector_id`` and its progress scores there too.
Every user also belongs to the public "Global" group.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import GroupNotFoundError, NotGroupMemberError
from app.logging_config import get_logger
from app.metrics import SIDE_EFFECT_FAILURES
from db.models import Course, Group, GroupMembership, GroupScore, GroupType
from services.contributions import ContributionService, ContributionType
from services.group_scoring import GroupScoreCalculator

logger = get_logger(__name__)

GLOBAL_GROUP_NAME = "Global"

DEFAULT_CATEGORIES: list[dict[str, str]] = [
    {
        "name": "Web Development",
        "description": "Frontend and backend web development technologies",
        "icon": "🌐",
    },
    {
        "name": "AI/ML",
        "description": "Artificial Intelligence and Machine Learning",
        "icon": "🤖",
    },
    {
        "name": "Mobile Development",
        "description": "iOS and Android mobile app development",
        "icon": "📱",
    },
    {
        "name": "DevOps",
        "description": "DevOps, CI/CD, and infrastructure",
        "icon": "⚙️",
    },
    {
        "name": "Data Science",
        "description": "Data analysis, visualization, and science",
        "icon": "📊",
    },
    {
        "name": "Cybersecurity",
        "description": "Security, ethical hacking, and penetration testing",
        "icon": "🔒",
    },
    {
        "name": "Game Development",
        "description": "Game design and development",
        "icon": "🎮",
    },
    {
        "name": "Blockchain",
        "description": "Blockchain and cryptocurrency development",
        "icon": "⛓️",
    },
]


class GroupService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_group(self, group_id: str, group_type: GroupType | None = None) -> Group:
        """Fetch a live group, optionally of a given type."""
        group = await self._session.get(Group, group_id)
        if group is None or group.is_deleted:
            raise GroupNotFoundError()
        if group_type is not None and group.type != group_type:
            raise GroupNotFoundError(f"Group is not of type {group_type.value}")
        return group

    async def initialize_default_category_groups(self) -> int:
        for category in DEFAULT_CATEGORIES:
            group = await self._get_by_name(category["name"])
            if group is None:
                group = Group(name=category["name"])
                self._session.add(group)
            group.type = GroupType.CATEGORY
            group.icon = category["icon"]
            group.description = category["description"]
            group.is_private = False
        await self._session.flush()
        logger.info("category_groups_initialized", count=len(DEFAULT_CATEGORIES))
        return len(DEFAULT_CATEGORIES)

    async def get_category_groups(self) -> list[dict[str, Any]]:
        """Public category groups with active member and course counts."""
        members = (
            select(func.count(GroupMembership.id))
            .where(GroupMembership.group_id == Group.id, GroupMembership.left_at.is_(None))
            .correlate(Group)
            .scalar_subquery()
        )
        courses = (
            select(func.count(Course.id))
            .where(Course.sector_id == Group.id, Course.is_deleted.is_(False))
            .correlate(Group)
            .scalar_subquery()
        )
        result = await self._session.execute(
            select(Group, members.label("member_count"), courses.label("course_count"))
            .where(
                Group.type == GroupType.CATEGORY,
                Group.is_private.is_(False),
                Group.is_deleted.is_(False),
            )
            .order_by(Group.name)
        )
        return [
            {
                "id": group.id,
                "name": group.name,
                "description": group.description,
                "icon": group.icon,
                "member_count": member_count,
                "course_count": course_count,
            }
            for group, member_count, course_count in result.all()
        ]

    async def ensure_global_group(self) -> Group:
        group = await self._get_by_name(GLOBAL_GROUP_NAME)
        if group is None:
            group = Group(
                name=GLOBAL_GROUP_NAME,
                description=(
                    "Default global group for all users. "
                    "This is the highest level of competition."
                ),
            )
            self._session.add(group)
        group.type = GroupType.CUSTOM
        group.is_private = False
        group.is_deleted = False
        await self._session.flush()
        return group

    async def auto_join_global_group(self, user_id: str) -> Group:
        """Join the Global group on signup with a zero score row."""
        group = await self.ensure_global_group()
        await self._activate_membership(user_id, group.id)

        existing = await self._session.execute(
            select(GroupScore).where(
                GroupScore.user_id == user_id, GroupScore.group_id == group.id
            )
        )
        if existing.scalar_one_or_none() is None:
            self._session.add(GroupScore(user_id=user_id, group_id=group.id, final_score=0))
        await self._session.flush()
        return group

    async def join_group(self, user_id: str, group_id: str) -> GroupScore:
        """Join (or rejoin) a group and score the user in it."""
        group = await self.get_group(group_id)
        await self._activate_membership(user_id, group.id)

        row = await GroupScoreCalculator(self._session).update_group_score(user_id, group.id)

        contribution = (
            ContributionType.SECTOR_JOINED
            if group.type == GroupType.CATEGORY
            else ContributionType.GROUP_JOINED
        )
        try:
            async with self._session.begin_nested():
                await ContributionService(self._session).track_contribution(
                    user_id, contribution, {"group_id": group.id, "group_type": group.type.value}
                )
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="contribution_tracking").inc()
            logger.exception("group_join_contribution_failed", user_id=user_id)

        logger.info("group_joined", user_id=user_id, group_id=group.id)
        return row

    async def leave_group(self, user_id: str, group_id: str) -> None:
        """Mark the membership as left and re-rank the remaining members."""
        membership = await self._get_membership(user_id, group_id)
        if membership is None or membership.left_at is not None:
            raise NotGroupMemberError()

        membership.left_at = datetime.now(UTC)
        await self._session.flush()
        await GroupScoreCalculator(self._session).update_group_ranks(group_id)
        logger.info("group_left", user_id=user_id, group_id=group_id)

    async def active_group_ids(self, user_id: str) -> list[str]:
        result = await self._session.execute(
            select(GroupMembership.group_id).where(
                GroupMembership.user_id == user_id,
                GroupMembership.left_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def _activate_membership(self, user_id: str, group_id: str) -> GroupMembership:
        membership = await self._get_membership(user_id, group_id)
        if membership is None:
            membership = GroupMembership(user_id=user_id, group_id=group_id, role="MEMBER")
            self._session.add(membership)
        elif membership.left_at is not None:
            membership.left_at = None
            membership.joined_at = datetime.now(UTC)
        await self._session.flush()
        return membership

    async def _get_membership(self, user_id: str, group_id: str) -> GroupMembership | None:
        result = await self._session.execute(
            select(GroupMembership).where(
                GroupMembership.user_id == user_id,
                GroupMembership.group_id == group_id,
            )
        )
        return result.scalar_one_or_none()

    async def _get_by_name(self, name: str) -> Group | None:
        result = await self._session.execute(select(Group).where(Group.name == name))
        return result.scalar_one_or_none()
