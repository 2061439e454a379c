"""In-app contribution tracking.

Counts learner activity per UTC day and type. Feeds the activity trends
and the contribution totals shown in analytics.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.logging_config import get_logger
from db.models import DailyContribution

logger = get_logger(__name__)


class ContributionType(str, Enum):
    COURSE_CREATED = "COURSE_CREATED"
    COURSE_STARTED = "COURSE_STARTED"
    PROJECT_STARTED = "PROJECT_STARTED"
    PROJECT_COMPLETED = "PROJECT_COMPLETED"
    BADGE_EARNED = "BADGE_EARNED"
    GROUP_JOINED = "GROUP_JOINED"
    SECTOR_JOINED = "SECTOR_JOINED"


@dataclass
class ContributionStats:
    total_contributions: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    total_active_days: int = 0
    contributions_by_type: dict[str, int] = field(default_factory=dict)
    first_contribution_date: str | None = None
    last_contribution_date: str | None = None


def compute_streaks(days: Iterable[date], today: date | None = None) -> tuple[int, int]:
    """Return (current, longest) runs of consecutive days.

    The current streak is alive when the last active day is today or
    yesterday.
    """
    ordered = sorted(set(days))
    if not ordered:
        return 0, 0

    longest = run = 1
    for previous, current in zip(ordered, ordered[1:]):
        if current - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        longest = max(longest, run)

    today = today or datetime.now(UTC).date()
    active = set(ordered)
    cursor = today if today in active else today - timedelta(days=1)
    current_streak = 0
    while cursor in active:
        current_streak += 1
        cursor -= timedelta(days=1)

    return current_streak, longest


class ContributionService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def track_contribution(
        self,
        user_id: str,
        contribution_type: ContributionType,
        metadata: dict[str, Any] | None = None,
    ) -> DailyContribution:
        """Increment today's counter for a contribution type."""
        today = datetime.now(UTC).date()
        result = await self._session.execute(
            select(DailyContribution).where(
                DailyContribution.user_id == user_id,
                DailyContribution.day == today,
                DailyContribution.contribution_type == contribution_type.value,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = DailyContribution(
                user_id=user_id,
                day=today,
                contribution_type=contribution_type.value,
                count=1,
                extra=metadata,
            )
            self._session.add(row)
        else:
            row.count += 1
            if metadata:
                row.extra = metadata
        await self._session.flush()

        logger.debug("contribution_tracked", user_id=user_id, type=contribution_type.value)
        return row

    async def get_user_contribution_stats(
        self, user_id: str, year: int | None = None
    ) -> ContributionStats:
        stmt = select(DailyContribution).where(DailyContribution.user_id == user_id)
        if year is not None:
            stmt = stmt.where(
                DailyContribution.day >= date(year, 1, 1),
                DailyContribution.day <= date(year, 12, 31),
            )
        result = await self._session.execute(stmt.order_by(DailyContribution.day))
        rows = result.scalars().all()
        if not rows:
            return ContributionStats()

        by_type: dict[str, int] = {}
        for row in rows:
            by_type[row.contribution_type] = by_type.get(row.contribution_type, 0) + row.count

        days = sorted({row.day for row in rows})
        current, longest = compute_streaks(days)

        return ContributionStats(
            total_contributions=sum(row.count for row in rows),
            current_streak=current,
            longest_streak=longest,
            total_active_days=len(days),
            contributions_by_type=by_type,
            first_contribution_date=days[0].isoformat(),
            last_contribution_date=days[-1].isoformat(),
        )
