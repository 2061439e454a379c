"""Global Score Calculator.

The platform-wide score blends the GitHub-derived score with the sum of a
user's group scores over their active memberships:

    final = round(github * 0.4 + sum(group scores) * 0.6)

Recomputation is skipped while the stored score is fresher than the
staleness window, unless forced.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.exceptions import ScoreNotFoundError
from app.logging_config import get_logger
from app.metrics import (
    GLOBAL_SCORE_SKIPPED,
    RANK_UPDATES,
    SCORE_RECALCULATION_DURATION,
    SCORE_RECALCULATIONS,
    SIDE_EFFECT_FAILURES,
)
from db.models import GroupMembership, GroupScore, Score
from services.group_scoring import active_membership_join, round_half_up

logger = get_logger(__name__)

GLOBAL_SCORE_WEIGHTS = {
    "github_score": 0.4,
    "group_scores": 0.6,
}

GITHUB_SCORE_WEIGHTS = {
    "commits": 2.0,
    "pull_requests": 4.0,
    "issues": 3.0,
    "reviews": 1.5,
    "current_streak": 2.0,
    "longest_streak": 1.5,
}


@dataclass(frozen=True)
class GlobalScoreBreakdown:
    github_score: int = 0
    sum_of_group_scores: int = 0
    final_score: int = 0


def calculate_github_score(score: Any) -> int:
    """Linear score over the GitHub counters of a Score row."""
    return round_half_up(
        sum(
            weight * (getattr(score, field) or 0)
            for field, weight in GITHUB_SCORE_WEIGHTS.items()
        )
    )


def blend_global_score(github_score: int, sum_of_group_scores: int) -> int:
    return round_half_up(
        github_score * GLOBAL_SCORE_WEIGHTS["github_score"]
        + sum_of_group_scores * GLOBAL_SCORE_WEIGHTS["group_scores"]
    )


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class GlobalScoreCalculator:
    """Computes and stores the platform-wide score and global ranks."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._settings = get_settings()

    async def calculate_global_score(self, user_id: str) -> GlobalScoreBreakdown:
        score = await self._get_score(user_id)
        if score is None:
            return GlobalScoreBreakdown()

        github_score = calculate_github_score(score)
        sum_of_group_scores = await self.sum_active_group_scores(user_id)

        return GlobalScoreBreakdown(
            github_score=github_score,
            sum_of_group_scores=sum_of_group_scores,
            final_score=blend_global_score(github_score, sum_of_group_scores),
        )

    async def sum_active_group_scores(self, user_id: str) -> int:
        """Sum the user's group scores in groups they still belong to."""
        await self._session.flush()
        result = await self._session.execute(
            select(func.coalesce(func.sum(GroupScore.final_score), 0))
            .select_from(GroupScore)
            .join(GroupMembership, active_membership_join())
            .where(GroupScore.user_id == user_id)
        )
        return int(result.scalar_one())

    def is_fresh(self, score: Score, now: datetime | None = None) -> bool:
        if score.last_updated_date is None:
            return False
        now = now or datetime.now(UTC)
        window = timedelta(hours=self._settings.global_score_staleness_hours)
        return now - as_utc(score.last_updated_date) < window

    async def update_global_score(self, user_id: str, force: bool = False) -> bool:
        """Recompute and store the global score.

        Returns False when skipped because the stored score is still fresh.
        Raises ScoreNotFoundError when the user has no Score row.
        """
        score = await self._get_score(user_id)
        if score is None:
            raise ScoreNotFoundError()

        if not force and self.is_fresh(score):
            GLOBAL_SCORE_SKIPPED.inc()
            logger.debug("global_score_fresh", user_id=user_id)
            return False

        with SCORE_RECALCULATION_DURATION.labels(kind="global").time():
            breakdown = await self.calculate_global_score(user_id)
            score.github_score = breakdown.github_score
            score.final_score = breakdown.final_score
            score.last_updated_date = datetime.now(UTC)
            await self._session.flush()

        SCORE_RECALCULATIONS.labels(kind="global").inc()
        logger.info(
            "global_score_updated",
            user_id=user_id,
            github_score=breakdown.github_score,
            group_scores=breakdown.sum_of_group_scores,
            final_score=breakdown.final_score,
        )

        await self._run_side_effects(user_id)
        return True

    async def update_global_ranks(self) -> int:
        """Rank every Score row 1..N.

        Order is final score desc, contribution desc, last update desc,
        user id asc.
        """
        await self._session.flush()
        result = await self._session.execute(
            select(Score).order_by(
                Score.final_score.desc(),
                Score.contribution.desc(),
                Score.last_updated_date.desc().nulls_last(),
                Score.user_id.asc(),
            )
        )
        rows = result.scalars().all()
        for position, row in enumerate(rows, start=1):
            row.rank = position
        await self._session.flush()

        RANK_UPDATES.labels(scope="global").inc()
        logger.info("global_ranks_updated", ranked=len(rows))
        return len(rows)

    async def _run_side_effects(self, user_id: str) -> None:
        """Badge checks and challenge progress after a score change.

        Each runs in its own savepoint; a failure is logged and rolled back
        without touching the score update.
        """
        from services.badges import BadgeService
        from services.challenges import ChallengeEvent, ChallengeService

        try:
            async with self._session.begin_nested():
                await BadgeService(self._session).check_and_award_badges(user_id)
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="badge_check").inc()
            logger.exception("badge_check_failed", user_id=user_id)

        try:
            async with self._session.begin_nested():
                await ChallengeService(self._session).auto_update_challenge_progress(
                    user_id, ChallengeEvent.STREAK_UPDATED
                )
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="challenge_progress").inc()
            logger.exception("challenge_progress_failed", user_id=user_id)

    async def _get_score(self, user_id: str) -> Score | None:
        result = await self._session.execute(select(Score).where(Score.user_id == user_id))
        return result.scalar_one_or_none()
