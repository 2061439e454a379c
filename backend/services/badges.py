"""Badge Service.

Milestone badges are defined by a JSON criteria map, e.g.
``{"projectsCompleted": 10}`` or ``{"globalRank": 100}``. Every key must
hold for a badge to be earned:

- ``-1`` as a threshold makes the badge always eligible
- ``perfectScore: true`` needs a project with a perfect AI evaluation
- rank keys are met when the rank is at or above the threshold (lower is better)
- every other numeric key is met when the metric reaches the threshold
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.exceptions import BadgeNotFoundError
from app.logging_config import get_logger
from app.metrics import BADGES_AWARDED, SIDE_EFFECT_FAILURES
from db.models import Badge, Batch, Course, ProjectStatus, Score, User, UserBadge
from services.contributions import ContributionService, ContributionType
from services.global_scoring import as_utc

logger = get_logger(__name__)

UNRANKED = 999_999
RANK_METRICS = {"globalRank", "groupRank"}
PERFECT_AI_SCORE = 100

DEFAULT_BADGES: list[dict[str, Any]] = [
    {
        "name": "Welcome!",
        "description": "Join the platform and start your learning journey",
        "icon": "👋",
        "category": "MILESTONE",
        "rarity": "COMMON",
        "criteria": {"loginDays": -1},
    },
    {
        "name": "First Steps",
        "description": "Complete your first project",
        "icon": "🎯",
        "category": "PROJECTS",
        "rarity": "COMMON",
        "criteria": {"projectsCompleted": 1},
    },
    {
        "name": "10 Projects",
        "description": "Complete 10 projects",
        "icon": "🔟",
        "category": "PROJECTS",
        "rarity": "COMMON",
        "criteria": {"projectsCompleted": 10},
    },
    {
        "name": "50 Projects",
        "description": "Complete 50 projects",
        "icon": "🏗️",
        "category": "PROJECTS",
        "rarity": "RARE",
        "criteria": {"projectsCompleted": 50},
    },
    {
        "name": "7 Day Streak",
        "description": "Stay active 7 days in a row",
        "icon": "🔥",
        "category": "STREAKS",
        "rarity": "COMMON",
        "criteria": {"streak": 7},
    },
    {
        "name": "30 Day Streak",
        "description": "Stay active 30 days in a row",
        "icon": "📅",
        "category": "STREAKS",
        "rarity": "RARE",
        "criteria": {"streak": 30},
    },
    {
        "name": "100 Commits",
        "description": "Push 100 commits on GitHub",
        "icon": "💾",
        "category": "GITHUB",
        "rarity": "COMMON",
        "criteria": {"commits": 100},
    },
    {
        "name": "50 Pull Requests",
        "description": "Open 50 pull requests",
        "icon": "🔀",
        "category": "GITHUB",
        "rarity": "RARE",
        "criteria": {"pullRequests": 50},
    },
    {
        "name": "Code Reviewer",
        "description": "Review 50 pull requests",
        "icon": "🔍",
        "category": "GITHUB",
        "rarity": "RARE",
        "criteria": {"reviews": 50},
    },
    {
        "name": "Group Champion",
        "description": "Reach the top 10 of one of your groups",
        "icon": "🏆",
        "category": "GROUP",
        "rarity": "EPIC",
        "criteria": {"groupRank": 10},
    },
    {
        "name": "Course Completer",
        "description": "Complete 5 courses",
        "icon": "🎓",
        "category": "COURSE",
        "rarity": "RARE",
        "criteria": {"coursesCompleted": 5},
    },
    {
        "name": "Top 100",
        "description": "Reach the global top 100",
        "icon": "💯",
        "category": "MILESTONE",
        "rarity": "EPIC",
        "criteria": {"globalRank": 100},
    },
    {
        "name": "Top 10",
        "description": "Reach the global top 10",
        "icon": "👑",
        "category": "MILESTONE",
        "rarity": "LEGENDARY",
        "criteria": {"globalRank": 10},
    },
    {
        "name": "Perfect Score",
        "description": "Get a perfect AI evaluation on a project",
        "icon": "⭐",
        "category": "MILESTONE",
        "rarity": "RARE",
        "criteria": {"perfectScore": True},
    },
]


@dataclass(frozen=True)
class BadgeCheckResult:
    eligible: bool
    progress: int = 0
    max_progress: int = 0


@dataclass
class BadgeAwardSummary:
    awarded_badges: list[str] = field(default_factory=list)
    total_checked: int = 0
    already_earned: int = 0
    not_eligible: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate_criteria(criteria: dict[str, Any], metrics: dict[str, Any]) -> BadgeCheckResult:
    """Check a criteria map against a user's metrics."""
    numeric = {k: v for k, v in criteria.items() if _is_numeric(v)}

    if any(v == -1 for v in numeric.values()):
        return BadgeCheckResult(eligible=True, progress=1, max_progress=1)

    eligible = True
    for key, threshold in criteria.items():
        if key == "perfectScore":
            if threshold is True and not metrics.get("perfectScore"):
                eligible = False
            continue
        if not _is_numeric(threshold):
            continue

        value = metrics.get(key)
        if value is None:
            eligible = False
        elif key in RANK_METRICS:
            if value > threshold:
                eligible = False
        elif value < threshold:
            eligible = False

    # Progress follows the most demanding counter criterion
    counters = {k: v for k, v in numeric.items() if k not in RANK_METRICS}
    if counters:
        primary = max(counters, key=counters.get)
        max_progress = int(counters[primary])
        progress = int(min(metrics.get(primary) or 0, max_progress))
    elif numeric or "perfectScore" in criteria:
        max_progress = 1
        progress = 1 if eligible else 0
    else:
        max_progress = progress = 0

    return BadgeCheckResult(eligible=eligible, progress=progress, max_progress=max_progress)


class BadgeService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def collect_metrics(self, user_id: str) -> dict[str, Any] | None:
        """Everything badge criteria can refer to, or None without a score."""
        await self._session.flush()
        result = await self._session.execute(
            select(User)
            .where(User.id == user_id)
            .options(
                selectinload(User.score),
                selectinload(User.group_scores),
            )
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            logger.debug("badge_metrics_user_missing", user_id=user_id)
            return None
        score: Score | None = user.score
        if score is None:
            logger.debug("badge_metrics_score_missing", user_id=user_id)
            return None

        courses = await self._load_courses(user_id)
        projects = [p for c in courses for b in c.batches for p in b.projects]
        completed = ProjectStatus.COMPLETED.value
        not_started = ProjectStatus.NOT_STARTED.value

        group_ranks = [gs.rank for gs in user.group_scores if gs.rank is not None]
        days_since_creation = (datetime.now(UTC) - as_utc(user.created_at)).days

        return {
            "streak": score.current_streak,
            "streakDays": score.current_streak,
            "longestStreak": score.longest_streak,
            "totalActiveDays": score.total_active_days,
            "commits": score.commits,
            "pullRequests": score.pull_requests,
            "reviews": score.reviews,
            "issues": score.issues,
            "projectsCompleted": sum(1 for p in projects if p.status == completed),
            "projectsStarted": sum(1 for p in projects if p.status != not_started),
            "coursesCompleted": sum(1 for c in courses if c.status == completed),
            "coursesStarted": sum(1 for c in courses if c.status != not_started),
            "globalRank": score.rank or UNRANKED,
            "groupRank": min(group_ranks) if group_ranks else UNRANKED,
            "perfectScore": any(
                p.ai_evaluation_score is not None and p.ai_evaluation_score >= PERFECT_AI_SCORE
                for p in projects
            ),
            "loginDays": days_since_creation,
            "consecutiveLoginDays": score.current_streak,
        }

    async def check_badge_eligibility(
        self,
        user_id: str,
        badge: Badge,
        metrics: dict[str, Any] | None = None,
        earned: set[str] | None = None,
    ) -> BadgeCheckResult:
        if earned is None:
            earned = await self._earned_badge_ids(user_id)
        if badge.id in earned:
            return BadgeCheckResult(eligible=False)

        if metrics is None:
            metrics = await self.collect_metrics(user_id)
        if metrics is None:
            return BadgeCheckResult(eligible=False)

        return evaluate_criteria(badge.criteria or {}, metrics)

    async def award_badge(self, user_id: str, badge_id: str) -> bool:
        """Award one badge if the user qualifies. Returns True when awarded."""
        badge = await self._session.get(Badge, badge_id)
        if badge is None:
            raise BadgeNotFoundError()

        check = await self.check_badge_eligibility(user_id, badge)
        if not check.eligible:
            return False
        return await self._grant_once(user_id, badge, check)

    async def grant_badge(self, user_id: str, badge_id: str) -> bool:
        """Grant a badge regardless of its criteria, e.g. as a reward."""
        badge = await self._session.get(Badge, badge_id)
        if badge is None:
            raise BadgeNotFoundError()
        if badge.id in await self._earned_badge_ids(user_id):
            return False
        return await self._grant_once(
            user_id, badge, BadgeCheckResult(eligible=True, progress=1, max_progress=1)
        )

    async def check_and_award_badges(
        self, user_id: str, force_refresh: bool = False
    ) -> BadgeAwardSummary:
        """Award every badge the user newly qualifies for."""
        result = await self._session.execute(select(Badge).order_by(Badge.created_at, Badge.name))
        badges = result.scalars().all()

        summary = BadgeAwardSummary(total_checked=len(badges))
        earned = await self._earned_badge_ids(user_id)
        metrics = await self.collect_metrics(user_id)

        for badge in badges:
            if badge.id in earned:
                summary.already_earned += 1
                summary.details.append(
                    {"badge_name": badge.name, "eligible": False, "reason": "Already earned"}
                )
                continue

            check = await self.check_badge_eligibility(user_id, badge, metrics, earned)
            if not check.eligible:
                summary.not_eligible += 1
                summary.details.append(
                    {"badge_name": badge.name, "eligible": False, "reason": "Not eligible"}
                )
                continue

            earned.add(badge.id)
            if not await self._grant_once(user_id, badge, check):
                summary.already_earned += 1
                summary.details.append(
                    {"badge_name": badge.name, "eligible": False, "reason": "Already earned"}
                )
                continue
            summary.awarded_badges.append(badge.id)
            summary.details.append(
                {"badge_name": badge.name, "eligible": True, "reason": "Awarded"}
            )

        if not force_refresh:
            summary.details = []
        if summary.awarded_badges:
            logger.info("badges_awarded", user_id=user_id, count=len(summary.awarded_badges))
        return summary

    async def get_user_badges(self, user_id: str) -> list[UserBadge]:
        result = await self._session.execute(
            select(UserBadge)
            .where(UserBadge.user_id == user_id)
            .options(selectinload(UserBadge.badge))
            .order_by(UserBadge.earned_at.desc())
        )
        return list(result.scalars().all())

    async def get_available_badges(self, user_id: str) -> list[dict[str, Any]]:
        """Badges not yet earned, with the user's progress towards each."""
        result = await self._session.execute(
            select(Badge).order_by(Badge.rarity, Badge.category, Badge.name)
        )
        badges = result.scalars().all()
        earned = await self._earned_badge_ids(user_id)
        metrics = await self.collect_metrics(user_id)

        available = []
        for badge in badges:
            if badge.id in earned:
                continue
            check = (
                evaluate_criteria(badge.criteria or {}, metrics)
                if metrics is not None
                else BadgeCheckResult(eligible=False)
            )
            available.append(
                {
                    "id": badge.id,
                    "name": badge.name,
                    "description": badge.description,
                    "icon": badge.icon,
                    "category": badge.category,
                    "rarity": badge.rarity,
                    "criteria": badge.criteria,
                    "progress": check.progress,
                    "max_progress": check.max_progress,
                }
            )
        return available

    async def initialize_default_badges(self) -> int:
        """Upsert the default badge catalogue by name."""
        for data in DEFAULT_BADGES:
            result = await self._session.execute(select(Badge).where(Badge.name == data["name"]))
            badge = result.scalar_one_or_none()
            if badge is None:
                self._session.add(Badge(**data))
            else:
                for key, value in data.items():
                    setattr(badge, key, value)
        await self._session.flush()
        logger.info("default_badges_initialized", count=len(DEFAULT_BADGES))
        return len(DEFAULT_BADGES)

    async def _grant_once(self, user_id: str, badge: Badge, check: BadgeCheckResult) -> bool:
        """Insert the UserBadge in a savepoint. False when a concurrent award won."""
        try:
            async with self._session.begin_nested():
                self._session.add(
                    UserBadge(user_id=user_id, badge_id=badge.id, progress=check.progress)
                )
                await self._session.flush()
        except IntegrityError:
            logger.info("badge_already_awarded", user_id=user_id, badge=badge.name)
            return False

        BADGES_AWARDED.labels(rarity=badge.rarity).inc()
        logger.info("badge_awarded", user_id=user_id, badge=badge.name)
        await self._after_grant(user_id, badge)
        return True

    async def _after_grant(self, user_id: str, badge: Badge) -> None:
        from services.challenges import ChallengeEvent, ChallengeService

        try:
            async with self._session.begin_nested():
                await ContributionService(self._session).track_contribution(
                    user_id,
                    ContributionType.BADGE_EARNED,
                    {"badge_id": badge.id, "badge_name": badge.name},
                )
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="contribution_tracking").inc()
            logger.exception("badge_contribution_tracking_failed", user_id=user_id)

        try:
            async with self._session.begin_nested():
                await ChallengeService(self._session).auto_update_challenge_progress(
                    user_id, ChallengeEvent.BADGE_EARNED
                )
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="challenge_progress").inc()
            logger.exception("badge_challenge_progress_failed", user_id=user_id)

    async def _earned_badge_ids(self, user_id: str) -> set[str]:
        result = await self._session.execute(
            select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
        )
        return set(result.scalars().all())

    async def _load_courses(self, user_id: str) -> list[Course]:
        result = await self._session.execute(
            select(Course)
            .where(Course.user_id == user_id, Course.is_deleted.is_(False))
            .options(selectinload(Course.batches).selectinload(Batch.projects))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
