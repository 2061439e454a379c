"""Challenge Service.

A challenge is a set of counter goals, e.g. ``{"projectsCompleted": 3,
"streakDays": 7}``. Participants accumulate progress towards every goal;
once all are met the participation completes and any reward badge is
granted. Progress advances from in-app events (project or course
completion, badges) and from the GitHub counters refreshed with the global
score.

Challenges attached to a course also rank their participants by points,
the rounded sum of AI evaluations in the course each participant enrolled
with. Ranks use competition order (1, 1, 3) over points desc, completion
time asc and join time asc. Failed and departed participants are unranked.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.exceptions import (
    ChallengeNotFoundError,
    CourseNotFoundError,
    ForbiddenError,
    NotChallengeParticipantError,
    ValidationError,
)
from app.logging_config import get_logger
from app.metrics import CHALLENGES_COMPLETED, RANK_UPDATES, SIDE_EFFECT_FAILURES
from db.models import (
    Batch,
    Challenge,
    ChallengeParticipant,
    ChallengeStatus,
    ChallengeType,
    Course,
    ParticipantStatus,
    Score,
    User,
)
from services.global_scoring import as_utc
from services.group_scoring import round_half_up

logger = get_logger(__name__)

CHALLENGE_CRITERIA = (
    "projectsCompleted",
    "coursesCompleted",
    "badgesEarned",
    "streakDays",
    "commits",
    "pullRequests",
)

OPEN_STATUSES = (ParticipantStatus.JOINED.value, ParticipantStatus.IN_PROGRESS.value)
RANKED_STATUSES = OPEN_STATUSES + (ParticipantStatus.COMPLETED.value,)


class ChallengeEvent(str, Enum):
    PROJECT_COMPLETED = "PROJECT_COMPLETED"
    COURSE_COMPLETED = "COURSE_COMPLETED"
    BADGE_EARNED = "BADGE_EARNED"
    STREAK_UPDATED = "STREAK_UPDATED"


# Events that bump a counter by one
EVENT_COUNTERS = {
    ChallengeEvent.PROJECT_COMPLETED: "projectsCompleted",
    ChallengeEvent.COURSE_COMPLETED: "coursesCompleted",
    ChallengeEvent.BADGE_EARNED: "badgesEarned",
}

# Counters copied from the Score row on STREAK_UPDATED
SCORE_COUNTERS = {
    "streakDays": "current_streak",
    "commits": "commits",
    "pullRequests": "pull_requests",
}


class ChallengeDraft(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    type: ChallengeType = ChallengeType.STANDARD
    criteria: dict[str, int] = Field(default_factory=dict)
    rewards: dict[str, Any] | None = None
    course_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class ChallengeStanding(BaseModel):
    rank: int | None
    user_id: str
    user_name: str
    name: str
    avatar: str | None = None
    points: int
    progress: dict[str, Any]
    status: str
    completed_at: datetime | None = None
    joined_at: datetime


def validate_counters(values: dict[str, Any], label: str) -> None:
    unknown = sorted(set(values) - set(CHALLENGE_CRITERIA))
    if unknown:
        raise ValidationError(
            f"Unknown {label}", details={"unknown": unknown, "allowed": list(CHALLENGE_CRITERIA)}
        )
    negative = sorted(k for k, v in values.items() if not isinstance(v, int) or v < 0)
    if negative:
        raise ValidationError(
            f"{label.capitalize()} must be non-negative integers", details={"invalid": negative}
        )


def criteria_met(criteria: dict[str, Any], progress: dict[str, Any]) -> bool:
    return all(
        (progress.get(key) or 0) >= threshold
        for key, threshold in criteria.items()
        if key in CHALLENGE_CRITERIA
    )


def competition_ranks(points: Sequence[int]) -> list[int]:
    """Ranks for points sorted descending; ties share a rank, the next skips."""
    ranks: list[int] = []
    for index, value in enumerate(points):
        if index and value == points[index - 1]:
            ranks.append(ranks[-1])
        else:
            ranks.append(index + 1)
    return ranks


def _standing_order(participant: ChallengeParticipant) -> tuple:
    completed = as_utc(participant.completed_at) if participant.completed_at else None
    return (
        -participant.points,
        completed is None,
        completed or datetime.min.replace(tzinfo=UTC),
        as_utc(participant.joined_at),
    )


class ChallengeService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_challenge(self, creator_id: str, draft: ChallengeDraft) -> Challenge:
        validate_counters(draft.criteria, "criteria")
        if draft.type == ChallengeType.TIME_LIMITED and draft.end_date is None:
            raise ValidationError("Time-limited challenges need an end date")
        if draft.start_date and draft.end_date and draft.end_date <= draft.start_date:
            raise ValidationError("End date must be after the start date")
        if draft.course_id:
            await self._get_course(draft.course_id)

        challenge = Challenge(
            name=draft.name,
            description=draft.description,
            type=draft.type.value,
            status=ChallengeStatus.DRAFT.value,
            criteria=dict(draft.criteria),
            rewards=draft.rewards,
            course_id=draft.course_id,
            created_by=creator_id,
            start_date=draft.start_date,
            end_date=draft.end_date,
        )
        self._session.add(challenge)
        await self._session.flush()
        logger.info("challenge_created", challenge_id=challenge.id, creator_id=creator_id)
        return challenge

    async def get_challenge(self, challenge_id: str) -> Challenge:
        challenge = await self._session.get(Challenge, challenge_id)
        if challenge is None or challenge.is_deleted:
            raise ChallengeNotFoundError()
        return challenge

    async def activate_challenge(self, challenge_id: str) -> Challenge:
        challenge = await self.get_challenge(challenge_id)
        if challenge.status != ChallengeStatus.DRAFT.value:
            raise ValidationError("Only draft challenges can be activated")
        await self._activate(challenge)
        return challenge

    async def join_challenge(
        self, challenge_id: str, user_id: str, course_id: str | None = None
    ) -> ChallengeParticipant:
        """Join, or rejoin after leaving. Course challenges need the user's course."""
        challenge = await self.get_challenge(challenge_id)
        if challenge.status == ChallengeStatus.COMPLETED.value:
            raise ValidationError("Challenge has already ended")
        if challenge.course_id:
            if not course_id:
                raise ValidationError("Joining this challenge requires a course_id")
            course = await self._get_course(course_id)
            if course.user_id != user_id:
                raise ForbiddenError("Cannot join with another user's course")

        status = (
            ParticipantStatus.IN_PROGRESS.value
            if challenge.status == ChallengeStatus.ACTIVE.value
            else ParticipantStatus.JOINED.value
        )
        participant = await self._find_participant(challenge_id, user_id)
        if participant is None:
            participant = ChallengeParticipant(
                challenge_id=challenge_id, user_id=user_id, progress={}
            )
            self._session.add(participant)
        elif participant.status != ParticipantStatus.LEFT.value:
            raise ValidationError("Already participating in this challenge")

        participant.status = status
        participant.course_id = course_id if challenge.course_id else None
        participant.progress = {}
        participant.completed_at = None
        participant.joined_at = datetime.now(UTC)
        await self._session.flush()

        if challenge.course_id:
            participant.points = await self.calculate_challenge_points(user_id, challenge_id)
        await self.update_challenge_rankings(challenge_id)
        logger.info("challenge_joined", challenge_id=challenge_id, user_id=user_id)
        return participant

    async def leave_challenge(self, challenge_id: str, user_id: str) -> None:
        participant = await self.get_participant(challenge_id, user_id)
        participant.status = ParticipantStatus.LEFT.value
        participant.rank = None
        await self._session.flush()
        await self.update_challenge_rankings(challenge_id)
        logger.info("challenge_left", challenge_id=challenge_id, user_id=user_id)

    async def get_participant(self, challenge_id: str, user_id: str) -> ChallengeParticipant:
        await self.get_challenge(challenge_id)
        participant = await self._find_participant(challenge_id, user_id)
        if participant is None or participant.status == ParticipantStatus.LEFT.value:
            raise NotChallengeParticipantError()
        return participant

    async def check_challenge_completion(self, challenge_id: str, user_id: str) -> bool:
        """True when every criterion is met. Expired time-limited entries fail."""
        challenge = await self._session.get(Challenge, challenge_id)
        if challenge is None or challenge.status != ChallengeStatus.ACTIVE.value:
            return False
        participant = await self._find_participant(challenge_id, user_id)
        if participant is None:
            return False
        if participant.status == ParticipantStatus.COMPLETED.value:
            return True
        if participant.status not in OPEN_STATUSES:
            return False

        if (
            challenge.type == ChallengeType.TIME_LIMITED.value
            and challenge.end_date is not None
            and datetime.now(UTC) > as_utc(challenge.end_date)
        ):
            participant.status = ParticipantStatus.FAILED.value
            participant.rank = None
            await self._session.flush()
            logger.info("challenge_expired_for_user", challenge_id=challenge_id, user_id=user_id)
            return False

        return criteria_met(challenge.criteria or {}, participant.progress or {})

    async def update_challenge_progress(
        self, challenge_id: str, user_id: str, updates: dict[str, int]
    ) -> ChallengeParticipant:
        """Merge counter values into the participant's progress."""
        validate_counters(updates, "progress")
        participant = await self.get_participant(challenge_id, user_id)

        participant.progress = {**(participant.progress or {}), **updates}
        if participant.status == ParticipantStatus.JOINED.value:
            participant.status = ParticipantStatus.IN_PROGRESS.value
        await self._session.flush()

        if (
            participant.status != ParticipantStatus.COMPLETED.value
            and await self.check_challenge_completion(challenge_id, user_id)
        ):
            participant.status = ParticipantStatus.COMPLETED.value
            participant.completed_at = datetime.now(UTC)
            await self._session.flush()
            CHALLENGES_COMPLETED.inc()
            logger.info("challenge_completed", challenge_id=challenge_id, user_id=user_id)
            await self._grant_rewards(challenge_id, user_id)

        return participant

    async def auto_update_challenge_progress(self, user_id: str, event: ChallengeEvent) -> int:
        """Advance every open participation of the user. Returns how many moved."""
        result = await self._session.execute(
            select(ChallengeParticipant, Challenge)
            .join(Challenge, Challenge.id == ChallengeParticipant.challenge_id)
            .where(
                ChallengeParticipant.user_id == user_id,
                ChallengeParticipant.status.in_(OPEN_STATUSES),
                Challenge.status == ChallengeStatus.ACTIVE.value,
                Challenge.is_deleted.is_(False),
            )
        )
        rows = result.all()
        if not rows:
            return 0

        score: Score | None = None
        if event == ChallengeEvent.STREAK_UPDATED:
            score_result = await self._session.execute(
                select(Score).where(Score.user_id == user_id)
            )
            score = score_result.scalar_one_or_none()

        updated = 0
        for participant, challenge in rows:
            criteria = challenge.criteria or {}
            progress = participant.progress or {}
            updates: dict[str, int] = {}

            counter = EVENT_COUNTERS.get(event)
            if counter and counter in criteria:
                updates[counter] = int(progress.get(counter) or 0) + 1
            if score is not None:
                for key, column in SCORE_COUNTERS.items():
                    if key in criteria:
                        updates[key] = int(getattr(score, column) or 0)

            if not updates:
                continue
            await self.update_challenge_progress(challenge.id, user_id, updates)
            updated += 1

            if challenge.course_id:
                try:
                    async with self._session.begin_nested():
                        participant.points = await self.calculate_challenge_points(
                            user_id, challenge.id
                        )
                        await self.update_challenge_rankings(challenge.id)
                except Exception:
                    SIDE_EFFECT_FAILURES.labels(effect="challenge_points").inc()
                    logger.exception(
                        "challenge_points_failed", challenge_id=challenge.id, user_id=user_id
                    )

        logger.debug(
            "challenge_progress_advanced", user_id=user_id, event=event.value, updated=updated
        )
        return updated

    async def calculate_challenge_points(self, user_id: str, challenge_id: str) -> int:
        """Rounded sum of AI evaluations in the participant's enrolled course."""
        participant = await self._find_participant(challenge_id, user_id)
        if participant is None or participant.course_id is None:
            return 0
        result = await self._session.execute(
            select(Course)
            .where(Course.id == participant.course_id, Course.is_deleted.is_(False))
            .options(selectinload(Course.batches).selectinload(Batch.projects))
            .execution_options(populate_existing=True)
        )
        course = result.scalar_one_or_none()
        if course is None:
            return 0
        return round_half_up(
            sum(
                p.ai_evaluation_score
                for b in course.batches
                for p in b.projects
                if p.ai_evaluation_score is not None
            )
        )

    async def refresh_course_points(self, course_id: str) -> int:
        """Recompute points wherever this course is a challenge entry."""
        await self._session.flush()
        result = await self._session.execute(
            select(ChallengeParticipant).where(
                ChallengeParticipant.course_id == course_id,
                ChallengeParticipant.status.in_(RANKED_STATUSES),
            )
        )
        participants = result.scalars().all()
        for participant in participants:
            participant.points = await self.calculate_challenge_points(
                participant.user_id, participant.challenge_id
            )
        for challenge_id in {p.challenge_id for p in participants}:
            await self.update_challenge_rankings(challenge_id)
        return len(participants)

    async def update_challenge_rankings(self, challenge_id: str) -> int:
        await self._session.flush()
        result = await self._session.execute(
            select(ChallengeParticipant).where(ChallengeParticipant.challenge_id == challenge_id)
        )
        participants = result.scalars().all()
        ranked = sorted(
            (p for p in participants if p.status in RANKED_STATUSES), key=_standing_order
        )
        for participant, rank in zip(ranked, competition_ranks([p.points for p in ranked])):
            participant.rank = rank
        for participant in participants:
            if participant.status not in RANKED_STATUSES:
                participant.rank = None
        await self._session.flush()

        RANK_UPDATES.labels(scope="challenge").inc()
        return len(ranked)

    async def get_challenge_leaderboard(self, challenge_id: str) -> list[ChallengeStanding]:
        """Ranked participants first, failed ones after them without a rank."""
        await self.get_challenge(challenge_id)
        result = await self._session.execute(
            select(ChallengeParticipant, User)
            .join(User, User.id == ChallengeParticipant.user_id)
            .where(
                ChallengeParticipant.challenge_id == challenge_id,
                ChallengeParticipant.status != ParticipantStatus.LEFT.value,
            )
        )
        rows = sorted(result.all(), key=lambda row: _standing_order(row[0]))
        active = [row for row in rows if row[0].status != ParticipantStatus.FAILED.value]
        failed = [row for row in rows if row[0].status == ParticipantStatus.FAILED.value]

        ranks = competition_ranks([p.points for p, _ in active]) + [None] * len(failed)
        return [
            ChallengeStanding(
                rank=rank,
                user_id=user.id,
                user_name=user.user_name,
                name=user.display_name,
                avatar=user.avatar,
                points=participant.points,
                progress=participant.progress or {},
                status=participant.status,
                completed_at=participant.completed_at,
                joined_at=participant.joined_at,
            )
            for (participant, user), rank in zip(active + failed, ranks)
        ]

    async def auto_activate_challenges(self, now: datetime | None = None) -> int:
        """Activate drafts whose start date has passed."""
        now = now or datetime.now(UTC)
        result = await self._session.execute(
            select(Challenge).where(
                Challenge.status == ChallengeStatus.DRAFT.value,
                Challenge.start_date.is_not(None),
                Challenge.is_deleted.is_(False),
            )
        )
        due = [c for c in result.scalars().all() if as_utc(c.start_date) <= now]
        for challenge in due:
            await self._activate(challenge)
        return len(due)

    async def expire_challenges(self, now: datetime | None = None) -> int:
        """Close challenges past their end date; unfinished entries fail."""
        now = now or datetime.now(UTC)
        result = await self._session.execute(
            select(Challenge).where(
                Challenge.status.in_(
                    [ChallengeStatus.DRAFT.value, ChallengeStatus.ACTIVE.value]
                ),
                Challenge.end_date.is_not(None),
                Challenge.is_deleted.is_(False),
            )
        )
        expired = [c for c in result.scalars().all() if as_utc(c.end_date) < now]
        for challenge in expired:
            challenge.status = ChallengeStatus.COMPLETED.value
            participants = await self._session.execute(
                select(ChallengeParticipant).where(
                    ChallengeParticipant.challenge_id == challenge.id,
                    ChallengeParticipant.status.in_(OPEN_STATUSES),
                )
            )
            for participant in participants.scalars().all():
                participant.status = ParticipantStatus.FAILED.value
            await self.update_challenge_rankings(challenge.id)
            logger.info("challenge_expired", challenge_id=challenge.id)
        return len(expired)

    async def _activate(self, challenge: Challenge) -> None:
        challenge.status = ChallengeStatus.ACTIVE.value
        result = await self._session.execute(
            select(ChallengeParticipant).where(
                ChallengeParticipant.challenge_id == challenge.id,
                ChallengeParticipant.status == ParticipantStatus.JOINED.value,
            )
        )
        for participant in result.scalars().all():
            participant.status = ParticipantStatus.IN_PROGRESS.value
        await self._session.flush()
        logger.info("challenge_activated", challenge_id=challenge.id)

    async def _grant_rewards(self, challenge_id: str, user_id: str) -> None:
        from services.badges import BadgeService

        challenge = await self._session.get(Challenge, challenge_id)
        badge_id = (challenge.rewards or {}).get("badgeId") if challenge else None
        if not badge_id:
            return
        try:
            async with self._session.begin_nested():
                await BadgeService(self._session).grant_badge(user_id, badge_id)
        except Exception:
            SIDE_EFFECT_FAILURES.labels(effect="challenge_reward").inc()
            logger.exception("challenge_reward_failed", challenge_id=challenge_id, user_id=user_id)

    async def _find_participant(
        self, challenge_id: str, user_id: str
    ) -> ChallengeParticipant | None:
        result = await self._session.execute(
            select(ChallengeParticipant).where(
                ChallengeParticipant.challenge_id == challenge_id,
                ChallengeParticipant.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _get_course(self, course_id: str) -> Course:
        course = await self._session.get(Course, course_id)
        if course is None or course.is_deleted:
            raise CourseNotFoundError()
        return course
