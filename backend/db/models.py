"""Database models for the learning platform.

Courses, batches and projects carry the learner's progress; Score,
GroupScore and the badge tables hold everything derived from it.
Sectors are Group rows of type CATEGORY, there is no separate sector schema.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class GroupType(str, Enum):
    """CUSTOM groups are user-made; CATEGORY groups replace the old sectors."""

    CUSTOM = "CUSTOM"
    CATEGORY = "CATEGORY"


class ProjectStatus(str, Enum):
    NOT_STARTED = "not started"
    IN_PROGRESS = "in progress"
    COMPLETED = "completed"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    avatar: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    score: Mapped[Score | None] = relationship(back_populates="user", uselist=False)
    courses: Mapped[list[Course]] = relationship(back_populates="user")
    group_memberships: Mapped[list[GroupMembership]] = relationship(back_populates="user")
    group_scores: Mapped[list[GroupScore]] = relationship(back_populates="user")
    user_badges: Mapped[list[UserBadge]] = relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        return f"{self.name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<User(id={self.id}, user_name={self.user_name})>"


class Score(Base):
    """Platform-wide score. GitHub counters are written by the GitHub sync."""

    __tablename__ = "scores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    commits: Mapped[int] = mapped_column(Integer, default=0)
    pull_requests: Mapped[int] = mapped_column(Integer, default=0)
    issues: Mapped[int] = mapped_column(Integer, default=0)
    reviews: Mapped[int] = mapped_column(Integer, default=0)
    total_active_days: Mapped[int] = mapped_column(Integer, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    contribution: Mapped[int] = mapped_column(Integer, default=0)
    github_score: Mapped[int] = mapped_column(Integer, default=0)
    final_score: Mapped[int] = mapped_column(Integer, default=0, index=True)
    rank: Mapped[int | None] = mapped_column(Integer)
    last_updated_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    user: Mapped[User] = relationship(back_populates="score")

    def __repr__(self) -> str:
        return f"<Score(user_id={self.user_id}, final={self.final_score}, rank={self.rank})>"


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    icon: Mapped[str | None] = mapped_column(String(16))
    type: Mapped[GroupType] = mapped_column(
        SAEnum(GroupType, name="group_type"), default=GroupType.CUSTOM, nullable=False
    )
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    members: Mapped[list[GroupMembership]] = relationship(back_populates="group")
    scores: Mapped[list[GroupScore]] = relationship(back_populates="group")

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name}, type={self.type})>"


class GroupMembership(Base):
    __tablename__ = "group_memberships"
    __table_args__ = (UniqueConstraint("user_id", "group_id", name="uq_membership_user_group"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), default="MEMBER")
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    user: Mapped[User] = relationship(back_populates="group_memberships")
    group: Mapped[Group] = relationship(back_populates="members")

    @property
    def is_active(self) -> bool:
        return self.left_at is None


class GroupScore(Base):
    """Per-user, per-group derived score. Recomputed from scratch on update."""

    __tablename__ = "group_scores"
    __table_args__ = (UniqueConstraint("user_id", "group_id", name="uq_group_score_user_group"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    courses_started: Mapped[int] = mapped_column(Integer, default=0)
    average_course_completion: Mapped[float] = mapped_column(Float, default=0.0)
    projects_started: Mapped[int] = mapped_column(Integer, default=0)
    projects_completed: Mapped[int] = mapped_column(Integer, default=0)
    total_ai_evaluation_score: Mapped[float] = mapped_column(Float, default=0.0)
    final_score: Mapped[int] = mapped_column(Integer, default=0)
    rank: Mapped[int | None] = mapped_column(Integer)
    last_updated_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    user: Mapped[User] = relationship(back_populates="group_scores")
    group: Mapped[Group] = relationship(back_populates="scores")

    def __repr__(self) -> str:
        return (
            f"<GroupScore(user_id={self.user_id}, group_id={self.group_id}, "
            f"final={self.final_score}, rank={self.rank})>"
        )


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    group_id: Mapped[str | None] = mapped_column(ForeignKey("groups.id"), index=True)
    sector_id: Mapped[str | None] = mapped_column(ForeignKey("groups.id"), index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ProjectStatus.NOT_STARTED.value)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    user: Mapped[User] = relationship(back_populates="courses")
    batches: Mapped[list[Batch]] = relationship(
        back_populates="course", order_by="Batch.position", cascade="all, delete-orphan"
    )

    @property
    def group_ids(self) -> list[str]:
        """Groups whose score this course feeds: its group and its category."""
        return [gid for gid in dict.fromkeys((self.group_id, self.sector_id)) if gid]


class Batch(Base):
    """A module of a course."""

    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)

    course: Mapped[Course] = relationship(back_populates="batches")
    projects: Mapped[list[Project]] = relationship(
        back_populates="batch", order_by="Project.position", cascade="all, delete-orphan"
    )


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=ProjectStatus.NOT_STARTED.value)
    ai_evaluation_score: Mapped[float | None] = mapped_column(Float)
    evaluated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    batch: Mapped[Batch] = relationship(back_populates="projects")


class Badge(Base):
    __tablename__ = "badges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    icon: Mapped[str | None] = mapped_column(String(16))
    category: Mapped[str] = mapped_column(String(20), default="MILESTONE")
    rarity: Mapped[str] = mapped_column(String(20), default="COMMON")
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class UserBadge(Base):
    __tablename__ = "user_badges"
    __table_args__ = (UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    badge_id: Mapped[str] = mapped_column(
        ForeignKey("badges.id", ondelete="CASCADE"), nullable=False
    )
    progress: Mapped[int] = mapped_column(Integer, default=0)
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    user: Mapped[User] = relationship(back_populates="user_badges")
    badge: Mapped[Badge] = relationship()


class PerformanceSnapshot(Base):
    __tablename__ = "performance_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    snapshot_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)


class PerformanceComparison(Base):
    __tablename__ = "performance_comparisons"
    __table_args__ = (
        UniqueConstraint("user_id", "compared_user_id", name="uq_comparison_pair"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    compared_user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class DailyContribution(Base):
    """In-app activity counter, one row per user, UTC day and type."""

    __tablename__ = "daily_contributions"
    __table_args__ = (
        UniqueConstraint("user_id", "date", "contribution_type", name="uq_daily_contribution"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day: Mapped[date] = mapped_column("date", Date, nullable=False)
    contribution_type: Mapped[str] = mapped_column(String(40), nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0)
    extra: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType)


class ChallengeType(str, Enum):
    STANDARD = "STANDARD"
    TIME_LIMITED = "TIME_LIMITED"


class ChallengeStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class ParticipantStatus(str, Enum):
    JOINED = "JOINED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    LEFT = "LEFT"


class Challenge(Base):
    """A goal over counters such as ``{"projectsCompleted": 3}``.

    When ``course_id`` is set, participants earn points from the AI
    evaluations of the course they enrolled with.
    """

    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(20), default=ChallengeType.STANDARD.value)
    status: Mapped[str] = mapped_column(
        String(20), default=ChallengeStatus.DRAFT.value, index=True
    )
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    rewards: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    course_id: Mapped[str | None] = mapped_column(ForeignKey("courses.id"))
    created_by: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    participants: Mapped[list[ChallengeParticipant]] = relationship(back_populates="challenge")

    def __repr__(self) -> str:
        return f"<Challenge(id={self.id}, name={self.name}, status={self.status})>"


class ChallengeParticipant(Base):
    __tablename__ = "challenge_participants"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participant"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    challenge_id: Mapped[str] = mapped_column(
        ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    course_id: Mapped[str | None] = mapped_column(ForeignKey("courses.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default=ParticipantStatus.JOINED.value)
    progress: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    points: Mapped[int] = mapped_column(Integer, default=0)
    rank: Mapped[int | None] = mapped_column(Integer)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    challenge: Mapped[Challenge] = relationship(back_populates="participants")
    user: Mapped[User] = relationship()
