"""001 create learning platform and scoring tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ID = sa.String(36)
_TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _ID, primary_key=True),
        sa.Column("user_name", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("avatar", sa.String(500)),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )

    # scores - GitHub counters plus the derived global score
    op.create_table(
        "scores",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("commits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pull_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issues", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reviews", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_active_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("contribution", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("github_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_score", sa.Integer(), nullable=False, server_default="0", index=True),
        sa.Column("rank", sa.Integer()),
        sa.Column("last_updated_date", _TS),
    )

    # groups - CUSTOM groups and CATEGORY groups (formerly sectors)
    op.create_table(
        "groups",
        sa.Column("id", _ID, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("icon", sa.String(16)),
        sa.Column(
            "type", sa.Enum("CUSTOM", "CATEGORY", name="group_type"),
            nullable=False, server_default="CUSTOM",
        ),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "group_memberships",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column(
            "group_id", _ID, sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("role", sa.String(20), nullable=False, server_default="MEMBER"),
        sa.Column("joined_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("left_at", _TS),
        sa.UniqueConstraint("user_id", "group_id", name="uq_membership_user_group"),
    )

    op.create_table(
        "group_scores",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column(
            "group_id", _ID, sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("courses_started", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_course_completion", sa.Float(), nullable=False, server_default="0"),
        sa.Column("projects_started", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("projects_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_ai_evaluation_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("final_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer()),
        sa.Column("last_updated_date", _TS, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "group_id", name="uq_group_score_user_group"),
    )
    op.create_index(
        "ix_group_scores_ranking",
        "group_scores",
        ["group_id", "final_score", "last_updated_date"],
    )

    op.create_table(
        "courses",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("group_id", _ID, sa.ForeignKey("groups.id"), index=True),
        sa.Column("sector_id", _ID, sa.ForeignKey("groups.id"), index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="not started"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "batches",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "course_id", _ID, sa.ForeignKey("courses.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "projects",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "batch_id", _ID, sa.ForeignKey("batches.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="not started"),
        sa.Column("ai_evaluation_score", sa.Float()),
        sa.Column("evaluated_at", _TS),
    )

    op.create_table(
        "badges",
        sa.Column("id", _ID, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("icon", sa.String(16)),
        sa.Column("category", sa.String(20), nullable=False, server_default="MILESTONE"),
        sa.Column("rarity", sa.String(20), nullable=False, server_default="COMMON"),
        sa.Column("criteria", sa.JSON(), nullable=False),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "user_badges",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column(
            "badge_id", _ID, sa.ForeignKey("badges.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("earned_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),
    )

    op.create_table(
        "performance_snapshots",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("snapshot_date", _TS, nullable=False, server_default=sa.func.now(), index=True),
        sa.Column("metrics", sa.JSON(), nullable=False),
    )

    op.create_table(
        "performance_comparisons",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "compared_user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("metrics", sa.JSON(), nullable=False),
        sa.Column("updated_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "compared_user_id", name="uq_comparison_pair"),
    )

    # daily_contributions - in-app activity per UTC day and type
    op.create_table(
        "daily_contributions",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("contribution_type", sa.String(40), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON()),
        sa.UniqueConstraint(
            "user_id", "date", "contribution_type", name="uq_daily_contribution"
        ),
    )


def downgrade() -> None:
    op.drop_table("daily_contributions")
    op.drop_table("performance_comparisons")
    op.drop_table("performance_snapshots")
    op.drop_table("user_badges")
    op.drop_table("badges")
    op.drop_table("projects")
    op.drop_table("batches")
    op.drop_table("courses")
    op.drop_index("ix_group_scores_ranking", table_name="group_scores")
    op.drop_table("group_scores")
    op.drop_table("group_memberships")
    op.drop_table("groups")
    op.drop_table("scores")
    op.drop_table("users")
    sa.Enum(name="group_type").drop(op.get_bind(), checkfirst=True)
