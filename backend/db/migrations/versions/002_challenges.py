"""002 create challenge tables

Revision ID: 002_challenges
Revises: 001_initial
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "002_challenges"
down_revision: str | None = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ID = sa.String(36)
_TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "challenges",
        sa.Column("id", _ID, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("type", sa.String(20), nullable=False, server_default="STANDARD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT", index=True),
        sa.Column("criteria", sa.JSON(), nullable=False),
        sa.Column("rewards", sa.JSON()),
        sa.Column("course_id", _ID, sa.ForeignKey("courses.id")),
        sa.Column(
            "created_by", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("start_date", _TS),
        sa.Column("end_date", _TS),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )

    # one row per user and challenge, points and rank derived
    op.create_table(
        "challenge_participants",
        sa.Column("id", _ID, primary_key=True),
        sa.Column(
            "challenge_id", _ID, sa.ForeignKey("challenges.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column(
            "user_id", _ID, sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("course_id", _ID, sa.ForeignKey("courses.id"), index=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="JOINED"),
        sa.Column("progress", sa.JSON(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer()),
        sa.Column("joined_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", _TS),
        sa.UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participant"),
    )


def downgrade() -> None:
    op.drop_table("challenge_participants")
    op.drop_table("challenges")
