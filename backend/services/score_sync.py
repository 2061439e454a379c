"""Bulk group score resynchronisation.

Recomputes group scores for one user or for every scored user with an
active membership. Each group is synced in its own savepoint; a failing
group is rolled back, recorded and skipped while the rest carry on.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.logging_config import get_logger
from db.models import GroupMembership, Score
from services.group_scoring import GroupScoreCalculator
from services.groups import GroupService

logger = get_logger(__name__)


@dataclass
class SyncResult:
    synced: int = 0
    created: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class BulkSyncResult:
    users_processed: int = 0
    total_synced: int = 0
    total_created: int = 0
    errors: list[str] = field(default_factory=list)


class ScoreSyncService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._calculator = GroupScoreCalculator(session)

    async def sync_user_group_scores(self, user_id: str) -> SyncResult:
        result = SyncResult()
        group_ids = await GroupService(self._session).active_group_ids(user_id)

        for group_id in group_ids:
            try:
                async with self._session.begin_nested():
                    existed = (
                        await self._calculator.get_group_score(user_id, group_id) is not None
                    )
                    await self._calculator.update_group_score(user_id, group_id)
            except Exception as e:
                message = f"Failed to sync group {group_id}: {e}"
                result.errors.append(message)
                logger.exception("group_score_sync_failed", user_id=user_id, group_id=group_id)
                continue

            if existed:
                result.synced += 1
            else:
                result.created += 1

        logger.info(
            "user_group_scores_synced",
            user_id=user_id,
            synced=result.synced,
            created=result.created,
            errors=len(result.errors),
        )
        return result

    async def sync_all_group_scores(self) -> BulkSyncResult:
        """Sync every user holding a Score row and an active membership."""
        bulk = BulkSyncResult()
        has_membership = exists().where(
            GroupMembership.user_id == Score.user_id,
            GroupMembership.left_at.is_(None),
        )
        rows = await self._session.execute(select(Score.user_id).where(has_membership))
        user_ids = list(rows.scalars().all())

        for user_id in user_ids:
            user_result = await self.sync_user_group_scores(user_id)
            bulk.users_processed += 1
            bulk.total_synced += user_result.synced
            bulk.total_created += user_result.created
            bulk.errors.extend(user_result.errors)

        logger.info(
            "all_group_scores_synced",
            users=bulk.users_processed,
            synced=bulk.total_synced,
            created=bulk.total_created,
            errors=len(bulk.errors),
        )
        return bulk

