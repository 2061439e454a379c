"""Celery worker for background scoring jobs.

Runs the bulk group score sync, the global rank pass, challenge
activation and expiry, and the daily performance snapshots outside the
request path.

Docker Compose command: celery -A app.celery_worker worker --loglevel=info --concurrency=2
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import asdict
from typing import Any, TypeVar

from celery import Celery
from celery.schedules import crontab

from app.config import get_settings
from app.logging_config import get_logger, setup_logging

settings = get_settings()
setup_logging()
logger = get_logger(__name__)

T = TypeVar("T")

# Celery app instance
celery_app = Celery(
    "learnboard",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes hard limit
    task_soft_time_limit=1500,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="scoring",
    beat_schedule={
        "sync-group-scores-nightly": {
            "task": "app.celery_worker.sync_all_group_scores",
            "schedule": crontab(hour=2, minute=0),
        },
        "update-global-ranks-hourly": {
            "task": "app.celery_worker.update_global_ranks",
            "schedule": crontab(minute=15),
        },
        "performance-snapshots-daily": {
            "task": "app.celery_worker.create_performance_snapshots",
            "schedule": crontab(hour=3, minute=0),
        },
        "process-challenges": {
            "task": "app.celery_worker.process_challenges",
            "schedule": crontab(minute="*/10"),
        },
    },
)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine on a fresh loop; the engine is disposed with it."""

    async def runner() -> T:
        from db.session import close_db

        try:
            return await coro
        finally:
            await close_db()

    return asyncio.run(runner())


async def _sync_all_group_scores() -> dict:
    from db.session import session_scope
    from services.score_sync import ScoreSyncService

    async with session_scope() as session:
        result = await ScoreSyncService(session).sync_all_group_scores()
    return asdict(result)


async def _update_global_ranks() -> int:
    import redis.asyncio as aioredis

    from db.session import session_scope
    from services.analytics import AnalyticsService
    from services.global_scoring import GlobalScoreCalculator

    async with session_scope() as session:
        ranked = await GlobalScoreCalculator(session).update_global_ranks()

    # Ranks are committed; drop the cached platform view that embeds them
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await AnalyticsService(session, redis).invalidate_global_analytics()
    except aioredis.RedisError:
        logger.warning("global_analytics_invalidation_failed", exc_info=True)
    finally:
        await redis.aclose()
    return ranked


async def _process_challenges() -> dict:
    from db.session import session_scope
    from services.challenges import ChallengeService

    async with session_scope() as session:
        service = ChallengeService(session)
        activated = await service.auto_activate_challenges()
        expired = await service.expire_challenges()
    return {"activated": activated, "expired": expired}


async def _create_performance_snapshots() -> int:
    from sqlalchemy import select

    from db.models import Score
    from db.session import session_scope
    from services.performance import PerformanceService

    async with session_scope() as session:
        user_ids = (await session.execute(select(Score.user_id))).scalars().all()
        service = PerformanceService(session)
        created = 0
        for user_id in user_ids:
            if await service.create_performance_snapshot(user_id) is not None:
                created += 1
    return created


@celery_app.task(
    bind=True,
    name="app.celery_worker.sync_all_group_scores",
    max_retries=2,
    default_retry_delay=60,
)
def sync_all_group_scores(self) -> dict:
    """Recompute every active group score of every scored user."""
    try:
        result = _run(_sync_all_group_scores())
    except Exception as exc:
        logger.exception("group_score_sync_task_failed")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc)
        return {"status": "failed"}
    logger.info("group_score_sync_task_done", users=result["users_processed"])
    return {"status": "completed", **result}


@celery_app.task(name="app.celery_worker.update_global_ranks")
def update_global_ranks() -> dict:
    ranked = _run(_update_global_ranks())
    logger.info("global_rank_task_done", ranked=ranked)
    return {"status": "completed", "ranked": ranked}


@celery_app.task(name="app.celery_worker.create_performance_snapshots")
def create_performance_snapshots() -> dict:
    created = _run(_create_performance_snapshots())
    logger.info("performance_snapshot_task_done", created=created)
    return {"status": "completed", "created": created}


@celery_app.task(name="app.celery_worker.process_challenges")
def process_challenges() -> dict:
    """Activate due challenges and close expired ones."""
    result = _run(_process_challenges())
    logger.info("challenge_processing_task_done", **result)
    return {"status": "completed", **result}
