"""Tests for the background job wiring."""

from contextlib import asynccontextmanager
from unittest.mock import patch

import fakeredis.aioredis
import pytest
from sqlalchemy import select

from app.celery_worker import (
    _update_global_ranks,
    celery_app,
    process_challenges,
    sync_all_group_scores,
    update_global_ranks,
)
from db.models import Score
from services.analytics import GLOBAL_ANALYTICS_KEY


class TestBeatSchedule:
    def test_scheduled_tasks_are_registered(self):
        for entry in celery_app.conf.beat_schedule.values():
            assert entry["task"] in celery_app.tasks

    def test_default_queue(self):
        assert celery_app.conf.task_default_queue == "scoring"


class TestTasks:
    def test_update_global_ranks(self):
        with patch("app.celery_worker._run", return_value=12) as run:
            result = update_global_ranks.run()
        assert result == {"status": "completed", "ranked": 12}
        run.call_args.args[0].close()

    def test_sync_reports_counts(self):
        summary = {"users_processed": 3, "total_synced": 5, "total_created": 1, "errors": []}
        with patch("app.celery_worker._run", return_value=summary) as run:
            result = sync_all_group_scores.run()
        assert result["status"] == "completed"
        assert result["users_processed"] == 3
        run.call_args.args[0].close()

    def test_process_challenges(self):
        with patch("app.celery_worker._run", return_value={"activated": 2, "expired": 1}) as run:
            result = process_challenges.run()
        assert result == {"status": "completed", "activated": 2, "expired": 1}
        run.call_args.args[0].close()


class TestGlobalRankPass:
    @pytest.mark.asyncio
    async def test_rank_pass_drops_cached_analytics(self, session_factory, seed, session):
        await seed.user(final_score=10)
        await seed.user(final_score=30)
        await session.commit()

        server = fakeredis.FakeServer()
        cache = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
        await cache.set(GLOBAL_ANALYTICS_KEY, "{}")

        @asynccontextmanager
        async def scope():
            async with session_factory() as worker_session:
                yield worker_session
                await worker_session.commit()

        worker_redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
        with (
            patch("db.session.session_scope", scope),
            patch("redis.asyncio.from_url", return_value=worker_redis),
        ):
            ranked = await _update_global_ranks()

        assert ranked == 2
        assert await cache.get(GLOBAL_ANALYTICS_KEY) is None
        async with session_factory() as check:
            ranks = (
                await check.execute(select(Score.final_score, Score.rank).order_by(Score.rank))
            ).all()
        assert ranks == [(30, 1), (10, 2)]
        await cache.aclose()
