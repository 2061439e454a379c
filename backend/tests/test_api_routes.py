"""Tests for the v1 HTTP routes."""

import fakeredis.aioredis
import pytest
from sqlalchemy import select

from app.dependencies import get_redis, recalculate_rate_limiter
from db.models import GroupType, Score


def caller(user_id: str, admin_key: str | None = None) -> dict[str, str]:
    headers = {"X-User-ID": user_id}
    if admin_key:
        headers["X-Admin-Key"] = admin_key
    return headers


@pytest.mark.asyncio
class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
class TestIdentity:
    async def test_missing_user_header(self, client):
        response = await client.post("/api/v1/scores/recalculate", json={})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_other_users_data_is_forbidden(self, client, session, seed):
        user = await seed.user()
        await session.commit()

        response = await client.get(
            f"/api/v1/analytics/user/{user.id}", headers=caller("someone-else")
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    async def test_admin_may_read_other_users(self, client, session, seed, admin_key):
        user = await seed.user(final_score=12)
        await session.commit()

        response = await client.get(
            f"/api/v1/analytics/user/{user.id}", headers=caller("ops", admin_key)
        )

        assert response.status_code == 200
        assert response.json()["data"]["score"]["final_score"] == 12

    async def test_wrong_admin_key(self, client, admin_key):
        response = await client.post(
            "/api/v1/categories/init", headers=caller("ops", "not-the-key")
        )
        assert response.status_code == 403


@pytest.mark.asyncio
class TestScoreRoutes:
    async def test_recalculate_scores(self, client, session, seed):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)
        await seed.course(user, group=group, batches=[[("completed", 80), ("completed", 90)]])
        await session.commit()

        response = await client.post(
            "/api/v1/scores/recalculate", json={}, headers=caller(user.id)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["groups_recalculated"] == 1
        assert body["data"]["group_scores"][0]["final_score"] == 249
        assert body["data"]["global"]["final_score"] == 149

        session.expire_all()
        score = (
            await session.execute(select(Score).where(Score.user_id == user.id))
        ).scalar_one()
        assert score.final_score == 149

    async def test_recalculate_unknown_group(self, client, session, seed):
        user = await seed.user()
        await session.commit()

        response = await client.post(
            "/api/v1/scores/recalculate",
            json={"group_id": "missing"},
            headers=caller(user.id),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "GROUP_NOT_FOUND"

    async def test_recalculate_is_rate_limited(self, client, session, seed, monkeypatch):
        user = await seed.user()
        await session.commit()
        monkeypatch.setattr(recalculate_rate_limiter, "max_requests", 1)

        first = await client.post("/api/v1/scores/recalculate", json={}, headers=caller(user.id))
        second = await client.post("/api/v1/scores/recalculate", json={}, headers=caller(user.id))

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    async def test_bulk_sync_requires_admin(self, client):
        response = await client.post(
            "/api/v1/scores/sync", json={"all_users": True}, headers=caller("u1")
        )
        assert response.status_code == 403

    async def test_bulk_sync_as_admin(self, client, session, seed, admin_key):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)
        await session.commit()

        response = await client.post(
            "/api/v1/scores/sync", json={"all_users": True}, headers=caller("ops", admin_key)
        )

        assert response.status_code == 200
        assert response.json()["data"]["users_processed"] == 1
        assert response.json()["data"]["total_created"] == 1

    async def test_get_score(self, client, session, seed):
        user = await seed.user(final_score=40, rank=2)
        await session.commit()

        response = await client.get(f"/api/v1/scores/{user.id}")

        data = response.json()["data"]
        assert data["final_score"] == 40
        assert data["rank"] == 2
        assert "breakdown" in data

    async def test_leaderboard_orders_by_rank(self, client, session, seed):
        second = await seed.user(final_score=10, rank=2)
        first = await seed.user(final_score=20, rank=1)
        unranked = await seed.user(final_score=0)
        await session.commit()

        response = await client.get("/api/v1/leaderboard", params={"page_size": 10})

        ids = [entry["user_id"] for entry in response.json()["data"]]
        assert ids == [first.id, second.id, unranked.id]

    async def test_group_leaderboard(self, client, session, seed):
        group = await seed.group()
        a, b = await seed.user(), await seed.user()
        await seed.member(a, group)
        await seed.member(b, group)
        await session.commit()
        await client.post(f"/api/v1/groups/{group.id}/join", headers=caller(a.id))

        response = await client.get(f"/api/v1/groups/{group.id}/leaderboard")

        assert response.status_code == 200
        assert response.json()["meta"]["group_name"] == group.name
        assert [e["user_id"] for e in response.json()["data"]] == [a.id]


@pytest.mark.asyncio
class TestGroupRoutes:
    async def test_join_and_leave(self, client, session, seed):
        user = await seed.user()
        group = await seed.group()
        await session.commit()

        joined = await client.post(f"/api/v1/groups/{group.id}/join", headers=caller(user.id))
        left = await client.post(f"/api/v1/groups/{group.id}/leave", headers=caller(user.id))
        again = await client.post(f"/api/v1/groups/{group.id}/leave", headers=caller(user.id))

        assert joined.status_code == 200
        assert joined.json()["data"]["rank"] == 1
        assert joined.json()["meta"]["global_score_refreshed"] is True
        assert left.json()["data"] == {"status": "left"}
        assert again.status_code == 404

    async def test_categories(self, client, admin_key):
        created = await client.post("/api/v1/categories/init", headers=caller("ops", admin_key))
        listed = await client.get("/api/v1/categories")

        assert created.json()["data"] == {"initialized": 8}
        assert listed.json()["meta"]["count"] == 8


@pytest.mark.asyncio
class TestCourseRoutes:
    async def test_course_lifecycle(self, client, session, seed):
        user = await seed.user()
        group = await seed.group()
        await seed.member(user, group)
        await session.commit()
        draft = {
            "title": "Python backend",
            "group_id": group.id,
            "batches": [{"title": "Basics", "projects": [{"title": "CLI"}]}],
        }

        created = await client.post("/api/v1/courses", json=draft, headers=caller(user.id))
        assert created.status_code == 201
        course = created.json()["data"]
        project_id = course["batches"][0]["projects"][0]["id"]

        updated = await client.patch(
            f"/api/v1/projects/{project_id}",
            json={"status": "completed", "ai_evaluation_score": 100},
            headers=caller(user.id),
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["status"] == "completed"

        board = await client.get(f"/api/v1/groups/{group.id}/leaderboard")
        # 5 + 200 + 3 + 8 + 10 + 5
        assert board.json()["data"][0]["final_score"] == 231

        deleted = await client.delete(f"/api/v1/courses/{course['id']}", headers=caller(user.id))
        assert deleted.json()["data"] == {"id": course["id"], "deleted": True}

    async def test_sector_must_be_category(self, client, session, seed):
        user = await seed.user()
        custom = await seed.group()
        await session.commit()

        response = await client.post(
            "/api/v1/courses",
            json={"title": "x", "sector_id": custom.id},
            headers=caller(user.id),
        )
        assert response.status_code == 404

    async def test_only_owner_updates_project(self, client, session, seed):
        owner = await seed.user()
        course = await seed.course(owner, batches=[[("not started", None)]])
        project_id = course.batches[0].projects[0].id
        await session.commit()

        response = await client.patch(
            f"/api/v1/projects/{project_id}",
            json={"status": "completed"},
            headers=caller("intruder"),
        )
        assert response.status_code == 403

    async def test_invalid_ai_score_rejected(self, client, session, seed):
        owner = await seed.user()
        course = await seed.course(owner, batches=[[("completed", None)]])
        project_id = course.batches[0].projects[0].id
        await session.commit()

        response = await client.patch(
            f"/api/v1/projects/{project_id}",
            json={"ai_evaluation_score": 150},
            headers=caller(owner.id),
        )
        assert response.status_code == 422

    async def test_mutations_proceed_while_redis_is_down(self, app, client, session, seed):
        server = fakeredis.FakeServer()
        server.connected = False
        app.dependency_overrides[get_redis] = lambda: fakeredis.aioredis.FakeRedis(server=server)
        owner = await seed.user()
        course = await seed.course(owner, batches=[[("not started", None)]])
        project_id = course.batches[0].projects[0].id
        await session.commit()

        response = await client.patch(
            f"/api/v1/projects/{project_id}",
            json={"status": "in progress"},
            headers=caller(owner.id),
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "in progress"


@pytest.mark.asyncio
class TestAnalyticsAndBadgeRoutes:
    async def test_global_analytics_admin_only(self, client, session, seed, admin_key):
        await seed.user(final_score=5)
        await session.commit()

        denied = await client.get("/api/v1/analytics/global", headers=caller("u1"))
        allowed = await client.get("/api/v1/analytics/global", headers=caller("ops", admin_key))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["data"]["total_users"] == 1

    async def test_global_analytics_refresh_drops_cache(self, client, session, seed, admin_key):
        await seed.user()
        await session.commit()
        headers = caller("ops", admin_key)
        await client.get("/api/v1/analytics/global", headers=headers)
        await seed.user()
        await session.commit()

        cached = await client.get("/api/v1/analytics/global", headers=headers)
        refreshed = await client.get(
            "/api/v1/analytics/global", params={"refresh": "true"}, headers=headers
        )

        assert cached.json()["data"]["total_users"] == 1
        assert refreshed.json()["data"]["total_users"] == 2

    async def test_sector_analytics(self, client, session, seed):
        sector = await seed.group("Game Development", GroupType.CATEGORY)
        await session.commit()

        response = await client.get(f"/api/v1/analytics/sector/{sector.id}")

        assert response.status_code == 200
        assert response.json()["data"]["group_name"] == "Game Development"

    async def test_badge_check_and_listing(self, client, session, seed, admin_key):
        user = await seed.user(commits=120)
        await session.commit()
        await client.post("/api/v1/badges/init", headers=caller("ops", admin_key))

        checked = await client.post(
            f"/api/v1/badges/check/{user.id}",
            json={"force_refresh": True},
            headers=caller(user.id),
        )
        listed = await client.get(f"/api/v1/badges/user/{user.id}")

        assert checked.status_code == 200
        assert len(checked.json()["data"]["awarded_badges"]) == 2
        assert {b["name"] for b in listed.json()["data"]} == {"Welcome!", "100 Commits"}

    async def test_performance_snapshot_without_score(self, client, session, seed):
        user = await seed.user(with_score=False)
        await session.commit()

        response = await client.post(
            f"/api/v1/performance/{user.id}/snapshot", headers=caller(user.id)
        )
        assert response.status_code == 404


@pytest.mark.asyncio
class TestChallengeRoutes:
    async def test_challenge_lifecycle(self, client, session, seed):
        creator, player = await seed.user(), await seed.user()
        await session.commit()

        created = await client.post(
            "/api/v1/challenges",
            json={"name": "Three in a row", "criteria": {"projectsCompleted": 3}},
            headers=caller(creator.id),
        )
        challenge_id = created.json()["data"]["id"]
        forbidden = await client.post(
            f"/api/v1/challenges/{challenge_id}/activate", headers=caller(player.id)
        )
        activated = await client.post(
            f"/api/v1/challenges/{challenge_id}/activate", headers=caller(creator.id)
        )
        joined = await client.post(
            f"/api/v1/challenges/{challenge_id}/join", json={}, headers=caller(player.id)
        )
        progressed = await client.post(
            f"/api/v1/challenges/{challenge_id}/progress",
            json={"progress": {"projectsCompleted": 3}},
            headers=caller(player.id),
        )
        viewed = await client.get(
            f"/api/v1/challenges/{challenge_id}/progress/{player.id}", headers=caller(creator.id)
        )
        board = await client.get(f"/api/v1/challenges/{challenge_id}/leaderboard")

        assert created.status_code == 201
        assert created.json()["data"]["status"] == "DRAFT"
        assert forbidden.status_code == 403
        assert activated.json()["data"]["status"] == "ACTIVE"
        assert joined.json()["data"]["status"] == "IN_PROGRESS"
        assert progressed.json()["data"]["status"] == "COMPLETED"
        assert viewed.json()["meta"]["criteria_met"] is True
        assert [row["user_id"] for row in board.json()["data"]] == [player.id]
        assert board.json()["data"][0]["rank"] == 1

    async def test_unknown_criteria_rejected(self, client):
        response = await client.post(
            "/api/v1/challenges",
            json={"name": "Odd", "criteria": {"linesOfCode": 1000}},
            headers=caller("u1"),
        )
        assert response.status_code == 422
        assert response.json()["error"]["details"]["unknown"] == ["linesOfCode"]

    async def test_progress_of_stranger_is_forbidden(self, client, session, seed):
        creator, player = await seed.user(), await seed.user()
        await session.commit()
        created = await client.post(
            "/api/v1/challenges", json={"name": "Solo"}, headers=caller(creator.id)
        )
        challenge_id = created.json()["data"]["id"]
        await client.post(
            f"/api/v1/challenges/{challenge_id}/join", json={}, headers=caller(player.id)
        )

        response = await client.get(
            f"/api/v1/challenges/{challenge_id}/progress/{player.id}", headers=caller("nosy")
        )

        assert response.status_code == 403

    async def test_missing_challenge(self, client):
        response = await client.get("/api/v1/challenges/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CHALLENGE_NOT_FOUND"
