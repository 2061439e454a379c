"""Shared test fixtures for the Learnboard backend."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from itertools import count

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Environment, Settings, get_settings
from app.main import create_app
from db.models import (
    Base,
    Batch,
    Course,
    Group,
    GroupMembership,
    GroupScore,
    GroupType,
    Project,
    ProjectStatus,
    Score,
    User,
)

ADMIN_KEY = "test-admin-key"


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment=Environment.TESTING,
        debug=True,
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/15",
        admin_key=SecretStr(ADMIN_KEY),
        cors_origins=["http://localhost:3000"],
    )


@pytest.fixture
async def fake_redis() -> AsyncGenerator:
    """Provide a fake Redis instance for testing."""
    server = fakeredis.FakeServer()
    redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    yield redis
    await redis.aclose()


@pytest.fixture
async def engine():
    """In-memory SQLite database with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN, which breaks SAVEPOINT; emit it ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


class Seed:
    """Builds users, groups and course trees directly in the database."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._counter = count(1)

    async def user(self, with_score: bool = True, **score_fields) -> User:
        n = next(self._counter)
        user = User(user_name=f"user{n}", name=f"Test{n}", last_name="User")
        self.session.add(user)
        await self.session.flush()
        if with_score:
            self.session.add(Score(user_id=user.id, **score_fields))
            await self.session.flush()
        return user

    async def group(self, name: str | None = None, type: GroupType = GroupType.CUSTOM) -> Group:
        group = Group(name=name or f"group-{next(self._counter)}", type=type)
        self.session.add(group)
        await self.session.flush()
        return group

    async def member(self, user: User, group: Group, left: bool = False) -> GroupMembership:
        membership = GroupMembership(
            user_id=user.id,
            group_id=group.id,
            left_at=datetime.now(UTC) if left else None,
        )
        self.session.add(membership)
        await self.session.flush()
        return membership

    async def course(
        self,
        user: User,
        group: Group | None = None,
        sector: Group | None = None,
        batches: list[list[tuple[str, float | None]]] | None = None,
        status: str = ProjectStatus.IN_PROGRESS.value,
    ) -> Course:
        """A course whose batches are lists of (project status, ai score)."""
        course = Course(
            user_id=user.id,
            group_id=group.id if group else None,
            sector_id=sector.id if sector else None,
            title=f"course-{next(self._counter)}",
            status=status,
            batches=[
                Batch(
                    title=f"batch-{b}",
                    position=b,
                    projects=[
                        Project(
                            title=f"project-{b}-{p}",
                            position=p,
                            status=project_status,
                            ai_evaluation_score=ai_score,
                        )
                        for p, (project_status, ai_score) in enumerate(projects)
                    ],
                )
                for b, projects in enumerate(batches or [])
            ],
        )
        self.session.add(course)
        await self.session.flush()
        return course

    async def group_score(
        self,
        user: User,
        group: Group,
        final_score: int,
        updated: datetime | None = None,
    ) -> GroupScore:
        row = GroupScore(
            user_id=user.id,
            group_id=group.id,
            final_score=final_score,
            last_updated_date=updated or datetime.now(UTC),
        )
        self.session.add(row)
        await self.session.flush()
        return row


@pytest.fixture
def seed(session) -> Seed:
    return Seed(session)


@pytest.fixture
def admin_key(monkeypatch):
    """Configure the admin key through the environment."""
    monkeypatch.setenv("LB_ADMIN_KEY", ADMIN_KEY)
    get_settings.cache_clear()
    yield ADMIN_KEY
    get_settings.cache_clear()


@pytest.fixture
async def app(session_factory, fake_redis):
    """Application wired to the in-memory database and fake Redis."""
    from app.dependencies import get_redis
    from db.session import get_db_session

    application = create_app()

    async def override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db_session] = override_db_session
    application.dependency_overrides[get_redis] = lambda: fake_redis
    yield application


@pytest.fixture
async def client(app) -> AsyncGenerator:
    """Provide an async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
