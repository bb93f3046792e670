"""Shared test fixtures for the gamification engine.

Provides:
- In-memory async SQLite engine with all tables created per test
- Async database session
- A small factory for users, rules, tags, votes and daily metrics
"""
import os

# Set env vars BEFORE importing rulehub modules (config reads at import time)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SNAPSHOT_TIMEZONE", "UTC")

from datetime import date, datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from rulehub.core.database import enable_sqlite_savepoints  # noqa: E402
from rulehub.models import (  # noqa: E402
    Base,
    Rule,
    RuleMetricDaily,
    RuleStatus,
    Tag,
    User,
    Vote,
)
from rulehub.schemas.leaderboard import AuthorSummary, LeaderboardEntry  # noqa: E402


# Fixed "now" used across tests: Sunday 2026-10-18 12:00 UTC
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


class Factory:
    """Creates platform rows with sensible defaults."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def user(self, user_id: str = "user-1", **overrides) -> User:
        defaults = {
            "id": user_id,
            "handle": user_id,
            "display_name": user_id.replace("-", " ").title(),
            "avatar_url": None,
        }
        defaults.update(overrides)
        user = User(**defaults)
        self.db.add(user)
        await self.db.flush()
        return user

    async def tag(self, slug: str, name: str | None = None) -> Tag:
        tag = Tag(id=f"tag-{slug}", slug=slug, name=name or slug.title())
        self.db.add(tag)
        await self.db.flush()
        return tag

    async def rule(
        self,
        rule_id: str,
        author_id: str = "user-1",
        status: RuleStatus = RuleStatus.PUBLISHED,
        primary_model: str | None = None,
        tags: list[Tag] | None = None,
    ) -> Rule:
        rule = Rule(
            id=rule_id,
            slug=f"{rule_id}-slug",
            title=f"Rule {rule_id}",
            status=status.value,
            primary_model=primary_model,
            created_by_user_id=author_id,
            tags=tags or [],
        )
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def metrics(self, rule_id: str, day: date = TODAY, **counts) -> RuleMetricDaily:
        row = RuleMetricDaily(
            date=day,
            rule_id=rule_id,
            views=counts.get("views", 0),
            copies=counts.get("copies", 0),
            saves=counts.get("saves", 0),
            forks=counts.get("forks", 0),
            votes=counts.get("votes", 0),
            score=counts.get("score", 0.0),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def votes(
        self,
        rule_id: str,
        up: int = 0,
        down: int = 0,
        at: datetime = NOW,
    ) -> None:
        """Add ``up`` upvotes and ``down`` downvotes from distinct voters."""
        voters = [(f"voter-up-{i}", 1) for i in range(up)] + [(f"voter-down-{i}", -1) for i in range(down)]
        for voter_id, value in voters:
            if await self.db.get(User, voter_id) is None:
                await self.user(voter_id)
            self.db.add(Vote(user_id=voter_id, rule_id=rule_id, value=value, created_at=at))
        await self.db.flush()


@pytest.fixture
def factory(db):
    return Factory(db)


def make_entry(rank: int, rule_id: str, score: float = 0.0, author_id: str = "user-1") -> LeaderboardEntry:
    """Build a ranked entry without touching the database."""
    return LeaderboardEntry(
        rank=rank,
        rule_id=rule_id,
        rule_slug=f"{rule_id}-slug",
        title=f"Rule {rule_id}",
        author=AuthorSummary(id=author_id, handle=author_id, display_name=author_id.title()),
        score=score,
        copies=1,
        views=10,
    )


def days_ago(days: int) -> date:
    return TODAY - timedelta(days=days)


@pytest.fixture
def mock_db():
    """Mock async database session for failure-path tests."""
    session = AsyncMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.flush = AsyncMock()
    session.rollback = AsyncMock()
    session.add = MagicMock()

    savepoint = MagicMock()
    savepoint.__aenter__ = AsyncMock(return_value=None)
    savepoint.__aexit__ = AsyncMock(return_value=False)
    session.begin_nested = MagicMock(return_value=savepoint)
    return session
