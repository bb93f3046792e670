"""Gamification models for badges and leaderboard snapshots."""

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rulehub.models.base import Base, JSONType


class LeaderboardPeriod(str, Enum):
    """Time window a leaderboard covers."""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ALL = "ALL"


class LeaderboardScope(str, Enum):
    """Partition of the content a leaderboard ranks."""
    GLOBAL = "GLOBAL"
    TAG = "TAG"
    MODEL = "MODEL"


class Badge(Base):
    """Static badge definitions - seeded once, shared by all users."""

    __tablename__ = "badges"

    id: Mapped[int] = mapped_column(primary_key=True)
    slug: Mapped[str] = mapped_column(String(50), unique=True)  # e.g., "ten-upvotes"
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text)
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType)

    user_badges: Mapped[list["UserBadge"]] = relationship(
        "UserBadge",
        back_populates="badge",
    )


class UserBadge(Base):
    """A badge held by a user. The primary key makes each award unique."""

    __tablename__ = "user_badges"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    badge_id: Mapped[int] = mapped_column(
        ForeignKey("badges.id", ondelete="CASCADE"),
        primary_key=True,
    )
    awarded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    badge: Mapped["Badge"] = relationship("Badge", back_populates="user_badges")

    __table_args__ = (
        Index("ix_user_badges_user_awarded", "user_id", "awarded_at"),
    )


class LeaderboardSnapshot(Base):
    """Point-in-time ranking for one (period, scope, scope_ref), one row per day.

    ``scope_key`` is ``scope_ref`` with NULL folded to "" so the day-bucket
    unique constraint also holds for GLOBAL boards. ``snapshot_date`` is the
    calendar day of ``created_at`` in the configured snapshot timezone.
    """

    __tablename__ = "leaderboard_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Use String to avoid PostgreSQL enum mapping issues - values validated at app layer
    period: Mapped[str] = mapped_column(String(20))
    scope: Mapped[str] = mapped_column(String(20))
    scope_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(100), default="")
    snapshot_date: Mapped[date] = mapped_column(Date)

    # {"entries": [...], "meta": {...}} in the camelCase wire format
    rank: Mapped[dict[str, Any]] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "period", "scope", "scope_key", "snapshot_date",
            name="uq_leaderboard_snapshot_day",
        ),
        CheckConstraint(
            "(scope = 'GLOBAL') = (scope_ref IS NULL)",
            name="ck_leaderboard_snapshot_scope_ref",
        ),
        Index("ix_leaderboard_snapshot_recent", "period", "scope", "scope_key", "created_at"),
    )
