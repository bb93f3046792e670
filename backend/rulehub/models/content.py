"""Community content tables read by the leaderboard and badge engine.

These tables are owned by the content platform; only the columns the engine
reads or writes are mapped here.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rulehub.models.base import Base, JSONType


def new_id() -> str:
    return str(uuid.uuid4())


class RuleStatus(str, Enum):
    """Publication state of a rule."""
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    DEPRECATED = "DEPRECATED"


rule_tags = Table(
    "rule_tags",
    Base.metadata,
    Column("rule_id", ForeignKey("rules.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    """Community member; authors rules and holds badges."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    handle: Mapped[str] = mapped_column(String(50), unique=True)
    display_name: Mapped[str] = mapped_column(String(100))
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    rules: Mapped[list["Rule"]] = relationship("Rule", back_populates="created_by")


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(100))

    rules: Mapped[list["Rule"]] = relationship(
        "Rule",
        secondary=rule_tags,
        back_populates="tags",
    )


class Rule(Base):
    """A shareable rule/prompt published by a user."""

    __tablename__ = "rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(100), unique=True)
    title: Mapped[str] = mapped_column(String(255))
    # Use String to avoid PostgreSQL enum mapping issues - values validated at app layer
    status: Mapped[str] = mapped_column(String(20), default=RuleStatus.DRAFT.value)
    primary_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_by_user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    created_by: Mapped["User"] = relationship("User", back_populates="rules")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary=rule_tags,
        back_populates="rules",
    )
    metrics: Mapped[list["RuleMetricDaily"]] = relationship(
        "RuleMetricDaily",
        back_populates="rule",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_rules_status_model", "status", "primary_model"),
    )


class Vote(Base):
    """One user's +1/-1 vote on a rule."""

    __tablename__ = "votes"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    rule_id: Mapped[str] = mapped_column(
        ForeignKey("rules.id", ondelete="CASCADE"),
        primary_key=True,
    )
    value: Mapped[int] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )


class RuleMetricDaily(Base):
    """Per-rule daily activity counters written by the ingest rollup."""

    __tablename__ = "rule_metrics_daily"

    date: Mapped[date] = mapped_column(Date, primary_key=True)
    rule_id: Mapped[str] = mapped_column(
        ForeignKey("rules.id", ondelete="CASCADE"),
        primary_key=True,
    )
    views: Mapped[int] = mapped_column(Integer, default=0)
    copies: Mapped[int] = mapped_column(Integer, default=0)
    saves: Mapped[int] = mapped_column(Integer, default=0)
    forks: Mapped[int] = mapped_column(Integer, default=0)
    votes: Mapped[int] = mapped_column(Integer, default=0)
    score: Mapped[float] = mapped_column(Float, default=0.0)  # Precomputed daily quality signal

    rule: Mapped["Rule"] = relationship("Rule", back_populates="metrics")

    __table_args__ = (
        Index("ix_rule_metrics_daily_rule_date", "rule_id", "date"),
    )


class AuditLog(Base):
    """Append-only audit trail shared by the whole platform."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    actor_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    action: Mapped[str] = mapped_column(String(100))  # e.g., "badge.award"
    entity_type: Mapped[str] = mapped_column(String(50))
    entity_id: Mapped[str] = mapped_column(String(255))
    diff: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    ip_hash: Mapped[str] = mapped_column(String(64), default="system")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )
