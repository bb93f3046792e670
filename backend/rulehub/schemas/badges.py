"""Badge criteria variants and award results."""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class EventCriterion(BaseModel):
    """Awarded when a named platform event happens (e.g. rule.published)."""
    model_config = ConfigDict(frozen=True)

    type: Literal["event"] = "event"
    name: str


class ThresholdCriterion(BaseModel):
    """Awarded when a metric reaches a value."""
    model_config = ConfigDict(frozen=True)

    type: Literal["threshold"] = "threshold"
    metric: str
    value: int


class SnapshotCriterion(BaseModel):
    """Awarded for placing within a leaderboard snapshot."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["snapshot"] = "snapshot"
    period: str
    rank_at_most: int = Field(alias="rankAtMost")


class StreakCriterion(BaseModel):
    """Awarded for being active a number of consecutive days."""
    model_config = ConfigDict(frozen=True)

    type: Literal["streak"] = "streak"
    days: int


BadgeCriteria = Annotated[
    Union[EventCriterion, ThresholdCriterion, SnapshotCriterion, StreakCriterion],
    Field(discriminator="type"),
]


class BadgeDefinition(BaseModel):
    """One entry of the static badge catalog."""
    model_config = ConfigDict(frozen=True)

    slug: str
    name: str
    description: str
    criteria: BadgeCriteria


class BadgeAwardedNotification(BaseModel):
    """Side effect produced by a successful award, delivered by the caller."""
    user_id: str
    badge_slug: str
    badge_name: str
    awarded_at: datetime
    metadata: dict[str, Any] = {}


class AwardResult(BaseModel):
    awarded: bool
    side_effects: list[BadgeAwardedNotification] = []


class UserBadgeView(BaseModel):
    slug: str
    name: str
    description: str
    criteria: dict[str, Any]
    awarded_at: datetime


class BadgeAwardCount(BaseModel):
    slug: str
    name: str
    count: int


class BadgeStats(BaseModel):
    total_badges: int
    total_awarded: int
    awards_by_badge: list[BadgeAwardCount]


class BadgeHolding(BaseModel):
    has_badge: bool
    awarded_at: datetime | None = None
