"""Leaderboard value objects.

Snapshots are stored and served in camelCase (``ruleId``, ``rankDelta``,
``windowDays``...) so every model here serializes by alias.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from rulehub.models.gamification import LeaderboardPeriod, LeaderboardScope


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthorSummary(CamelModel):
    """Public author card embedded in each entry."""
    id: str
    handle: str
    display_name: str
    avatar_url: str | None = None


class LeaderboardCandidate(CamelModel):
    """One rule's activity aggregated over a window, before ranking."""
    rule_id: str
    rule_slug: str
    title: str
    author: AuthorSummary
    score: float = 0.0
    copies: int = 0
    views: int = 0
    saves: int = 0
    forks: int = 0
    votes: int = 0


class LeaderboardEntry(LeaderboardCandidate):
    """Ranked candidate. ``rank_delta`` is only filled in at read time."""
    rank: int = Field(ge=1)
    rank_delta: int | None = None


class LeaderboardParams(CamelModel):
    """Which board to compute and how much of it to keep."""
    period: LeaderboardPeriod
    scope: LeaderboardScope = LeaderboardScope.GLOBAL
    scope_ref: str | None = None
    window_days: int | None = Field(default=None, gt=0)  # Overrides the period default
    limit: int = Field(default=100, gt=0)

    @model_validator(mode="after")
    def validate_scope_ref(self) -> "LeaderboardParams":
        """scope_ref is required for TAG/MODEL boards and forbidden for GLOBAL."""
        if self.scope == LeaderboardScope.GLOBAL and self.scope_ref is not None:
            raise ValueError("scope_ref must be empty for GLOBAL leaderboards")
        if self.scope != LeaderboardScope.GLOBAL and not self.scope_ref:
            raise ValueError(f"scope_ref is required for {self.scope.value} leaderboards")
        return self


class SnapshotMeta(CamelModel):
    period: LeaderboardPeriod
    scope: LeaderboardScope
    scope_ref: str | None = None
    window_days: int
    generated_at: str  # ISO-8601


class LeaderboardMeta(SnapshotMeta):
    total_entries: int = 0


class Pagination(CamelModel):
    has_more: bool = False
    next_cursor: str | None = None


class LeaderboardPage(CamelModel):
    """One cursor page of a snapshot plus its metadata."""
    entries: list[LeaderboardEntry]
    meta: LeaderboardMeta
    pagination: Pagination


class RuleRank(CamelModel):
    rank: int | None = None
    total_entries: int = 0
    percentile: float | None = None


class AuthorStanding(CamelModel):
    """Author totals derived from a rule leaderboard."""
    id: str
    handle: str
    display_name: str
    score: float
    rules_count: int


class TagScope(CamelModel):
    slug: str
    name: str
    count: int


class ModelScope(CamelModel):
    name: str
    count: int


class LeaderboardScopes(CamelModel):
    tags: list[TagScope]
    models: list[ModelScope]
