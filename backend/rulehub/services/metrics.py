"""Metrics aggregation - rolls daily rule counters up into leaderboard candidates."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rulehub.core.config import Settings, settings as default_settings
from rulehub.models.content import Rule, RuleMetricDaily, RuleStatus, Tag, User
from rulehub.models.gamification import LeaderboardScope
from rulehub.schemas.leaderboard import AuthorSummary, LeaderboardCandidate

logger = logging.getLogger(__name__)


def ensure_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def local_day(moment: datetime, zone: ZoneInfo) -> date:
    """Calendar day of ``moment`` in ``zone``."""
    return ensure_utc(moment).astimezone(zone).date()


def window_start_date(now: datetime, window_days: int, zone: ZoneInfo) -> date:
    """First daily bucket inside ``[now - window_days, now]``.

    A daily row for day D starts at D 00:00, so it is inside the window only
    when that start is not before the cutoff.
    """
    cutoff = ensure_utc(now).astimezone(zone) - timedelta(days=window_days)
    if cutoff.time() == time(0, 0):
        return cutoff.date()
    return cutoff.date() + timedelta(days=1)


def passes_activity_threshold(
    candidate: LeaderboardCandidate,
    min_views: int,
    min_copies: int,
) -> bool:
    """A candidate is ranked unless it falls short on both views and copies."""
    return candidate.views >= min_views or candidate.copies >= min_copies


class MetricsAggregator:
    """Sums daily counters per rule for one scope and window."""

    def __init__(self, db: AsyncSession, config: Settings | None = None):
        self.db = db
        self.config = config or default_settings

    def _scope_filter(self, scope: LeaderboardScope, scope_ref: str | None):
        if scope == LeaderboardScope.TAG:
            return Rule.tags.any(Tag.slug == scope_ref)
        if scope == LeaderboardScope.MODEL:
            return Rule.primary_model == scope_ref
        return None

    async def aggregate(
        self,
        scope: LeaderboardScope,
        scope_ref: str | None,
        window_days: int | None,
        now: datetime,
    ) -> list[LeaderboardCandidate]:
        """Return one candidate per published rule in scope with enough activity.

        ``window_days=None`` means no date filter. The result is unordered.
        """
        totals = (
            select(
                RuleMetricDaily.rule_id.label("rule_id"),
                func.coalesce(func.sum(RuleMetricDaily.views), 0).label("views"),
                func.coalesce(func.sum(RuleMetricDaily.copies), 0).label("copies"),
                func.coalesce(func.sum(RuleMetricDaily.saves), 0).label("saves"),
                func.coalesce(func.sum(RuleMetricDaily.forks), 0).label("forks"),
                func.coalesce(func.sum(RuleMetricDaily.votes), 0).label("votes"),
                func.max(RuleMetricDaily.score).label("score"),
            )
            .group_by(RuleMetricDaily.rule_id)
        )
        if window_days is not None:
            start = window_start_date(now, window_days, self.config.snapshot_zone)
            totals = totals.where(RuleMetricDaily.date >= start)
        totals = totals.subquery()

        query = (
            select(
                Rule.id,
                Rule.slug,
                Rule.title,
                User.id,
                User.handle,
                User.display_name,
                User.avatar_url,
                totals.c.views,
                totals.c.copies,
                totals.c.saves,
                totals.c.forks,
                totals.c.votes,
                totals.c.score,
            )
            .join(User, User.id == Rule.created_by_user_id)
            .outerjoin(totals, totals.c.rule_id == Rule.id)
            .where(Rule.status == RuleStatus.PUBLISHED.value)
        )
        scope_filter = self._scope_filter(scope, scope_ref)
        if scope_filter is not None:
            query = query.where(scope_filter)

        result = await self.db.execute(query)

        candidates = []
        for row in result.all():
            candidate = LeaderboardCandidate(
                rule_id=row[0],
                rule_slug=row[1],
                title=row[2],
                author=AuthorSummary(
                    id=row[3],
                    handle=row[4],
                    display_name=row[5],
                    avatar_url=row[6],
                ),
                views=int(row[7] or 0),
                copies=int(row[8] or 0),
                saves=int(row[9] or 0),
                forks=int(row[10] or 0),
                votes=int(row[11] or 0),
                score=float(row[12] or 0.0),
            )
            if passes_activity_threshold(
                candidate,
                self.config.leaderboard_min_views,
                self.config.leaderboard_min_copies,
            ):
                candidates.append(candidate)

        logger.debug(
            "Aggregated %d candidates for scope=%s ref=%s window=%s",
            len(candidates), scope.value, scope_ref, window_days,
        )
        return candidates
