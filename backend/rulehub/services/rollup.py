"""Nightly gamification rollup: snapshots, weekly leaders, and threshold badges.

Each step runs in its own savepoint: a failure is logged and rolled back,
and the remaining steps still run on the same transaction.
"""

import logging
from datetime import datetime, time, timedelta, timezone

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rulehub.core.config import Settings, settings as default_settings
from rulehub.models.content import Rule, RuleMetricDaily, RuleStatus, Tag, Vote, rule_tags
from rulehub.models.gamification import LeaderboardPeriod, LeaderboardScope
from rulehub.schemas.badges import BadgeAwardedNotification
from rulehub.schemas.leaderboard import LeaderboardEntry, LeaderboardParams
from rulehub.services.badge_catalog import seed_badge_catalog
from rulehub.services.badges import BadgeService
from rulehub.services.leaderboard import LeaderboardService
from rulehub.services.metrics import ensure_utc

logger = logging.getLogger(__name__)


GLOBAL_PERIODS = (
    LeaderboardPeriod.DAILY,
    LeaderboardPeriod.WEEKLY,
    LeaderboardPeriod.MONTHLY,
)


class BadgesAwarded(BaseModel):
    top10_week: int = 0
    hundred_copies: int = 0
    ten_upvotes: int = 0


class RollupResult(BaseModel):
    badges_seeded: int = 0
    snapshot_ids: dict[str, int] = {}  # "WEEKLY/TAG/python" -> snapshot id
    badges_awarded: BadgesAwarded = Field(default_factory=BadgesAwarded)
    notifications: list[BadgeAwardedNotification] = []
    errors: list[str] = []


def snapshot_label(params: LeaderboardParams) -> str:
    label = f"{params.period.value}/{params.scope.value}"
    if params.scope_ref:
        label += f"/{params.scope_ref}"
    return label


class GamificationRollup:
    """Runs every periodic gamification task for one target instant."""

    def __init__(
        self,
        db: AsyncSession,
        target: datetime,
        config: Settings | None = None,
    ):
        self.db = db
        self.target = ensure_utc(target)
        self.config = config or default_settings
        self.leaderboards = LeaderboardService(db, self.target, self.config)
        self.badges = BadgeService(db, self.target)
        self.result = RollupResult()

    def _day_bounds(self) -> tuple[datetime, datetime]:
        """UTC bounds of the target's calendar day in the snapshot timezone."""
        local = self.target.astimezone(self.config.snapshot_zone)
        start = datetime.combine(local.date(), time(0, 0), tzinfo=self.config.snapshot_zone)
        return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)

    async def _snapshot(self, params: LeaderboardParams) -> list[LeaderboardEntry]:
        """Compute a board and store it; empty boards are not stored."""
        label = snapshot_label(params)
        try:
            # Savepoint so one failed board does not poison the outer transaction
            async with self.db.begin_nested():
                entries = await self.leaderboards.compute_leaderboard(params)
                if entries:
                    snapshot_id = await self.leaderboards.upsert_snapshot(params, entries)
                    self.result.snapshot_ids[label] = snapshot_id
            return entries
        except SQLAlchemyError as exc:
            logger.exception("Failed to generate %s leaderboard snapshot", label)
            self.result.errors.append(f"snapshot {label}: {exc}")
            return []

    async def _popular_tags(self) -> list[str]:
        published = func.count(Rule.id)
        result = await self.db.execute(
            select(Tag.slug)
            .join(rule_tags, rule_tags.c.tag_id == Tag.id)
            .join(Rule, Rule.id == rule_tags.c.rule_id)
            .where(Rule.status == RuleStatus.PUBLISHED.value)
            .group_by(Tag.id, Tag.slug)
            .having(published > self.config.rollup_tag_min_rules)
            .order_by(published.desc(), Tag.slug)
            .limit(self.config.rollup_tag_count)
        )
        return list(result.scalars().all())

    async def generate_snapshots(self) -> dict[LeaderboardPeriod, list[LeaderboardEntry]]:
        boards = {}
        for period in GLOBAL_PERIODS:
            params = LeaderboardParams(period=period, limit=self.config.leaderboard_limit)
            boards[period] = await self._snapshot(params)

        try:
            async with self.db.begin_nested():
                tag_slugs = await self._popular_tags()
        except SQLAlchemyError as exc:
            logger.exception("Failed to list popular tags for tag leaderboards")
            self.result.errors.append(f"popular tags: {exc}")
            tag_slugs = []

        for slug in tag_slugs:
            await self._snapshot(LeaderboardParams(
                period=LeaderboardPeriod.WEEKLY,
                scope=LeaderboardScope.TAG,
                scope_ref=slug,
                limit=self.config.rollup_tag_limit,
            ))
        return boards

    async def _rules_with_metrics_on_target_day(self) -> list[str]:
        day = self.target.astimezone(self.config.snapshot_zone).date()
        result = await self.db.execute(
            select(RuleMetricDaily.rule_id)
            .distinct()
            .where(RuleMetricDaily.date == day)
            .order_by(RuleMetricDaily.rule_id)
        )
        return list(result.scalars().all())

    async def _rules_with_votes_on_target_day(self) -> list[str]:
        start, end = self._day_bounds()
        result = await self.db.execute(
            select(Vote.rule_id)
            .distinct()
            .where(Vote.created_at >= start, Vote.created_at < end)
            .order_by(Vote.rule_id)
        )
        return list(result.scalars().all())

    async def award_threshold_badges(self) -> None:
        try:
            async with self.db.begin_nested():
                copied_rules = await self._rules_with_metrics_on_target_day()
                voted_rules = await self._rules_with_votes_on_target_day()
        except SQLAlchemyError as exc:
            logger.exception("Failed to find rules for threshold badge checks")
            self.result.errors.append(f"threshold badges: {exc}")
            return

        for rule_id in copied_rules:
            if await self.badges.check_hundred_copies(rule_id):
                self.result.badges_awarded.hundred_copies += 1
        for rule_id in voted_rules:
            if await self.badges.check_ten_upvotes(rule_id):
                self.result.badges_awarded.ten_upvotes += 1

    async def run(self) -> RollupResult:
        logger.info("Starting gamification rollup for %s", self.target.isoformat())

        try:
            async with self.db.begin_nested():
                self.result.badges_seeded = await seed_badge_catalog(self.db)
        except SQLAlchemyError as exc:
            logger.exception("Failed to seed badge catalog")
            self.result.errors.append(f"seed: {exc}")

        boards = await self.generate_snapshots()

        weekly = boards.get(LeaderboardPeriod.WEEKLY) or []
        if weekly:
            leaders = [entry.rule_id for entry in weekly[:self.config.top_weekly_badge_count]]
            self.result.badges_awarded.top10_week = await self.badges.award_top10_weekly_badges(leaders)

        await self.award_threshold_badges()

        self.result.notifications = self.badges.ledger.drain_side_effects()
        logger.info(
            "Gamification rollup finished: %d snapshots, badges=%s, errors=%d",
            len(self.result.snapshot_ids),
            self.result.badges_awarded.model_dump(),
            len(self.result.errors),
        )
        return self.result


async def perform_gamification_tasks(
    db: AsyncSession,
    target: datetime,
    config: Settings | None = None,
) -> RollupResult:
    """Run the rollup for ``target``. Never raises for store errors."""
    return await GamificationRollup(db, target, config).run()
