"""Badge service - eligibility checks and the idempotent award ledger.

Badge bookkeeping never fails the action that triggered it: every public
method here returns False/0 on store errors and logs instead of raising.
Badges are permanent; a metric dropping back below its threshold does not
revoke an award.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rulehub.core.database import insert_for
from rulehub.models.content import AuditLog, Rule, RuleMetricDaily, RuleStatus, Vote
from rulehub.models.gamification import Badge, UserBadge
from rulehub.schemas.badges import (
    AwardResult,
    BadgeAwardCount,
    BadgeAwardedNotification,
    BadgeHolding,
    BadgeStats,
    UserBadgeView,
)
from rulehub.services.badge_catalog import (
    FIRST_CONTRIBUTION,
    HUNDRED_COPIES,
    TEN_UPVOTES,
    TOP_10_WEEK,
    VERIFIED_AUTHOR,
    rank_cutoff_for,
    threshold_for,
)
from rulehub.services.metrics import ensure_utc

logger = logging.getLogger(__name__)


# =============================================================================
# AWARD LEDGER
# =============================================================================

class BadgeLedger:
    """Turns eligibility decisions into at-most-once awards plus audit rows.

    Notifications for successful awards are collected in
    ``pending_side_effects``; the caller drains and delivers them.
    """

    def __init__(self, db: AsyncSession, now: datetime | None = None):
        self.db = db
        self.now = ensure_utc(now or datetime.now(timezone.utc))
        self.pending_side_effects: list[BadgeAwardedNotification] = []

    async def award(
        self,
        user_id: str,
        slug: str,
        metadata: dict[str, Any] | None = None,
    ) -> AwardResult:
        """Award ``slug`` to ``user_id`` unless they already hold it."""
        try:
            # A failed read must not abort the caller's transaction
            async with self.db.begin_nested():
                result = await self.db.execute(select(Badge).where(Badge.slug == slug))
                badge = result.scalar_one_or_none()
        except SQLAlchemyError:
            logger.exception("Failed to load badge %s for user %s", slug, user_id)
            return AwardResult(awarded=False)

        if badge is None:
            logger.warning("Badge not found: %s (is the catalog seeded?)", slug)
            return AwardResult(awarded=False)

        try:
            # Award row and audit row commit or roll back together
            async with self.db.begin_nested():
                existing = await self.db.execute(
                    select(UserBadge.user_id).where(
                        UserBadge.user_id == user_id,
                        UserBadge.badge_id == badge.id,
                    )
                )
                if existing.first() is not None:
                    return AwardResult(awarded=False)

                insert = insert_for(self.db)
                inserted = await self.db.execute(
                    insert(UserBadge)
                    .values(user_id=user_id, badge_id=badge.id, awarded_at=self.now)
                    .on_conflict_do_nothing(index_elements=["user_id", "badge_id"])
                    .returning(UserBadge.user_id)
                )
                if inserted.first() is None:
                    # Lost a race with a concurrent award
                    return AwardResult(awarded=False)

                self.db.add(AuditLog(
                    actor_user_id=user_id,
                    action="badge.award",
                    entity_type="Badge",
                    entity_id=str(badge.id),
                    diff={
                        "badgeSlug": slug,
                        "userId": user_id,
                        "badgeMetadata": metadata or {},
                    },
                    created_at=self.now,
                ))
                await self.db.flush()
        except IntegrityError:
            logger.info("Badge %s already awarded to user %s", slug, user_id)
            return AwardResult(awarded=False)
        except SQLAlchemyError:
            logger.exception("Failed to award badge %s to user %s", slug, user_id)
            return AwardResult(awarded=False)

        logger.info("Awarded badge %s to user %s", slug, user_id)
        notification = BadgeAwardedNotification(
            user_id=user_id,
            badge_slug=slug,
            badge_name=badge.name,
            awarded_at=self.now,
            metadata=metadata or {},
        )
        self.pending_side_effects.append(notification)
        return AwardResult(awarded=True, side_effects=[notification])

    async def award_if_eligible(
        self,
        user_id: str,
        slug: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Boolean form of ``award``: True only for a new award."""
        result = await self.award(user_id, slug, metadata)
        return result.awarded

    def drain_side_effects(self) -> list[BadgeAwardedNotification]:
        effects = self.pending_side_effects
        self.pending_side_effects = []
        return effects


async def dispatch_side_effects(
    effects: Iterable[BadgeAwardedNotification],
    send: Callable[[BadgeAwardedNotification], Awaitable[None]],
) -> int:
    """Deliver award notifications, dropping the ones that fail.

    Returns how many were delivered. Delivery failures never affect the award.
    """
    delivered = 0
    for effect in effects:
        try:
            await send(effect)
            delivered += 1
        except Exception:
            logger.warning(
                "Dropping %s notification for user %s",
                effect.badge_slug, effect.user_id, exc_info=True,
            )
    return delivered


# =============================================================================
# ELIGIBILITY CHECKERS
# =============================================================================

class BadgeService:
    """Eligibility checks for each badge type plus read-only badge queries.

    Checker reads run inside a savepoint: on PostgreSQL a failed statement
    would otherwise leave the caller's transaction aborted.
    """

    def __init__(self, db: AsyncSession, now: datetime | None = None):
        self.db = db
        self.ledger = BadgeLedger(db, now)

    async def _rule_author(self, rule_id: str) -> str | None:
        result = await self.db.execute(
            select(Rule.created_by_user_id).where(Rule.id == rule_id)
        )
        return result.scalar_one_or_none()

    async def check_first_contribution(self, user_id: str) -> bool:
        """Award on the user's first publish.

        Fires only while the published count is exactly 1, so it must be called
        right after each publish rather than from a periodic sweep.
        """
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(func.count(Rule.id)).where(
                        Rule.created_by_user_id == user_id,
                        Rule.status == RuleStatus.PUBLISHED.value,
                    )
                )
                published = result.scalar() or 0
        except SQLAlchemyError:
            logger.exception("first-contribution check failed for user %s", user_id)
            return False

        if published != 1:
            return False
        return await self.ledger.award_if_eligible(user_id, FIRST_CONTRIBUTION)

    async def check_ten_upvotes(self, rule_id: str) -> bool:
        """Award the rule's author once net votes reach the threshold."""
        try:
            async with self.db.begin_nested():
                author_id = await self._rule_author(rule_id)
                result = await self.db.execute(
                    select(
                        func.count(Vote.user_id).filter(Vote.value > 0),
                        func.count(Vote.user_id).filter(Vote.value < 0),
                    ).where(Vote.rule_id == rule_id)
                )
                upvotes, downvotes = result.one()
        except SQLAlchemyError:
            logger.exception("ten-upvotes check failed for rule %s", rule_id)
            return False

        if author_id is None:
            return False
        net_score = (upvotes or 0) - (downvotes or 0)
        if net_score < threshold_for(TEN_UPVOTES):
            return False
        return await self.ledger.award_if_eligible(
            author_id,
            TEN_UPVOTES,
            {"ruleId": rule_id, "netScore": net_score},
        )

    async def check_hundred_copies(self, rule_id: str) -> bool:
        """Award the rule's author once all-time copies reach the threshold."""
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(func.coalesce(func.sum(RuleMetricDaily.copies), 0))
                    .where(RuleMetricDaily.rule_id == rule_id)
                )
                total_copies = int(result.scalar() or 0)
                author_id = await self._rule_author(rule_id)
        except SQLAlchemyError:
            logger.exception("hundred-copies check failed for rule %s", rule_id)
            return False

        if author_id is None or total_copies < threshold_for(HUNDRED_COPIES):
            return False
        return await self.ledger.award_if_eligible(
            author_id,
            HUNDRED_COPIES,
            {"ruleId": rule_id, "totalCopies": total_copies},
        )

    async def award_verified_author(self, user_id: str) -> bool:
        """Direct award when an ownership claim is approved."""
        return await self.ledger.award_if_eligible(user_id, VERIFIED_AUTHOR)

    async def award_top10_weekly_badges(self, ranked_rule_ids: list[str]) -> int:
        """Award authors of the weekly leaders. Returns how many were new awards."""
        awarded = 0
        cutoff = rank_cutoff_for(TOP_10_WEEK)
        for rank, rule_id in enumerate(ranked_rule_ids[:cutoff], 1):
            try:
                async with self.db.begin_nested():
                    author_id = await self._rule_author(rule_id)
            except SQLAlchemyError:
                logger.exception("Could not resolve author of rule %s", rule_id)
                continue
            if author_id is None:
                continue
            if await self.ledger.award_if_eligible(
                author_id,
                TOP_10_WEEK,
                {"ruleId": rule_id, "rank": rank},
            ):
                awarded += 1
        return awarded

    async def recheck_user_badges(self, user_id: str) -> int:
        """Re-run every per-user and per-rule check. Used for repair/backfill."""
        awarded = 0
        if await self.check_first_contribution(user_id):
            awarded += 1

        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(Rule.id).where(
                        Rule.created_by_user_id == user_id,
                        Rule.status == RuleStatus.PUBLISHED.value,
                    ).order_by(Rule.id)
                )
                rule_ids = list(result.scalars().all())
        except SQLAlchemyError:
            logger.exception("Could not list rules for badge recheck of user %s", user_id)
            return awarded

        for rule_id in rule_ids:
            if await self.check_ten_upvotes(rule_id):
                awarded += 1
            if await self.check_hundred_copies(rule_id):
                awarded += 1
        return awarded

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def list_user_badges(self, user_id: str) -> list[UserBadgeView]:
        """Badges held by a user, newest first."""
        result = await self.db.execute(
            select(Badge, UserBadge.awarded_at)
            .join(UserBadge, UserBadge.badge_id == Badge.id)
            .where(UserBadge.user_id == user_id)
            .order_by(UserBadge.awarded_at.desc(), Badge.slug)
        )
        return [
            UserBadgeView(
                slug=badge.slug,
                name=badge.name,
                description=badge.description,
                criteria=badge.criteria or {},
                awarded_at=awarded_at,
            )
            for badge, awarded_at in result.all()
        ]

    async def has_badge(self, user_id: str, slug: str) -> BadgeHolding:
        """Whether the user holds ``slug``. Unknown slugs read as not held."""
        result = await self.db.execute(
            select(UserBadge.awarded_at)
            .join(Badge, Badge.id == UserBadge.badge_id)
            .where(UserBadge.user_id == user_id, Badge.slug == slug)
        )
        awarded_at = result.scalar_one_or_none()
        return BadgeHolding(has_badge=awarded_at is not None, awarded_at=awarded_at)

    async def get_catalog(self) -> list[Badge]:
        result = await self.db.execute(select(Badge).order_by(Badge.name))
        return list(result.scalars().all())

    async def get_badge_stats(self) -> BadgeStats:
        total_badges = (await self.db.execute(select(func.count(Badge.id)))).scalar() or 0
        total_awarded = (await self.db.execute(select(func.count(UserBadge.badge_id)))).scalar() or 0

        result = await self.db.execute(
            select(Badge.slug, Badge.name, func.count(UserBadge.user_id))
            .outerjoin(UserBadge, UserBadge.badge_id == Badge.id)
            .group_by(Badge.id, Badge.slug, Badge.name)
            .order_by(func.count(UserBadge.user_id).desc(), Badge.slug)
        )
        return BadgeStats(
            total_badges=total_badges,
            total_awarded=total_awarded,
            awards_by_badge=[
                BadgeAwardCount(slug=row[0], name=row[1], count=row[2])
                for row in result.all()
            ],
        )
