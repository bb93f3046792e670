"""Badge catalog - the fixed list of badges and its idempotent seeder."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rulehub.core.database import insert_for
from rulehub.models.gamification import Badge
from rulehub.schemas.badges import (
    BadgeDefinition,
    EventCriterion,
    SnapshotCriterion,
    StreakCriterion,
    ThresholdCriterion,
)

logger = logging.getLogger(__name__)


FIRST_CONTRIBUTION = "first-contribution"
TEN_UPVOTES = "ten-upvotes"
HUNDRED_COPIES = "hundred-copies"
VERIFIED_AUTHOR = "verified-author"
TOP_10_WEEK = "top-10-week"
STREAK_7 = "streak-7"


BADGE_CATALOG: tuple[BadgeDefinition, ...] = (
    BadgeDefinition(
        slug=FIRST_CONTRIBUTION,
        name="First Contribution",
        description="Published your first rule",
        criteria=EventCriterion(name="rule.published"),
    ),
    BadgeDefinition(
        slug=TEN_UPVOTES,
        name="10 Upvotes",
        description="A rule reached net +10 votes",
        criteria=ThresholdCriterion(metric="rule.votes.net", value=10),
    ),
    BadgeDefinition(
        slug=HUNDRED_COPIES,
        name="100 Copies",
        description="A rule was copied 100+ times",
        criteria=ThresholdCriterion(metric="rule.copies.sum", value=100),
    ),
    BadgeDefinition(
        slug=VERIFIED_AUTHOR,
        name="Verified Author",
        description="Ownership claim approved",
        criteria=EventCriterion(name="claim.approved"),
    ),
    BadgeDefinition(
        slug=TOP_10_WEEK,
        name="Top 10 (Week)",
        description="A rule ranked top 10 this week",
        criteria=SnapshotCriterion(period="WEEKLY", rank_at_most=10),
    ),
    BadgeDefinition(
        slug=STREAK_7,
        name="7-Day Streak",
        description="Active 7 days in a row",
        criteria=StreakCriterion(days=7),
    ),
)


def get_badge_definition(slug: str) -> BadgeDefinition | None:
    """Look up a catalog entry by slug."""
    for definition in BADGE_CATALOG:
        if definition.slug == slug:
            return definition
    return None


def threshold_for(slug: str) -> int:
    """Return the threshold value of a threshold badge."""
    definition = get_badge_definition(slug)
    if definition is None or not isinstance(definition.criteria, ThresholdCriterion):
        raise KeyError(f"{slug} is not a threshold badge")
    return definition.criteria.value


def rank_cutoff_for(slug: str) -> int:
    """Return the rank cutoff of a snapshot badge."""
    definition = get_badge_definition(slug)
    if definition is None or not isinstance(definition.criteria, SnapshotCriterion):
        raise KeyError(f"{slug} is not a snapshot badge")
    return definition.criteria.rank_at_most


async def seed_badge_catalog(db: AsyncSession) -> int:
    """Insert catalog badges whose slug is not in the database yet.

    Safe to call on every boot, including from two processes at once: the
    insert skips slugs that already exist instead of failing. Returns the
    number of badges created.
    """
    result = await db.execute(select(Badge.slug))
    existing = set(result.scalars().all())

    insert = insert_for(db)
    seeded = 0
    for definition in BADGE_CATALOG:
        if definition.slug in existing:
            continue
        stmt = (
            insert(Badge)
            .values(
                slug=definition.slug,
                name=definition.name,
                description=definition.description,
                criteria=definition.criteria.model_dump(by_alias=True),
            )
            .on_conflict_do_nothing(index_elements=["slug"])
            .returning(Badge.id)
        )
        result = await db.execute(stmt)
        if result.scalar_one_or_none() is not None:
            seeded += 1

    if seeded:
        logger.info("Seeded %d badge definitions", seeded)
    return seeded
