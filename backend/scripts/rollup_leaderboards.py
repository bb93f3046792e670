"""
Script to run the nightly gamification rollup (snapshots + badges).
Run with: python -m scripts.rollup_leaderboards [YYYY-MM-DD]

Without a date the rollup runs for the current instant. With a date it runs
for the end of that day in the snapshot timezone, so the day's snapshot and
badge checks see the whole day.
"""

import asyncio
import logging
import sys
from datetime import date, datetime, time, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError

from rulehub.core.config import settings
from rulehub.core.database import engine, session_scope
from rulehub.schemas.badges import BadgeAwardedNotification
from rulehub.services.badges import dispatch_side_effects
from rulehub.services.rollup import perform_gamification_tasks

logger = logging.getLogger("scripts.rollup_leaderboards")


def parse_target(argv: list[str]) -> datetime:
    """Resolve the rollup instant from the optional YYYY-MM-DD argument."""
    if len(argv) < 2:
        return datetime.now(timezone.utc)
    day = date.fromisoformat(argv[1])
    return datetime.combine(day, time(23, 59, 59), tzinfo=settings.snapshot_zone)


async def log_notification(notification: BadgeAwardedNotification) -> None:
    # Delivery lives in the notifications service; the script only reports
    logger.info("Badge %s awarded to user %s", notification.badge_slug, notification.user_id)


async def run_rollup(target: datetime) -> int:
    async with session_scope() as session:
        result = await perform_gamification_tasks(session, target)

    # Awards are committed at this point; notifications are best effort
    await dispatch_side_effects(result.notifications, log_notification)

    logger.info("Snapshots written: %s", result.snapshot_ids or "none")
    logger.info("Badges awarded: %s", result.badges_awarded.model_dump())
    for error in result.errors:
        logger.warning("Rollup step failed: %s", error)
    return 1 if result.errors else 0


async def _main(argv: list[str]) -> int:
    try:
        target = parse_target(argv)
    except ValueError:
        logger.error("Invalid date %r, expected YYYY-MM-DD", argv[1])
        return 2

    try:
        return await run_rollup(target)
    except SQLAlchemyError:
        logger.exception("Gamification rollup failed")
        return 1
    finally:
        await engine.dispose()


def main():
    logging.basicConfig(level=settings.log_level)
    sys.exit(asyncio.run(_main(sys.argv)))


if __name__ == "__main__":
    main()
