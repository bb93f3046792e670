"""
Script to seed the badge catalog into the database.
Run with: python -m scripts.seed_badges
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError

from rulehub.core.config import settings
from rulehub.core.database import engine, session_scope
from rulehub.services.badge_catalog import BADGE_CATALOG, seed_badge_catalog

logger = logging.getLogger("scripts.seed_badges")


async def seed_badges() -> int:
    """Create any catalog badges missing from the database."""
    async with session_scope() as session:
        seeded = await seed_badge_catalog(session)

    if seeded:
        logger.info("Seeded %d of %d catalog badges.", seeded, len(BADGE_CATALOG))
    else:
        logger.info("Badge catalog already seeded (%d definitions).", len(BADGE_CATALOG))
    return seeded


async def _main() -> int:
    try:
        await seed_badges()
    except SQLAlchemyError:
        logger.exception("Badge seeding failed")
        return 1
    finally:
        await engine.dispose()
    return 0


def main():
    logging.basicConfig(level=settings.log_level)
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    main()
