"""Leaderboard service - ranking, day-bucketed snapshots, rank deltas, and paging.

Snapshots are "latest wins": a recompute on the same day overwrites the row
in place, so a reader paging through a board while it is being recomputed may
see page 2 come from the newer ranking. Pages read from one snapshot version
never overlap or skip.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rulehub.core.config import Settings, settings as default_settings
from rulehub.core.database import insert_for
from rulehub.models.content import Rule, RuleStatus, Tag, rule_tags
from rulehub.models.gamification import (
    LeaderboardPeriod,
    LeaderboardScope,
    LeaderboardSnapshot,
)
from rulehub.schemas.leaderboard import (
    AuthorStanding,
    LeaderboardCandidate,
    LeaderboardEntry,
    LeaderboardMeta,
    LeaderboardPage,
    LeaderboardParams,
    LeaderboardScopes,
    ModelScope,
    Pagination,
    RuleRank,
    SnapshotMeta,
    TagScope,
)
from rulehub.services.metrics import MetricsAggregator, ensure_utc, local_day

logger = logging.getLogger(__name__)


MAX_PAGE_SIZE = 100
MAX_SCOPE_OPTIONS = 20


# =============================================================================
# RANKING
# =============================================================================

def ranking_key(candidate: LeaderboardCandidate) -> tuple:
    """Sort key: score, copies, views (all descending), then rule id ascending."""
    return (-candidate.score, -candidate.copies, -candidate.views, candidate.rule_id)


def rank_candidates(candidates: list[LeaderboardCandidate], limit: int) -> list[LeaderboardEntry]:
    """Order candidates, assign dense ranks 1..N, then keep the first ``limit``."""
    ordered = sorted(candidates, key=ranking_key)
    entries = [
        LeaderboardEntry(**candidate.model_dump(), rank=position)
        for position, candidate in enumerate(ordered, 1)
    ]
    return entries[:limit]


def with_deltas(
    current: list[LeaderboardEntry],
    previous: LeaderboardSnapshot | None,
) -> list[LeaderboardEntry]:
    """Attach rank movement against the previous snapshot.

    Positive means the rule moved up. Rules absent from the previous snapshot
    get ``None``, never 0.
    """
    previous_ranks: dict[str, int] = {}
    if previous is not None:
        for entry in (previous.rank or {}).get("entries", []):
            previous_ranks[entry["ruleId"]] = entry["rank"]

    result = []
    for entry in current:
        previous_rank = previous_ranks.get(entry.rule_id)
        delta = previous_rank - entry.rank if previous_rank is not None else None
        result.append(entry.model_copy(update={"rank_delta": delta}))
    return result


def entries_from_snapshot(snapshot: LeaderboardSnapshot) -> list[LeaderboardEntry]:
    return [LeaderboardEntry.model_validate(raw) for raw in (snapshot.rank or {}).get("entries", [])]


def percentile_for(rank: int, total: int) -> float:
    """Share of the board at or below ``rank``, as a percentage with 2 decimals."""
    return round((total - rank + 1) / total * 100, 2)


# =============================================================================
# LEADERBOARD SERVICE
# =============================================================================

class LeaderboardService:
    """Computes, stores and serves leaderboards.

    ``now`` is injected so a whole run (window cutoff, day bucket, generatedAt)
    uses one consistent instant.
    """

    def __init__(
        self,
        db: AsyncSession,
        now: datetime | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.now = ensure_utc(now or datetime.now(timezone.utc))
        self.config = config or default_settings
        self.aggregator = MetricsAggregator(db, self.config)

    def period_days(self, period: LeaderboardPeriod) -> int:
        return self.config.period_window_days[period.value]

    def window_days_for(self, params: LeaderboardParams) -> int:
        """Window reported in snapshot metadata (override or period default)."""
        if params.window_days is not None and params.period != LeaderboardPeriod.ALL:
            return params.window_days
        return self.period_days(params.period)

    async def compute_leaderboard(self, params: LeaderboardParams) -> list[LeaderboardEntry]:
        """Aggregate the window and rank it. ``ALL`` boards are not date filtered."""
        window = None if params.period == LeaderboardPeriod.ALL else self.window_days_for(params)
        candidates = await self.aggregator.aggregate(
            params.scope,
            params.scope_ref,
            window,
            self.now,
        )
        entries = rank_candidates(candidates, params.limit)
        logger.info(
            "Computed %s/%s leaderboard (ref=%s): %d of %d candidates kept",
            params.period.value, params.scope.value, params.scope_ref,
            len(entries), len(candidates),
        )
        return entries

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def upsert_snapshot(
        self,
        params: LeaderboardParams,
        entries: list[LeaderboardEntry],
    ) -> int:
        """Store ``entries`` as today's snapshot for the params' key.

        One row exists per (period, scope, scope_ref, day); a second call on
        the same day replaces the ranking but keeps the row's id and
        ``created_at``. The unique constraint makes concurrent writers
        converge on that single row.
        """
        meta = SnapshotMeta(
            period=params.period,
            scope=params.scope,
            scope_ref=params.scope_ref,
            window_days=self.window_days_for(params),
            generated_at=self.now.isoformat(),
        )
        blob: dict[str, Any] = {
            "entries": [
                entry.model_dump(mode="json", by_alias=True, exclude={"rank_delta"})
                for entry in entries
            ],
            "meta": meta.model_dump(mode="json", by_alias=True),
        }

        insert = insert_for(self.db)
        stmt = insert(LeaderboardSnapshot).values(
            period=params.period.value,
            scope=params.scope.value,
            scope_ref=params.scope_ref,
            scope_key=params.scope_ref or "",
            snapshot_date=local_day(self.now, self.config.snapshot_zone),
            rank=blob,
            created_at=self.now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["period", "scope", "scope_key", "snapshot_date"],
            set_={"rank": stmt.excluded.rank},
        ).returning(LeaderboardSnapshot.id)

        result = await self.db.execute(stmt)
        snapshot_id = result.scalar_one()
        logger.info(
            "Stored %s/%s snapshot %s (ref=%s, %d entries)",
            params.period.value, params.scope.value, snapshot_id,
            params.scope_ref, len(entries),
        )
        return snapshot_id

    async def _recent_snapshots(
        self,
        period: LeaderboardPeriod,
        scope: LeaderboardScope,
        scope_ref: str | None,
        count: int,
    ) -> list[LeaderboardSnapshot]:
        result = await self.db.execute(
            select(LeaderboardSnapshot)
            .where(
                LeaderboardSnapshot.period == period.value,
                LeaderboardSnapshot.scope == scope.value,
                LeaderboardSnapshot.scope_key == (scope_ref or ""),
            )
            .order_by(LeaderboardSnapshot.created_at.desc(), LeaderboardSnapshot.id.desc())
            .limit(count)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def latest_snapshot(
        self,
        period: LeaderboardPeriod,
        scope: LeaderboardScope = LeaderboardScope.GLOBAL,
        scope_ref: str | None = None,
    ) -> LeaderboardSnapshot | None:
        snapshots = await self._recent_snapshots(period, scope, scope_ref, 1)
        return snapshots[0] if snapshots else None

    async def previous_snapshot(
        self,
        period: LeaderboardPeriod,
        scope: LeaderboardScope = LeaderboardScope.GLOBAL,
        scope_ref: str | None = None,
    ) -> LeaderboardSnapshot | None:
        """Second most recent snapshot for the key, or None on day one."""
        snapshots = await self._recent_snapshots(period, scope, scope_ref, 2)
        return snapshots[1] if len(snapshots) > 1 else None

    # -------------------------------------------------------------------------
    # Read paths
    # -------------------------------------------------------------------------

    async def read_leaderboard(
        self,
        period: LeaderboardPeriod,
        scope: LeaderboardScope = LeaderboardScope.GLOBAL,
        scope_ref: str | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> LeaderboardPage:
        """Serve one page of the latest snapshot with rank deltas.

        ``cursor`` is the rule id of the last entry the caller saw. An unknown
        cursor (e.g. after the snapshot was overwritten) restarts from the top.
        """
        params = LeaderboardParams(period=period, scope=scope, scope_ref=scope_ref)
        page_size = min(max(limit or self.config.leaderboard_page_size, 1), MAX_PAGE_SIZE)

        snapshots = await self._recent_snapshots(params.period, params.scope, params.scope_ref, 2)
        if not snapshots:
            return LeaderboardPage(
                entries=[],
                meta=LeaderboardMeta(
                    period=params.period,
                    scope=params.scope,
                    scope_ref=params.scope_ref,
                    window_days=self.period_days(params.period),
                    generated_at=self.now.isoformat(),
                    total_entries=0,
                ),
                pagination=Pagination(has_more=False),
            )

        latest = snapshots[0]
        previous = snapshots[1] if len(snapshots) > 1 else None
        entries = with_deltas(entries_from_snapshot(latest), previous)

        start = 0
        if cursor:
            for index, entry in enumerate(entries):
                if entry.rule_id == cursor:
                    start = index + 1
                    break
            else:
                logger.debug("Unknown leaderboard cursor %s, restarting from the top", cursor)

        page = entries[start:start + page_size]
        has_more = start + page_size < len(entries)

        stored_meta = (latest.rank or {}).get("meta") or {}
        created_at = ensure_utc(latest.created_at)
        meta = LeaderboardMeta(
            period=params.period,
            scope=params.scope,
            scope_ref=params.scope_ref,
            window_days=stored_meta.get("windowDays") or self.period_days(params.period),
            generated_at=stored_meta.get("generatedAt") or created_at.isoformat(),
            total_entries=len(entries),
        )
        return LeaderboardPage(
            entries=page,
            meta=meta,
            pagination=Pagination(
                has_more=has_more,
                next_cursor=page[-1].rule_id if has_more and page else None,
            ),
        )

    async def get_rule_rank(
        self,
        rule_id: str,
        period: LeaderboardPeriod = LeaderboardPeriod.WEEKLY,
    ) -> RuleRank:
        """Rank and percentile of a rule in the latest global snapshot."""
        snapshot = await self.latest_snapshot(period)
        if snapshot is None:
            return RuleRank(rank=None, total_entries=0, percentile=None)

        entries = entries_from_snapshot(snapshot)
        total = len(entries)
        for entry in entries:
            if entry.rule_id == rule_id:
                return RuleRank(
                    rank=entry.rank,
                    total_entries=total,
                    percentile=percentile_for(entry.rank, total),
                )
        return RuleRank(rank=None, total_entries=total, percentile=None)

    async def get_top_authors(
        self,
        period: LeaderboardPeriod = LeaderboardPeriod.WEEKLY,
        limit: int = 25,
    ) -> list[AuthorStanding]:
        """Authors ordered by the summed score of their rules on the global board."""
        snapshot = await self.latest_snapshot(period)
        if snapshot is None:
            return []

        standings: dict[str, AuthorStanding] = {}
        for entry in entries_from_snapshot(snapshot):
            standing = standings.get(entry.author.id)
            if standing is None:
                standings[entry.author.id] = AuthorStanding(
                    id=entry.author.id,
                    handle=entry.author.handle,
                    display_name=entry.author.display_name,
                    score=entry.score,
                    rules_count=1,
                )
            else:
                standing.score += entry.score
                standing.rules_count += 1

        ordered = sorted(standings.values(), key=lambda s: (-s.score, s.id))
        return ordered[:limit]

    async def get_scopes(self) -> LeaderboardScopes:
        """Tags and models that have published rules, most used first."""
        tag_count = func.count(Rule.id)
        result = await self.db.execute(
            select(Tag.slug, Tag.name, tag_count)
            .join(rule_tags, rule_tags.c.tag_id == Tag.id)
            .join(Rule, Rule.id == rule_tags.c.rule_id)
            .where(Rule.status == RuleStatus.PUBLISHED.value)
            .group_by(Tag.id, Tag.slug, Tag.name)
            .order_by(tag_count.desc(), Tag.name)
            .limit(MAX_SCOPE_OPTIONS)
        )
        tags = [TagScope(slug=row[0], name=row[1], count=row[2]) for row in result.all()]

        model_count = func.count(Rule.id)
        result = await self.db.execute(
            select(Rule.primary_model, model_count)
            .where(
                Rule.status == RuleStatus.PUBLISHED.value,
                Rule.primary_model.is_not(None),
            )
            .group_by(Rule.primary_model)
            .order_by(model_count.desc(), Rule.primary_model)
            .limit(MAX_SCOPE_OPTIONS)
        )
        models = [ModelScope(name=row[0], count=row[1]) for row in result.all()]

        return LeaderboardScopes(tags=tags, models=models)
