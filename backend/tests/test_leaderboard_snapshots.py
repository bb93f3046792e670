"""Tests for LeaderboardService compute + snapshot storage.

Covers:
  - compute_leaderboard over real metrics (ALL vs windowed, window override)
  - upsert_snapshot: same-day idempotency, next-day rows, scope separation
  - Stored wire format (camelCase, no rankDelta) and metadata
  - latest_snapshot / previous_snapshot ordering
"""
from datetime import timedelta

from sqlalchemy import func, select

from rulehub.models import LeaderboardPeriod, LeaderboardScope, LeaderboardSnapshot
from rulehub.schemas.leaderboard import LeaderboardParams
from rulehub.services.leaderboard import LeaderboardService
from rulehub.services.metrics import ensure_utc

from conftest import NOW, TODAY, days_ago, make_entry

WEEKLY = LeaderboardParams(period=LeaderboardPeriod.WEEKLY)


async def snapshot_rows(db):
    result = await db.execute(
        select(LeaderboardSnapshot)
        .order_by(LeaderboardSnapshot.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# =============================================================================
# COMPUTE
# =============================================================================

class TestComputeLeaderboard:
    """End-to-end ranking over stored daily metrics."""

    async def test_ranks_by_window_totals(self, db, factory):
        await factory.user()
        for rule_id, score in (("a", 1.0), ("b", 3.0), ("c", 2.0)):
            await factory.rule(rule_id)
            await factory.metrics(rule_id, views=5, score=score)

        entries = await LeaderboardService(db, NOW).compute_leaderboard(WEEKLY)

        assert [(e.rule_id, e.rank) for e in entries] == [("b", 1), ("c", 2), ("a", 3)]

    async def test_all_period_has_no_window(self, db, factory):
        await factory.user()
        await factory.rule("ancient")
        await factory.metrics("ancient", days_ago(900), copies=3)

        service = LeaderboardService(db, NOW)
        assert await service.compute_leaderboard(WEEKLY) == []
        entries = await service.compute_leaderboard(LeaderboardParams(period=LeaderboardPeriod.ALL))
        assert [e.rule_id for e in entries] == ["ancient"]

    async def test_window_override(self, db, factory):
        await factory.user()
        await factory.rule("r1")
        await factory.metrics("r1", days_ago(2), views=4)

        service = LeaderboardService(db, NOW)
        assert await service.compute_leaderboard(
            LeaderboardParams(period=LeaderboardPeriod.DAILY)
        ) == []
        entries = await service.compute_leaderboard(
            LeaderboardParams(period=LeaderboardPeriod.DAILY, window_days=3)
        )
        assert [e.rule_id for e in entries] == ["r1"]

    async def test_same_inputs_same_output(self, db, factory):
        await factory.user()
        for i in range(12):
            await factory.rule(f"r{i:02d}")
            await factory.metrics(f"r{i:02d}", views=i % 3 + 1, copies=i % 2, score=float(i % 4))

        service = LeaderboardService(db, NOW)
        first = await service.compute_leaderboard(WEEKLY)
        second = await service.compute_leaderboard(WEEKLY)
        assert [e.model_dump() for e in first] == [e.model_dump() for e in second]

    async def test_limit_keeps_top_entries(self, db, factory):
        await factory.user()
        for i in range(5):
            await factory.rule(f"r{i}")
            await factory.metrics(f"r{i}", views=1, score=float(i))

        entries = await LeaderboardService(db, NOW).compute_leaderboard(
            LeaderboardParams(period=LeaderboardPeriod.WEEKLY, limit=2)
        )
        assert [e.rule_id for e in entries] == ["r4", "r3"]


# =============================================================================
# SNAPSHOT STORAGE
# =============================================================================

class TestUpsertSnapshot:
    """One row per (period, scope, scope_ref, day); latest write wins."""

    async def test_same_day_upserts_share_one_row(self, db):
        first_now = NOW
        ids = []
        for offset, rule_id in enumerate(("first", "second", "third")):
            service = LeaderboardService(db, first_now + timedelta(hours=offset))
            ids.append(await service.upsert_snapshot(WEEKLY, [make_entry(1, rule_id)]))

        rows = await snapshot_rows(db)
        assert len(rows) == 1
        assert ids == [rows[0].id] * 3
        assert rows[0].rank["entries"][0]["ruleId"] == "third"
        assert ensure_utc(rows[0].created_at) == first_now
        assert rows[0].snapshot_date == TODAY

    async def test_next_day_creates_new_row(self, db):
        await LeaderboardService(db, NOW).upsert_snapshot(WEEKLY, [make_entry(1, "a")])
        await LeaderboardService(db, NOW + timedelta(days=1)).upsert_snapshot(WEEKLY, [make_entry(1, "b")])

        rows = await snapshot_rows(db)
        assert len(rows) == 2
        assert [r.snapshot_date for r in rows] == [TODAY, TODAY + timedelta(days=1)]

    async def test_keys_do_not_collide(self, db):
        service = LeaderboardService(db, NOW)
        await service.upsert_snapshot(WEEKLY, [make_entry(1, "a")])
        await service.upsert_snapshot(LeaderboardParams(period=LeaderboardPeriod.DAILY), [make_entry(1, "a")])
        await service.upsert_snapshot(
            LeaderboardParams(period=LeaderboardPeriod.WEEKLY, scope=LeaderboardScope.TAG, scope_ref="python"),
            [make_entry(1, "a")],
        )
        await service.upsert_snapshot(
            LeaderboardParams(period=LeaderboardPeriod.WEEKLY, scope=LeaderboardScope.TAG, scope_ref="rust"),
            [make_entry(1, "a")],
        )

        count = (await db.execute(select(func.count(LeaderboardSnapshot.id)))).scalar()
        assert count == 4

    async def test_stored_wire_format(self, db):
        await LeaderboardService(db, NOW).upsert_snapshot(WEEKLY, [make_entry(1, "a", score=2.5)])

        blob = (await snapshot_rows(db))[0].rank
        entry = blob["entries"][0]
        assert entry["ruleId"] == "a"
        assert entry["ruleSlug"] == "a-slug"
        assert entry["author"]["displayName"] == "User-1"
        assert entry["score"] == 2.5
        assert entry["rank"] == 1
        assert "rankDelta" not in entry
        assert blob["meta"] == {
            "period": "WEEKLY",
            "scope": "GLOBAL",
            "scopeRef": None,
            "windowDays": 7,
            "generatedAt": NOW.isoformat(),
        }

    async def test_meta_reports_window_override_and_all(self, db):
        service = LeaderboardService(db, NOW)
        await service.upsert_snapshot(
            LeaderboardParams(period=LeaderboardPeriod.DAILY, window_days=3), [make_entry(1, "a")]
        )
        await service.upsert_snapshot(LeaderboardParams(period=LeaderboardPeriod.ALL), [make_entry(1, "a")])

        metas = {row.period: row.rank["meta"] for row in await snapshot_rows(db)}
        assert metas["DAILY"]["windowDays"] == 3
        assert metas["ALL"]["windowDays"] == 365

    async def test_scoped_snapshot_keeps_ref(self, db):
        params = LeaderboardParams(period=LeaderboardPeriod.WEEKLY, scope=LeaderboardScope.MODEL, scope_ref="gpt-4")
        await LeaderboardService(db, NOW).upsert_snapshot(params, [make_entry(1, "a")])

        row = (await snapshot_rows(db))[0]
        assert (row.scope, row.scope_ref, row.scope_key) == ("MODEL", "gpt-4", "gpt-4")
        assert row.rank["meta"]["scopeRef"] == "gpt-4"

    async def test_global_snapshot_has_null_ref(self, db):
        await LeaderboardService(db, NOW).upsert_snapshot(WEEKLY, [make_entry(1, "a")])

        row = (await snapshot_rows(db))[0]
        assert row.scope_ref is None
        assert row.scope_key == ""


class TestSnapshotHistory:
    """latest_snapshot / previous_snapshot."""

    async def test_no_snapshots(self, db):
        service = LeaderboardService(db, NOW)
        assert await service.latest_snapshot(LeaderboardPeriod.WEEKLY) is None
        assert await service.previous_snapshot(LeaderboardPeriod.WEEKLY) is None

    async def test_single_snapshot_has_no_previous(self, db):
        service = LeaderboardService(db, NOW)
        await service.upsert_snapshot(WEEKLY, [make_entry(1, "a")])

        assert await service.latest_snapshot(LeaderboardPeriod.WEEKLY) is not None
        assert await service.previous_snapshot(LeaderboardPeriod.WEEKLY) is None

    async def test_previous_is_second_most_recent(self, db):
        for day in range(3):
            service = LeaderboardService(db, NOW + timedelta(days=day))
            await service.upsert_snapshot(WEEKLY, [make_entry(1, f"day-{day}")])

        service = LeaderboardService(db, NOW + timedelta(days=2))
        latest = await service.latest_snapshot(LeaderboardPeriod.WEEKLY)
        previous = await service.previous_snapshot(LeaderboardPeriod.WEEKLY)
        assert latest.rank["entries"][0]["ruleId"] == "day-2"
        assert previous.rank["entries"][0]["ruleId"] == "day-1"

    async def test_history_is_per_key(self, db):
        service = LeaderboardService(db, NOW)
        await service.upsert_snapshot(LeaderboardParams(period=LeaderboardPeriod.DAILY), [make_entry(1, "a")])

        assert await service.latest_snapshot(LeaderboardPeriod.WEEKLY) is None
        assert await service.latest_snapshot(
            LeaderboardPeriod.DAILY, LeaderboardScope.TAG, "python"
        ) is None
