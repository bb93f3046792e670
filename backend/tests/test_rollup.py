"""Tests for the periodic gamification rollup.

Covers:
  - Full run: catalog seed, global snapshots, weekly top 10, threshold badges
  - Re-running for the same day is idempotent
  - Tag snapshots for popular tags
  - Step isolation when one snapshot fails
"""
import warnings
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SAWarning

from rulehub.core.config import Settings
from rulehub.models import LeaderboardPeriod, LeaderboardSnapshot
from rulehub.services.rollup import GamificationRollup, perform_gamification_tasks

from conftest import NOW, days_ago


async def build_community(factory):
    """Twelve ranked rules by distinct authors plus one standout rule."""
    for i in range(12):
        await factory.user(f"author-{i:02d}")
        await factory.rule(f"r{i:02d}", author_id=f"author-{i:02d}")
        await factory.metrics(f"r{i:02d}", views=5, score=float(i))
    await factory.user("star")
    await factory.rule("hit", author_id="star")
    await factory.metrics("hit", copies=120, views=400, score=100.0)
    await factory.votes("hit", up=10)


class TestRollupRun:
    """A nightly run produces snapshots, badges and notifications."""

    async def test_full_run(self, db, factory):
        await build_community(factory)

        result = await perform_gamification_tasks(db, NOW)

        assert result.errors == []
        assert result.badges_seeded == 6
        assert set(result.snapshot_ids) == {"DAILY/GLOBAL", "WEEKLY/GLOBAL", "MONTHLY/GLOBAL"}
        assert result.badges_awarded.top10_week == 10
        assert result.badges_awarded.hundred_copies == 1
        assert result.badges_awarded.ten_upvotes == 1
        assert len(result.notifications) == 12

    async def test_snapshot_contents(self, db, factory):
        await build_community(factory)

        result = await perform_gamification_tasks(db, NOW)

        snapshot = await db.get(LeaderboardSnapshot, result.snapshot_ids["WEEKLY/GLOBAL"])
        entries = snapshot.rank["entries"]
        assert entries[0]["ruleId"] == "hit"
        assert len(entries) == 13
        assert snapshot.rank["meta"]["windowDays"] == 7

    async def test_same_day_rerun_is_idempotent(self, db, factory):
        await build_community(factory)
        first = await perform_gamification_tasks(db, NOW)

        second = await perform_gamification_tasks(db, NOW + timedelta(hours=3))

        assert second.errors == []
        assert second.badges_seeded == 0
        assert second.snapshot_ids == first.snapshot_ids
        assert second.badges_awarded.model_dump() == {"top10_week": 0, "hundred_copies": 0, "ten_upvotes": 0}
        assert second.notifications == []
        rows = (await db.execute(select(LeaderboardSnapshot.id))).all()
        assert len(rows) == 3

    async def test_threshold_checks_only_touch_active_rules(self, db, factory):
        """Rules with no metrics or votes on the target day are not rechecked."""
        await factory.user("alice")
        await factory.rule("quiet", author_id="alice")
        await factory.metrics("quiet", days_ago(3), copies=500)

        result = await perform_gamification_tasks(db, NOW)

        assert result.badges_awarded.hundred_copies == 0

    async def test_empty_platform(self, db):
        result = await perform_gamification_tasks(db, NOW)

        assert result.errors == []
        assert result.badges_seeded == 6
        assert result.snapshot_ids == {}
        assert result.badges_awarded.top10_week == 0


class TestTagSnapshots:
    async def test_popular_tags_get_weekly_boards(self, db, factory):
        await factory.user()
        python = await factory.tag("python")
        rust = await factory.tag("rust")
        for i in range(3):
            await factory.rule(f"py{i}", tags=[python])
            await factory.metrics(f"py{i}", views=3)
        await factory.rule("rs0", tags=[rust])
        await factory.metrics("rs0", views=3)

        result = await perform_gamification_tasks(db, NOW, Settings(rollup_tag_min_rules=2))

        assert "WEEKLY/TAG/python" in result.snapshot_ids
        assert "WEEKLY/TAG/rust" not in result.snapshot_ids


class TestStepIsolation:
    async def test_failed_snapshot_does_not_stop_the_run(self, db, factory):
        await build_community(factory)
        rollup = GamificationRollup(db, NOW)
        original = rollup.leaderboards.upsert_snapshot

        async def flaky(params, entries):
            if params.period == LeaderboardPeriod.DAILY:
                raise OperationalError("INSERT", {}, Exception("deadlock detected"))
            return await original(params, entries)

        rollup.leaderboards.upsert_snapshot = flaky

        result = await rollup.run()

        assert len(result.errors) == 1
        assert result.errors[0].startswith("snapshot DAILY/GLOBAL")
        assert set(result.snapshot_ids) == {"WEEKLY/GLOBAL", "MONTHLY/GLOBAL"}
        assert result.badges_awarded.top10_week == 10

    async def test_failed_seed_rolls_back_alone(self, db, factory, monkeypatch):
        await build_community(factory)
        nested_flags = []

        async def broken_seed(session):
            nested_flags.append(session.in_nested_transaction())
            raise OperationalError("INSERT", {}, Exception("relation badges does not exist"))

        monkeypatch.setattr("rulehub.services.rollup.seed_badge_catalog", broken_seed)

        result = await perform_gamification_tasks(db, NOW)

        assert nested_flags == [True]
        assert result.errors[0].startswith("seed")
        assert set(result.snapshot_ids) == {"DAILY/GLOBAL", "WEEKLY/GLOBAL", "MONTHLY/GLOBAL"}
        await db.commit()
        rows = (await db.execute(select(LeaderboardSnapshot.id))).all()
        assert len(rows) == 3

    async def test_failed_tag_listing_keeps_global_boards(self, db, factory):
        await build_community(factory)
        rollup = GamificationRollup(db, NOW)
        nested_flags = []

        async def broken_tags():
            nested_flags.append(db.in_nested_transaction())
            raise OperationalError("SELECT", {}, Exception("statement timeout"))

        rollup._popular_tags = broken_tags

        result = await rollup.run()

        assert nested_flags == [True]
        assert [e.split(":")[0] for e in result.errors] == ["popular tags"]
        assert "WEEKLY/GLOBAL" in result.snapshot_ids
        assert result.badges_awarded.top10_week == 10


class TestThresholdCandidates:
    """Rules with activity on the target day, each listed once."""

    async def test_listed_once_without_warnings(self, db, factory):
        await factory.user()
        await factory.rule("r1")
        await factory.rule("r2")
        await factory.metrics("r1", copies=3)
        await factory.metrics("r2", days_ago(2), copies=3)
        await factory.votes("r1", up=4)
        rollup = GamificationRollup(db, NOW)

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            assert await rollup._rules_with_metrics_on_target_day() == ["r1"]
            assert await rollup._rules_with_votes_on_target_day() == ["r1"]
