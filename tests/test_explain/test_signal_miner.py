"""
Explainability Signal Miner Tests.
"""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select

from slocast.db.models import ExplainabilitySignal, InsightHistory
from slocast.explain.miner import (
    MinedSignal,
    SignalMiner,
    day_of_week_signals,
    dow_name,
    rule_group_signals,
    strongest,
)

MONDAY = datetime(2026, 3, 2)


def grouped_rows(group: str, passed: int, failed: int, start: datetime = MONDAY):
    outcomes = ["pass"] * passed + ["fail"] * failed
    return [(start + timedelta(minutes=i), o, group) for i, o in enumerate(outcomes)]


def weekly_rows(days: int = 21, monday_sr_half: bool = True):
    rows = []
    for d in range(days):
        day = MONDAY + timedelta(days=d)
        fails = 5 if monday_sr_half and day.weekday() == 0 else 0
        rows.extend((day + timedelta(hours=i), "fail" if i < fails else "pass") for i in range(10))
    return rows


class TestRuleGroupSignals:
    def test_fail_share_per_group(self):
        rows = grouped_rows("auth", 10, 20) + grouped_rows("db", 25, 5) + grouped_rows("misc", 2, 3)
        signals = {s.key: s for s in rule_group_signals(rows)}

        assert set(signals) == {"auth", "db"}
        assert signals["auth"].value == pytest.approx(20 / 28)
        assert signals["db"].value == pytest.approx(5 / 28)
        assert signals["auth"].sample_size == 30
        assert signals["auth"].metric == "fail_share"

    def test_missing_group_is_unknown(self):
        rows = [(MONDAY, "fail", None)] * 30
        (signal,) = rule_group_signals(rows)
        assert signal.key == "unknown"
        assert signal.value == 1.0

    def test_no_failures_share_zero(self):
        (signal,) = rule_group_signals(grouped_rows("auth", 30, 0))
        assert signal.value == 0.0


class TestDayOfWeekSignals:
    def test_dow_name(self):
        assert dow_name(date(2026, 3, 1)) == "Sun"
        assert dow_name(date(2026, 3, 2)) == "Mon"

    def test_weak_monday(self):
        signals = {s.key: s for s in day_of_week_signals(weekly_rows())}

        assert len(signals) == 7
        overall = (3 * 50 + 18 * 100) / 21
        assert signals["Mon"].value == pytest.approx(50 - overall)
        assert signals["Tue"].value == pytest.approx(100 - overall)
        assert signals["Mon"].sample_size == 30

    def test_needs_fourteen_days(self):
        assert day_of_week_signals(weekly_rows(days=13)) == []

    def test_strongest(self):
        a = MinedSignal("dow", "Mon", "sr_delta", -4.0, 30)
        b = MinedSignal("dow", "Tue", "sr_delta", 1.0, 30)
        assert strongest([a, b]) is a
        assert strongest([]) is None


@pytest.mark.asyncio
async def test_miner_writes_signals_and_insight(session_factory, db, make_tenant, add_checks):
    await make_tenant("tenant-a")
    for d in range(21):
        day = MONDAY + timedelta(days=d)
        if day.weekday() == 0:
            await add_checks("tenant-a", day, passed=5, failed=5, rule_group="auth")
        else:
            await add_checks("tenant-a", day, passed=10, failed=0, rule_group="db")
    now = MONDAY + timedelta(days=21)

    report = await SignalMiner().run(session_factory, now=now)

    assert report.counts["signals_written"] == 9
    signals = (await db.execute(select(ExplainabilitySignal))).scalars().all()
    assert {s.day for s in signals} == {now.date()}
    auth = next(s for s in signals if s.key == "auth")
    assert auth.value == 1.0
    insight = (await db.execute(select(InsightHistory))).scalar_one()
    assert insight.insight_type == "explainability"
    assert "dow = Mon" in insight.summary


@pytest.mark.asyncio
async def test_miner_skips_disabled_and_thin_tenants(session_factory, db, make_tenant, add_checks):
    await make_tenant("tenant-off", explainability_enabled=False)
    await add_checks("tenant-off", MONDAY, passed=40, failed=10, rule_group="auth")
    await make_tenant("tenant-thin")
    await add_checks("tenant-thin", MONDAY, passed=5, failed=5, rule_group="auth")

    report = await SignalMiner().run(session_factory, now=MONDAY + timedelta(days=1))

    assert report.tenants == 1
    assert report.skipped == 1
    assert (await db.execute(select(ExplainabilitySignal))).first() is None
