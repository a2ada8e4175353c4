"""
Feature Aggregator and Breach-Risk Scorer tests.

The declining-tenant scenario: ~250 checks over 30 days, SR around 90%
until the last week, then falling to 60%, against a target of 80.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from slocast.db.models import ForecastPrediction, InsightHistory
from slocast.engine.features import compute_features, daily_success_rates, success_rate
from slocast.engine.risk import (
    STABLE_ADVISORY,
    BreachRiskScorer,
    classify,
    score_breach_risk,
)
from slocast.engine.schemas import RiskLevel

BASE = datetime(2026, 3, 1)
TARGET = 80.0
SPACING = timedelta(minutes=90)

# (passed, failed) per day: 23 steady days then a 7-day slide to 60%
STEADY_DAYS = [(7, 1)] * 23
DECLINE_DAYS = [(8, 2), (8, 2), (7, 3), (7, 3), (6, 4), (6, 4), (6, 4)]
PLAN = STEADY_DAYS + DECLINE_DAYS
ALERT_OFFSETS = (timedelta(hours=1), timedelta(hours=5), timedelta(hours=9))


def synthetic_rows(plan=PLAN) -> list[tuple[datetime, str]]:
    rows = []
    for day, (passed, failed) in enumerate(plan):
        start = BASE + timedelta(days=day)
        outcomes = ["pass"] * passed + ["fail"] * failed
        rows.extend((start + i * SPACING, o) for i, o in enumerate(outcomes))
    return rows


def alert_times() -> list[datetime]:
    return [
        BASE + timedelta(days=day) + offset
        for day in range(len(STEADY_DAYS), len(PLAN))
        for offset in ALERT_OFFSETS
    ]


def assess_at(now: datetime):
    rows = [r for r in synthetic_rows() if now - timedelta(days=30) <= r[0] < now]
    alerts = sum(1 for t in alert_times() if now - timedelta(days=7) <= t < now)
    features = compute_features("tenant-a", rows, alerts, TARGET, now)
    return features, score_breach_risk(features, TARGET)


# ── Feature Aggregation ────────────────────────────────────────────────


class TestFeatures:
    def test_success_rate_empty_is_none(self):
        assert success_rate([]) is None

    def test_success_rate(self):
        assert success_rate(["pass", "fail", "pass", "pass"]) == 75.0

    def test_daily_grouping(self):
        rows = [
            (datetime(2026, 3, 1, 1), "pass"),
            (datetime(2026, 3, 1, 23), "fail"),
            (datetime(2026, 3, 2, 0), "pass"),
        ]
        daily = daily_success_rates(rows)
        assert list(daily.values()) == [50.0, 100.0]

    def test_steady_window(self):
        features, _ = assess_at(BASE + timedelta(days=23))
        assert features.total_checks == 23 * 8
        assert features.avg_sr == pytest.approx(87.5)
        assert features.volatility == 0.0
        assert features.trend == pytest.approx(0.0)
        # Last 24h at 87.5% against a 20% budget
        assert features.burn_rate == pytest.approx(0.625)

    def test_declining_window_trend(self):
        features, _ = assess_at(BASE + timedelta(days=30))
        assert features.total_checks == sum(p + f for p, f in PLAN)
        assert features.avg_sr_7d == pytest.approx(480 / 7)
        assert features.avg_sr_23d == pytest.approx(87.5)
        assert features.trend < -15
        assert features.alert_density == pytest.approx(3.0)
        assert features.burn_rate == pytest.approx(2.0)


# ── Scoring ────────────────────────────────────────────────────────────


class TestScoring:
    def test_classification_thresholds(self):
        assert classify(60.0) == RiskLevel.HIGH
        assert classify(59.9) == RiskLevel.MEDIUM
        assert classify(30.0) == RiskLevel.MEDIUM
        assert classify(29.9) == RiskLevel.LOW

    def test_declining_tenant_escalates(self):
        """Breach probability rises and risk goes low -> medium -> high as the slide unfolds."""
        checkpoints = [BASE + timedelta(days=d) for d in (23, 28, 30)]
        assessments = [assess_at(now)[1] for now in checkpoints]

        probabilities = [a.breach_probability for a in assessments]
        assert probabilities == sorted(probabilities)
        assert probabilities[0] < probabilities[1] < probabilities[2]
        assert [a.risk_level for a in assessments] == [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]

    def test_high_risk_advisories(self):
        _, assessment = assess_at(BASE + timedelta(days=30))
        text = " ".join(assessment.advisories)
        assert "Downward trend" in text
        assert "Alert density" in text
        assert "High breach risk" in text
        assert STABLE_ADVISORY not in assessment.advisories

    def test_prediction_and_confidence_bounded(self):
        for day in (23, 28, 30):
            _, a = assess_at(BASE + timedelta(days=day))
            assert 0.0 <= a.breach_probability <= 100.0
            assert 0.0 <= a.confidence_score <= 100.0
            assert 0.0 <= a.predicted_sr_7d <= 100.0

    def test_stable_tenant_gets_raise_suggestion(self):
        """All-pass tenant far above target: low risk, target nudged up by one step."""
        rows = synthetic_rows([(10, 0)] * 30)
        now = BASE + timedelta(days=30)
        features = compute_features("tenant-a", rows, 0, TARGET, now)
        a = score_breach_risk(features, TARGET)
        assert a.risk_level == RiskLevel.LOW
        assert a.breach_probability == 0.0
        assert a.suggested_target == 85.0
        assert a.advisories == [STABLE_ADVISORY]


# ── Persisted Forecasts ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_forecast_stage_writes_prediction_and_insight(
    session_factory, db, make_tenant, add_daily_checks, add_alerts
):
    await make_tenant("tenant-a", slo_target_sr=TARGET)
    await add_daily_checks("tenant-a", BASE, PLAN, spacing=SPACING)
    await add_alerts("tenant-a", alert_times())

    report = await BreachRiskScorer().run(session_factory, now=BASE + timedelta(days=30))

    assert report.processed == 1
    assert report.counts["forecasts_generated"] == 1
    prediction = (await db.execute(select(ForecastPrediction))).scalar_one()
    assert prediction.risk_level == RiskLevel.HIGH.value
    assert prediction.current_slo_target == TARGET
    assert prediction.features["total_checks"] == sum(p + f for p, f in PLAN)
    insight = (await db.execute(select(InsightHistory))).scalar_one()
    assert insight.insight_type == "forecast"
    assert insight.summary.startswith("7-Day Compliance Forecast: HIGH Risk")


@pytest.mark.asyncio
async def test_forecast_stage_skips_thin_tenant(session_factory, db, make_tenant, add_daily_checks):
    """Fewer than 200 checks in 30 days: counted as skipped, not failed."""
    await make_tenant("tenant-thin", slo_target_sr=TARGET)
    await add_daily_checks("tenant-thin", BASE, [(5, 0)] * 30)

    report = await BreachRiskScorer().run(session_factory, now=BASE + timedelta(days=30))

    assert report.skipped == 1
    assert report.failed == 0
    assert (await db.execute(select(ForecastPrediction))).first() is None
