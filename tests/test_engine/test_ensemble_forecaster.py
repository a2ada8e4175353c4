"""
Ensemble Forecaster Tests.
"""

import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from slocast.db.models import EnsembleForecast, EnsembleWeightHistory, ForecastModelMetrics
from slocast.engine.bounds import EnsembleWeights
from slocast.engine.ensemble import (
    EnsembleForecaster,
    ci_half_width,
    reliability_snapshot,
)

NOW = datetime(2026, 3, 31, 12)


class TestBlend:
    def setup_method(self):
        self.forecaster = EnsembleForecaster(rng=random.Random(7))

    def test_ci_half_width(self):
        assert ci_half_width(100.0) == pytest.approx(1.5)
        assert ci_half_width(50.0) == pytest.approx(2.5)
        assert ci_half_width(0.0) == pytest.approx(3.5)

    def test_model_outputs_within_their_ranges(self):
        for _ in range(50):
            r = self.forecaster.blend(90.0, EnsembleWeights.default(), 80.0)
            assert 89.0 <= r.models.trend <= 91.0
            assert 89.0 <= r.models.conservative <= 91.0
            assert 90.5 <= r.models.optimistic <= 92.5

    def test_interval_is_symmetric(self):
        r = self.forecaster.blend(90.0, EnsembleWeights.default(), 60.0)
        assert r.upper_ci - r.forecast_sr == pytest.approx(ci_half_width(60.0))
        assert r.forecast_sr - r.lower_ci == pytest.approx(ci_half_width(60.0))

    def test_reliability_nudge_only_raises_trend(self):
        base = EnsembleWeights.default()
        nudged = reliability_snapshot(base, reliability=150.0)
        assert nudged.trend > base.trend
        assert nudged.trend <= 0.5
        assert abs(nudged.total - 1.0) < 1e-6
        # 80 / 300 < 0.33 so nothing changes
        assert reliability_snapshot(base, reliability=80.0) == base


@pytest.mark.asyncio
async def test_forecaster_never_writes_weights(session_factory, db, make_tenant, add_daily_checks, insert):
    await make_tenant("tenant-a")
    await add_daily_checks("tenant-a", NOW - timedelta(days=10), [(9, 1)] * 10)
    await insert(
        ForecastModelMetrics(
            tenant_id="tenant-a", precision=95, recall=95, mae=1, bias=0,
            reliability=99.0, sample_size=20, computed_at=NOW - timedelta(days=1),
        )
    )

    report = await EnsembleForecaster(rng=random.Random(1)).run(session_factory, now=NOW)

    assert report.counts["forecasts_generated"] == 1
    row = (await db.execute(select(EnsembleForecast))).scalar_one()
    assert row.reliability == 99.0
    assert row.lower_ci < row.forecast_sr < row.upper_ci
    assert abs(row.w_trend + row.w_conservative + row.w_optimistic - 1.0) < 1e-6
    assert (await db.execute(select(func.count(EnsembleWeightHistory.id)))).scalar_one() == 0


@pytest.mark.asyncio
async def test_forecaster_defaults_without_history(session_factory, db, make_tenant):
    """No checks, no metrics, no weights: SR 80, reliability 80, default weights."""
    await make_tenant("tenant-empty")

    await EnsembleForecaster(rng=random.Random(3)).run(session_factory, now=NOW)

    row = (await db.execute(select(EnsembleForecast))).scalar_one()
    assert row.reliability == 80.0
    assert (row.w_trend, row.w_conservative, row.w_optimistic) == (0.33, 0.33, 0.34)
    assert 78.0 <= row.forecast_sr <= 83.0
