"""
Forecast Accuracy Evaluator.

Backtests each forecast exactly once, after its 7-day horizon has fully
elapsed:
- candidates: generated_at in [now - 14d, now - 7d) and no accuracy row yet
- realized SR over [generated_at, generated_at + 7d)
- breach on either side means sr < the forecast's own SLO target

Then recomputes the tenant's rolling 30-day metrics (new row each run):
precision, recall, MAE, bias and

    reliability = clamp(0.5 * precision + 0.3 * recall + 0.2 * max(0, 100 - mae))
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import ForecastAccuracy, ForecastModelMetrics, ForecastPrediction
from slocast.engine.bounds import clamp
from slocast.engine.features import success_rate
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

HORIZON_DAYS: int = 7
LOOKBACK_DAYS: int = 14
ROLLING_DAYS: int = 30


@dataclass(frozen=True)
class AccuracyMetrics:
    precision: float
    recall: float
    mae: float
    bias: float
    reliability: float
    sample_size: int


def compute_metrics(records: Sequence[ForecastAccuracy]) -> AccuracyMetrics:
    """Confusion counts and error stats over a set of accuracy records."""
    tp = sum(1 for r in records if r.predicted_breach and r.actual_breach)
    fp = sum(1 for r in records if r.predicted_breach and not r.actual_breach)
    fn = sum(1 for r in records if not r.predicted_breach and r.actual_breach)

    precision = 100.0 * tp / (tp + fp) if (tp + fp) else 0.0
    recall = 100.0 * tp / (tp + fn) if (tp + fn) else 0.0

    n = len(records)
    mae = sum(abs(r.predicted_sr - r.actual_sr) for r in records) / n if n else 0.0
    bias = sum(r.predicted_sr - r.actual_sr for r in records) / n if n else 0.0

    reliability = clamp(0.5 * precision + 0.3 * recall + 0.2 * max(0.0, 100.0 - mae))

    return AccuracyMetrics(
        precision=round(precision, 2),
        recall=round(recall, 2),
        mae=round(mae, 2),
        bias=round(bias, 2),
        reliability=round(reliability, 2),
        sample_size=n,
    )


class AccuracyEvaluator:
    """Scores elapsed forecasts and appends rolling model metrics."""

    def __init__(
        self,
        horizon_days: int = HORIZON_DAYS,
        lookback_days: int = LOOKBACK_DAYS,
        rolling_days: int = ROLLING_DAYS,
    ):
        self.horizon = timedelta(days=horizon_days)
        self.lookback = timedelta(days=lookback_days)
        self.rolling = timedelta(days=rolling_days)

    async def evaluate_forecast(
        self,
        session: AsyncSession,
        forecast: ForecastPrediction,
        now: datetime,
    ) -> Optional[ForecastAccuracy]:
        window_end = forecast.generated_at + self.horizon
        if window_end > now:
            # Horizon not elapsed: scoring now would leak the future into the metric
            raise ValueError(f"forecast {forecast.id} horizon ends at {window_end}, after {now}")

        rows = await queries.get_check_outcomes(
            session, forecast.tenant_id, since=forecast.generated_at, until=window_end
        )
        actual = success_rate(outcome for _, outcome in rows)
        if actual is None:
            logger.info("forecast_no_realized_data", forecast_id=str(forecast.id), tenant_id=forecast.tenant_id)
            return None

        target = forecast.current_slo_target
        record = ForecastAccuracy(
            forecast_id=forecast.id,
            tenant_id=forecast.tenant_id,
            predicted_breach=forecast.predicted_sr_7d < target,
            actual_breach=actual < target,
            predicted_sr=round(forecast.predicted_sr_7d, 2),
            actual_sr=round(actual, 2),
            evaluation_date=now.date(),
            days_ahead=HORIZON_DAYS,
            created_at=now,
        )
        session.add(record)
        return record

    async def refresh_metrics(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: datetime,
    ) -> Optional[AccuracyMetrics]:
        await session.flush()
        records = await queries.get_accuracy_records(
            session, tenant_id, since=(now - self.rolling).date()
        )
        if not records:
            return None

        metrics = compute_metrics(records)
        session.add(
            ForecastModelMetrics(
                tenant_id=tenant_id,
                precision=metrics.precision,
                recall=metrics.recall,
                mae=metrics.mae,
                bias=metrics.bias,
                reliability=metrics.reliability,
                sample_size=metrics.sample_size,
                computed_at=now,
            )
        )
        logger.info(
            "model_metrics_computed",
            tenant_id=tenant_id,
            precision=metrics.precision,
            recall=metrics.recall,
            mae=metrics.mae,
            bias=metrics.bias,
            reliability=metrics.reliability,
            sample_size=metrics.sample_size,
        )
        return metrics

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        now = now or datetime.utcnow()
        async with session_factory() as session:
            due = await queries.get_forecasts_due(
                session,
                window_start=now - self.lookback,
                window_end=now - self.horizon,
                tenant_id=tenant_id,
            )

        by_tenant: dict[str, list] = defaultdict(list)
        for forecast in due:
            by_tenant[forecast.tenant_id].append(forecast.id)

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            evaluated = 0
            no_data = 0
            for forecast_id in by_tenant[tid]:
                forecast = await session.get(ForecastPrediction, forecast_id)
                record = await self.evaluate_forecast(session, forecast, now)
                if record is None:
                    no_data += 1
                else:
                    evaluated += 1
            if evaluated == 0:
                return UnitResult.skip("no_realized_data")
            await self.refresh_metrics(session, tid, now)
            return UnitResult(counts={"evaluated": evaluated, "no_data": no_data, "metrics_written": 1})

        return await TenantWorkerPool(session_factory).run("evaluate_accuracy", by_tenant.keys(), unit)
