"""
Ensemble Forecaster.

Blends three heuristic predictors of a tenant's success rate:
- trend:        sr + U(-1, 1)
- conservative: sr - 1 + U(0, 2)
- optimistic:   sr + 0.5 + U(0, 2)

Weights come from the latest persisted weight row (defaults 0.33/0.33/0.34).
High reliability nudges the trend weight up to min(0.5, reliability/300),
but only on the snapshot used for this cycle: the forecaster never writes
weights back. The Weight Controller is the only writer.

Confidence interval half-width: 1.5 + (100 - reliability) * 0.02
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import EnsembleForecast
from slocast.engine.bounds import EnsembleWeights, clamp, project_weights
from slocast.engine.features import success_rate
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

HISTORY_DAYS: int = 90
HISTORY_LIMIT: int = 1000
DEFAULT_SR: float = 80.0
DEFAULT_RELIABILITY: float = 80.0
RELIABILITY_NUDGE_DIVISOR: float = 300.0
RELIABILITY_NUDGE_CAP: float = 0.5
CI_BASE: float = 1.5
CI_SLOPE: float = 0.02


@dataclass(frozen=True)
class ModelOutputs:
    trend: float
    conservative: float
    optimistic: float


@dataclass(frozen=True)
class EnsembleResult:
    sr: float
    models: ModelOutputs
    weights: EnsembleWeights          # snapshot actually used
    forecast_sr: float
    lower_ci: float
    upper_ci: float
    reliability: float


def reliability_snapshot(weights: EnsembleWeights, reliability: float) -> EnsembleWeights:
    """Per-cycle view of the weights with the reliability nudge applied."""
    nudge = min(RELIABILITY_NUDGE_CAP, reliability / RELIABILITY_NUDGE_DIVISOR)
    if nudge <= weights.trend:
        return weights
    return project_weights(nudge, weights.conservative, weights.optimistic)


def ci_half_width(reliability: float) -> float:
    return CI_BASE + (100.0 - clamp(reliability)) * CI_SLOPE


class EnsembleForecaster:
    """Per-tenant ensemble forecast with reliability-aware confidence intervals."""

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        history_days: int = HISTORY_DAYS,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.rng = rng or random.Random()
        self.history_days = history_days
        self.history_limit = history_limit

    def blend(
        self,
        sr: float,
        weights: EnsembleWeights,
        reliability: float,
    ) -> EnsembleResult:
        models = ModelOutputs(
            trend=sr + self.rng.uniform(-1.0, 1.0),
            conservative=sr - 1.0 + self.rng.uniform(0.0, 2.0),
            optimistic=sr + 0.5 + self.rng.uniform(0.0, 2.0),
        )
        snapshot = reliability_snapshot(weights, reliability)
        blended = (
            models.trend * snapshot.trend
            + models.conservative * snapshot.conservative
            + models.optimistic * snapshot.optimistic
        )
        half_width = ci_half_width(reliability)
        return EnsembleResult(
            sr=sr,
            models=models,
            weights=snapshot,
            forecast_sr=blended,
            lower_ci=blended - half_width,
            upper_ci=blended + half_width,
            reliability=reliability,
        )

    async def forecast_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> EnsembleResult:
        now = now or datetime.utcnow()

        latest_metrics = await queries.get_latest_metrics(session, tenant_id)
        reliability = latest_metrics.reliability if latest_metrics else DEFAULT_RELIABILITY

        latest_weights = await queries.get_latest_weights(session, tenant_id)
        weights = (
            EnsembleWeights(latest_weights.w_trend, latest_weights.w_conservative, latest_weights.w_optimistic)
            if latest_weights
            else EnsembleWeights.default()
        )

        rows = await queries.get_recent_check_rows(
            session,
            tenant_id,
            since=now - timedelta(days=self.history_days),
            until=now,
            limit=self.history_limit,
        )
        sr = success_rate(outcome for _, outcome, _ in rows)
        if sr is None:
            sr = DEFAULT_SR

        result = self.blend(sr, weights, reliability)

        session.add(
            EnsembleForecast(
                tenant_id=tenant_id,
                model_trend=round(result.models.trend, 2),
                model_conservative=round(result.models.conservative, 2),
                model_optimistic=round(result.models.optimistic, 2),
                w_trend=result.weights.trend,
                w_conservative=result.weights.conservative,
                w_optimistic=result.weights.optimistic,
                forecast_sr=round(result.forecast_sr, 2),
                lower_ci=round(result.lower_ci, 2),
                upper_ci=round(result.upper_ci, 2),
                reliability=reliability,
                generated_at=now,
            )
        )

        logger.info(
            "ensemble_forecast_generated",
            tenant_id=tenant_id,
            forecast_sr=round(result.forecast_sr, 2),
            ci=[round(result.lower_ci, 2), round(result.upper_ci, 2)],
            reliability=reliability,
            weights=result.weights.to_dict(),
        )
        return result

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        async with session_factory() as session:
            tenants = [t.tenant_id for t in await queries.list_tenants(session, tenant_id)]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            await self.forecast_tenant(session, tid, now)
            return UnitResult(counts={"forecasts_generated": 1})

        return await TenantWorkerPool(session_factory).run("ensemble_forecast", tenants, unit)
