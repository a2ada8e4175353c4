"""
Self-Tuning Weight Controller.

One controller, two named strategies over the same bounding policy
(slocast.engine.bounds):

- AlwaysNudge:  every cycle, nudge the tenant's persisted ensemble weights
                from the latest reliability / MAE.
- AdaptiveSLO:  commit the latest forecast's suggested SLO target, but only
                when the move is at least 0.5 points and the forecast
                confidence is at least 50. Bounded to ±5 per step, [70, 98].

This is the only writer of ensemble weights and SLO targets outside the
retraining loop. Both strategies run under the tenant-state lease.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import EnsembleWeightHistory
from slocast.engine.bounds import (
    WEIGHT_LEARNING_RATE,
    EnsembleWeights,
    bound_slo_target,
    bounded_weight_update,
)
from slocast.services.audit import AuditEvent
from slocast.services.locks import TENANT_STATE
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

DEFAULT_RELIABILITY: float = 80.0
DEFAULT_MAE: float = 2.0
MIN_SLO_DELTA: float = 0.5
MIN_FORECAST_CONFIDENCE: float = 50.0


class AlwaysNudge:
    """Unconditional per-cycle weight nudge."""

    name = "self_tuner"

    def __init__(self, learning_rate: float = WEIGHT_LEARNING_RATE):
        self.learning_rate = learning_rate

    async def apply(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: datetime,
    ) -> UnitResult:
        metrics = await queries.get_latest_metrics(session, tenant_id)
        reliability = metrics.reliability if metrics else DEFAULT_RELIABILITY
        mae = metrics.mae if metrics else DEFAULT_MAE

        latest = await queries.get_latest_weights(session, tenant_id)
        current = (
            EnsembleWeights(latest.w_trend, latest.w_conservative, latest.w_optimistic)
            if latest
            else EnsembleWeights.default()
        )

        updated = bounded_weight_update(current, reliability, mae, self.learning_rate)

        session.add(
            EnsembleWeightHistory(
                tenant_id=tenant_id,
                w_trend=updated.trend,
                w_conservative=updated.conservative,
                w_optimistic=updated.optimistic,
                reliability=round(reliability, 2),
                mae=round(mae, 2),
                source=self.name,
                created_at=now,
            )
        )

        logger.info(
            "ensemble_weights_tuned",
            tenant_id=tenant_id,
            reliability=round(reliability, 1),
            mae=round(mae, 2),
            before=current.to_dict(),
            after={k: round(v, 4) for k, v in updated.to_dict().items()},
        )
        return UnitResult(counts={"tuned": 1})


class AdaptiveSLO:
    """Threshold-gated SLO target adjustment from the latest forecast."""

    name = "adaptive_slo"

    def __init__(
        self,
        min_delta: float = MIN_SLO_DELTA,
        min_confidence: float = MIN_FORECAST_CONFIDENCE,
    ):
        self.min_delta = min_delta
        self.min_confidence = min_confidence

    async def apply(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: datetime,
    ) -> UnitResult:
        tenant = await queries.get_tenant_settings(session, tenant_id)
        forecast = await queries.get_latest_forecast(session, tenant_id)
        if tenant is None or forecast is None:
            return UnitResult.skip("no_forecast")
        if forecast.applied_at is not None:
            # Older forecasts are superseded by this one
            return UnitResult.skip("already_applied")

        current = tenant.slo_target_sr
        delta = forecast.suggested_slo_target - current
        if abs(delta) < self.min_delta or forecast.confidence_score < self.min_confidence:
            logger.info(
                "slo_adjustment_skipped",
                tenant_id=tenant_id,
                delta=round(delta, 2),
                confidence=forecast.confidence_score,
            )
            return UnitResult.skip("below_threshold")

        new_target = round(bound_slo_target(current, forecast.suggested_slo_target), 2)
        if new_target == current:
            return UnitResult.skip("at_bound")

        if not await queries.update_slo_target(session, tenant_id, tenant.version, new_target):
            # Settings changed under us; next cycle re-reads them
            logger.warning("slo_adjustment_conflict", tenant_id=tenant_id, expected_version=tenant.version)
            return UnitResult.skip("version_conflict")

        await queries.mark_forecast_applied(session, forecast.id, now)

        details = {
            "old_target": current,
            "new_target": new_target,
            "delta": round(new_target - current, 2),
            "risk_level": forecast.risk_level,
            "breach_probability": forecast.breach_probability_7d,
            "confidence": forecast.confidence_score,
            "forecast_id": str(forecast.id),
        }
        logger.info("slo_auto_tuned", tenant_id=tenant_id, **details)
        return UnitResult(
            counts={"adjustments_made": 1},
            audit=[
                AuditEvent(
                    action="slo.auto_tuned",
                    tenant_id=tenant_id,
                    details=details,
                    resource_type="tenant_settings",
                    resource_id=tenant_id,
                )
            ],
        )


class WeightController:
    """Runs a strategy across tenants under the tenant-state lease."""

    def __init__(self, strategy):
        self.strategy = strategy

    @classmethod
    def always_nudge(cls, **kwargs) -> "WeightController":
        return cls(AlwaysNudge(**kwargs))

    @classmethod
    def adaptive_slo(cls, **kwargs) -> "WeightController":
        return cls(AdaptiveSLO(**kwargs))

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        now = now or datetime.utcnow()
        async with session_factory() as session:
            tenants = [t.tenant_id for t in await queries.list_tenants(session, tenant_id)]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            return await self.strategy.apply(session, tid, now)

        return await TenantWorkerPool(session_factory).run(
            self.strategy.name, tenants, unit, lease_resource=TENANT_STATE
        )
