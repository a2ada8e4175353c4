"""
Breach-Risk Scorer.

Seven-day breach probability as a clamped sum of four components:

    distance   min(50, max(0, target - predicted) * 2.5)
    volatility min(20, volatility * 1.5)
    alerts     min(15, alert_density * 5)
    burn       +15 if burn >= 2.0x, +10 if burn >= 1.5x

Risk level: high >= 60, medium >= 30, else low.
Tenants with fewer than 200 checks in 30 days are skipped (not an error).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import ForecastPrediction, InsightHistory
from slocast.engine.bounds import SLO_MAX, SLO_MAX_STEP, SLO_MIN, clamp
from slocast.engine.features import WINDOW_DAYS, TenantFeatures, load_features
from slocast.engine.schemas import RiskLevel
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MODEL_VERSION: str = "v1.0"
MIN_CHECKS_30D: int = 200
TREND_DAMPING: float = 0.7

DISTANCE_FACTOR: float = 2.5
DISTANCE_CAP: float = 50.0
VOLATILITY_FACTOR: float = 1.5
VOLATILITY_CAP: float = 20.0
ALERT_FACTOR: float = 5.0
ALERT_CAP: float = 15.0
BURN_SEVERE: float = 2.0
BURN_SEVERE_PENALTY: float = 15.0
BURN_ELEVATED: float = 1.5
BURN_ELEVATED_PENALTY: float = 10.0

HIGH_RISK_THRESHOLD: float = 60.0
MEDIUM_RISK_THRESHOLD: float = 30.0

VOLATILITY_INDEX_SCALE: float = 20.0     # stddev of 20 points == index 100
STABLE_VOLATILITY: float = 5.0
TARGET_MARGIN: float = 5.0

ADVISORY_TREND: float = -5.0
ADVISORY_VOLATILITY: float = 15.0
ADVISORY_ALERT_DENSITY: float = 2.0

STABLE_ADVISORY = "Compliance metrics stable. Continue current practices."


@dataclass(frozen=True)
class BreachRiskAssessment:
    risk_level: RiskLevel
    breach_probability: float
    predicted_sr_7d: float
    confidence_score: float
    volatility_index: float
    current_target: float
    suggested_target: float
    advisories: list[str] = field(default_factory=list)

    @property
    def target_delta(self) -> float:
        return self.suggested_target - self.current_target


def classify(breach_probability: float) -> RiskLevel:
    if breach_probability >= HIGH_RISK_THRESHOLD:
        return RiskLevel.HIGH
    if breach_probability >= MEDIUM_RISK_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def breach_probability(features: TenantFeatures, target: float, predicted_sr: float) -> float:
    prob = min(DISTANCE_CAP, max(0.0, target - predicted_sr) * DISTANCE_FACTOR)
    prob += min(VOLATILITY_CAP, features.volatility * VOLATILITY_FACTOR)
    prob += min(ALERT_CAP, features.alert_density * ALERT_FACTOR)
    if features.burn_rate >= BURN_SEVERE:
        prob += BURN_SEVERE_PENALTY
    elif features.burn_rate >= BURN_ELEVATED:
        prob += BURN_ELEVATED_PENALTY
    return clamp(prob)


def suggest_target(features: TenantFeatures, target: float, level: RiskLevel) -> float:
    """Step the target down when clearly unreachable, up when clearly too easy."""
    if level == RiskLevel.HIGH and features.avg_sr < target - TARGET_MARGIN:
        return max(SLO_MIN, target - SLO_MAX_STEP)
    if (
        level == RiskLevel.LOW
        and features.avg_sr > target + TARGET_MARGIN
        and features.volatility < STABLE_VOLATILITY
    ):
        return min(SLO_MAX, target + SLO_MAX_STEP)
    return target


def advisories_for(features: TenantFeatures, level: RiskLevel) -> list[str]:
    """Independent threshold checks; several may fire at once."""
    out: list[str] = []
    if features.trend < ADVISORY_TREND:
        out.append("Downward trend detected. Review recent changes and increase monitoring frequency.")
    if features.volatility > ADVISORY_VOLATILITY:
        out.append(
            f"High volatility (σ={features.volatility:.1f}%). "
            "Stabilize processes to improve predictability."
        )
    if features.alert_density > ADVISORY_ALERT_DENSITY:
        out.append(
            f"Alert density {features.alert_density:.1f}/day. "
            "Prioritize resolution of critical incidents."
        )
    if features.burn_rate >= BURN_ELEVATED:
        out.append(
            f"Error budget burning at {features.burn_rate:.1f}×. "
            "Reduce failure rate to prevent SLO breach."
        )
    if level == RiskLevel.HIGH:
        out.append("High breach risk within 7 days. Consider triggering incident response procedures.")
    return out or [STABLE_ADVISORY]


def score_breach_risk(features: TenantFeatures, target: float) -> BreachRiskAssessment:
    """Pure scoring of one tenant's feature vector against its SLO target."""
    predicted = clamp(features.avg_sr + features.trend * TREND_DAMPING)
    prob = breach_probability(features, target, predicted)
    level = classify(prob)

    volatility_index = min(100.0, features.volatility / VOLATILITY_INDEX_SCALE * 100.0)
    completeness = min(100.0, features.days_with_data / WINDOW_DAYS * 100.0)
    confidence = clamp((100.0 - volatility_index) * 0.7 + completeness * 0.3)

    return BreachRiskAssessment(
        risk_level=level,
        breach_probability=prob,
        predicted_sr_7d=predicted,
        confidence_score=confidence,
        volatility_index=volatility_index,
        current_target=target,
        suggested_target=suggest_target(features, target, level),
        advisories=advisories_for(features, level),
    )


class BreachRiskScorer:
    """Generates and stores one ForecastPrediction per eligible tenant."""

    def __init__(self, min_checks: int = MIN_CHECKS_30D):
        self.min_checks = min_checks

    async def forecast_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ForecastPrediction]:
        """Score and persist. Returns None when the tenant lacks data."""
        now = now or datetime.utcnow()
        tenant = await queries.get_tenant_settings(session, tenant_id)
        target = tenant.slo_target_sr if tenant else 80.0

        features = await load_features(session, tenant_id, target, now)
        if features.total_checks < self.min_checks:
            logger.info(
                "forecast_insufficient_data",
                tenant_id=tenant_id,
                checks=features.total_checks,
                required=self.min_checks,
            )
            return None

        assessment = score_breach_risk(features, target)

        prediction = ForecastPrediction(
            tenant_id=tenant_id,
            risk_level=assessment.risk_level.value,
            breach_probability_7d=round(assessment.breach_probability, 2),
            confidence_score=round(assessment.confidence_score, 2),
            predicted_sr_7d=round(assessment.predicted_sr_7d, 2),
            volatility_index=round(assessment.volatility_index, 2),
            current_slo_target=target,
            suggested_slo_target=round(assessment.suggested_target, 2),
            advisories=assessment.advisories,
            features=features.to_dict(),
            model_version=MODEL_VERSION,
            generated_at=now,
        )
        session.add(prediction)
        session.add(
            InsightHistory(
                tenant_id=tenant_id,
                insight_type="forecast",
                summary=(
                    f"7-Day Compliance Forecast: {assessment.risk_level.upper()} Risk. "
                    f"Breach probability {assessment.breach_probability:.0f}%, "
                    f"predicted SR {assessment.predicted_sr_7d:.1f}%, "
                    f"confidence {assessment.confidence_score:.0f}%"
                ),
                payload={
                    "breach_probability": assessment.breach_probability,
                    "predicted_sr": assessment.predicted_sr_7d,
                    "confidence": assessment.confidence_score,
                    "volatility": features.volatility,
                    "trend": features.trend,
                    "advisories": assessment.advisories,
                },
                created_at=now,
            )
        )
        await session.flush()

        logger.info(
            "forecast_generated",
            tenant_id=tenant_id,
            risk_level=assessment.risk_level.value,
            breach_probability=round(assessment.breach_probability, 1),
            predicted_sr=round(assessment.predicted_sr_7d, 1),
            confidence=round(assessment.confidence_score, 1),
            suggested_slo=assessment.suggested_target,
            delta_slo=round(assessment.target_delta, 1),
        )
        return prediction

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        async with session_factory() as session:
            tenants = [t.tenant_id for t in await queries.list_tenants(session, tenant_id)]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            prediction = await self.forecast_tenant(session, tid, now)
            if prediction is None:
                return UnitResult.skip("insufficient_data")
            return UnitResult(counts={"forecasts_generated": 1, "insights_created": 1})

        return await TenantWorkerPool(session_factory).run("generate_forecast", tenants, unit)
