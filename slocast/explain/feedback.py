"""
Signal weighting from human feedback and forecast error.

- apply_feedback(): Bayesian-style update of one SignalWeight
      lr         = 0.2 / sqrt(sample + 1)
      weight     = clamp(weight + lr * delta, 0.5, 2.0)
      confidence = clamp(50 + (sample + 1) * 2)
- WeightRecompute: nightly nudge of every existing weight from the last
  7 days of forecast error (+0.05 for strong signals under high MAE, else -0.02)
- top_weighted_signals(): latest-day signals ranked by |value| * weight * confidence / 100
"""

import math
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import ExplainabilityFeedback, SignalWeight
from slocast.engine.bounds import bound_signal_weight, clamp
from slocast.errors import ValidationFailed
from slocast.explain.schemas import VERDICT_DELTA, FeedbackRequest, Verdict, WeightedSignal
from slocast.services.locks import TENANT_STATE
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

BASE_LEARNING_RATE: float = 0.2
BASE_CONFIDENCE: float = 50.0
CONFIDENCE_PER_SAMPLE: float = 2.0
DEFAULT_WEIGHT: float = 1.0
DEFAULT_CONFIDENCE: float = 50.0

RECOMPUTE_WINDOW_DAYS: int = 7
RECOMPUTE_MIN_RECORDS: int = 3
RECOMPUTE_SIGNAL_DAYS: int = 30
STRONG_SIGNAL: float = 0.3
HIGH_MAE: float = 5.0
REWARD_STEP: float = 0.05
DECAY_STEP: float = -0.02


def feedback_update(weight: float, sample: int, verdict: Verdict) -> tuple[float, float, int]:
    """(new_weight, new_confidence, new_sample) after one verdict."""
    lr = BASE_LEARNING_RATE / math.sqrt(sample + 1)
    new_weight = bound_signal_weight(weight + lr * VERDICT_DELTA[verdict])
    new_sample = sample + 1
    new_confidence = clamp(BASE_CONFIDENCE + new_sample * CONFIDENCE_PER_SAMPLE)
    return new_weight, new_confidence, new_sample


def validate_feedback(body: FeedbackRequest) -> Verdict:
    if not body.tenant_id or not body.feature or not body.metric or not body.verdict:
        raise ValidationFailed("Missing required fields")
    try:
        return Verdict(body.verdict)
    except ValueError:
        raise ValidationFailed("Invalid verdict. Must be useful, not_useful, or irrelevant")


async def apply_feedback(session: AsyncSession, body: FeedbackRequest) -> SignalWeight:
    """Record the verdict and upsert the matching weight. Caller commits."""
    verdict = validate_feedback(body)

    session.add(
        ExplainabilityFeedback(
            tenant_id=body.tenant_id,
            feature=body.feature,
            key=body.key,
            metric=body.metric,
            verdict=verdict.value,
            notes=body.notes,
            actor=body.actor,
        )
    )

    weight = await queries.get_signal_weight(session, body.tenant_id, body.feature, body.key, body.metric)
    if weight is None:
        weight = SignalWeight(
            tenant_id=body.tenant_id,
            feature=body.feature,
            key=body.key,
            metric=body.metric,
            weight=DEFAULT_WEIGHT,
            confidence=DEFAULT_CONFIDENCE,
            sample=0,
        )
        session.add(weight)

    weight.weight, weight.confidence, weight.sample = feedback_update(weight.weight, weight.sample, verdict)
    await session.flush()

    logger.info(
        "signal_weight_updated",
        tenant_id=body.tenant_id,
        feature=body.feature,
        key=body.key,
        metric=body.metric,
        verdict=verdict.value,
        weight=round(weight.weight, 3),
        confidence=weight.confidence,
        sample=weight.sample,
    )
    return weight


async def top_weighted_signals(
    session: AsyncSession,
    tenant_id: str,
    limit: int = 5,
    min_sample: int = 0,
) -> list[WeightedSignal]:
    signals = [
        s for s in await queries.get_latest_signals(session, tenant_id)
        if s.sample_size >= min_sample
    ]
    weights = {
        (w.feature, w.key, w.metric): w for w in await queries.get_signal_weights(session, tenant_id)
    }

    ranked = []
    for s in signals:
        w = weights.get((s.feature, s.key, s.metric))
        weight = w.weight if w else DEFAULT_WEIGHT
        confidence = w.confidence if w else DEFAULT_CONFIDENCE
        ranked.append(
            WeightedSignal(
                feature=s.feature,
                key=s.key,
                metric=s.metric,
                value=s.value,
                sample_size=s.sample_size,
                p_value=s.p_value,
                weight=weight,
                confidence=confidence,
                score=abs(s.value) * weight * confidence / 100.0,
            )
        )
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked[:limit]


class WeightRecompute:
    """Nightly weight refinement from recent forecast error."""

    async def recompute_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: datetime,
    ) -> Optional[int]:
        records = await queries.get_accuracy_records(
            session, tenant_id, since=(now - timedelta(days=RECOMPUTE_WINDOW_DAYS)).date()
        )
        if len(records) < RECOMPUTE_MIN_RECORDS:
            return None

        avg_mae = sum(abs(r.predicted_sr - r.actual_sr) for r in records) / len(records)

        latest_value: dict[tuple, float] = {}
        for s in await queries.get_signals_since(
            session, tenant_id, since=(now - timedelta(days=RECOMPUTE_SIGNAL_DAYS)).date()
        ):
            latest_value[(s.feature, s.key, s.metric)] = s.value

        updated = 0
        for w in await queries.get_signal_weights(session, tenant_id):
            value = latest_value.get((w.feature, w.key, w.metric))
            if value is None:
                continue
            step = REWARD_STEP if abs(value) > STRONG_SIGNAL and avg_mae > HIGH_MAE else DECAY_STEP
            w.weight = bound_signal_weight(w.weight + step)
            w.mae_impact = avg_mae
            updated += 1

        logger.info("signal_weights_recomputed", tenant_id=tenant_id, avg_mae=round(avg_mae, 2), updated=updated)
        return updated

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        now = now or datetime.utcnow()
        async with session_factory() as session:
            tenants = [
                t.tenant_id
                for t in await queries.list_tenants(session, tenant_id, explainability_enabled=True)
            ]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            updated = await self.recompute_tenant(session, tid, now)
            if updated is None:
                return UnitResult.skip("insufficient_accuracy_records")
            return UnitResult(counts={"weights_updated": updated})

        return await TenantWorkerPool(session_factory).run(
            "recompute_weights", tenants, unit, lease_resource=TENANT_STATE
        )
