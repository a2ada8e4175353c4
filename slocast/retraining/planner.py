"""
Retraining Planner.

Candidates are tenants whose latest model metrics show
    reliability < 70, or MAE > 5, or |bias| > 2.5
with at least 10 samples, and which have opted into both self-tuning and
canary experiments.

If the family has no draft/running experiment, one is created (allocation
20%), ceil(20%) of the candidates are stickily assigned to the canary arm,
one training job is queued with the candidates' aggregate metrics, and the
experiment is started. The UNIQUE(active_family) column makes concurrent
planners race safely: the loser sees an IntegrityError and backs off.
"""

import math
import random
from dataclasses import dataclass
from datetime import datetime
from statistics import fmean
from typing import Optional, Sequence

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.engine import session_scope
from slocast.db.models import (
    ForecastModelMetrics,
    ModelExperiment,
    ModelExperimentAssignment,
    ModelTrainingJob,
)
from slocast.engine.bounds import WEIGHT_LEARNING_RATE
from slocast.retraining.schemas import ExperimentStatus, JobStatus, TriggerReason
from slocast.services.audit import AuditEvent, write_audit

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

FAMILY: str = "ensemble"
RELIABILITY_MIN: float = 70.0
MAE_MAX: float = 5.0
BIAS_MAX: float = 2.5
MIN_SAMPLE_SIZE: int = 10
CANARY_FRACTION: float = 0.2


@dataclass(frozen=True)
class RetrainCandidate:
    tenant_id: str
    reliability: float
    mae: float
    bias: float
    sample_size: int

    @property
    def reasons(self) -> list[TriggerReason]:
        out = []
        if self.reliability < RELIABILITY_MIN:
            out.append(TriggerReason.RELIABILITY_LOW)
        if self.mae > MAE_MAX:
            out.append(TriggerReason.MAE_HIGH)
        if abs(self.bias) > BIAS_MAX:
            out.append(TriggerReason.BIAS)
        return out


def detect_candidates(metrics: Sequence[ForecastModelMetrics], eligible: set[str]) -> list[RetrainCandidate]:
    candidates = []
    for m in metrics:
        c = RetrainCandidate(m.tenant_id, m.reliability, m.mae, m.bias or 0.0, m.sample_size)
        if c.reasons and c.sample_size >= MIN_SAMPLE_SIZE and c.tenant_id in eligible:
            candidates.append(c)
    return candidates


def trigger_reason(candidates: Sequence[RetrainCandidate]) -> str:
    seen = {r for c in candidates for r in c.reasons}
    # Fixed order so the string is stable
    return ", ".join(r.value for r in TriggerReason if r in seen)


class RetrainingPlanner:
    """Creates at most one canary experiment and training job per family."""

    def __init__(
        self,
        family: str = FAMILY,
        canary_fraction: float = CANARY_FRACTION,
        rng: Optional[random.Random] = None,
    ):
        self.family = family
        self.canary_fraction = canary_fraction
        self.rng = rng or random.Random()

    async def plan(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or datetime.utcnow()
        audit: list[AuditEvent] = []

        async with session_scope(session_factory) as session:
            eligible = {
                t.tenant_id
                for t in await queries.list_tenants(session, self_tuning_enabled=True, canary_opt_in=True)
            }
            candidates = detect_candidates(await queries.get_latest_metrics_all(session), eligible)
            if not candidates:
                logger.info("retraining_no_candidates")
                return {"candidates": 0}

            existing = await queries.get_active_experiment(session, self.family)
            if existing is not None:
                logger.info("retraining_experiment_active", experiment_id=str(existing.id))
                return {"existing_experiment": str(existing.id)}

            experiment = ModelExperiment(
                name=f"{self.family}-retrain-{now.date().isoformat()}",
                family=self.family,
                variant={"learning_rate": WEIGHT_LEARNING_RATE, "target": "adaptive_weights"},
                allocation=self.canary_fraction,
                status=ExperimentStatus.DRAFT.value,
                owner="system",
                notes=f"Triggered by low performance: {len(candidates)} tenants",
                active_family=self.family,
                created_at=now,
            )
            session.add(experiment)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.info("retraining_experiment_race_lost", family=self.family)
                return {"candidates": len(candidates), "existing_experiment": "concurrent"}

            canary_count = math.ceil(len(candidates) * self.canary_fraction)
            canary = self.rng.sample(candidates, canary_count)
            session.add_all(
                [
                    ModelExperimentAssignment(
                        experiment_id=experiment.id,
                        tenant_id=c.tenant_id,
                        arm="canary",
                        sticky=True,
                        created_at=now,
                    )
                    for c in canary
                ]
            )

            reason = trigger_reason(candidates)
            job = ModelTrainingJob(
                family=self.family,
                target_version=f"v1.{int(now.timestamp() * 1000)}",
                status=JobStatus.QUEUED.value,
                trigger_reason=reason,
                experiment_id=experiment.id,
                metrics_in_before={
                    "avg_reliability": fmean(c.reliability for c in candidates),
                    "avg_mae": fmean(c.mae for c in candidates),
                    "avg_bias": fmean(c.bias for c in candidates),
                    "candidates": len(candidates),
                },
                created_at=now,
            )
            session.add(job)

            experiment.status = ExperimentStatus.RUNNING.value
            experiment.started_at = now
            await session.flush()

            result = {
                "experiment_id": str(experiment.id),
                "job_id": str(job.id),
                "candidates": len(candidates),
                "canary_count": len(canary),
            }
            logger.info(
                "retraining_experiment_created",
                reasons=reason,
                canary=[c.tenant_id for c in canary],
                **result,
            )
            audit.append(
                AuditEvent(
                    action="experiment.created",
                    resource_type="model_experiment",
                    resource_id=str(experiment.id),
                    details={"trigger_reason": reason, **result},
                )
            )

        await write_audit(session_factory, audit)
        return result
