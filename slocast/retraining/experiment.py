"""
Canary Experiment Evaluation.

A running experiment becomes eligible once it has run for 3 days. Canary
tenants are compared with every other tenant (control) on:
- MAE of accuracy records evaluated in the last 3 days
- mean of the latest reliability per tenant

Rollout when control_mae - canary_mae >= 0.5 or
canary_reliability - control_reliability >= 5: the most recent canary
weights are copied to every self-tuning tenant, each write under that
tenant's state lease. Otherwise rollback. The experiment ends either way
and releases its family slot.
"""

import uuid
from datetime import datetime, timedelta
from statistics import fmean
from typing import Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.engine import session_scope
from slocast.db.models import EnsembleWeightHistory, ForecastAccuracy, ModelExperiment
from slocast.engine.bounds import EnsembleWeights
from slocast.retraining.schemas import ExperimentDecision, ExperimentStatus
from slocast.services.audit import AuditEvent, write_audit
from slocast.services.locks import TENANT_STATE
from slocast.services.worker_pool import TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MIN_EVAL_DAYS: int = 3
MAE_IMPROVEMENT_THRESHOLD: float = 0.5
RELIABILITY_IMPROVEMENT_THRESHOLD: float = 5.0


def mean_abs_error(records: Sequence[ForecastAccuracy]) -> Optional[float]:
    if not records:
        return None
    return fmean(abs(r.predicted_sr - r.actual_sr) for r in records)


def mean_reliability(reliabilities: Sequence[float]) -> float:
    return fmean(reliabilities) if reliabilities else 0.0


class ExperimentEvaluator:
    """Decides rollout or rollback for mature canary experiments."""

    def __init__(
        self,
        min_eval_days: int = MIN_EVAL_DAYS,
        mae_threshold: float = MAE_IMPROVEMENT_THRESHOLD,
        reliability_threshold: float = RELIABILITY_IMPROVEMENT_THRESHOLD,
    ):
        self.min_eval_days = min_eval_days
        self.mae_threshold = mae_threshold
        self.reliability_threshold = reliability_threshold

    async def compare(self, session: AsyncSession, experiment_id: uuid.UUID, now: datetime) -> Optional[dict]:
        """Canary vs control comparison, or None when either arm has no recent accuracy data."""
        canary = await queries.get_canary_tenants(session, experiment_id)
        if not canary:
            return None
        canary_set = set(canary)
        control = [t.tenant_id for t in await queries.list_tenants(session) if t.tenant_id not in canary_set]

        since = (now - timedelta(days=self.min_eval_days)).date()
        canary_mae = mean_abs_error(await queries.get_accuracy_for_tenants(session, canary, since))
        control_mae = mean_abs_error(await queries.get_accuracy_for_tenants(session, control, since))
        if canary_mae is None or control_mae is None:
            return None

        latest = await queries.get_latest_metrics_all(session)
        canary_rel = mean_reliability([m.reliability for m in latest if m.tenant_id in canary_set])
        control_rel = mean_reliability([m.reliability for m in latest if m.tenant_id not in canary_set])

        mae_improvement = control_mae - canary_mae
        reliability_improvement = canary_rel - control_rel
        rollout = (
            mae_improvement >= self.mae_threshold
            or reliability_improvement >= self.reliability_threshold
        )
        return {
            "canary_tenants": canary,
            "canary_mae": round(canary_mae, 2),
            "control_mae": round(control_mae, 2),
            "mae_improvement": round(mae_improvement, 2),
            "canary_reliability": round(canary_rel, 1),
            "control_reliability": round(control_rel, 1),
            "reliability_improvement": round(reliability_improvement, 1),
            "decision": (ExperimentDecision.ROLLOUT if rollout else ExperimentDecision.ROLLBACK).value,
        }

    async def rollout(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        experiment_name: str,
        canary: list[str],
        now: datetime,
    ) -> int:
        """Copy the latest canary weights to every self-tuning tenant. Returns tenants written."""
        async with session_factory() as session:
            source = await queries.get_latest_weights_among(session, canary)
            if source is None:
                return 0
            weights = EnsembleWeights(source.w_trend, source.w_conservative, source.w_optimistic)
            reliability, mae = source.reliability, source.mae
            targets = [t.tenant_id for t in await queries.list_tenants(session, self_tuning_enabled=True)]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            session.add(
                EnsembleWeightHistory(
                    tenant_id=tid,
                    w_trend=weights.trend,
                    w_conservative=weights.conservative,
                    w_optimistic=weights.optimistic,
                    reliability=reliability,
                    mae=mae,
                    source=f"rollout:{experiment_name}",
                    created_at=now,
                )
            )
            return UnitResult(counts={"weights_written": 1})

        report = await TenantWorkerPool(session_factory).run(
            "experiment_rollout", targets, unit, lease_resource=TENANT_STATE
        )
        return report.counts.get("weights_written", 0)

    async def _end(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        experiment_id: uuid.UUID,
        decision: ExperimentDecision,
        notes: str,
        results: Optional[dict],
        now: datetime,
    ) -> None:
        async with session_scope(session_factory) as session:
            exp = await session.get(ModelExperiment, experiment_id)
            exp.status = ExperimentStatus.ENDED.value
            exp.active_family = None
            exp.decision = decision.value
            exp.results = results
            exp.notes = notes
            exp.ended_at = now

    async def evaluate(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=self.min_eval_days)
        async with session_factory() as session:
            running = [
                (e.id, e.name, e.started_at)
                for e in await queries.get_running_experiments(session)
            ]

        counts = {"evaluated": 0, "rolled_out": 0, "rolled_back": 0, "failed": 0, "skipped": 0}
        audit: list[AuditEvent] = []
        for exp_id, name, started_at in running:
            if started_at is None or started_at > cutoff:
                logger.info("experiment_too_young", experiment_id=str(exp_id), started_at=started_at)
                counts["skipped"] += 1
                continue

            try:
                async with session_factory() as session:
                    comparison = await self.compare(session, exp_id, now)
                if comparison is None:
                    logger.info("experiment_insufficient_data", experiment_id=str(exp_id))
                    counts["skipped"] += 1
                    continue

                decision = ExperimentDecision(comparison["decision"])
                canary = comparison.pop("canary_tenants")
                if decision == ExperimentDecision.ROLLOUT:
                    comparison["tenants_updated"] = await self.rollout(session_factory, name, canary, now)
                    notes = (
                        f"Rollout: MAE improved by {comparison['mae_improvement']:.2f}pp, "
                        f"reliability improved by {comparison['reliability_improvement']:.1f}pp"
                    )
                    counts["rolled_out"] += 1
                else:
                    notes = (
                        f"Rollback: MAE improvement {comparison['mae_improvement']:.2f}pp "
                        f"(need {self.mae_threshold}), reliability improvement "
                        f"{comparison['reliability_improvement']:.1f}pp (need {self.reliability_threshold})"
                    )
                    counts["rolled_back"] += 1

                await self._end(session_factory, exp_id, decision, notes, comparison, now)
                counts["evaluated"] += 1
                logger.info("experiment_decided", experiment_id=str(exp_id), name=name, **comparison)
            except Exception as e:
                logger.error("experiment_evaluation_failed", experiment_id=str(exp_id), error=str(e), exc_info=True)
                decision = ExperimentDecision.FAILED
                comparison = None
                await self._end(session_factory, exp_id, decision, f"Evaluation failed: {e}", None, now)
                counts["failed"] += 1

            audit.append(
                AuditEvent(
                    action="experiment.ended",
                    resource_type="model_experiment",
                    resource_id=str(exp_id),
                    details={"decision": decision.value, **(comparison or {})},
                )
            )

        await write_audit(session_factory, audit)
        logger.info("evaluate_experiment_completed", **counts)
        return counts
