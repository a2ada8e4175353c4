"""
Retraining Trainer.

Processes up to 5 queued jobs, oldest first. Each job:
1. is marked running (committed on its own)
2. derives new ensemble weights with bounded_weight_update() from the
   canary tenants' mean current weights and the job's pre-training metrics
3. registers the new version in the model registry
4. ends succeeded with weights and expected metrics, or failed with the
   error in `logs`. A job never stays `running`.
5. after success, writes a weight-history row for every canary tenant under
   that tenant's state lease. Busy tenants are left out and counted in
   `metrics_out_after`.
"""

import uuid
from datetime import datetime
from statistics import fmean
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.engine import session_scope
from slocast.db.models import EnsembleWeightHistory, ModelRegistryEntry, ModelTrainingJob
from slocast.engine.bounds import RELIABILITY_PIVOT, EnsembleWeights, bounded_weight_update, project_weights
from slocast.retraining.schemas import JobStatus
from slocast.services.locks import TENANT_STATE
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MAX_JOBS_PER_RUN: int = 5
DEFAULT_RELIABILITY: float = 75.0
DEFAULT_MAE: float = 3.0
MAE_REFERENCE: float = 5.0
ARTIFACT_ROOT: str = "s3://models"


def expected_metrics(avg_reliability: float, avg_mae: float) -> tuple[float, float]:
    reliability_delta = (avg_reliability - RELIABILITY_PIVOT) / 100.0
    mae_delta = (MAE_REFERENCE - avg_mae) / 10.0
    expected_reliability = avg_reliability + (2.0 if reliability_delta > 0 else -1.0)
    expected_mae = avg_mae - (0.3 if mae_delta > 0 else 0.0)
    return expected_reliability, expected_mae


class RetrainingTrainer:
    """Executes queued training jobs."""

    def __init__(self, max_jobs: int = MAX_JOBS_PER_RUN):
        self.max_jobs = max_jobs

    async def _baseline_weights(self, session: AsyncSession, canary: list[str]) -> EnsembleWeights:
        rows = []
        for tenant_id in canary:
            latest = await queries.get_latest_weights(session, tenant_id)
            if latest is not None:
                rows.append(latest)
        if not rows:
            return EnsembleWeights.default()
        return project_weights(
            fmean(r.w_trend for r in rows),
            fmean(r.w_conservative for r in rows),
            fmean(r.w_optimistic for r in rows),
        )

    async def train(
        self,
        session: AsyncSession,
        job: ModelTrainingJob,
        now: datetime,
    ) -> tuple[dict, list[str]]:
        """Register the new version. Returns the job output and the canary tenants."""
        metrics_in = job.metrics_in_before or {}
        avg_reliability = metrics_in.get("avg_reliability", DEFAULT_RELIABILITY)
        avg_mae = metrics_in.get("avg_mae", DEFAULT_MAE)

        experiment_id = job.experiment_id
        if experiment_id is None:
            active = await queries.get_active_experiment(session, job.family)
            experiment_id = active.id if active else None
        canary = await queries.get_canary_tenants(session, experiment_id) if experiment_id else []

        baseline = await self._baseline_weights(session, canary)
        weights = bounded_weight_update(baseline, avg_reliability, avg_mae)

        version = job.target_version
        session.add(
            ModelRegistryEntry(
                family=job.family,
                version=version,
                artifact_uri=f"{ARTIFACT_ROOT}/{job.family}/{version}",
                metrics={
                    "avg_reliability": avg_reliability,
                    "avg_mae": avg_mae,
                    "weights": weights.to_dict(),
                    "job_id": str(job.id),
                },
                created_at=now,
            )
        )

        expected_reliability, expected_mae = expected_metrics(avg_reliability, avg_mae)
        out = {
            "version": version,
            "weights": weights.to_dict(),
            "expected_reliability": expected_reliability,
            "expected_mae": expected_mae,
            "canary_tenants": len(canary),
        }
        return out, canary

    async def write_canary_weights(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        canary: list[str],
        out: dict,
        reliability: float,
        mae: float,
        now: datetime,
    ) -> StageReport:
        weights = out["weights"]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            session.add(
                EnsembleWeightHistory(
                    tenant_id=tid,
                    w_trend=weights["trend"],
                    w_conservative=weights["conservative"],
                    w_optimistic=weights["optimistic"],
                    reliability=reliability,
                    mae=mae,
                    source=f"training:{out['version']}",
                    created_at=now,
                )
            )
            return UnitResult(counts={"weights_written": 1})

        return await TenantWorkerPool(session_factory).run(
            "training_canary_weights", canary, unit, lease_resource=TENANT_STATE
        )

    async def _mark_failed(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_id: uuid.UUID,
        error: str,
    ) -> None:
        async with session_scope(session_factory) as session:
            job = await session.get(ModelTrainingJob, job_id)
            job.status = JobStatus.FAILED.value
            job.finished_at = datetime.utcnow()
            job.logs = f"Error: {error}"

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or datetime.utcnow()
        async with session_factory() as session:
            job_ids = [j.id for j in await queries.get_queued_jobs(session, self.max_jobs)]

        succeeded = 0
        failed = 0
        for job_id in job_ids:
            async with session_scope(session_factory) as session:
                job = await session.get(ModelTrainingJob, job_id)
                if job is None or job.status != JobStatus.QUEUED:
                    continue
                job.status = JobStatus.RUNNING.value
                job.started_at = now

            try:
                async with session_scope(session_factory) as session:
                    job = await session.get(ModelTrainingJob, job_id)
                    metrics_in = job.metrics_in_before or {}
                    out, canary = await self.train(session, job, now)
                    w = out["weights"]
                    job.status = JobStatus.SUCCEEDED.value
                    job.finished_at = datetime.utcnow()
                    job.metrics_out_after = out
                    job.logs = (
                        "Training completed successfully. New weights: "
                        f"trend={w['trend']:.2f}, conservative={w['conservative']:.2f}, "
                        f"optimistic={w['optimistic']:.2f}"
                    )
            except Exception as e:
                failed += 1
                logger.error("training_job_failed", job_id=str(job_id), error=str(e), exc_info=True)
                await self._mark_failed(session_factory, job_id, str(e))
                continue

            succeeded += 1
            report = await self.write_canary_weights(
                session_factory,
                canary,
                out,
                reliability=metrics_in.get("avg_reliability", DEFAULT_RELIABILITY),
                mae=metrics_in.get("avg_mae", DEFAULT_MAE),
                now=now,
            )
            out = {**out, "canary_weights_written": report.processed, "canary_busy": report.busy}
            async with session_scope(session_factory) as session:
                job = await session.get(ModelTrainingJob, job_id)
                job.metrics_out_after = out
            logger.info("training_job_succeeded", job_id=str(job_id), **out)

        logger.info("execute_training_completed", processed=succeeded + failed, succeeded=succeeded, failed=failed)
        return {"processed": succeeded + failed, "succeeded": succeeded, "failed": failed}
