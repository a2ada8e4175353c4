"""
Training job execution tests.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from slocast.db.models import (
    EnsembleWeightHistory,
    ModelExperiment,
    ModelExperimentAssignment,
    ModelRegistryEntry,
    ModelTrainingJob,
)
from slocast.retraining.trainer import RetrainingTrainer, expected_metrics
from slocast.services.locks import TENANT_STATE, LeaseManager

NOW = datetime(2026, 3, 31, 12)


def experiment(**overrides) -> ModelExperiment:
    fields = dict(
        name="ensemble-retrain-2026-03-30",
        family="ensemble",
        status="running",
        active_family="ensemble",
        started_at=NOW - timedelta(days=1),
    )
    fields.update(overrides)
    return ModelExperiment(**fields)


def job(experiment_id=None, version: str = "v1.1000", created_at: datetime = NOW - timedelta(hours=1), **metrics_in):
    return ModelTrainingJob(
        family="ensemble",
        target_version=version,
        status="queued",
        trigger_reason="reliability_low",
        experiment_id=experiment_id,
        metrics_in_before=metrics_in or {"avg_reliability": 60.0, "avg_mae": 6.0},
        created_at=created_at,
    )


def test_expected_metrics():
    assert expected_metrics(60.0, 6.0) == (59.0, 6.0)
    assert expected_metrics(80.0, 4.0) == pytest.approx((82.0, 3.7))


@pytest.mark.asyncio
async def test_job_registers_version_and_writes_canary_weights(session_factory, db, make_tenant, insert):
    await make_tenant("tenant-a")
    await make_tenant("tenant-b")
    exp = await insert(experiment())
    await insert(
        ModelExperimentAssignment(experiment_id=exp.id, tenant_id="tenant-a", arm="canary"),
        job(exp.id),
    )

    result = await RetrainingTrainer().run(session_factory, now=NOW)

    assert result == {"processed": 1, "succeeded": 1, "failed": 0}
    done = (await db.execute(select(ModelTrainingJob))).scalar_one()
    assert done.status == "succeeded"
    assert done.started_at == NOW
    assert done.finished_at is not None
    assert done.logs.startswith("Training completed successfully")
    assert done.metrics_out_after["expected_reliability"] == 59.0
    assert done.metrics_out_after["canary_tenants"] == 1

    entry = (await db.execute(select(ModelRegistryEntry))).scalar_one()
    assert entry.version == "v1.1000"
    assert entry.artifact_uri == "s3://models/ensemble/v1.1000"

    weights = (await db.execute(select(EnsembleWeightHistory))).scalars().all()
    assert [w.tenant_id for w in weights] == ["tenant-a"]
    assert weights[0].source == "training:v1.1000"
    # Low reliability moves weight off the trend model
    assert weights[0].w_trend < 0.33
    assert done.metrics_out_after["canary_weights_written"] == 1


@pytest.mark.asyncio
async def test_busy_canary_tenant_is_left_out(session_factory, db, make_tenant, insert):
    """Another holder owns tenant-b's state lease: no weight row for it, job still succeeds."""
    await make_tenant("tenant-a")
    await make_tenant("tenant-b")
    exp = await insert(experiment())
    await insert(
        ModelExperimentAssignment(experiment_id=exp.id, tenant_id="tenant-a", arm="canary"),
        ModelExperimentAssignment(experiment_id=exp.id, tenant_id="tenant-b", arm="canary"),
        job(exp.id),
    )
    assert await LeaseManager(session_factory, holder="other-worker").acquire("tenant-b", TENANT_STATE)

    result = await RetrainingTrainer().run(session_factory, now=NOW)

    assert result["succeeded"] == 1
    done = (await db.execute(select(ModelTrainingJob))).scalar_one()
    assert done.status == "succeeded"
    assert done.metrics_out_after["canary_tenants"] == 2
    assert done.metrics_out_after["canary_weights_written"] == 1
    assert done.metrics_out_after["canary_busy"] == 1
    weights = (await db.execute(select(EnsembleWeightHistory))).scalars().all()
    assert [w.tenant_id for w in weights] == ["tenant-a"]


@pytest.mark.asyncio
async def test_failed_job_records_error(session_factory, db, insert):
    await insert(
        ModelRegistryEntry(family="ensemble", version="v1.1000", artifact_uri="s3://models/ensemble/v1.1000"),
        job(version="v1.1000"),
    )

    result = await RetrainingTrainer().run(session_factory, now=NOW)

    assert result["failed"] == 1
    failed = (await db.execute(select(ModelTrainingJob))).scalar_one()
    assert failed.status == "failed"
    assert failed.logs.startswith("Error:")


@pytest.mark.asyncio
async def test_max_jobs_per_run(session_factory, db, insert):
    await insert(
        *[job(version=f"v1.{i}", created_at=NOW - timedelta(minutes=10 - i)) for i in range(7)]
    )

    result = await RetrainingTrainer().run(session_factory, now=NOW)

    assert result["processed"] == 5
    queued = (
        await db.execute(select(ModelTrainingJob).where(ModelTrainingJob.status == "queued"))
    ).scalars().all()
    assert sorted(j.target_version for j in queued) == ["v1.5", "v1.6"]
