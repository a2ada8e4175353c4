"""
Typed query functions.

Read models for latest weights, latest model metrics, forecast
candidates and the reliability trend. Every function takes an explicit
tenant_id where the data is tenant-scoped.
"""

import uuid
from datetime import date, datetime
from typing import Optional, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from slocast.db.models import (
    Alert,
    CheckResult,
    EnsembleForecast,
    EnsembleWeightHistory,
    ExplainabilitySignal,
    ForecastAccuracy,
    ForecastModelMetrics,
    ForecastPrediction,
    GeneratedRecommendation,
    ModelExperiment,
    ModelExperimentAssignment,
    ModelTrainingJob,
    PlaybookCatalogEntry,
    RemediationRun,
    SignalWeight,
    TenantSettings,
)


# ── Tenants ──────────────────────────────────────────────────────────────


async def list_tenants(
    session: AsyncSession,
    tenant_id: Optional[str] = None,
    **flags: bool,
) -> Sequence[TenantSettings]:
    """Tenants to iterate, optionally scoped to one id and filtered by boolean flags."""
    stmt = select(TenantSettings).order_by(TenantSettings.tenant_id)
    if tenant_id:
        stmt = stmt.where(TenantSettings.tenant_id == tenant_id)
    for name, value in flags.items():
        stmt = stmt.where(getattr(TenantSettings, name) == value)
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_tenant_settings(session: AsyncSession, tenant_id: str) -> Optional[TenantSettings]:
    result = await session.execute(
        select(TenantSettings).where(TenantSettings.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def update_slo_target(
    session: AsyncSession,
    tenant_id: str,
    expected_version: int,
    new_target: float,
) -> bool:
    """Compare-and-swap on `version`. False means someone else changed the tenant first."""
    result = await session.execute(
        update(TenantSettings)
        .where(
            TenantSettings.tenant_id == tenant_id,
            TenantSettings.version == expected_version,
        )
        .values(
            slo_target_sr=new_target,
            version=expected_version + 1,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


# ── Check results & alerts ───────────────────────────────────────────────


async def get_check_outcomes(
    session: AsyncSession,
    tenant_id: str,
    since: datetime,
    until: datetime,
) -> list[tuple[datetime, str]]:
    """(created_at, outcome) pairs in [since, until), oldest first."""
    result = await session.execute(
        select(CheckResult.created_at, CheckResult.outcome)
        .where(
            CheckResult.tenant_id == tenant_id,
            CheckResult.created_at >= since,
            CheckResult.created_at < until,
        )
        .order_by(CheckResult.created_at)
    )
    return [(row.created_at, row.outcome) for row in result]


async def get_recent_check_rows(
    session: AsyncSession,
    tenant_id: str,
    since: datetime,
    until: datetime,
    limit: int = 1000,
) -> list[tuple[datetime, str, Optional[str]]]:
    """Newest-first (created_at, outcome, rule_group), capped at `limit` rows."""
    result = await session.execute(
        select(CheckResult.created_at, CheckResult.outcome, CheckResult.rule_group)
        .where(
            CheckResult.tenant_id == tenant_id,
            CheckResult.created_at >= since,
            CheckResult.created_at < until,
        )
        .order_by(CheckResult.created_at.desc())
        .limit(limit)
    )
    return [(row.created_at, row.outcome, row.rule_group) for row in result]


async def count_alerts(
    session: AsyncSession,
    tenant_id: str,
    since: datetime,
    until: datetime,
) -> int:
    result = await session.execute(
        select(func.count(Alert.id)).where(
            Alert.tenant_id == tenant_id,
            Alert.triggered_at >= since,
            Alert.triggered_at < until,
        )
    )
    return int(result.scalar_one())


# ── Forecasts ────────────────────────────────────────────────────────────


async def get_latest_weights(session: AsyncSession, tenant_id: str) -> Optional[EnsembleWeightHistory]:
    result = await session.execute(
        select(EnsembleWeightHistory)
        .where(EnsembleWeightHistory.tenant_id == tenant_id)
        .order_by(EnsembleWeightHistory.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_latest_metrics(session: AsyncSession, tenant_id: str) -> Optional[ForecastModelMetrics]:
    result = await session.execute(
        select(ForecastModelMetrics)
        .where(ForecastModelMetrics.tenant_id == tenant_id)
        .order_by(ForecastModelMetrics.computed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_latest_metrics_all(session: AsyncSession) -> Sequence[ForecastModelMetrics]:
    """Most recent metrics row per tenant."""
    latest = (
        select(
            ForecastModelMetrics.tenant_id.label("tenant_id"),
            func.max(ForecastModelMetrics.computed_at).label("computed_at"),
        )
        .group_by(ForecastModelMetrics.tenant_id)
        .subquery()
    )
    result = await session.execute(
        select(ForecastModelMetrics)
        .join(
            latest,
            and_(
                ForecastModelMetrics.tenant_id == latest.c.tenant_id,
                ForecastModelMetrics.computed_at == latest.c.computed_at,
            ),
        )
        .order_by(ForecastModelMetrics.tenant_id)
    )
    return result.scalars().all()


async def get_metrics_series(
    session: AsyncSession,
    tenant_id: str,
    since: datetime,
) -> Sequence[ForecastModelMetrics]:
    result = await session.execute(
        select(ForecastModelMetrics)
        .where(
            ForecastModelMetrics.tenant_id == tenant_id,
            ForecastModelMetrics.computed_at >= since,
        )
        .order_by(ForecastModelMetrics.computed_at)
    )
    return result.scalars().all()


async def get_latest_forecast(
    session: AsyncSession,
    tenant_id: str,
) -> Optional[ForecastPrediction]:
    result = await session.execute(
        select(ForecastPrediction)
        .where(ForecastPrediction.tenant_id == tenant_id)
        .order_by(ForecastPrediction.generated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def mark_forecast_applied(session: AsyncSession, forecast_id: uuid.UUID, applied_at: datetime) -> bool:
    """Set applied_at once. False if it was already applied."""
    result = await session.execute(
        update(ForecastPrediction)
        .where(
            ForecastPrediction.id == forecast_id,
            ForecastPrediction.applied_at.is_(None),
        )
        .values(applied_at=applied_at)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def get_latest_ensemble(session: AsyncSession, tenant_id: str) -> Optional[EnsembleForecast]:
    result = await session.execute(
        select(EnsembleForecast)
        .where(EnsembleForecast.tenant_id == tenant_id)
        .order_by(EnsembleForecast.generated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_forecasts_due(
    session: AsyncSession,
    window_start: datetime,
    window_end: datetime,
    tenant_id: Optional[str] = None,
) -> Sequence[ForecastPrediction]:
    """Forecasts generated in [window_start, window_end) that have no accuracy record yet."""
    stmt = (
        select(ForecastPrediction)
        .outerjoin(ForecastAccuracy, ForecastAccuracy.forecast_id == ForecastPrediction.id)
        .where(
            ForecastPrediction.generated_at >= window_start,
            ForecastPrediction.generated_at < window_end,
            ForecastAccuracy.id.is_(None),
        )
        .order_by(ForecastPrediction.generated_at)
    )
    if tenant_id:
        stmt = stmt.where(ForecastPrediction.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_accuracy_records(
    session: AsyncSession,
    tenant_id: str,
    since: date,
) -> Sequence[ForecastAccuracy]:
    result = await session.execute(
        select(ForecastAccuracy)
        .where(
            ForecastAccuracy.tenant_id == tenant_id,
            ForecastAccuracy.evaluation_date >= since,
        )
        .order_by(ForecastAccuracy.evaluation_date)
    )
    return result.scalars().all()


# ── Explainability ───────────────────────────────────────────────────────


async def get_signal_weight(
    session: AsyncSession,
    tenant_id: str,
    feature: str,
    key: str,
    metric: str,
) -> Optional[SignalWeight]:
    result = await session.execute(
        select(SignalWeight).where(
            SignalWeight.tenant_id == tenant_id,
            SignalWeight.feature == feature,
            SignalWeight.key == key,
            SignalWeight.metric == metric,
        )
    )
    return result.scalar_one_or_none()


async def get_signal_weights(session: AsyncSession, tenant_id: str) -> Sequence[SignalWeight]:
    result = await session.execute(
        select(SignalWeight).where(SignalWeight.tenant_id == tenant_id)
    )
    return result.scalars().all()


async def get_signals_since(
    session: AsyncSession,
    tenant_id: str,
    since: date,
) -> Sequence[ExplainabilitySignal]:
    """Signals mined on or after `since`, oldest first."""
    result = await session.execute(
        select(ExplainabilitySignal)
        .where(
            ExplainabilitySignal.tenant_id == tenant_id,
            ExplainabilitySignal.day >= since,
        )
        .order_by(ExplainabilitySignal.day, ExplainabilitySignal.created_at)
    )
    return result.scalars().all()


async def get_latest_signals(
    session: AsyncSession,
    tenant_id: str,
    min_sample: int = 0,
) -> Sequence[ExplainabilitySignal]:
    """Signals from the tenant's most recent mining day."""
    last_day = (
        await session.execute(
            select(func.max(ExplainabilitySignal.day)).where(
                ExplainabilitySignal.tenant_id == tenant_id
            )
        )
    ).scalar_one_or_none()
    if last_day is None:
        return []
    result = await session.execute(
        select(ExplainabilitySignal)
        .where(
            ExplainabilitySignal.tenant_id == tenant_id,
            ExplainabilitySignal.day == last_day,
            ExplainabilitySignal.sample_size >= min_sample,
        )
        .order_by(ExplainabilitySignal.created_at.desc())
    )
    # One row per (feature, key, metric): newest wins
    seen: set = set()
    signals = []
    for signal in result.scalars().all():
        identity = (signal.feature, signal.key, signal.metric)
        if identity in seen:
            continue
        seen.add(identity)
        signals.append(signal)
    return signals


# ── Recommendations & remediation ────────────────────────────────────────


async def list_playbooks(session: AsyncSession) -> Sequence[PlaybookCatalogEntry]:
    result = await session.execute(select(PlaybookCatalogEntry).order_by(PlaybookCatalogEntry.code))
    return result.scalars().all()


async def get_playbook(session: AsyncSession, code: str) -> Optional[PlaybookCatalogEntry]:
    result = await session.execute(
        select(PlaybookCatalogEntry).where(PlaybookCatalogEntry.code == code)
    )
    return result.scalar_one_or_none()


async def count_open_recommendations(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count(GeneratedRecommendation.id)).where(
            GeneratedRecommendation.tenant_id == tenant_id,
            GeneratedRecommendation.status == "open",
        )
    )
    return int(result.scalar_one())


async def open_recommendation_exists(session: AsyncSession, tenant_id: str, open_key: str) -> bool:
    result = await session.execute(
        select(GeneratedRecommendation.id).where(
            GeneratedRecommendation.tenant_id == tenant_id,
            GeneratedRecommendation.open_key == open_key,
        )
    )
    return result.first() is not None


async def get_recommendation(
    session: AsyncSession,
    tenant_id: str,
    recommendation_id: uuid.UUID,
) -> Optional[GeneratedRecommendation]:
    result = await session.execute(
        select(GeneratedRecommendation).where(
            GeneratedRecommendation.id == recommendation_id,
            GeneratedRecommendation.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def list_recommendations(
    session: AsyncSession,
    tenant_id: str,
    status: str,
    limit: int,
    offset: int,
) -> list[tuple[GeneratedRecommendation, PlaybookCatalogEntry]]:
    result = await session.execute(
        select(GeneratedRecommendation, PlaybookCatalogEntry)
        .join(PlaybookCatalogEntry, PlaybookCatalogEntry.code == GeneratedRecommendation.playbook_code)
        .where(
            GeneratedRecommendation.tenant_id == tenant_id,
            GeneratedRecommendation.status == status,
        )
        .order_by(
            GeneratedRecommendation.priority.asc(),
            GeneratedRecommendation.expected_impact.desc(),
        )
        .offset(offset)
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]


async def get_auto_trigger_candidates(
    session: AsyncSession,
    tenant_id: str,
    min_confidence: float,
    min_impact: float,
    severities: Sequence[str],
) -> list[tuple[GeneratedRecommendation, PlaybookCatalogEntry]]:
    """Open recommendations whose playbook is trusted and severe enough."""
    result = await session.execute(
        select(GeneratedRecommendation, PlaybookCatalogEntry)
        .join(PlaybookCatalogEntry, PlaybookCatalogEntry.code == GeneratedRecommendation.playbook_code)
        .where(
            GeneratedRecommendation.tenant_id == tenant_id,
            GeneratedRecommendation.status == "open",
            GeneratedRecommendation.confidence >= min_confidence,
            GeneratedRecommendation.expected_impact >= min_impact,
            PlaybookCatalogEntry.severity.in_(list(severities)),
            PlaybookCatalogEntry.trusted == True,  # noqa: E712
        )
        .order_by(GeneratedRecommendation.priority, GeneratedRecommendation.expected_impact.desc())
    )
    return [(row[0], row[1]) for row in result.all()]


async def get_expired_snoozes(session: AsyncSession, now: datetime) -> Sequence[GeneratedRecommendation]:
    result = await session.execute(
        select(GeneratedRecommendation).where(
            GeneratedRecommendation.status == "snoozed",
            GeneratedRecommendation.snooze_until.is_not(None),
            GeneratedRecommendation.snooze_until <= now,
        )
    )
    return result.scalars().all()


async def has_recent_run(
    session: AsyncSession,
    tenant_id: str,
    playbook_code: str,
    since: datetime,
) -> bool:
    result = await session.execute(
        select(RemediationRun.id)
        .where(
            RemediationRun.tenant_id == tenant_id,
            RemediationRun.playbook_code == playbook_code,
            RemediationRun.started_at >= since,
        )
        .limit(1)
    )
    return result.first() is not None


async def get_run(session: AsyncSession, run_id: uuid.UUID) -> Optional[RemediationRun]:
    result = await session.execute(select(RemediationRun).where(RemediationRun.id == run_id))
    return result.scalar_one_or_none()


async def get_runs_to_score(
    session: AsyncSession,
    started_before: datetime,
    tenant_id: Optional[str] = None,
) -> Sequence[RemediationRun]:
    """Successful runs whose after-window has elapsed and that have no impact yet."""
    stmt = (
        select(RemediationRun)
        .where(
            RemediationRun.status == "success",
            RemediationRun.impact.is_(None),
            RemediationRun.started_at <= started_before,
        )
        .order_by(RemediationRun.started_at)
    )
    if tenant_id:
        stmt = stmt.where(RemediationRun.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalars().all()


# ── Retraining ───────────────────────────────────────────────────────────


async def get_active_experiment(session: AsyncSession, family: str) -> Optional[ModelExperiment]:
    result = await session.execute(
        select(ModelExperiment).where(
            ModelExperiment.family == family,
            ModelExperiment.status.in_(["draft", "running"]),
        )
    )
    return result.scalars().first()


async def get_running_experiments(session: AsyncSession) -> Sequence[ModelExperiment]:
    result = await session.execute(
        select(ModelExperiment)
        .where(ModelExperiment.status == "running")
        .order_by(ModelExperiment.started_at)
    )
    return result.scalars().all()


async def get_canary_tenants(session: AsyncSession, experiment_id: uuid.UUID) -> list[str]:
    result = await session.execute(
        select(ModelExperimentAssignment.tenant_id)
        .where(
            ModelExperimentAssignment.experiment_id == experiment_id,
            ModelExperimentAssignment.arm == "canary",
        )
        .order_by(ModelExperimentAssignment.tenant_id)
    )
    return list(result.scalars().all())


async def get_accuracy_for_tenants(
    session: AsyncSession,
    tenant_ids: Sequence[str],
    since: date,
) -> Sequence[ForecastAccuracy]:
    if not tenant_ids:
        return []
    result = await session.execute(
        select(ForecastAccuracy).where(
            ForecastAccuracy.tenant_id.in_(list(tenant_ids)),
            ForecastAccuracy.evaluation_date >= since,
        )
    )
    return result.scalars().all()


async def get_latest_weights_among(
    session: AsyncSession,
    tenant_ids: Sequence[str],
) -> Optional[EnsembleWeightHistory]:
    """Most recent weight row written for any of the given tenants."""
    if not tenant_ids:
        return None
    result = await session.execute(
        select(EnsembleWeightHistory)
        .where(EnsembleWeightHistory.tenant_id.in_(list(tenant_ids)))
        .order_by(EnsembleWeightHistory.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_queued_jobs(session: AsyncSession, limit: int) -> Sequence[ModelTrainingJob]:
    result = await session.execute(
        select(ModelTrainingJob)
        .where(ModelTrainingJob.status == "queued")
        .order_by(ModelTrainingJob.created_at)
        .limit(limit)
    )
    return result.scalars().all()


# ── Notifications ────────────────────────────────────────────────────────


async def get_recent_alerts(
    session: AsyncSession,
    tenant_id: str,
    since: datetime,
    limit: int = 5,
) -> Sequence[Alert]:
    result = await session.execute(
        select(Alert)
        .where(Alert.tenant_id == tenant_id, Alert.triggered_at >= since)
        .order_by(Alert.triggered_at.desc())
        .limit(limit)
    )
    return result.scalars().all()
