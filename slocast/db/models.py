"""
SLOCast SQLAlchemy Models.

Portable across SQLite (tests, local) and PostgreSQL (prod) via compat types.
All timestamps are naive UTC.

Invariants held by the schema rather than by application code:
- one open recommendation per (tenant, playbook, feature+key): UNIQUE(tenant_id, open_key)
- one draft/running experiment per model family: UNIQUE(active_family)
- one accuracy record per forecast: UNIQUE(forecast_id)
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from slocast.db.compat import GUID, JSONType
from slocast.db.engine import Base


def _genuuid():
    return uuid.uuid4()


# ──────────────────────────────────────────────────────────────────────────────
# 1.1 Tenant settings & raw inputs
# ──────────────────────────────────────────────────────────────────────────────


class TenantSettings(Base):
    """Per-tenant SLO target and feature toggles. `version` is bumped on every SLO change."""

    __tablename__ = "tenant_settings"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slo_target_sr: Mapped[float] = mapped_column(Float, nullable=False, default=95.0)
    self_tuning_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canary_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recommendations_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    explainability_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notification_webhook_url: Mapped[Optional[str]] = mapped_column(String(500))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CheckResult(Base):
    """Immutable check outcome produced by the external check runner."""

    __tablename__ = "check_results"
    __table_args__ = (
        Index("ix_check_results_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False)
    rule_id: Mapped[Optional[str]] = mapped_column(String(100))
    rule_group: Mapped[Optional[str]] = mapped_column(String(100))
    message: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[Optional[dict]] = mapped_column(JSONType())
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_tenant_triggered", "tenant_id", "triggered_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="warning")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# ──────────────────────────────────────────────────────────────────────────────
# 1.2 Forecasting
# ──────────────────────────────────────────────────────────────────────────────


class ForecastPrediction(Base):
    """One breach-risk forecast per tenant per cycle. Immutable except `applied_at`."""

    __tablename__ = "forecast_predictions"
    __table_args__ = (
        Index("ix_forecast_predictions_tenant_generated", "tenant_id", "generated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    breach_probability_7d: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    predicted_sr_7d: Mapped[float] = mapped_column(Float, nullable=False)
    volatility_index: Mapped[float] = mapped_column(Float, nullable=False)
    current_slo_target: Mapped[float] = mapped_column(Float, nullable=False)
    suggested_slo_target: Mapped[float] = mapped_column(Float, nullable=False)
    advisories: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    features: Mapped[Optional[dict]] = mapped_column(JSONType())
    model_version: Mapped[str] = mapped_column(String(20), nullable=False, default="v1.0")
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class EnsembleForecast(Base):
    """Blended forecast; the weights are the snapshot actually used, never written back."""

    __tablename__ = "forecast_ensemble"
    __table_args__ = (
        Index("ix_forecast_ensemble_tenant_generated", "tenant_id", "generated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_trend: Mapped[float] = mapped_column(Float, nullable=False)
    model_conservative: Mapped[float] = mapped_column(Float, nullable=False)
    model_optimistic: Mapped[float] = mapped_column(Float, nullable=False)
    w_trend: Mapped[float] = mapped_column(Float, nullable=False)
    w_conservative: Mapped[float] = mapped_column(Float, nullable=False)
    w_optimistic: Mapped[float] = mapped_column(Float, nullable=False)
    forecast_sr: Mapped[float] = mapped_column(Float, nullable=False)
    lower_ci: Mapped[float] = mapped_column(Float, nullable=False)
    upper_ci: Mapped[float] = mapped_column(Float, nullable=False)
    reliability: Mapped[float] = mapped_column(Float, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class EnsembleWeightHistory(Base):
    """Append-only log of persisted ensemble weights. Latest row is the active set."""

    __tablename__ = "ensemble_weight_history"
    __table_args__ = (
        Index("ix_weight_history_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    w_trend: Mapped[float] = mapped_column(Float, nullable=False)
    w_conservative: Mapped[float] = mapped_column(Float, nullable=False)
    w_optimistic: Mapped[float] = mapped_column(Float, nullable=False)
    reliability: Mapped[Optional[float]] = mapped_column(Float)
    mae: Mapped[Optional[float]] = mapped_column(Float)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="self_tuner")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ForecastAccuracy(Base):
    """Backtest of one forecast against the realized success rate. Never mutated."""

    __tablename__ = "forecast_accuracy"
    __table_args__ = (
        UniqueConstraint("forecast_id", name="uq_forecast_accuracy_forecast"),
        Index("ix_forecast_accuracy_tenant_eval", "tenant_id", "evaluation_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    forecast_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("forecast_predictions.id"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    predicted_breach: Mapped[bool] = mapped_column(Boolean, nullable=False)
    actual_breach: Mapped[bool] = mapped_column(Boolean, nullable=False)
    predicted_sr: Mapped[float] = mapped_column(Float, nullable=False)
    actual_sr: Mapped[float] = mapped_column(Float, nullable=False)
    evaluation_date: Mapped[date] = mapped_column(Date, nullable=False)
    days_ahead: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ForecastModelMetrics(Base):
    """Rolling 30-day accuracy aggregate. Append-only; latest by `computed_at`."""

    __tablename__ = "forecast_model_metrics"
    __table_args__ = (
        Index("ix_model_metrics_tenant_computed", "tenant_id", "computed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    precision: Mapped[float] = mapped_column(Float, nullable=False)
    recall: Mapped[float] = mapped_column(Float, nullable=False)
    mae: Mapped[float] = mapped_column(Float, nullable=False)
    bias: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reliability: Mapped[float] = mapped_column(Float, nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class InsightHistory(Base):
    __tablename__ = "insight_history"
    __table_args__ = (
        Index("ix_insight_history_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    insight_type: Mapped[str] = mapped_column(String(50), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType())
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 1.3 Explainability
# ──────────────────────────────────────────────────────────────────────────────


class ExplainabilitySignal(Base):
    __tablename__ = "explainability_signals"
    __table_args__ = (
        Index("ix_signals_tenant_day", "tenant_id", "day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    metric: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    p_value: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class SignalWeight(Base):
    """Feedback-derived weight for one (feature, key, metric). Updated in place."""

    __tablename__ = "explainability_signal_weights"
    __table_args__ = (
        UniqueConstraint("tenant_id", "feature", "key", "metric", name="uq_signal_weight"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    metric: Mapped[str] = mapped_column(String(50), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=50.0)
    sample: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mae_impact: Mapped[Optional[float]] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ExplainabilityFeedback(Base):
    __tablename__ = "explainability_feedback"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    metric: Mapped[str] = mapped_column(String(50), nullable=False)
    verdict: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    actor: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 1.4 Recommendations & remediation
# ──────────────────────────────────────────────────────────────────────────────


class PlaybookCatalogEntry(Base):
    """
    Externally curated remediation playbook.

    condition: {"feature": "rule_group|control_group", "key": optional,
                "metric": "fail_share", "operator": "gt", "threshold": 0.3}
    action_template: {"type": "create_task", "target": "...", "params": {...}}
    """

    __tablename__ = "playbook_catalog"

    code: Mapped[str] = mapped_column(String(100), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    condition: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    action_template: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    default_impact: Mapped[float] = mapped_column(Float, nullable=False, default=3.0)
    trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class GeneratedRecommendation(Base):
    """
    Scored match of a signal against a playbook.

    `open_key` is "playbook|feature|key" while the row is open and NULL otherwise,
    so the unique constraint only bites on open rows.
    """

    __tablename__ = "generated_recommendations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "open_key", name="uq_recommendation_open_key"),
        Index("ix_recommendations_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    playbook_code: Mapped[str] = mapped_column(String(100), ForeignKey("playbook_catalog.code"), nullable=False)
    signal: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    expected_impact: Mapped[float] = mapped_column(Float, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    snooze_until: Mapped[Optional[datetime]] = mapped_column(DateTime)
    open_key: Mapped[Optional[str]] = mapped_column(String(400))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RecommendationAction(Base):
    """Audit trail of human actions on recommendations."""

    __tablename__ = "recommendation_actions"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(100))
    details: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class RemediationRun(Base):
    __tablename__ = "remediation_runs"
    __table_args__ = (
        Index("ix_remediation_runs_tenant_playbook_started", "tenant_id", "playbook_code", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    playbook_code: Mapped[str] = mapped_column(String(100), nullable=False)
    recommendation_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    auto_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parameters: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    confidence_before: Mapped[Optional[float]] = mapped_column(Float)
    confidence_after: Mapped[Optional[float]] = mapped_column(Float)
    impact: Mapped[Optional[float]] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    result: Mapped[Optional[dict]] = mapped_column(JSONType())
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class TenantLease(Base):
    """Row-based TTL lease keyed by (tenant, resource)."""

    __tablename__ = "tenant_leases"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource", name="uq_tenant_lease"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource: Mapped[str] = mapped_column(String(150), nullable=False)
    holder: Mapped[str] = mapped_column(String(150), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# 1.5 Retraining
# ──────────────────────────────────────────────────────────────────────────────


class ModelExperiment(Base):
    """
    Canary experiment. `active_family` mirrors `family` while draft/running
    and is cleared when the experiment ends.
    """

    __tablename__ = "model_experiments"
    __table_args__ = (
        UniqueConstraint("active_family", name="uq_experiment_active_family"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    family: Mapped[str] = mapped_column(String(50), nullable=False)
    variant: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    allocation: Mapped[float] = mapped_column(Float, nullable=False, default=0.2)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    owner: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    active_family: Mapped[Optional[str]] = mapped_column(String(50))
    decision: Mapped[Optional[str]] = mapped_column(String(20))
    results: Mapped[Optional[dict]] = mapped_column(JSONType())
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class ModelExperimentAssignment(Base):
    __tablename__ = "model_experiment_assignments"
    __table_args__ = (
        UniqueConstraint("experiment_id", "tenant_id", name="uq_experiment_assignment"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    experiment_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("model_experiments.id"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    arm: Mapped[str] = mapped_column(String(20), nullable=False, default="canary")
    sticky: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ModelTrainingJob(Base):
    __tablename__ = "model_training_jobs"
    __table_args__ = (
        Index("ix_training_jobs_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    family: Mapped[str] = mapped_column(String(50), nullable=False)
    target_version: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    trigger_reason: Mapped[str] = mapped_column(String(200), nullable=False)
    experiment_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), ForeignKey("model_experiments.id"))
    metrics_in_before: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    metrics_out_after: Mapped[Optional[dict]] = mapped_column(JSONType())
    logs: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class ModelRegistryEntry(Base):
    __tablename__ = "model_registry"
    __table_args__ = (
        UniqueConstraint("family", "version", name="uq_model_registry_version"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    family: Mapped[str] = mapped_column(String(50), nullable=False)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    artifact_uri: Mapped[str] = mapped_column(String(500), nullable=False)
    metrics: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 1.6 Audit
# ──────────────────────────────────────────────────────────────────────────────


class AuditLog(Base):
    """Append-only decision trail. NO UPDATE, NO DELETE."""

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_log_action", "action"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    resource_type: Mapped[Optional[str]] = mapped_column(String(100))
    resource_id: Mapped[Optional[str]] = mapped_column(String(128))
    details: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
