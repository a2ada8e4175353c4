"""
Stage registry.

Every batch stage as `async fn(session_factory, tenant_id=None, now=None) -> dict`,
keyed by the job name used in the HTTP path. The API job handlers and the
scheduler process both dispatch through here.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.decisions.actions import reopen_expired_snoozes
from slocast.decisions.recommender import RecommendationEngine
from slocast.engine.ensemble import EnsembleForecaster
from slocast.engine.risk import BreachRiskScorer
from slocast.explain.feedback import WeightRecompute
from slocast.explain.miner import SignalMiner
from slocast.outcomes.accuracy import AccuracyEvaluator
from slocast.outcomes.impact import ImpactEvaluator
from slocast.outcomes.tuner import WeightController
from slocast.remediation.orchestrator import RemediationOrchestrator
from slocast.retraining.experiment import ExperimentEvaluator
from slocast.retraining.planner import RetrainingPlanner
from slocast.retraining.trainer import RetrainingTrainer
from slocast.services.notifier import ForecastNotifier
from slocast.services.worker_pool import StageReport

SessionFactory = async_sessionmaker[AsyncSession]
Stage = Callable[[SessionFactory, Optional[str], Optional[datetime]], Awaitable[dict]]


def _tenant_stage(run) -> Stage:
    async def stage(session_factory: SessionFactory, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        report: StageReport = await run(session_factory, tenant_id, now)
        return report.to_dict()
    return stage


def _global_stage(run) -> Stage:
    # Family-wide stages ignore tenant scoping
    async def stage(session_factory: SessionFactory, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        return await run(session_factory, now)
    return stage


async def _send_digest(session_factory: SessionFactory, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    return await ForecastNotifier().send_digest(session_factory, tenant_id, now)


STAGES: dict[str, Stage] = {
    "generate-forecast": _tenant_stage(BreachRiskScorer().run),
    "generate-ensemble-forecast": _tenant_stage(EnsembleForecaster().run),
    "evaluate-forecast-accuracy": _tenant_stage(AccuracyEvaluator().run),
    "self-optimizing-tuner": _tenant_stage(WeightController.always_nudge().run),
    "adaptive-slo-tuner": _tenant_stage(WeightController.adaptive_slo().run),
    "generate-explainability": _tenant_stage(SignalMiner().run),
    "recompute-explainability-weights": _tenant_stage(WeightRecompute().run),
    "generate-recommendations": _tenant_stage(RecommendationEngine().run),
    "trigger-remediation": _tenant_stage(RemediationOrchestrator().run),
    "evaluate-remediation": _tenant_stage(ImpactEvaluator().run),
    "reopen-snoozed-recommendations": _tenant_stage(reopen_expired_snoozes),
    "plan-retraining": _global_stage(RetrainingPlanner().plan),
    "execute-training": _global_stage(RetrainingTrainer().run),
    "evaluate-experiment": _global_stage(ExperimentEvaluator().evaluate),
    "send-forecast-digest": _send_digest,
}

# Scheduled runs of the digest cover every tenant with a webhook
SCHEDULED_STAGES: dict[str, Stage] = {
    **{name: fn for name, fn in STAGES.items() if name != "send-forecast-digest"},
    "send-forecast-digest": ForecastNotifier().send_all,
}


async def run_stage(
    name: str,
    session_factory: SessionFactory,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    return await STAGES[name](session_factory, tenant_id, now)
