"""
Stage Scheduler - runs in its own process (python -m slocast.scheduler_main).

NOT inside the API process. Each stage is one APScheduler job with
max_instances=1, so a slow run is never overlapped by the next tick.
Tenant-level isolation lives in the worker pool; a stage that raises
outright is logged here and the scheduler keeps going.
"""

from datetime import datetime
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.config import Settings, settings as default_settings
from slocast.services.stages import SCHEDULED_STAGES

logger = structlog.get_logger(__name__)


def build_triggers(cfg: Settings) -> dict[str, object]:
    """Trigger per stage name. Daily stages run in UTC."""
    return {
        "generate-forecast": IntervalTrigger(minutes=cfg.forecast_interval_minutes),
        "generate-ensemble-forecast": IntervalTrigger(minutes=cfg.forecast_interval_minutes),
        "self-optimizing-tuner": IntervalTrigger(minutes=cfg.tuner_interval_minutes),
        "adaptive-slo-tuner": IntervalTrigger(minutes=cfg.tuner_interval_minutes),
        "generate-recommendations": IntervalTrigger(minutes=cfg.recommendations_interval_minutes),
        "trigger-remediation": IntervalTrigger(minutes=cfg.remediation_interval_minutes),
        "evaluate-remediation": IntervalTrigger(minutes=cfg.remediation_interval_minutes),
        "reopen-snoozed-recommendations": IntervalTrigger(minutes=cfg.snooze_sweep_interval_minutes),
        "evaluate-forecast-accuracy": CronTrigger(hour=cfg.accuracy_cron_hour, minute=0, timezone="UTC"),
        "generate-explainability": CronTrigger(hour=cfg.explainability_cron_hour, minute=0, timezone="UTC"),
        "recompute-explainability-weights": CronTrigger(hour=cfg.explainability_cron_hour, minute=30, timezone="UTC"),
        "plan-retraining": CronTrigger(hour=cfg.retraining_cron_hour, minute=0, timezone="UTC"),
        "execute-training": CronTrigger(hour=cfg.retraining_cron_hour, minute=15, timezone="UTC"),
        "evaluate-experiment": CronTrigger(hour=cfg.retraining_cron_hour, minute=30, timezone="UTC"),
        "send-forecast-digest": CronTrigger(hour=cfg.digest_cron_hour, minute=0, timezone="UTC"),
    }


class SloScheduler:
    """Background scheduler for every batch stage."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cfg: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.cfg = cfg or default_settings
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    def start(self) -> None:
        """Register and start all scheduled jobs."""
        for name, trigger in build_triggers(self.cfg).items():
            self.scheduler.add_job(
                self.run_stage,
                trigger,
                args=[name],
                id=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info("slo_scheduler_started", jobs=len(self.scheduler.get_jobs()))

    def stop(self) -> None:
        self.scheduler.shutdown(wait=True)
        logger.info("slo_scheduler_stopped")

    async def run_stage(self, name: str, now: Optional[datetime] = None) -> Optional[dict]:
        stage_key = name.replace("-", "_")
        logger.info(f"{stage_key}_started")
        try:
            summary = await SCHEDULED_STAGES[name](self.session_factory, None, now)
        except Exception as e:
            logger.error(f"{stage_key}_failed", error=str(e), exc_info=True)
            return None
        logger.info(f"{stage_key}_finished", **summary)
        return summary
