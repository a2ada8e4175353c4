"""
Stage registry and scheduler tests.
"""

from datetime import datetime

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from slocast.config import settings
from slocast.services import scheduler as scheduler_module
from slocast.services.scheduler import SloScheduler, build_triggers
from slocast.services.stages import SCHEDULED_STAGES, STAGES, run_stage

NOW = datetime(2026, 3, 31, 12)


def test_every_stage_scheduled():
    triggers = build_triggers(settings)
    assert len(triggers) == 15
    assert set(triggers) == set(STAGES) == set(SCHEDULED_STAGES)


def test_trigger_kinds():
    triggers = build_triggers(settings)
    assert isinstance(triggers["generate-forecast"], IntervalTrigger)
    assert isinstance(triggers["reopen-snoozed-recommendations"], IntervalTrigger)
    assert isinstance(triggers["evaluate-forecast-accuracy"], CronTrigger)
    assert isinstance(triggers["plan-retraining"], CronTrigger)


@pytest.mark.asyncio
async def test_tenant_stage_returns_summary(session_factory, make_tenant):
    await make_tenant("tenant-a")

    summary = await run_stage("generate-forecast", session_factory, "tenant-a", NOW)

    assert summary["tenants_scanned"] == 1
    # No check data yet
    assert summary["tenants_skipped"] == 1


@pytest.mark.asyncio
async def test_global_stage_returns_dict(session_factory):
    summary = await run_stage("plan-retraining", session_factory, None, NOW)
    assert summary == {"candidates": 0}


@pytest.mark.asyncio
async def test_scheduler_runs_stage(session_factory, make_tenant):
    await make_tenant("tenant-a")

    summary = await SloScheduler(session_factory).run_stage("generate-explainability", NOW)

    assert summary["tenants_scanned"] == 1


@pytest.mark.asyncio
async def test_scheduler_survives_stage_failure(session_factory, monkeypatch):
    async def broken(session_factory, tenant_id=None, now=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setitem(scheduler_module.SCHEDULED_STAGES, "execute-training", broken)

    assert await SloScheduler(session_factory).run_stage("execute-training", NOW) is None
