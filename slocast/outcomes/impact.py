"""
Remediation Impact Evaluator.

Scores each successful remediation run once, after its 24h after-window has
elapsed:

    delta = SR[started, started + 24h) - SR[started - 48h, started)

Either window with fewer than 10 samples scores 0 (still written, so the run
is not picked up again). The delta then feeds back into:
- the originating signal weight's confidence: +5 / +2 / -5 / -1
- the playbook's default_impact: += delta * 0.1, bounded to [1, 10]
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import PlaybookCatalogEntry, RemediationRun
from slocast.engine.bounds import clamp
from slocast.engine.features import success_rate
from slocast.services.locks import TENANT_STATE
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

BEFORE_WINDOW_HOURS: int = 48
AFTER_WINDOW_HOURS: int = 24
MIN_WINDOW_SAMPLES: int = 10
IMPACT_SCALE: float = 0.1
PLAYBOOK_IMPACT_MIN: float = 1.0
PLAYBOOK_IMPACT_MAX: float = 10.0


def confidence_adjustment(delta: float) -> float:
    if delta > 2:
        return 5.0
    if delta > 0:
        return 2.0
    if delta < -2:
        return -5.0
    return -1.0


class ImpactEvaluator:
    """Before/after SR comparison for completed remediation runs."""

    def __init__(
        self,
        before_hours: int = BEFORE_WINDOW_HOURS,
        after_hours: int = AFTER_WINDOW_HOURS,
        min_samples: int = MIN_WINDOW_SAMPLES,
    ):
        self.before = timedelta(hours=before_hours)
        self.after = timedelta(hours=after_hours)
        self.min_samples = min_samples

    async def sr_delta(self, session: AsyncSession, tenant_id: str, started_at: datetime) -> float:
        before = await queries.get_check_outcomes(
            session, tenant_id, since=started_at - self.before, until=started_at
        )
        after = await queries.get_check_outcomes(
            session, tenant_id, since=started_at, until=started_at + self.after
        )
        if len(before) < self.min_samples or len(after) < self.min_samples:
            return 0.0
        return success_rate(o for _, o in after) - success_rate(o for _, o in before)

    async def score_run(self, session: AsyncSession, run: RemediationRun) -> float:
        delta = await self.sr_delta(session, run.tenant_id, run.started_at)
        adjustment = confidence_adjustment(delta)

        # Single UPDATE so concurrent tenants scoring the same playbook don't lose writes
        raw = PlaybookCatalogEntry.default_impact + delta * IMPACT_SCALE
        await session.execute(
            update(PlaybookCatalogEntry)
            .where(PlaybookCatalogEntry.code == run.playbook_code)
            .values(
                default_impact=case(
                    (raw > PLAYBOOK_IMPACT_MAX, PLAYBOOK_IMPACT_MAX),
                    (raw < PLAYBOOK_IMPACT_MIN, PLAYBOOK_IMPACT_MIN),
                    else_=raw,
                )
            )
            .execution_options(synchronize_session=False)
        )

        run.impact = round(delta, 2)

        signal = (run.parameters or {}).get("signal")
        if signal:
            weight = await queries.get_signal_weight(
                session,
                run.tenant_id,
                signal.get("feature"),
                signal.get("key") or "",
                signal.get("metric"),
            )
            if weight is not None:
                weight.confidence = clamp(weight.confidence + adjustment)
                run.confidence_after = weight.confidence

        logger.info(
            "remediation_impact_scored",
            run_id=str(run.id),
            tenant_id=run.tenant_id,
            playbook_code=run.playbook_code,
            sr_delta=round(delta, 2),
            confidence_adjustment=adjustment,
            confidence_after=run.confidence_after,
        )
        return delta

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        now = now or datetime.utcnow()
        async with session_factory() as session:
            runs = await queries.get_runs_to_score(session, started_before=now - self.after, tenant_id=tenant_id)

        by_tenant: dict[str, list] = defaultdict(list)
        for r in runs:
            by_tenant[r.tenant_id].append(r.id)

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            evaluated = 0
            for run_id in by_tenant[tid]:
                run = await queries.get_run(session, run_id)
                # Another evaluator may have scored it since the scan
                if run is None or run.impact is not None:
                    continue
                await self.score_run(session, run)
                evaluated += 1
            return UnitResult(counts={"evaluated": evaluated})

        return await TenantWorkerPool(session_factory).run(
            "evaluate_remediation", by_tenant.keys(), unit, lease_resource=TENANT_STATE
        )
