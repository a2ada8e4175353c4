"""
Explainability Signal Miner.

Two signal families from the trailing 30 days of check results:
- rule_group / fail_share: a group's share of all failures (group needs >= 30 checks)
- dow / sr_delta: weekday mean daily SR minus the overall mean daily SR
  (needs >= 14 days of data, >= 3 observations of the weekday and >= 30 checks)

The strongest signal of the run becomes an `explainability` insight when
|value| >= 0.2 and its p-value, if any, is <= 0.05.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from statistics import fmean
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import ExplainabilitySignal, InsightHistory
from slocast.engine.features import daily_success_rates
from slocast.engine.schemas import Outcome
from slocast.explain.schemas import SignalFeature, SignalMetric
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

WINDOW_DAYS: int = 30
ROW_LIMIT: int = 1000
MIN_SAMPLE: int = 30
MIN_DAYS_FOR_DOW: int = 14
MIN_DOW_OBSERVATIONS: int = 3
INSIGHT_MIN_VALUE: float = 0.2
INSIGHT_MAX_P: float = 0.05

UNKNOWN_GROUP = "unknown"
DOW_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


@dataclass(frozen=True)
class MinedSignal:
    feature: str
    key: str
    metric: str
    value: float
    sample_size: int
    p_value: Optional[float] = None


def dow_name(day: date) -> str:
    return DOW_NAMES[day.isoweekday() % 7]


def rule_group_signals(
    rows: list[tuple[datetime, str, Optional[str]]],
    min_sample: int = MIN_SAMPLE,
) -> list[MinedSignal]:
    totals: dict[str, int] = defaultdict(int)
    fails: dict[str, int] = defaultdict(int)
    total_fails = 0
    for _, outcome, group in rows:
        group = group or UNKNOWN_GROUP
        totals[group] += 1
        if outcome == Outcome.FAIL:
            fails[group] += 1
            total_fails += 1

    return [
        MinedSignal(
            feature=SignalFeature.RULE_GROUP,
            key=group,
            metric=SignalMetric.FAIL_SHARE,
            value=fails[group] / total_fails if total_fails else 0.0,
            sample_size=total,
        )
        for group, total in sorted(totals.items())
        if total >= min_sample
    ]


def day_of_week_signals(
    rows: list[tuple[datetime, str]],
    min_days: int = MIN_DAYS_FOR_DOW,
    min_observations: int = MIN_DOW_OBSERVATIONS,
    min_sample: int = MIN_SAMPLE,
) -> list[MinedSignal]:
    daily = daily_success_rates(rows)
    if len(daily) < min_days:
        return []

    checks_per_day: dict[date, int] = defaultdict(int)
    for created_at, _ in rows:
        checks_per_day[created_at.date()] += 1

    overall = fmean(daily.values())
    by_dow: dict[str, list[date]] = defaultdict(list)
    for day in daily:
        by_dow[dow_name(day)].append(day)

    signals = []
    for name in DOW_NAMES:
        days = by_dow.get(name, [])
        sample = sum(checks_per_day[d] for d in days)
        if len(days) < min_observations or sample < min_sample:
            continue
        signals.append(
            MinedSignal(
                feature=SignalFeature.DAY_OF_WEEK,
                key=name,
                metric=SignalMetric.SR_DELTA,
                value=fmean(daily[d] for d in days) - overall,
                sample_size=sample,
            )
        )
    return signals


def strongest(signals: list[MinedSignal]) -> Optional[MinedSignal]:
    if not signals:
        return None
    return max(signals, key=lambda s: abs(s.value))


class SignalMiner:
    """Writes per-tenant explainability signals and the headline insight."""

    def __init__(self, window_days: int = WINDOW_DAYS, row_limit: int = ROW_LIMIT):
        self.window = timedelta(days=window_days)
        self.row_limit = row_limit

    async def mine_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: datetime,
    ) -> list[MinedSignal]:
        since = now - self.window
        signals: list[MinedSignal] = []

        recent = await queries.get_recent_check_rows(session, tenant_id, since, now, limit=self.row_limit)
        if len(recent) >= MIN_SAMPLE:
            signals.extend(rule_group_signals(recent))

        signals.extend(day_of_week_signals(await queries.get_check_outcomes(session, tenant_id, since, now)))

        today = now.date()
        for s in signals:
            session.add(
                ExplainabilitySignal(
                    tenant_id=tenant_id,
                    day=today,
                    feature=s.feature,
                    key=s.key,
                    metric=s.metric,
                    value=s.value,
                    sample_size=s.sample_size,
                    p_value=s.p_value,
                    created_at=now,
                )
            )

        top = strongest(signals)
        if top and abs(top.value) >= INSIGHT_MIN_VALUE and (top.p_value is None or top.p_value <= INSIGHT_MAX_P):
            session.add(
                InsightHistory(
                    tenant_id=tenant_id,
                    insight_type="explainability",
                    summary=(
                        f"Significant factor: {top.feature} = {top.key}, "
                        f"{top.metric} = {top.value:.4f} (n={top.sample_size})"
                    ),
                    payload={
                        "feature": top.feature,
                        "key": top.key,
                        "metric": top.metric,
                        "value": top.value,
                        "sample_size": top.sample_size,
                        "p_value": top.p_value,
                    },
                    created_at=now,
                )
            )
            logger.info("explainability_insight_created", tenant_id=tenant_id, feature=top.feature, key=top.key)

        logger.info("signals_mined", tenant_id=tenant_id, signals=len(signals), rows=len(recent))
        return signals

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageReport:
        now = now or datetime.utcnow()
        async with session_factory() as session:
            tenants = [
                t.tenant_id
                for t in await queries.list_tenants(session, tenant_id, explainability_enabled=True)
            ]

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            signals = await self.mine_tenant(session, tid, now)
            if not signals:
                return UnitResult.skip("insufficient_data")
            return UnitResult(counts={"signals_written": len(signals)})

        return await TenantWorkerPool(session_factory).run("generate_explainability", tenants, unit)
