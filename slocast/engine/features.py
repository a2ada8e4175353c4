"""
Feature Aggregator.

Turns a rolling 30-day window of check results into the numeric features
every downstream stage consumes:
- avg SR (mean of daily success rates), 7-day and prior-23-day SR
- volatility (population stddev of daily SR) and trend (7d minus prior 23d)
- alert density (alerts per day over 7 days)
- 24h error-budget burn rate against the tenant's SLO target
"""

import statistics
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from slocast.db import queries
from slocast.engine.schemas import Outcome

logger = structlog.get_logger(__name__)

WINDOW_DAYS: int = 30
RECENT_DAYS: int = 7
BURN_WINDOW_HOURS: int = 24
MIN_ERROR_BUDGET: float = 0.01          # Avoids dividing by zero at a 100% target


@dataclass(frozen=True)
class TenantFeatures:
    tenant_id: str
    total_checks: int
    days_with_data: int
    avg_sr: float
    avg_sr_7d: float
    avg_sr_23d: float
    volatility: float
    trend: float
    alert_count_7d: int
    alert_density: float
    burn_rate: float

    def to_dict(self) -> dict:
        return {k: round(v, 4) if isinstance(v, float) else v for k, v in asdict(self).items()}


def success_rate(outcomes: Iterable[str]) -> Optional[float]:
    """Pass percentage, or None for an empty sample."""
    outcomes = list(outcomes)
    if not outcomes:
        return None
    passed = sum(1 for o in outcomes if o == Outcome.PASS)
    return 100.0 * passed / len(outcomes)


def daily_success_rates(rows: Iterable[tuple[datetime, str]]) -> dict[date, float]:
    """Group (created_at, outcome) rows by UTC day."""
    by_day: dict[date, list[str]] = defaultdict(list)
    for created_at, outcome in rows:
        by_day[created_at.date()].append(outcome)
    return {day: success_rate(outcomes) for day, outcomes in sorted(by_day.items())}


def compute_features(
    tenant_id: str,
    rows: list[tuple[datetime, str]],
    alert_count_7d: int,
    slo_target: float,
    now: datetime,
) -> TenantFeatures:
    """Pure feature computation over rows already limited to the 30-day window."""
    daily = daily_success_rates(rows)
    values = list(daily.values())

    avg_sr = statistics.fmean(values) if values else 0.0
    volatility = statistics.pstdev(values) if len(values) > 1 else 0.0

    recent_start = (now - timedelta(days=RECENT_DAYS)).date()
    recent = [sr for day, sr in daily.items() if day >= recent_start]
    older = [sr for day, sr in daily.items() if day < recent_start]
    avg_sr_7d = statistics.fmean(recent) if recent else avg_sr
    avg_sr_23d = statistics.fmean(older) if older else avg_sr

    burn_start = now - timedelta(hours=BURN_WINDOW_HOURS)
    last_day = [outcome for created_at, outcome in rows if created_at >= burn_start]
    sr_24h = success_rate(last_day)
    if sr_24h is None:
        burn_rate = 0.0
    else:
        error_budget = max((100.0 - slo_target) / 100.0, MIN_ERROR_BUDGET)
        burn_rate = ((100.0 - sr_24h) / 100.0) / error_budget

    return TenantFeatures(
        tenant_id=tenant_id,
        total_checks=len(rows),
        days_with_data=len(daily),
        avg_sr=avg_sr,
        avg_sr_7d=avg_sr_7d,
        avg_sr_23d=avg_sr_23d,
        volatility=volatility,
        trend=avg_sr_7d - avg_sr_23d,
        alert_count_7d=alert_count_7d,
        alert_density=alert_count_7d / RECENT_DAYS,
        burn_rate=burn_rate,
    )


async def load_features(
    session: AsyncSession,
    tenant_id: str,
    slo_target: float,
    now: Optional[datetime] = None,
) -> TenantFeatures:
    """Fetch the 30-day window and alert count, then compute features."""
    now = now or datetime.utcnow()
    rows = await queries.get_check_outcomes(
        session, tenant_id, since=now - timedelta(days=WINDOW_DAYS), until=now
    )
    alerts = await queries.count_alerts(
        session, tenant_id, since=now - timedelta(days=RECENT_DAYS), until=now
    )
    features = compute_features(tenant_id, rows, alerts, slo_target, now)
    logger.debug("features_computed", **features.to_dict())
    return features
