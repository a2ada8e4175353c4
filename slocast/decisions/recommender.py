"""
Recommendation Engine.

Matches a tenant's weighted signals (sample >= 5) against every playbook
condition and records scored, deduplicated recommendations:

    score    = |value| * weight * confidence / 100 * playbook.default_impact
    priority = 1 if score >= 6, 2 if score >= 3, else 3

At most one open recommendation per (tenant, playbook, feature + key); the
open_key unique constraint backs the pre-insert check. Tenants with 10 or
more open recommendations get no new ones.
"""

from datetime import datetime
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.models import GeneratedRecommendation, PlaybookCatalogEntry
from slocast.decisions.schemas import ConditionOperator, PlaybookCondition, RecommendationStatus
from slocast.explain.feedback import top_weighted_signals
from slocast.explain.schemas import WeightedSignal
from slocast.services.locks import TENANT_STATE
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MAX_OPEN_PER_TENANT: int = 10
MIN_SIGNAL_SAMPLE: int = 5
SIGNALS_CONSIDERED: int = 20
PRIORITY_1_SCORE: float = 6.0
PRIORITY_2_SCORE: float = 3.0


def matches(signal: WeightedSignal, condition: PlaybookCondition) -> bool:
    if signal.feature not in condition.features:
        return False
    if condition.key and signal.key != condition.key:
        return False
    if signal.metric != condition.metric:
        return False

    match condition.operator:
        case ConditionOperator.GT:
            return signal.value > condition.threshold
        case ConditionOperator.LT:
            return signal.value < condition.threshold
        case ConditionOperator.ABS_GT:
            return abs(signal.value) > condition.threshold
        case ConditionOperator.IN:
            return True


def score(signal: WeightedSignal, default_impact: float) -> float:
    return abs(signal.value) * signal.weight * signal.confidence / 100.0 * default_impact


def priority_for(score_: float) -> int:
    if score_ >= PRIORITY_1_SCORE:
        return 1
    if score_ >= PRIORITY_2_SCORE:
        return 2
    return 3


def open_key(playbook_code: str, feature: str, key: str) -> str:
    return f"{playbook_code}|{feature}|{key}"


def parse_conditions(playbooks: Sequence[PlaybookCatalogEntry]) -> list[tuple[PlaybookCatalogEntry, PlaybookCondition]]:
    parsed = []
    for pb in playbooks:
        try:
            parsed.append((pb, PlaybookCondition.model_validate(pb.condition)))
        except ValidationError as e:
            logger.warning("playbook_condition_invalid", playbook_code=pb.code, error=str(e))
    return parsed


class RecommendationEngine:
    """Generates open recommendations from weighted signals."""

    def __init__(
        self,
        max_open: int = MAX_OPEN_PER_TENANT,
        min_sample: int = MIN_SIGNAL_SAMPLE,
        signals_considered: int = SIGNALS_CONSIDERED,
    ):
        self.max_open = max_open
        self.min_sample = min_sample
        self.signals_considered = signals_considered

    async def generate_for_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        playbooks: list[tuple[PlaybookCatalogEntry, PlaybookCondition]],
        now: datetime,
    ) -> Optional[int]:
        open_count = await queries.count_open_recommendations(session, tenant_id)
        if open_count >= self.max_open:
            logger.info("recommendations_at_capacity", tenant_id=tenant_id, open=open_count)
            return None

        signals = await top_weighted_signals(
            session, tenant_id, limit=self.signals_considered, min_sample=self.min_sample
        )
        created = 0
        for signal in signals:
            for pb, condition in playbooks:
                if open_count >= self.max_open:
                    return created
                if not matches(signal, condition):
                    continue

                key = open_key(pb.code, signal.feature, signal.key)
                if await queries.open_recommendation_exists(session, tenant_id, key):
                    continue

                expected = score(signal, pb.default_impact)
                session.add(
                    GeneratedRecommendation(
                        tenant_id=tenant_id,
                        playbook_code=pb.code,
                        signal={
                            "feature": signal.feature,
                            "key": signal.key,
                            "metric": signal.metric,
                            "value": signal.value,
                            "sample_size": signal.sample_size,
                        },
                        weight=signal.weight,
                        confidence=signal.confidence,
                        expected_impact=round(expected, 4),
                        priority=priority_for(expected),
                        status=RecommendationStatus.OPEN.value,
                        open_key=key,
                        created_at=now,
                    )
                )
                await session.flush()
                created += 1
                open_count += 1

                logger.info(
                    "recommendation_created",
                    tenant_id=tenant_id,
                    playbook_code=pb.code,
                    feature=signal.feature,
                    key=signal.key,
                    value=round(signal.value, 4),
                    score=round(expected, 3),
                    priority=priority_for(expected),
                )
        return created

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
                for t in await queries.list_tenants(session, tenant_id, recommendations_enabled=True)
            ]
            playbooks = parse_conditions(await queries.list_playbooks(session))

        if not playbooks:
            logger.info("no_playbooks_found")
            tenants = []

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            created = await self.generate_for_tenant(session, tid, playbooks, now)
            if created is None:
                return UnitResult.skip("open_capacity_reached")
            return UnitResult(counts={"recommendations_created": created})

        return await TenantWorkerPool(session_factory).run(
            "generate_recommendations", tenants, unit, lease_resource=TENANT_STATE
        )
