"""
Human actions on recommendations, and the snooze expiry sweep.

act_on_recommendation():
- 400 when a field is missing, the action is unknown, or snooze has no `until`
- 404 when the recommendation does not exist for the tenant
- applied and dismissed are terminal: any verb on them is a no-op; snoozed may be
  applied, dismissed or re-snoozed
- apply also creates a manual remediation run and executes it
- every request that passes validation is written to the action log, whatever the outcome

reopen_expired_snoozes(): snoozed rows past `snooze_until` go back to open,
unless another open row now holds the same key, in which case they are dismissed.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db import queries
from slocast.db.engine import session_scope
from slocast.decisions.recommender import open_key
from slocast.decisions.schemas import (
    ActOnRecommendationRequest,
    RecommendationStatus,
    RecommendationVerb,
)
from slocast.errors import NotFound, ValidationFailed
from slocast.remediation.orchestrator import RemediationOrchestrator, new_run
from slocast.services.audit import AuditEvent, write_recommendation_action
from slocast.services.locks import TENANT_STATE, LeaseManager
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

TARGET_STATUS: dict[RecommendationVerb, RecommendationStatus] = {
    RecommendationVerb.APPLY: RecommendationStatus.APPLIED,
    RecommendationVerb.DISMISS: RecommendationStatus.DISMISSED,
    RecommendationVerb.SNOOZE: RecommendationStatus.SNOOZED,
}

TERMINAL_STATUSES = (RecommendationStatus.APPLIED, RecommendationStatus.DISMISSED)


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def validate_action(body: ActOnRecommendationRequest) -> tuple[RecommendationVerb, uuid.UUID]:
    if not body.tenant_id or not body.recommendation_id or not body.action:
        raise ValidationFailed("tenant_id, recommendation_id, and action are required")
    try:
        verb = RecommendationVerb(body.action)
    except ValueError:
        raise ValidationFailed("action must be apply, dismiss, or snooze")
    if verb == RecommendationVerb.SNOOZE and body.until is None:
        raise ValidationFailed("until is required for snooze action")
    try:
        rec_id = uuid.UUID(body.recommendation_id)
    except ValueError:
        raise NotFound("Recommendation not found")
    return verb, rec_id


async def act_on_recommendation(
    session_factory: async_sessionmaker[AsyncSession],
    body: ActOnRecommendationRequest,
    orchestrator: Optional[RemediationOrchestrator] = None,
    now: Optional[datetime] = None,
) -> dict:
    verb, rec_id = validate_action(body)
    now = now or datetime.utcnow()
    orchestrator = orchestrator or RemediationOrchestrator()
    tenant_id = body.tenant_id

    outcome: dict = {"action": verb.value}
    try:
        async with LeaseManager(session_factory).hold(tenant_id, TENANT_STATE):
            async with session_scope(session_factory) as session:
                response = await _apply_verb(session, tenant_id, rec_id, verb, body, orchestrator, now)
        outcome.update(result="ok", message=response.get("message"), run_id=response.get("run_id"))
        return response
    except Exception as e:
        outcome.update(result="error", error=str(e))
        raise
    finally:
        details = {k: v for k, v in outcome.items() if v is not None}
        if verb == RecommendationVerb.SNOOZE:
            details["until"] = body.until.isoformat()
        await write_recommendation_action(session_factory, rec_id, tenant_id, verb.value, body.actor, details)


async def _apply_verb(
    session: AsyncSession,
    tenant_id: str,
    rec_id: uuid.UUID,
    verb: RecommendationVerb,
    body: ActOnRecommendationRequest,
    orchestrator: RemediationOrchestrator,
    now: datetime,
) -> dict:
    rec = await queries.get_recommendation(session, tenant_id, rec_id)
    if rec is None:
        raise NotFound("Recommendation not found")

    current = RecommendationStatus(rec.status)
    target = TARGET_STATUS[verb]
    if current in TERMINAL_STATUSES:
        # Any verb on an applied or dismissed recommendation is a no-op
        return {"ok": True, "message": f"Already {current.value}"}

    rec.status = target.value
    rec.open_key = None
    rec.snooze_until = naive_utc(body.until) if verb == RecommendationVerb.SNOOZE else None
    rec.updated_at = now

    response = {"ok": True, "action": verb.value, "recommendation_id": str(rec_id)}

    if verb == RecommendationVerb.APPLY:
        playbook = await queries.get_playbook(session, rec.playbook_code)
        if playbook is not None:
            run = new_run(tenant_id, rec, playbook, auto_triggered=False, now=now)
            session.add(run)
            # Status change and pending run commit together before the action runs
            await session.commit()
            run_uuid = run.id
            try:
                await orchestrator.execute(session, run, now)
            except Exception as e:
                logger.error("remediation_execute_failed", run_id=str(run_uuid), error=str(e))
                await orchestrator.fail(session, run_uuid, str(e))
                run = await queries.get_run(session, run_uuid)
            response.update(run_id=str(run_uuid), run_status=run.status)

    logger.info(
        "recommendation_actioned",
        tenant_id=tenant_id,
        recommendation_id=str(rec_id),
        action=verb.value,
        previous_status=current.value,
        actor=body.actor,
    )
    return response


# ── Snooze expiry sweep ──────────────────────────────────────────────────


async def reopen_expired_snoozes(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StageReport:
    now = now or datetime.utcnow()
    async with session_factory() as session:
        expired = await queries.get_expired_snoozes(session, now)

    by_tenant: dict[str, list[uuid.UUID]] = {}
    for rec in expired:
        if tenant_id and rec.tenant_id != tenant_id:
            continue
        by_tenant.setdefault(rec.tenant_id, []).append(rec.id)

    async def unit(session: AsyncSession, tid: str) -> UnitResult:
        reopened = 0
        dismissed = 0
        audit = []
        for rec_id in by_tenant[tid]:
            rec = await queries.get_recommendation(session, tid, rec_id)
            if rec is None or rec.status != RecommendationStatus.SNOOZED or rec.snooze_until > now:
                continue

            signal = rec.signal or {}
            key = open_key(rec.playbook_code, signal.get("feature", ""), signal.get("key", ""))
            if await queries.open_recommendation_exists(session, tid, key):
                rec.status = RecommendationStatus.DISMISSED.value
                dismissed += 1
            else:
                rec.status = RecommendationStatus.OPEN.value
                rec.open_key = key
                reopened += 1
            rec.snooze_until = None
            rec.updated_at = now
            await session.flush()

            audit.append(
                AuditEvent(
                    action=f"recommendation.snooze_{'reopened' if rec.status == RecommendationStatus.OPEN else 'dismissed'}",
                    tenant_id=tid,
                    resource_type="generated_recommendation",
                    resource_id=str(rec_id),
                    details={"playbook_code": rec.playbook_code, "open_key": key},
                )
            )
        return UnitResult(counts={"reopened": reopened, "dismissed": dismissed}, audit=audit)

    return await TenantWorkerPool(session_factory).run(
        "reopen_snoozed", by_tenant.keys(), unit, lease_resource=TENANT_STATE
    )
