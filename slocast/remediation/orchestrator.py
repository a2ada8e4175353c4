"""
Remediation Orchestrator.

Run state machine: pending -> executing -> {success, failed}. Each state is
committed before the next step, so a crash mid-action leaves a visible
`executing` run rather than a silent gap.

Auto-trigger eligibility (all required):
- recommendation open, confidence >= 80, expected_impact >= 6
- playbook severity in {high, critical} and trusted
- no run for (tenant, playbook) started in the last 24h
- the `remediation:<playbook>` rate-limit slot is claimed in the same
  transaction that inserts the run
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.config import settings
from slocast.db import queries
from slocast.db.engine import session_scope
from slocast.db.models import GeneratedRecommendation, PlaybookCatalogEntry, RemediationRun
from slocast.decisions.schemas import Severity
from slocast.errors import NotFound, ValidationFailed
from slocast.remediation.handlers import ActionRouter
from slocast.remediation.schemas import ALLOWED_TRANSITIONS, ActionResult, ActionTemplate, RunStatus
from slocast.services.audit import AuditEvent
from slocast.services.locks import TENANT_STATE, LeaseManager, claim_slot
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

AUTO_MIN_CONFIDENCE: float = 80.0
AUTO_MIN_IMPACT: float = 6.0
AUTO_SEVERITIES: tuple[str, ...] = (Severity.HIGH.value, Severity.CRITICAL.value)


def rate_limit_resource(playbook_code: str) -> str:
    return f"remediation:{playbook_code}"


def transition(run: RemediationRun, to: RunStatus) -> None:
    current = RunStatus(run.status)
    if to not in ALLOWED_TRANSITIONS[current]:
        raise ValidationFailed(f"Run {run.id} cannot move from {current.value} to {to.value}")
    run.status = to.value


def new_run(
    tenant_id: str,
    recommendation: GeneratedRecommendation,
    playbook: PlaybookCatalogEntry,
    auto_triggered: bool,
    now: datetime,
) -> RemediationRun:
    return RemediationRun(
        tenant_id=tenant_id,
        playbook_code=playbook.code,
        recommendation_id=recommendation.id,
        auto_triggered=auto_triggered,
        parameters={
            "signal": recommendation.signal,
            "action_template": playbook.action_template,
        },
        confidence_before=recommendation.confidence,
        status=RunStatus.PENDING.value,
        started_at=now,
    )


class RemediationOrchestrator:
    """Auto-trigger scan and run execution."""

    def __init__(
        self,
        router: Optional[ActionRouter] = None,
        min_confidence: float = AUTO_MIN_CONFIDENCE,
        min_impact: float = AUTO_MIN_IMPACT,
        severities: Sequence[str] = AUTO_SEVERITIES,
        rate_limit_hours: Optional[int] = None,
    ):
        self.router = router or ActionRouter()
        self.min_confidence = min_confidence
        self.min_impact = min_impact
        self.severities = tuple(severities)
        self.rate_limit = timedelta(hours=rate_limit_hours or settings.remediation_rate_limit_hours)

    # ── Execution ──────────────────────────────────────────────────────

    async def execute(
        self,
        session: AsyncSession,
        run: RemediationRun,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Drive a pending run to a terminal state, committing each step."""
        transition(run, RunStatus.EXECUTING)
        await session.commit()

        try:
            template = ActionTemplate.model_validate((run.parameters or {}).get("action_template") or {})
        except ValidationError:
            result = ActionResult(success=False, details={"error": "Invalid action template"})
        else:
            result = await self.router.execute(template, run.parameters or {})

        transition(run, RunStatus.SUCCESS if result.success else RunStatus.FAILED)
        run.completed_at = now or datetime.utcnow()
        run.result = result.details
        await session.commit()

        logger.info(
            "remediation_run_completed",
            run_id=str(run.id),
            tenant_id=run.tenant_id,
            playbook_code=run.playbook_code,
            auto_triggered=run.auto_triggered,
            status=run.status,
        )
        return result

    async def fail(self, session: AsyncSession, run_id: uuid.UUID, error: str) -> None:
        await session.rollback()
        run = await queries.get_run(session, run_id)
        if run is None or RunStatus(run.status).is_terminal:
            return
        transition(run, RunStatus.FAILED)
        run.completed_at = datetime.utcnow()
        run.result = {"error": error}
        await session.commit()

    async def execute_run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        run_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> dict:
        """Manually execute one run by id."""
        if not run_id:
            raise ValidationFailed("run_id required")
        try:
            run_uuid = uuid.UUID(str(run_id))
        except ValueError:
            raise NotFound("Run not found")

        async with session_factory() as session:
            run = await queries.get_run(session, run_uuid)
            if run is None:
                raise NotFound("Run not found")
            tenant_id = run.tenant_id

        async with LeaseManager(session_factory).hold(tenant_id, TENANT_STATE):
            async with session_scope(session_factory) as session:
                run = await queries.get_run(session, run_uuid)
                result = await self.execute(session, run, now)
                return {
                    "run_id": str(run.id),
                    "status": run.status,
                    "result": result.details,
                }

    # ── Auto-trigger scan ──────────────────────────────────────────────

    async def trigger_for_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        now: datetime,
    ) -> UnitResult:
        candidates = await queries.get_auto_trigger_candidates(
            session,
            tenant_id,
            min_confidence=self.min_confidence,
            min_impact=self.min_impact,
            severities=self.severities,
        )

        # A failed run rolls the session back and expires loaded rows; keep plain copies
        runs = [new_run(tenant_id, rec, playbook, auto_triggered=True, now=now) for rec, playbook in candidates]
        candidate_info = [
            {"recommendation_id": str(rec.id), "confidence": rec.confidence, "expected_impact": rec.expected_impact}
            for rec, _ in candidates
        ]

        triggered = 0
        skipped_recent = 0
        audit: list[AuditEvent] = []
        for run, info in zip(runs, candidate_info):
            code = run.playbook_code
            if await queries.has_recent_run(session, tenant_id, code, since=now - self.rate_limit):
                logger.info("remediation_skipped_recent_run", tenant_id=tenant_id, playbook_code=code)
                skipped_recent += 1
                continue
            if not await claim_slot(session, tenant_id, rate_limit_resource(code), self.rate_limit, now=now):
                logger.info("remediation_slot_taken", tenant_id=tenant_id, playbook_code=code)
                skipped_recent += 1
                continue

            session.add(run)
            # Slot and pending run become visible together
            await session.commit()
            run_uuid = run.id
            run_id = str(run_uuid)
            logger.info("remediation_auto_triggered", tenant_id=tenant_id, run_id=run_id, playbook_code=code, **info)

            details = {"playbook_code": code, **info}
            try:
                await self.execute(session, run, now)
            except Exception as e:
                logger.error("remediation_execute_failed", run_id=run_id, error=str(e))
                await self.fail(session, run_uuid, str(e))
                details.update(status=RunStatus.FAILED.value, error=str(e))
            else:
                triggered += 1
                details["status"] = run.status

            audit.append(
                AuditEvent(
                    action="remediation.auto_triggered",
                    tenant_id=tenant_id,
                    resource_type="remediation_run",
                    resource_id=run_id,
                    details=details,
                )
            )

        return UnitResult(
            counts={"remediations_triggered": triggered, "skipped_recent": skipped_recent},
            audit=audit,
        )

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

        async def unit(session: AsyncSession, tid: str) -> UnitResult:
            return await self.trigger_for_tenant(session, tid, now)

        return await TenantWorkerPool(session_factory).run(
            "trigger_remediation", tenants, unit, lease_resource=TENANT_STATE
        )
