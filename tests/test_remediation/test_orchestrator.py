"""
Remediation Orchestrator Tests.

Covers:
- auto-trigger eligibility (confidence, impact, severity, trusted)
- 24h rate limit through the recent-run check and the claimed slot
- run state machine and action routing
- manual execution by run id
"""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from slocast.db.models import AuditLog, GeneratedRecommendation, RemediationRun, TenantLease
from slocast.errors import NotFound, ValidationFailed
from slocast.remediation.handlers import ActionRouter
from slocast.remediation.orchestrator import RemediationOrchestrator, rate_limit_resource, transition
from slocast.remediation.schemas import ActionTemplate, ActionType, RunStatus

NOW = datetime(2026, 3, 31, 12)
SIGNAL = {"feature": "rule_group", "key": "auth", "metric": "fail_share", "value": 0.8, "sample_size": 40}


def eligible_rec(tenant_id: str = "tenant-a", playbook_code: str = "pb-rule-group", **overrides):
    fields = dict(
        tenant_id=tenant_id,
        playbook_code=playbook_code,
        signal=SIGNAL,
        weight=1.0,
        confidence=85.0,
        expected_impact=7.0,
        priority=1,
        status="open",
        open_key=f"{playbook_code}|rule_group|auth",
        created_at=NOW - timedelta(hours=1),
    )
    fields.update(overrides)
    return GeneratedRecommendation(**fields)


# ── State machine ──────────────────────────────────────────────────────


class TestTransitions:
    def test_happy_path(self):
        run = RemediationRun(status="pending")
        transition(run, RunStatus.EXECUTING)
        transition(run, RunStatus.SUCCESS)
        assert run.status == "success"

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", RunStatus.SUCCESS),
            ("success", RunStatus.FAILED),
            ("failed", RunStatus.EXECUTING),
            ("executing", RunStatus.PENDING),
        ],
    )
    def test_illegal_moves_rejected(self, current, target):
        run = RemediationRun(status=current)
        with pytest.raises(ValidationFailed):
            transition(run, target)
        assert run.status == current

    def test_rate_limit_resource(self):
        assert rate_limit_resource("pb-auth") == "remediation:pb-auth"


class TestActionRouter:
    @pytest.mark.asyncio
    async def test_unknown_type_fails(self):
        result = await ActionRouter().execute(ActionTemplate(type="page_oncall"), {})
        assert result.success is False
        assert result.details == {"error": "Unknown action type"}

    @pytest.mark.asyncio
    async def test_create_task(self):
        result = await ActionRouter().execute(
            ActionTemplate(type="create_task", target="ops", params={"title": "Fix auth"}), {}
        )
        assert result.success is True
        assert result.details["task_id"].startswith("STUB-")
        assert result.details["title"] == "Fix auth"


# ── Auto-trigger ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_two_scans_trigger_exactly_once(session_factory, db, make_tenant, make_playbook, insert):
    await make_tenant("tenant-a")
    await make_playbook("pb-rule-group", severity="high", trusted=True)
    rec = await insert(eligible_rec())

    orchestrator = RemediationOrchestrator()
    first = await orchestrator.run(session_factory, now=NOW)
    second = await orchestrator.run(session_factory, now=NOW + timedelta(hours=1))

    assert first.counts["remediations_triggered"] == 1
    assert second.counts["remediations_triggered"] == 0
    assert second.counts["skipped_recent"] == 1

    run = (await db.execute(select(RemediationRun))).scalar_one()
    assert run.auto_triggered is True
    assert run.status == "success"
    assert run.recommendation_id == rec.id
    assert run.confidence_before == 85.0
    assert run.completed_at == NOW

    audit = (await db.execute(select(AuditLog).where(AuditLog.action == "remediation.auto_triggered"))).scalar_one()
    assert audit.resource_id == str(run.id)

    slot = (
        await db.execute(select(TenantLease).where(TenantLease.resource == "remediation:pb-rule-group"))
    ).scalar_one()
    assert slot.expires_at == NOW + timedelta(hours=24)


@pytest.mark.asyncio
async def test_claimed_slot_blocks_trigger(session_factory, db, make_tenant, make_playbook, insert):
    """Another scanner already holds the rate-limit slot: no run is created."""
    await make_tenant("tenant-a")
    await make_playbook("pb-rule-group")
    await insert(
        eligible_rec(),
        TenantLease(
            tenant_id="tenant-a",
            resource=rate_limit_resource("pb-rule-group"),
            holder="other-worker",
            acquired_at=NOW - timedelta(minutes=1),
            expires_at=NOW + timedelta(hours=24),
        ),
    )

    report = await RemediationOrchestrator().run(session_factory, now=NOW)

    assert report.counts["remediations_triggered"] == 0
    assert report.counts["skipped_recent"] == 1
    assert (await db.execute(select(RemediationRun))).first() is None


@pytest.mark.asyncio
async def test_expired_slot_is_reclaimed(session_factory, db, make_tenant, make_playbook, insert):
    await make_tenant("tenant-a")
    await make_playbook("pb-rule-group")
    await insert(
        eligible_rec(),
        TenantLease(
            tenant_id="tenant-a",
            resource=rate_limit_resource("pb-rule-group"),
            holder="other-worker",
            acquired_at=NOW - timedelta(hours=25),
            expires_at=NOW - timedelta(hours=1),
        ),
    )

    report = await RemediationOrchestrator().run(session_factory, now=NOW)

    assert report.counts["remediations_triggered"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rec_overrides,playbook_overrides",
    [
        ({"confidence": 79.0}, {}),
        ({"expected_impact": 5.9}, {}),
        ({}, {"severity": "medium"}),
        ({}, {"trusted": False}),
        ({"status": "snoozed", "open_key": None}, {}),
    ],
)
async def test_ineligible_not_triggered(
    session_factory, db, make_tenant, make_playbook, insert, rec_overrides, playbook_overrides
):
    await make_tenant("tenant-a")
    await make_playbook("pb-rule-group", **playbook_overrides)
    await insert(eligible_rec(**rec_overrides))

    report = await RemediationOrchestrator().run(session_factory, now=NOW)

    assert report.counts["remediations_triggered"] == 0
    assert (await db.execute(select(RemediationRun))).first() is None


@pytest.mark.asyncio
async def test_unknown_action_type_fails_run(session_factory, db, make_tenant, make_playbook, insert):
    await make_tenant("tenant-a")
    await make_playbook("pb-pager", action_template={"type": "page_oncall", "target": "sre"})
    await insert(eligible_rec(playbook_code="pb-pager"))

    report = await RemediationOrchestrator().run(session_factory, now=NOW)

    assert report.failed == 0
    run = (await db.execute(select(RemediationRun))).scalar_one()
    assert run.status == "failed"
    assert run.result == {"error": "Unknown action type"}


class ExplodingHandler:
    async def execute(self, action, parameters):
        raise RuntimeError("task tracker unreachable")


@pytest.mark.asyncio
async def test_handler_error_fails_run_and_is_audited(session_factory, db, make_tenant, make_playbook, insert):
    await make_tenant("tenant-a")
    await make_playbook("pb-rule-group")
    await insert(eligible_rec())

    orchestrator = RemediationOrchestrator(router=ActionRouter({ActionType.CREATE_TASK: ExplodingHandler()}))
    report = await orchestrator.run(session_factory, now=NOW)

    assert report.failed == 0
    assert report.counts["remediations_triggered"] == 0
    run = (await db.execute(select(RemediationRun))).scalar_one()
    assert run.status == "failed"
    assert run.result == {"error": "task tracker unreachable"}
    audit = (
        await db.execute(select(AuditLog).where(AuditLog.action == "remediation.auto_triggered"))
    ).scalar_one()
    assert audit.resource_id == str(run.id)
    assert audit.details["status"] == "failed"
    assert audit.details["error"] == "task tracker unreachable"


# ── Manual execution ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_execute_run_by_id(session_factory, db, make_tenant, make_playbook, insert):
    await make_tenant("tenant-a")
    await make_playbook("pb-rule-group")
    run = await insert(
        RemediationRun(
            tenant_id="tenant-a",
            playbook_code="pb-rule-group",
            auto_triggered=False,
            parameters={"signal": SIGNAL, "action_template": {"type": "notify_team", "target": "ops"}},
            status="pending",
            started_at=NOW,
        )
    )

    result = await RemediationOrchestrator().execute_run(session_factory, str(run.id), now=NOW)

    assert result["status"] == "success"
    assert result["result"]["notification_sent"] is True

    with pytest.raises(ValidationFailed):
        await RemediationOrchestrator().execute_run(session_factory, str(run.id), now=NOW)


@pytest.mark.asyncio
@pytest.mark.parametrize("run_id,error", [(None, ValidationFailed), ("", ValidationFailed), ("nope", NotFound)])
async def test_execute_run_bad_input(session_factory, run_id, error):
    with pytest.raises(error):
        await RemediationOrchestrator().execute_run(session_factory, run_id)


@pytest.mark.asyncio
async def test_execute_run_unknown_id(session_factory):
    with pytest.raises(NotFound):
        await RemediationOrchestrator().execute_run(session_factory, str(uuid.uuid4()))
