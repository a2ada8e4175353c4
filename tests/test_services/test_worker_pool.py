"""
Tenant worker pool tests: isolation, skips, busy tenants, bounded concurrency,
and post-commit audit writes.
"""

import asyncio

import pytest
from sqlalchemy import select

from slocast.db.models import AuditLog, TenantSettings
from slocast.services.audit import AuditEvent, write_audit
from slocast.services.locks import TENANT_STATE, LeaseManager
from slocast.services.worker_pool import StageReport, TenantWorkerPool, UnitResult


class TestStageReport:
    def test_to_dict(self):
        report = StageReport(stage="demo", tenants=3, processed=2, failed=1)
        report.counts.update({"written": 4})
        assert report.to_dict() == {
            "tenants_scanned": 3,
            "tenants_processed": 2,
            "tenants_skipped": 0,
            "tenants_failed": 1,
            "tenants_busy": 0,
            "written": 4,
        }

    def test_errors_only_when_present(self):
        report = StageReport(stage="demo")
        assert "errors" not in report.to_dict()
        report.errors.append({"tenant_id": "t", "error": "boom"})
        assert report.to_dict()["errors"] == [{"tenant_id": "t", "error": "boom"}]


@pytest.mark.asyncio
async def test_failing_tenant_does_not_stop_others(session_factory):
    async def unit(session, tenant_id):
        if tenant_id == "tenant-b":
            raise RuntimeError("boom")
        return UnitResult(counts={"written": 1})

    report = await TenantWorkerPool(session_factory).run("demo", ["tenant-a", "tenant-b", "tenant-c"], unit)

    assert report.tenants == 3
    assert report.processed == 2
    assert report.failed == 1
    assert report.counts["written"] == 2
    assert report.errors == [{"tenant_id": "tenant-b", "error": "boom"}]


@pytest.mark.asyncio
async def test_failed_unit_rolls_back(session_factory, db):
    async def unit(session, tenant_id):
        session.add(TenantSettings(tenant_id=tenant_id))
        await session.flush()
        raise RuntimeError("after write")

    await TenantWorkerPool(session_factory).run("demo", ["tenant-a"], unit)

    assert (await db.execute(select(TenantSettings))).first() is None


@pytest.mark.asyncio
async def test_skipped_units_counted(session_factory):
    async def unit(session, tenant_id):
        return UnitResult.skip("insufficient_data")

    report = await TenantWorkerPool(session_factory).run("demo", ["tenant-a", "tenant-a"], unit)

    # Duplicate ids are processed once
    assert report.tenants == 1
    assert report.skipped == 1
    assert report.processed == 0


@pytest.mark.asyncio
async def test_busy_tenant_counted_and_lease_released(session_factory):
    assert await LeaseManager(session_factory, holder="other-worker").acquire("tenant-b", TENANT_STATE)
    seen = []

    async def unit(session, tenant_id):
        seen.append(tenant_id)
        return UnitResult()

    pool = TenantWorkerPool(session_factory)
    report = await pool.run("demo", ["tenant-a", "tenant-b"], unit, lease_resource=TENANT_STATE)

    assert seen == ["tenant-a"]
    assert report.busy == 1
    assert report.processed == 1
    # tenant-a's lease was released after its unit
    assert await LeaseManager(session_factory, holder="someone-else").acquire("tenant-a", TENANT_STATE)


@pytest.mark.asyncio
async def test_concurrency_is_bounded(session_factory):
    in_flight = 0
    peak = 0

    async def unit(session, tenant_id):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return UnitResult()

    report = await TenantWorkerPool(session_factory, max_workers=2).run(
        "demo", [f"tenant-{i}" for i in range(6)], unit
    )

    assert report.processed == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_audit_written_after_commit(session_factory, db):
    async def unit(session, tenant_id):
        return UnitResult(audit=[AuditEvent(action="demo.done", tenant_id=tenant_id, details={"n": 1})])

    await TenantWorkerPool(session_factory).run("demo", ["tenant-a"], unit)

    row = (await db.execute(select(AuditLog))).scalar_one()
    assert row.action == "demo.done"
    assert row.actor == "system"
    assert row.details == {"n": 1}


@pytest.mark.asyncio
async def test_write_audit_empty_is_noop(session_factory):
    assert await write_audit(session_factory, []) == 0
