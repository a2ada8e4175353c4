"""
Tenant lease tests.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from slocast.db.models import TenantLease
from slocast.errors import LeaseUnavailable
from slocast.services.locks import TENANT_STATE, LeaseManager, claim_slot

NOW = datetime(2026, 3, 31, 12)


@pytest.mark.asyncio
async def test_second_holder_is_refused(session_factory):
    first = LeaseManager(session_factory, holder="worker-1")
    second = LeaseManager(session_factory, holder="worker-2")

    assert await first.acquire("tenant-a")
    assert not await second.acquire("tenant-a")
    # Other tenants and resources are independent
    assert await second.acquire("tenant-b")
    assert await second.acquire("tenant-a", "remediation:pb-auth")


@pytest.mark.asyncio
async def test_release_only_by_holder(session_factory):
    first = LeaseManager(session_factory, holder="worker-1")
    second = LeaseManager(session_factory, holder="worker-2")
    await first.acquire("tenant-a")

    await second.release("tenant-a")
    assert not await second.acquire("tenant-a")

    await first.release("tenant-a")
    assert await second.acquire("tenant-a")


@pytest.mark.asyncio
async def test_expired_lease_taken_over(session_factory, db, insert):
    past = datetime.utcnow() - timedelta(minutes=10)
    await insert(
        TenantLease(
            tenant_id="tenant-a",
            resource=TENANT_STATE,
            holder="crashed-worker",
            acquired_at=past - timedelta(minutes=5),
            expires_at=past,
        )
    )

    assert await LeaseManager(session_factory, holder="worker-2").acquire("tenant-a")

    lease = (await db.execute(select(TenantLease))).scalar_one()
    assert lease.holder == "worker-2"
    assert lease.expires_at > datetime.utcnow()


@pytest.mark.asyncio
async def test_hold_releases_on_exit(session_factory, db):
    leases = LeaseManager(session_factory, holder="worker-1")

    async with leases.hold("tenant-a"):
        with pytest.raises(LeaseUnavailable) as exc:
            async with LeaseManager(session_factory, holder="worker-2").hold("tenant-a"):
                pass
        assert exc.value.status_code == 409

    assert (await db.execute(select(TenantLease))).first() is None


@pytest.mark.asyncio
async def test_hold_releases_when_block_raises(session_factory, db):
    leases = LeaseManager(session_factory, holder="worker-1")

    with pytest.raises(RuntimeError):
        async with leases.hold("tenant-a"):
            raise RuntimeError("boom")

    assert (await db.execute(select(TenantLease))).first() is None


@pytest.mark.asyncio
async def test_claim_slot_follows_caller_transaction(session_factory, db):
    ttl = timedelta(hours=24)

    async with session_factory() as session:
        assert await claim_slot(session, "tenant-a", "remediation:pb-auth", ttl, now=NOW)
        await session.rollback()
    assert (await db.execute(select(TenantLease))).first() is None

    async with session_factory() as session:
        assert await claim_slot(session, "tenant-a", "remediation:pb-auth", ttl, now=NOW)
        await session.commit()

    async with session_factory() as session:
        assert not await claim_slot(session, "tenant-a", "remediation:pb-auth", ttl, now=NOW + timedelta(hours=1))
        assert await claim_slot(session, "tenant-a", "remediation:pb-auth", ttl, now=NOW + timedelta(hours=25))
        await session.commit()
