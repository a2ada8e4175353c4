"""
Per-tenant leases on the `tenant_leases` table.

Row-based locks with a TTL, keyed by (tenant_id, resource):
- acquire(): compare-and-swap. An expired row is taken over with a
  conditional UPDATE; a missing row is INSERTed and the unique key decides
  any race. Returns False if a live lease is held by someone else.
- hold(): async context manager around acquire/release, each in its own
  short transaction so the lease is visible to other workers immediately.
- claim_slot(): acquire inside the caller's transaction and never release.
  Used as a rate limit: the slot simply expires after its TTL.

No process-local state: every worker, API pod and scheduler sees the same rows.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.config import settings
from slocast.db.models import TenantLease
from slocast.errors import LeaseUnavailable

logger = structlog.get_logger(__name__)

TENANT_STATE: str = "tenant-state"


async def try_acquire(
    session: AsyncSession,
    tenant_id: str,
    resource: str,
    holder: str,
    ttl: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """CAS acquisition within `session`. Caller commits."""
    now = now or datetime.utcnow()
    expires_at = now + ttl

    existing = (
        await session.execute(
            select(TenantLease).where(
                TenantLease.tenant_id == tenant_id,
                TenantLease.resource == resource,
            )
        )
    ).scalar_one_or_none()

    if existing is not None:
        # Take over only if it is still expired when the UPDATE runs
        result = await session.execute(
            update(TenantLease)
            .where(
                TenantLease.id == existing.id,
                TenantLease.expires_at <= now,
            )
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    session.add(
        TenantLease(
            tenant_id=tenant_id,
            resource=resource,
            holder=holder,
            acquired_at=now,
            expires_at=expires_at,
        )
    )
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent worker inserted first
        raise LeaseUnavailable(tenant_id, resource)
    return True


class LeaseManager:
    """Short-lived exclusive leases for per-tenant write serialization."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        holder: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.holder = holder or settings.lease_holder
        self.ttl = timedelta(seconds=ttl_seconds or settings.tenant_lease_ttl_seconds)

    async def acquire(self, tenant_id: str, resource: str = TENANT_STATE) -> bool:
        async with self.session_factory() as session:
            try:
                acquired = await try_acquire(session, tenant_id, resource, self.holder, self.ttl)
            except LeaseUnavailable:
                await session.rollback()
                return False
            await session.commit()
        if not acquired:
            logger.info("lease_busy", tenant_id=tenant_id, resource=resource)
        return acquired

    async def release(self, tenant_id: str, resource: str = TENANT_STATE) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(TenantLease).where(
                    TenantLease.tenant_id == tenant_id,
                    TenantLease.resource == resource,
                    TenantLease.holder == self.holder,
                )
            )
            await session.commit()

    @asynccontextmanager
    async def hold(self, tenant_id: str, resource: str = TENANT_STATE) -> AsyncGenerator[None, None]:
        """Hold the lease for the duration of the block or raise LeaseUnavailable."""
        if not await self.acquire(tenant_id, resource):
            raise LeaseUnavailable(tenant_id, resource)
        try:
            yield
        finally:
            try:
                await self.release(tenant_id, resource)
            except Exception as e:
                # The TTL reclaims it
                logger.error("lease_release_failed", tenant_id=tenant_id, resource=resource, error=str(e))


async def claim_slot(
    session: AsyncSession,
    tenant_id: str,
    resource: str,
    ttl: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """
    Claim a rate-limit slot in the caller's transaction.

    True means this caller owns the slot until `now + ttl`. The slot commits
    or rolls back together with whatever the caller does under it.
    """
    return await try_acquire(session, tenant_id, resource, settings.lease_holder, ttl, now=now)
