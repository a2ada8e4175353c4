"""
Bounded per-tenant worker pool.

Every stage iterates its eligible tenants through this pool:
- at most `max_workers` tenant units in flight (asyncio.Semaphore)
- each unit gets its own session and commits atomically
- a unit that raises is logged and counted under `failed`; the others continue
- a unit that returns UnitResult.skip(...) is counted under `skipped`
- with a lease resource, a tenant already being processed elsewhere is
  counted under `busy`
- audit events a unit returns are written after its commit (best-effort)
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.config import settings
from slocast.db.engine import session_scope
from slocast.errors import LeaseUnavailable
from slocast.services.audit import AuditEvent, write_audit
from slocast.services.locks import LeaseManager

logger = structlog.get_logger(__name__)


@dataclass
class UnitResult:
    """What one tenant unit reports back to the pool."""
    counts: dict = field(default_factory=dict)
    skipped: Optional[str] = None
    audit: list[AuditEvent] = field(default_factory=list)

    @classmethod
    def skip(cls, reason: str) -> "UnitResult":
        return cls(skipped=reason)


@dataclass
class StageReport:
    stage: str
    tenants: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    busy: int = 0
    counts: Counter = field(default_factory=Counter)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        body = {
            "tenants_scanned": self.tenants,
            "tenants_processed": self.processed,
            "tenants_skipped": self.skipped,
            "tenants_failed": self.failed,
            "tenants_busy": self.busy,
        }
        body.update(self.counts)
        if self.errors:
            body["errors"] = self.errors
        return body


TenantUnit = Callable[[AsyncSession, str], Awaitable[UnitResult]]


class TenantWorkerPool:
    """Runs one unit of work per tenant with bounded concurrency and error isolation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_workers: Optional[int] = None,
        leases: Optional[LeaseManager] = None,
    ):
        self.session_factory = session_factory
        self.max_workers = max(1, max_workers or settings.job_max_workers)
        self.leases = leases or LeaseManager(session_factory)

    async def run(
        self,
        stage: str,
        tenant_ids: Iterable[str],
        unit: TenantUnit,
        lease_resource: Optional[str] = None,
    ) -> StageReport:
        tenant_ids = list(dict.fromkeys(tenant_ids))
        report = StageReport(stage=stage, tenants=len(tenant_ids))
        semaphore = asyncio.Semaphore(self.max_workers)

        async def _process(tenant_id: str) -> None:
            async with semaphore:
                structlog.contextvars.bind_contextvars(stage=stage, tenant_id=tenant_id)
                try:
                    if lease_resource:
                        async with self.leases.hold(tenant_id, lease_resource):
                            result = await self._run_unit(unit, tenant_id)
                    else:
                        result = await self._run_unit(unit, tenant_id)
                except LeaseUnavailable:
                    report.busy += 1
                    logger.info(f"{stage}_tenant_busy", tenant_id=tenant_id)
                    return
                except Exception as e:
                    report.failed += 1
                    report.errors.append({"tenant_id": tenant_id, "error": str(e)})
                    logger.error(
                        f"{stage}_tenant_failed",
                        tenant_id=tenant_id,
                        error=str(e),
                        exc_info=True,
                    )
                    return
                finally:
                    structlog.contextvars.unbind_contextvars("stage", "tenant_id")

                if result.skipped:
                    report.skipped += 1
                    logger.info(f"{stage}_tenant_skipped", tenant_id=tenant_id, reason=result.skipped)
                else:
                    report.processed += 1
                    report.counts.update(result.counts)

                if result.audit:
                    await write_audit(self.session_factory, result.audit)

        await asyncio.gather(*(_process(t) for t in tenant_ids))

        logger.info(f"{stage}_completed", **report.to_dict())
        return report

    async def _run_unit(self, unit: TenantUnit, tenant_id: str) -> UnitResult:
        async with session_scope(self.session_factory) as session:
            return await unit(session, tenant_id)
