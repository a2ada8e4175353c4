"""
Test fixtures for SLOCast.

Provides:
- Async DB engine per test (file-backed SQLite under tmp_path)
- Session factory and a read session
- Data factories for tenants, check-result streams and arbitrary rows
- FastAPI test client bound to the test database
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JOB_MAX_WORKERS", "1")
os.environ.setdefault("LEASE_HOLDER", "test-worker")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")

from datetime import datetime, timedelta  # noqa: E402
from typing import AsyncGenerator, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from slocast.api.deps import get_sessions  # noqa: E402
from slocast.db.engine import Base  # noqa: E402
from slocast.db.models import (  # noqa: E402, F401 - register all models
    Alert,
    CheckResult,
    ExplainabilitySignal,
    PlaybookCatalogEntry,
    TenantSettings,
)
from slocast.main import create_app  # noqa: E402

# Fixed reference time; every stage takes `now` explicitly
NOW = datetime(2026, 3, 31, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create a test database engine with all tables."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'slocast.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Read session for assertions. Writes go through `insert`."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Data Factories ───────────────────────────────────────────────────────


@pytest.fixture
def insert(session_factory):
    """insert(*rows): add rows and commit them in their own session."""

    async def _insert(*rows):
        async with session_factory() as session:
            session.add_all(rows)
            await session.commit()
        return rows[0] if len(rows) == 1 else rows

    return _insert


@pytest.fixture
def make_tenant(insert):
    async def _make(tenant_id: str = "tenant-a", **overrides) -> TenantSettings:
        fields = {
            "slo_target_sr": 95.0,
            "self_tuning_enabled": False,
            "canary_opt_in": False,
            "recommendations_enabled": True,
            "explainability_enabled": True,
        }
        fields.update(overrides)
        return await insert(TenantSettings(tenant_id=tenant_id, **fields))

    return _make


def check_rows(
    tenant_id: str,
    start: datetime,
    passed: int,
    failed: int,
    spacing: timedelta = timedelta(minutes=90),
    rule_group: Optional[str] = None,
) -> list[CheckResult]:
    """`passed` passes then `failed` fails, evenly spaced from `start`."""
    outcomes = ["pass"] * passed + ["fail"] * failed
    return [
        CheckResult(
            tenant_id=tenant_id,
            outcome=outcome,
            rule_group=rule_group,
            created_at=start + i * spacing,
        )
        for i, outcome in enumerate(outcomes)
    ]


@pytest.fixture
def add_checks(insert):
    """add_checks(tenant_id, start, passed, failed, ...) -> number of rows written."""

    async def _add(tenant_id: str, start: datetime, passed: int, failed: int, **kwargs) -> int:
        rows = check_rows(tenant_id, start, passed, failed, **kwargs)
        if rows:
            await insert(*rows)
        return len(rows)

    return _add


@pytest.fixture
def add_daily_checks(add_checks):
    """add_daily_checks(tenant_id, first_day, [(passed, failed), ...]): one entry per day."""

    async def _add(tenant_id: str, first_day: datetime, days: list[tuple[int, int]], **kwargs) -> int:
        total = 0
        for offset, (passed, failed) in enumerate(days):
            total += await add_checks(tenant_id, first_day + timedelta(days=offset), passed, failed, **kwargs)
        return total

    return _add


@pytest.fixture
def make_playbook(insert):
    async def _make(code: str = "pb-rule-group", **overrides) -> PlaybookCatalogEntry:
        fields = {
            "title": f"Playbook {code}",
            "description": "Investigate the failing rule group",
            "condition": {"feature": "rule_group", "metric": "fail_share", "operator": "gt", "threshold": 0.3},
            "action_template": {"type": "create_task", "target": "ops", "params": {"title": "Investigate"}},
            "severity": "high",
            "default_impact": 10.0,
            "trusted": True,
        }
        fields.update(overrides)
        return await insert(PlaybookCatalogEntry(code=code, **fields))

    return _make


@pytest.fixture
def add_signal(insert):
    async def _add(tenant_id: str, day, feature: str, key: str, metric: str, value: float, sample_size: int, **kwargs):
        return await insert(
            ExplainabilitySignal(
                tenant_id=tenant_id,
                day=day,
                feature=feature,
                key=key,
                metric=metric,
                value=value,
                sample_size=sample_size,
                **kwargs,
            )
        )

    return _add


@pytest.fixture
def add_alerts(insert):
    async def _add(tenant_id: str, times: list[datetime]) -> int:
        if times:
            await insert(*[Alert(tenant_id=tenant_id, title="Check failing", triggered_at=t) for t in times])
        return len(times)

    return _add


# ── API Client ───────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, with the session dependency pointed at the test DB."""
    app = create_app()
    app.dependency_overrides[get_sessions] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
