"""
Forecast API Endpoints.

POST /api/v1/forecast/ensemble           - latest blended forecast
POST /api/v1/forecast/reliability-trend  - daily reliability series (30 days)
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.api.deps import get_sessions
from slocast.db import queries
from slocast.engine.schemas import EnsembleView, ReliabilityPoint
from slocast.errors import NotFound, ValidationFailed

router = APIRouter(prefix="/api/v1/forecast", tags=["forecast"])


class TenantRequest(BaseModel):
    tenant_id: Optional[str] = None
    days: int = Field(default=30, ge=1, le=365)


@router.post("/ensemble", response_model=EnsembleView)
async def latest_ensemble(
    body: TenantRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    if not body.tenant_id:
        raise ValidationFailed("tenant_id required")
    async with sessions() as session:
        row = await queries.get_latest_ensemble(session, body.tenant_id)
    if row is None:
        raise NotFound("No ensemble forecast for tenant")
    return EnsembleView(
        tenant_id=row.tenant_id,
        forecast_sr=row.forecast_sr,
        lower_ci=row.lower_ci,
        upper_ci=row.upper_ci,
        reliability=row.reliability,
        models={
            "trend": row.model_trend,
            "conservative": row.model_conservative,
            "optimistic": row.model_optimistic,
        },
        weights={
            "trend": row.w_trend,
            "conservative": row.w_conservative,
            "optimistic": row.w_optimistic,
        },
        generated_at=row.generated_at.isoformat(),
    )


@router.post("/reliability-trend")
async def reliability_trend(
    body: TenantRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    if not body.tenant_id:
        raise ValidationFailed("tenant_id required")
    since = datetime.utcnow() - timedelta(days=body.days)
    async with sessions() as session:
        series = await queries.get_metrics_series(session, body.tenant_id, since)

    # Ascending series: the last row of a day wins
    by_day: dict[str, ReliabilityPoint] = {}
    for m in series:
        by_day[m.computed_at.date().isoformat()] = ReliabilityPoint(
            day=m.computed_at.date().isoformat(),
            reliability=m.reliability,
            mae=m.mae,
            precision=m.precision,
            recall=m.recall,
            sample_size=m.sample_size,
            bias=m.bias,
        )
    return {"ok": True, "tenant_id": body.tenant_id, "points": [p.model_dump() for p in by_day.values()]}
