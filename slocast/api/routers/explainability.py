"""
Explainability API Endpoints.

POST /api/v1/explainability/feedback  - verdict on a signal, updates its weight
POST /api/v1/explainability/weighted  - latest signals ranked by weighted strength
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.api.deps import get_sessions
from slocast.db.engine import session_scope
from slocast.errors import ValidationFailed
from slocast.explain.feedback import apply_feedback, top_weighted_signals, validate_feedback
from slocast.explain.schemas import FeedbackRequest
from slocast.services.locks import TENANT_STATE, LeaseManager

router = APIRouter(prefix="/api/v1/explainability", tags=["explainability"])


class WeightedRequest(BaseModel):
    tenant_id: Optional[str] = None
    limit: int = Field(default=5, ge=1, le=50)


@router.post("/feedback")
async def feedback(
    body: FeedbackRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    validate_feedback(body)
    async with LeaseManager(sessions).hold(body.tenant_id, TENANT_STATE):
        async with session_scope(sessions) as session:
            weight = await apply_feedback(session, body)
            updated = {
                "weight": round(weight.weight, 4),
                "confidence": weight.confidence,
                "sample": weight.sample,
            }
    return {"ok": True, **updated}


@router.post("/weighted")
async def weighted(
    body: WeightedRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    if not body.tenant_id:
        raise ValidationFailed("tenant_id required")
    async with sessions() as session:
        signals = await top_weighted_signals(session, body.tenant_id, body.limit)
    return {"ok": True, "signals": [s.model_dump() for s in signals]}
