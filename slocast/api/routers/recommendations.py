"""
Recommendation API Endpoints.

POST /api/v1/recommendations/list  - recommendations for a tenant, by priority
POST /api/v1/recommendations/act   - apply / dismiss / snooze one recommendation
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.api.deps import get_sessions
from slocast.db import queries
from slocast.decisions.actions import act_on_recommendation
from slocast.decisions.schemas import (
    ActOnRecommendationRequest,
    ListRecommendationsRequest,
    RecommendationView,
)
from slocast.errors import ValidationFailed

router = APIRouter(prefix="/api/v1/recommendations", tags=["recommendations"])


@router.post("/list")
async def list_recommendations(
    body: ListRecommendationsRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    if not body.tenant_id:
        raise ValidationFailed("tenant_id required")

    async with sessions() as session:
        tenant = await queries.get_tenant_settings(session, body.tenant_id)
        if tenant is None or not tenant.recommendations_enabled:
            return {"ok": True, "recommendations": [], "message": "Recommendations are disabled for this tenant"}

        rows = await queries.list_recommendations(
            session, body.tenant_id, body.status.value, body.limit, body.offset
        )

    return {
        "ok": True,
        "recommendations": [
            RecommendationView(
                id=str(rec.id),
                playbook_code=rec.playbook_code,
                title=pb.title,
                description=pb.description,
                severity=pb.severity,
                signal=rec.signal,
                weight=rec.weight,
                confidence=rec.confidence,
                expected_impact=rec.expected_impact,
                priority=rec.priority,
                status=rec.status,
                snooze_until=rec.snooze_until,
                created_at=rec.created_at,
            ).model_dump(mode="json")
            for rec, pb in rows
        ],
    }


@router.post("/act")
async def act(
    body: ActOnRecommendationRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    return await act_on_recommendation(sessions, body)
