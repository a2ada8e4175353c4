"""
Recommendation Schemas.

Closed enums for playbook conditions and recommendation lifecycle, plus the
request bodies of the recommendation endpoints.
"""

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class ConditionOperator(StrEnum):
    GT = "gt"
    LT = "lt"
    ABS_GT = "abs_gt"
    IN = "in"           # permissive: any value matches


class RecommendationStatus(StrEnum):
    OPEN = "open"
    APPLIED = "applied"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


class RecommendationVerb(StrEnum):
    APPLY = "apply"
    DISMISS = "dismiss"
    SNOOZE = "snooze"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PlaybookCondition(BaseModel):
    """Trigger predicate of a playbook. `feature` may list alternatives separated by '|'."""
    feature: str
    key: Optional[str] = None
    metric: str
    operator: ConditionOperator = ConditionOperator.GT
    threshold: float = 0.0

    @property
    def features(self) -> list[str]:
        return [f.strip() for f in self.feature.split("|") if f.strip()]


class ListRecommendationsRequest(BaseModel):
    tenant_id: Optional[str] = None
    status: RecommendationStatus = RecommendationStatus.OPEN
    limit: int = Field(default=10, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class ActOnRecommendationRequest(BaseModel):
    """Fields are optional so missing ones answer 400 with a message, not 422."""
    tenant_id: Optional[str] = None
    recommendation_id: Optional[str] = None
    action: Optional[str] = None
    until: Optional[datetime] = None
    actor: Optional[str] = None


class RecommendationView(BaseModel):
    id: str
    playbook_code: str
    title: str
    description: Optional[str] = None
    severity: str
    signal: dict
    weight: float
    confidence: float
    expected_impact: float
    priority: int
    status: RecommendationStatus
    snooze_until: Optional[datetime] = None
    created_at: datetime
