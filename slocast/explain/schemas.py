"""
Explainability Schemas.
"""

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class Verdict(StrEnum):
    USEFUL = "useful"
    NOT_USEFUL = "not_useful"
    IRRELEVANT = "irrelevant"


VERDICT_DELTA: dict[Verdict, float] = {
    Verdict.USEFUL: 1.0,
    Verdict.NOT_USEFUL: -1.0,
    Verdict.IRRELEVANT: -0.5,
}


class SignalFeature(StrEnum):
    RULE_GROUP = "rule_group"
    DAY_OF_WEEK = "dow"


class SignalMetric(StrEnum):
    FAIL_SHARE = "fail_share"
    SR_DELTA = "sr_delta"


class FeedbackRequest(BaseModel):
    tenant_id: Optional[str] = None
    feature: Optional[str] = None
    key: str = ""
    metric: Optional[str] = None
    verdict: Optional[str] = None
    notes: Optional[str] = None
    actor: Optional[str] = None


class WeightedSignal(BaseModel):
    feature: str
    key: str
    metric: str
    value: float
    sample_size: int
    p_value: Optional[float] = None
    weight: float = Field(ge=0.5, le=2.0)
    confidence: float = Field(ge=0, le=100)
    score: float
