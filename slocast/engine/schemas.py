"""
Forecasting enums and response models.
"""

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class Outcome(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EnsembleView(BaseModel):
    """Latest blended forecast for one tenant."""
    tenant_id: str
    forecast_sr: float
    lower_ci: float
    upper_ci: float
    reliability: float
    models: dict[str, float]
    weights: dict[str, float]
    generated_at: str


class ReliabilityPoint(BaseModel):
    day: str
    reliability: float = Field(ge=0, le=100)
    mae: float
    precision: float
    recall: float
    sample_size: int
    bias: Optional[float] = None
