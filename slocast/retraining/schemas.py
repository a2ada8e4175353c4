"""
Retraining enums.
"""

from enum import StrEnum


class ExperimentStatus(StrEnum):
    DRAFT = "draft"
    RUNNING = "running"
    ENDED = "ended"


class ExperimentDecision(StrEnum):
    ROLLOUT = "rollout"
    ROLLBACK = "rollback"
    FAILED = "failed"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TriggerReason(StrEnum):
    RELIABILITY_LOW = "reliability_low"
    MAE_HIGH = "mae_high"
    BIAS = "bias"
