"""
SLOCast Retraining Loop.

Components:
- planner: candidate detection, canary experiment and job creation
- trainer: queued job execution and model registry
- experiment: canary vs control evaluation, rollout or rollback
"""
