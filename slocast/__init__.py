"""
SLOCast - adaptive compliance forecasting and self-tuning remediation.

Architecture:
    slocast/
    ├── api/             # FastAPI job handlers and read endpoints
    ├── db/              # SQLAlchemy models, engine, typed queries
    ├── middleware/      # Error envelope, request context, CORS
    ├── engine/          # Features, bounding primitives, ensemble, breach risk
    ├── outcomes/        # Accuracy evaluation, weight controller, remediation impact
    ├── explain/         # Signal mining, feedback weights
    ├── decisions/       # Recommendation engine, human actions
    ├── remediation/     # Action handlers, run state machine, auto-trigger
    ├── retraining/      # Planner, trainer, canary experiments
    └── services/        # Worker pool, leases, audit, notifier, scheduler

Feedback loop:
    check results → forecast → accuracy → weights / SLO target
    signals → recommendations → remediation runs → impact → playbook priors
    degraded metrics → canary experiment → training job → rollout / rollback
"""

__version__ = "1.0.0"
