"""
Job Handlers.

POST /api/v1/jobs/<stage>            - run one batch stage, optionally scoped by tenant_id
POST /api/v1/jobs/execute-remediation - execute one remediation run by run_id

Every handler answers {"ok": true, ...summary counts}. Errors are turned
into {"error": message} by the error middleware.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.api.deps import get_sessions
from slocast.remediation.orchestrator import RemediationOrchestrator
from slocast.services.stages import STAGES, run_stage

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])

_orchestrator = RemediationOrchestrator()


class JobRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    tenant_id: Optional[str] = None


class ExecuteRemediationRequest(BaseModel):
    run_id: Optional[str] = None


@router.post("/execute-remediation")
async def execute_remediation(
    body: Optional[ExecuteRemediationRequest] = None,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    result = await _orchestrator.execute_run(sessions, body.run_id if body else None)
    return {"ok": True, **result}


def _stage_handler(name: str):
    async def handler(
        body: Optional[JobRequest] = None,
        sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    ):
        summary = await run_stage(name, sessions, body.tenant_id if body else None)
        return {"ok": True, **summary}

    handler.__name__ = name.replace("-", "_")
    return handler


for _name in STAGES:
    router.add_api_route(f"/{_name}", _stage_handler(_name), methods=["POST"], name=_name)
