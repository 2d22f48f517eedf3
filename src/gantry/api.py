"""REST API — workflows, runs, cancellation and approval decisions.

Endpoints:
    - GET  /workflows                                  - Registered workflows + execution order
    - GET  /runs                                       - Recent runs (?workflow=&status=&limit=)
    - GET  /runs/{run_id}                              - One run with jobs and step results
    - POST /workflows/{name}/dispatch                  - Start a workflow manually
    - POST /runs/{run_id}/cancel                       - Cancel an active run
    - POST /runs/{run_id}/jobs/{job_id}/approval       - Approve or reject an approval job

Security:
    All endpoints respect GANTRY_API_KEY when configured.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from gantry.pipeline.errors import ApprovalConflict, ApprovalForbidden
from gantry.pipeline.models import ApprovalDecision, RunStatus
from gantry.security import require_api_key

if TYPE_CHECKING:
    from gantry.pipeline.engine import PipelineEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipelines"], dependencies=[Depends(require_api_key)])

# Module-level reference (configured at startup)
_engine: PipelineEngine | None = None


def configure(engine: PipelineEngine) -> None:
    """Configure the API router with the pipeline engine."""
    global _engine
    _engine = engine
    logger.info("API router configured")


def _require_engine() -> PipelineEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Pipeline engine not available")
    return _engine


# ── Request Bodies ───────────────────────────────────────────────────────────


class DispatchRequest(BaseModel):
    actor: str = "api"
    ref: str = ""
    commit: str | None = None
    inputs: dict[str, str] = Field(default_factory=dict)


class ApprovalBody(BaseModel):
    decision: Literal["approved", "rejected"]
    actor: str = Field(min_length=1)
    comment: str | None = None


# ── Workflows ────────────────────────────────────────────────────────────────


@router.get("/workflows")
async def list_workflows():
    engine = _require_engine()
    return {
        "workflows": [
            {
                "name": graph.name,
                "description": graph.definition.description,
                "jobs": graph.topological_order(),
                "stages": graph.levels(),
                "trigger": graph.definition.trigger.model_dump(mode="json"),
            }
            for graph in engine.list_workflows()
        ]
    }


@router.post("/workflows/{name}/dispatch", status_code=201)
async def dispatch_workflow(name: str, body: DispatchRequest | None = None):
    """Start a run of ``name`` regardless of its trigger."""
    engine = _require_engine()
    body = body or DispatchRequest()
    run = await engine.dispatch(
        name, actor=body.actor, ref=body.ref, commit=body.commit, inputs=body.inputs
    )
    if run is None:
        raise HTTPException(status_code=404, detail=f"Workflow '{name}' not found")
    return {"run_id": run.run_id, "workflow": run.workflow_name, "status": run.status.value}


# ── Runs ─────────────────────────────────────────────────────────────────────


@router.get("/runs")
async def list_runs(
    workflow: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    engine = _require_engine()
    status_filter = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid status: {e}")
    runs = await engine.list_runs(workflow_name=workflow, status=status_filter, limit=limit)
    return {
        "runs": [r.model_dump(mode="json", exclude={"definition_snapshot", "jobs"}) for r in runs]
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str):
    engine = _require_engine()
    run = await engine.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    data = run.model_dump(mode="json", exclude={"definition_snapshot"})
    data["approvals"] = [
        req.model_dump(mode="json")
        for job_id in run.jobs
        if (req := await engine.approvals.get(run_id, job_id)) is not None
    ]
    return data


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    engine = _require_engine()
    run = await engine.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    cancelled = await engine.cancel_run(run_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Run {run_id} is not active")
    return {"run_id": run_id, "cancelled": True}


@router.post("/runs/{run_id}/jobs/{job_id}/approval")
async def decide_approval(run_id: str, job_id: str, body: ApprovalBody):
    """Record an approval decision from an authenticated approver."""
    engine = _require_engine()
    try:
        request = await engine.resolve_approval(
            run_id,
            job_id,
            ApprovalDecision(body.decision),
            actor=body.actor,
            comment=body.comment,
        )
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else str(e))
    except ApprovalForbidden as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ApprovalConflict as e:
        raise HTTPException(
            status_code=409,
            detail={
                "message": str(e),
                "existing": e.request.model_dump(mode="json"),
            },
        )
    return request.model_dump(mode="json")
