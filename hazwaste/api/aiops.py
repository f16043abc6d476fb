"""AIOps metrics endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from hazwaste.core.aiops.control_plane import ControlPlane
from hazwaste.core.aiops.errors import WorkflowNotFoundError
from hazwaste.core.aiops.instrumentation import MetricsSnapshot
from hazwaste.core.aiops.lifecycle import DriftReportEntry, TriggerStatus

router = APIRouter(prefix="/aiops", tags=["AIOps"])


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    status: str
    version: str
    mock_mode: bool
    models_registered: int


class MetricsResponse(BaseModel):
    instrumentation: MetricsSnapshot
    cache: dict[str, Any]


def get_control_plane(request: Request) -> ControlPlane:
    return request.app.state.control_plane


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(plane: ControlPlane = Depends(get_control_plane)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=plane.settings.api_version,
        mock_mode=plane.settings.mock_mode,
        models_registered=len(plane.optimizer.get_model_stats()),
    )


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(plane: ControlPlane = Depends(get_control_plane)) -> MetricsResponse:
    """Get call totals and cache statistics."""
    return MetricsResponse(
        instrumentation=plane.instrumentation.get_metrics(),
        cache=plane.reliability.get_cache_stats(),
    )


@router.get("/models")
async def get_model_stats(plane: ControlPlane = Depends(get_control_plane)) -> list[dict[str, Any]]:
    return plane.optimizer.get_model_stats()


@router.get("/budgets")
async def get_budget_status(plane: ControlPlane = Depends(get_control_plane)) -> list[dict[str, Any]]:
    return plane.optimizer.get_budget_status()


@router.get("/drift", response_model=list[DriftReportEntry])
async def get_drift_report(plane: ControlPlane = Depends(get_control_plane)) -> list[DriftReportEntry]:
    return plane.lifecycle.get_drift_report()


@router.get("/retraining", response_model=list[TriggerStatus])
async def get_retraining_status(
    plane: ControlPlane = Depends(get_control_plane),
) -> list[TriggerStatus]:
    return plane.lifecycle.get_retraining_status()


@router.get("/workflows/{name}")
async def get_workflow_stats(
    name: str,
    plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    try:
        return plane.orchestrator.get_workflow_stats(name)
    except WorkflowNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workflow not found: {name}",
        )


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    execution = plane.orchestrator.get_execution_status(execution_id)
    if execution is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution not found: {execution_id}",
        )
    return execution.to_dict()
