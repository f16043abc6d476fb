"""Waste compliance AIOps API."""

from __future__ import annotations

from fastapi import FastAPI

from hazwaste.api.aiops import router as aiops_router
from hazwaste.core.aiops.config import AIOpsSettings, configure_logging
from hazwaste.core.aiops.control_plane import ControlPlane, build_control_plane


# =============================================================================
# FastAPI App
# =============================================================================


def create_app(control_plane: ControlPlane | None = None) -> FastAPI:
    """Build the API around a control plane, creating a default one if needed."""
    if control_plane is None:
        settings = AIOpsSettings()
        configure_logging(settings.log_level)
        control_plane = build_control_plane(settings)
        control_plane.setup_waste_classification()

    settings = control_plane.settings
    app = FastAPI(
        title=settings.api_title,
        description="Read-only operational metrics for the waste compliance AI control plane.",
        version=settings.api_version,
    )
    app.state.control_plane = control_plane
    app.include_router(aiops_router)
    return app


app = create_app()
