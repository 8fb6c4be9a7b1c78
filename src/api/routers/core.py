"""Core routes for the Segmentry API (root and health check)."""

from api.dependencies import get_services
from api.schemas import HealthResponse, RootResponse
from fastapi import APIRouter

router = APIRouter(tags=["Core"])


@router.get(
    "/",
    response_model=RootResponse,
    summary="API root",
    description="Returns API name and version.",
)
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Segmentry API", "version": "1.0.0"}


@router.get(
    "/api/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns server health status and the running validation job, if any.",
)
async def health() -> dict:
    """Health check endpoint."""
    active = get_services().registry.active_job()
    return {"status": "healthy", "running_job": active.id if active else None}
