"""Validation job routes for the Segmentry API."""

import logging

from api.dependencies import get_services, is_admin_key, job_ws_manager, require_admin
from api.schemas import JobDetailResponse, JobSummaryResponse, StartValidationRequest, StartValidationResponse
from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from services.validation_engine import JobNotFound, ValidationAlreadyRunning

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Validation"], dependencies=[Depends(require_admin)])
ws_router = APIRouter(tags=["Validation"])


@router.post(
    "/validate/start",
    response_model=StartValidationResponse,
    status_code=202,
    summary="Start validation",
    description="Start a catalog-wide validation job. Returns 409 while another job runs.",
    responses={409: {"description": "A validation job is already running"}},
)
async def start_validation(request: StartValidationRequest | None = None) -> dict:
    """Start a validation job - returns 202 with job_id."""
    mirror = request.mirror if request is not None else False
    try:
        job = await get_services().engine.start(mirror=mirror)
    except ValidationAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"job_id": job.id, "status": job.status.value}


@router.get("/validate/jobs", summary="List validation jobs", description="Newest 100 jobs without per-video results.")
async def list_jobs() -> dict:
    jobs = await get_services().engine.list_jobs(limit=100)
    return {"jobs": [JobSummaryResponse(**job).model_dump() for job in jobs]}


@router.get("/validate/latest", response_model=JobDetailResponse, summary="Latest validation job")
async def latest_job() -> dict:
    """The running job if there is one, otherwise the most recent."""
    job = await get_services().engine.latest_job()
    if job is None:
        raise HTTPException(status_code=404, detail="No validation jobs")
    return job


@router.get("/validate/job/{job_id}", response_model=JobDetailResponse, summary="Get validation job")
async def get_job(job_id: str) -> dict:
    try:
        return await get_services().engine.get_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


async def _control(job_id: str, action: str) -> dict:
    engine = get_services().engine
    try:
        return await getattr(engine, action)(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/validate/{job_id}/pause", response_model=JobDetailResponse, summary="Pause validation job")
async def pause_job(job_id: str) -> dict:
    return await _control(job_id, "pause")


@router.post("/validate/{job_id}/resume", response_model=JobDetailResponse, summary="Resume validation job")
async def resume_job(job_id: str) -> dict:
    return await _control(job_id, "resume")


@router.post("/validate/{job_id}/stop", response_model=JobDetailResponse, summary="Stop validation job")
async def stop_job(job_id: str) -> dict:
    return await _control(job_id, "stop")


@router.delete("/validate/{job_id}", summary="Delete validation job")
async def delete_job(job_id: str) -> dict:
    try:
        await get_services().engine.delete(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    job_ws_manager.cleanup(job_id)
    return {"message": f"Job {job_id} deleted"}


@router.post(
    "/validate/{job_id}/revalidate/{video_id}",
    summary="Revalidate one video",
    description="Fast-path validation of a single video, appended to the job's results.",
)
async def revalidate_video(job_id: str, video_id: str) -> dict:
    try:
        result = await get_services().engine.revalidate_video(job_id, video_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except LookupError:
        raise HTTPException(status_code=404, detail="Video not found")
    return {"result": result.to_dict()}


@ws_router.websocket("/ws/validate/{job_id}")
async def websocket_validation(websocket: WebSocket, job_id: str) -> None:
    """WebSocket endpoint for real-time validation progress.

    Sends the current job snapshot first, then progress events as they happen.
    """
    services = get_services()
    provided = websocket.headers.get("x-admin-key") or websocket.query_params.get("key")
    if not is_admin_key(services.config, provided):
        await websocket.close(code=4401)
        return

    await job_ws_manager.connect(job_id, websocket, is_admin=True)
    try:
        try:
            job = await services.engine.get_job(job_id)
        except JobNotFound:
            await websocket.send_json({"type": "error", "message": "Job not found"})
            await websocket.close()
            return

        await websocket.send_json({"type": "snapshot", "job": job})

        # Keep connection alive and handle incoming messages
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for validation job {job_id}: {e}")
    finally:
        job_ws_manager.disconnect(job_id, websocket)
