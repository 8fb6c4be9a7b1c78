"""Admin catalog routes for the Segmentry API."""

import logging

from api.dependencies import get_services, require_admin
from api.routers.videos import proxy_error_to_http
from api.schemas import (
    CreateLectureRequest,
    CreateVideoRequest,
    LectureCheckResponse,
    LectureResponse,
    UpdateVideoRequest,
    ValidateVideoRequest,
    VideoResponse,
)
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from models.video import VideoStatus
from services.segment_proxy import SegmentProxyError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


async def _get_video_or_404(video_id: str):
    video = await get_services().catalog.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="video not found")
    return video


@router.post("/lectures", response_model=LectureResponse, status_code=201, summary="Create lecture")
async def create_lecture(request: CreateLectureRequest) -> dict:
    lecture = await get_services().catalog.create_lecture(request.title, chapter_id=request.chapter_id)
    return lecture.to_dict()


@router.post(
    "/lectures/{lecture_id}/videos",
    response_model=VideoResponse,
    status_code=201,
    summary="Add video to lecture",
)
async def create_video(lecture_id: str, request: CreateVideoRequest) -> dict:
    catalog = get_services().catalog
    if await catalog.get_lecture(lecture_id) is None:
        raise HTTPException(status_code=404, detail="lecture not found")
    video = await catalog.create_video(
        title=request.title,
        lecture_id=lecture_id,
        duration=request.duration,
        qualities=[q.model_dump() for q in request.qualities],
    )
    return video.to_dict()


@router.patch(
    "/videos/{video_id}",
    response_model=VideoResponse,
    summary="Edit video",
    description="Partial update. Changing qualities triggers a background full validation.",
)
async def update_video(video_id: str, request: UpdateVideoRequest) -> dict:
    services = get_services()
    await _get_video_or_404(video_id)
    qualities = [q.model_dump() for q in request.qualities] if request.qualities is not None else None
    video = await services.catalog.update_video(
        video_id,
        title=request.title,
        duration=request.duration,
        qualities=qualities,
    )
    services.playlists.cache.invalidate(video_id)
    if qualities is not None:
        services.status_service.schedule_revalidation(video)
    return video.to_dict()


@router.delete("/videos/{video_id}", summary="Delete video")
async def delete_video(video_id: str) -> dict:
    services = get_services()
    if not await services.catalog.delete_video(video_id):
        raise HTTPException(status_code=404, detail="video not found")
    services.playlists.cache.invalidate(video_id)
    try:
        await services.store.delete_prefix(f"videos/{video_id}/")
    except Exception as e:
        logger.warning(f"Could not remove mirrored segments of video {video_id}: {e}")
    return {"message": f"Video {video_id} deleted"}


@router.post("/videos/{video_id}/validate", summary="Validate one video")
async def validate_video(video_id: str, request: ValidateVideoRequest | None = None) -> dict:
    """Validate a single video now, outside of any job."""
    services = get_services()
    video = await _get_video_or_404(video_id)
    result = await services.engine.validate_video(video, mirror=request.mirror if request else False)
    await services.catalog.update_status(video.id, VideoStatus.WORKING if result.ok else VideoStatus.BROKEN)
    return {"result": result.to_dict()}


@router.post("/videos/{video_id}/recheck", summary="Re-check video status")
async def recheck_video(video_id: str) -> dict:
    video = await _get_video_or_404(video_id)
    return await get_services().status_service.check_single_video(video)


@router.post(
    "/lectures/{lecture_id}/recheck",
    response_model=LectureCheckResponse,
    summary="Re-check lecture videos",
)
async def recheck_lecture(lecture_id: str) -> dict:
    services = get_services()
    if await services.catalog.get_lecture(lecture_id) is None:
        raise HTTPException(status_code=404, detail="lecture not found")
    return await services.status_service.check_lecture_videos(lecture_id)


@router.get(
    "/videos/{video_id}/download",
    summary="Download a quality",
    description="All segments of one quality concatenated into a single .ts file.",
)
async def download_video(video_id: str, quality: str = Query(...)) -> StreamingResponse:
    try:
        filename, chunks = await get_services().proxy.stream_download(video_id, quality)
    except SegmentProxyError as e:
        raise proxy_error_to_http(e)
    return StreamingResponse(
        chunks,
        media_type="video/MP2T",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
