"""Playback routes for the Segmentry API: playlists, segments and lecture status."""

import logging

from api.dependencies import get_services
from api.schemas import AvailabilityResponse, SignedSegmentResponse, SignSegmentRequest, VideoResponse
from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from services.playlist import PLAYLIST_CONTENT_TYPE, PlaylistError
from services.segment_proxy import SegmentProxyError, TokenRejected
from utils.config import is_production

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Videos"])


def proxy_error_to_http(error: SegmentProxyError) -> HTTPException:
    """Translate a delivery failure, hiding diagnostics in production."""
    detail: dict = {"message": str(error)}
    if error.detail and not is_production(get_services().config):
        detail.update(error.detail)
    if isinstance(error, TokenRejected) and is_production(get_services().config):
        detail = {"message": "invalid token"}
    return HTTPException(status_code=error.status_code, detail=detail)


@router.get(
    "/videos/{video_id}/playlist/{quality}.m3u8",
    summary="HLS playlist",
    description="VOD playlist whose segment URLs carry short-lived signed tokens.",
    responses={404: {"description": "Video or quality not found"}},
)
async def get_playlist(video_id: str, quality: str) -> Response:
    try:
        playlist = await get_services().playlists.build_playlist(video_id, quality)
    except PlaylistError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(
        content=playlist.body,
        media_type=PLAYLIST_CONTENT_TYPE,
        headers={**playlist.headers, "Cache-Control": "no-store"},
    )


@router.get(
    "/videos/{video_id}/segments/{quality}/{segment_number}",
    summary="Proxy one segment",
    description="Streams a segment from the mirror or upstream. Requires a token from the playlist or /sign.",
    responses={
        401: {"description": "Token missing"},
        403: {"description": "Token invalid, expired or bound to another segment"},
        404: {"description": "Video or quality not found"},
        502: {"description": "Upstream unreachable"},
    },
)
async def get_segment(
    video_id: str,
    quality: str,
    segment_number: int,
    token: str | None = Query(default=None),
    x_seg_token: str | None = Header(default=None),
) -> StreamingResponse:
    try:
        stream = await get_services().proxy.serve_segment(video_id, quality, segment_number, token or x_seg_token)
    except SegmentProxyError as e:
        raise proxy_error_to_http(e)
    return StreamingResponse(
        stream.chunks,
        media_type=stream.content_type,
        headers={"Cache-Control": "private, max-age=60", "x-segment-source": stream.source},
    )


@router.post(
    "/videos/{video_id}/sign",
    response_model=SignedSegmentResponse,
    summary="Sign a segment",
    description="Issue a fresh token for one segment of a known video quality.",
)
async def sign_segment(video_id: str, request: SignSegmentRequest) -> dict:
    services = get_services()
    video = await services.catalog.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="video not found")
    if video.find_quality(request.quality) is None:
        raise HTTPException(status_code=404, detail="quality not found")
    token, expires_in = services.signer.sign(video_id, request.quality, request.segment_number)
    return {"token": token, "expires_in": expires_in}


@router.get(
    "/videos/lecture/{lecture_id}",
    response_model=list[VideoResponse],
    summary="Lecture videos",
)
async def list_lecture_videos(lecture_id: str) -> list[dict]:
    videos = await get_services().catalog.list_lecture_videos(lecture_id)
    return [video.to_dict() for video in videos]


@router.get(
    "/videos/lecture/{lecture_id}/availability",
    response_model=AvailabilityResponse,
    summary="Lecture availability",
    description="Summarizes the stored status of every video in a lecture without probing.",
)
async def lecture_availability(lecture_id: str) -> dict:
    return await get_services().status_service.lecture_availability(lecture_id)
