"""Token-checked segment delivery.

A segment is served from the mirror store when a copy exists there, and
streamed from the upstream origin otherwise.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from api.catalog_store import CatalogStore
from models.validation import FailureKind, classify_status_code
from models.video import Quality, Video
from services.probe import REQUEST_ERRORS, ProbeEngine
from services.segment_resolver import resolve_segment_count, resolve_segment_url
from services.segment_signer import SegmentSigner, TokenError
from services.segment_store import DEFAULT_CONTENT_TYPE, SegmentStore, mirror_key

logger = logging.getLogger(__name__)

UPSTREAM_ATTEMPTS = 3
UPSTREAM_BACKOFF_SECONDS = 0.2


class SegmentProxyError(Exception):
    """Base for delivery failures; ``status_code`` is the HTTP status to return."""

    status_code = 500

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.detail = detail or {}


class TokenMissing(SegmentProxyError):
    status_code = 401


class TokenRejected(SegmentProxyError):
    status_code = 403


class VideoNotFound(SegmentProxyError):
    status_code = 404


class QualityNotFound(SegmentProxyError):
    status_code = 404


class UpstreamFetchFailed(SegmentProxyError):
    status_code = 502


@dataclass
class SegmentStream:
    """An opened segment ready to be streamed to a client."""

    chunks: AsyncIterator[bytes]
    content_type: str
    source: str


async def _iter_response(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


def _safe_filename(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", text).strip("_")


class SegmentProxy:
    """Serves individual segments and whole-quality downloads."""

    def __init__(
        self,
        catalog: CatalogStore,
        signer: SegmentSigner,
        probe_engine: ProbeEngine,
        store: Optional[SegmentStore] = None,
        default_segment_length: float = 6.0,
        upstream_attempts: int = UPSTREAM_ATTEMPTS,
        backoff_seconds: float = UPSTREAM_BACKOFF_SECONDS,
    ):
        self.catalog = catalog
        self.signer = signer
        self.probe_engine = probe_engine
        self.store = store
        self.default_segment_length = default_segment_length
        self.upstream_attempts = max(1, upstream_attempts)
        self.backoff_seconds = backoff_seconds

    async def _lookup(self, video_id: str, quality: str) -> tuple[Video, Quality]:
        video = await self.catalog.get_video(video_id)
        if video is None:
            raise VideoNotFound("video not found")
        entry = video.find_quality(quality)
        if entry is None or not entry.last_segment_url:
            raise QualityNotFound("quality not found")
        return video, entry

    async def serve_segment(
        self,
        video_id: str,
        quality: str,
        segment_number: int,
        token: Optional[str],
    ) -> SegmentStream:
        """Verify the token and open the requested segment.

        Raises:
            TokenMissing: No token supplied
            TokenRejected: Bad signature, expired, or bound to another segment
            VideoNotFound / QualityNotFound: Unknown video or quality
            UpstreamFetchFailed: Origin unreachable after retries
        """
        if not token:
            raise TokenMissing("token required")
        try:
            self.signer.verify(token, video_id, quality, segment_number)
        except TokenError as e:
            logger.warning(f"Segment token rejected for {video_id}/{quality}/{segment_number}: {e.reason}")
            raise TokenRejected(
                "invalid token",
                detail={
                    "error": e.reason,
                    "decoded": e.claims,
                    "expected": {"video_id": video_id, "quality": quality, "segment_number": segment_number},
                },
            )

        video, entry = await self._lookup(video_id, quality)
        return await self.open_segment(video, entry, segment_number)

    async def open_segment(self, video: Video, entry: Quality, segment_number: int) -> SegmentStream:
        """Open a segment from the mirror, falling back to upstream with retries."""
        keys = [mirror_key(video.id, entry.quality, segment_number)]
        if segment_number == resolve_segment_count(entry, video.duration, self.default_segment_length):
            # A fast-path validation stores the final segment under "last"
            keys.append(mirror_key(video.id, entry.quality, "last"))
        mirrored = await self._open_mirrored(keys)
        if mirrored is not None:
            return mirrored

        url = resolve_segment_url(entry.last_segment_url, segment_number)
        last_error: Optional[str] = None
        for attempt in range(self.upstream_attempts):
            try:
                response = await self.probe_engine.open(url)
            except REQUEST_ERRORS as e:
                last_error = str(e) or e.__class__.__name__
            else:
                if response.status_code < 400:
                    return SegmentStream(
                        chunks=_iter_response(response),
                        content_type=response.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
                        source="upstream",
                    )
                await response.aclose()
                last_error = f"HTTP {response.status_code}"
                if classify_status_code(response.status_code) == FailureKind.TERMINAL:
                    break

            if attempt < self.upstream_attempts - 1:
                await asyncio.sleep(self.backoff_seconds * (attempt + 1))

        logger.error(f"Upstream fetch failed for {url}: {last_error}")
        raise UpstreamFetchFailed("upstream fetch failed", detail={"url": url, "error": last_error})

    async def _open_mirrored(self, keys: list[str]) -> Optional[SegmentStream]:
        if self.store is None:
            return None
        for key in keys:
            try:
                handle = await self.store.find_by_key(key)
            except Exception as e:
                logger.debug(f"Mirror lookup failed for {key}: {e}")
                continue
            if handle is not None:
                return SegmentStream(
                    chunks=self.store.open_read_stream(handle),
                    content_type=handle.content_type,
                    source="mirror",
                )
        return None

    async def stream_download(self, video_id: str, quality: str) -> tuple[str, AsyncIterator[bytes]]:
        """Concatenate every segment of a quality into one transport stream.

        The first segment is opened eagerly so an unreachable origin is
        reported before any bytes are sent. A later failure ends the stream.

        Returns:
            (attachment filename, byte iterator)
        """
        video, entry = await self._lookup(video_id, quality)
        count = resolve_segment_count(entry, video.duration, self.default_segment_length)
        first = await self.open_segment(video, entry, 1)

        async def _chunks() -> AsyncIterator[bytes]:
            current: Optional[SegmentStream] = first
            number = 1
            while current is not None:
                async for chunk in current.chunks:
                    yield chunk
                number += 1
                if number > count:
                    break
                try:
                    current = await self.open_segment(video, entry, number)
                except SegmentProxyError as e:
                    logger.warning(f"Download of video {video_id} stopped at segment {number}: {e}")
                    current = None

        filename = f"{_safe_filename(video.title) or video.id}-{_safe_filename(entry.quality)}.ts"
        return filename, _chunks()
