"""Segment validation for every quality of a video.

Each quality is first checked through its last segment only. When that fails
for a non-terminal reason and a full scan is allowed, every segment index is
probed in bounded-concurrency batches. Confirmed segments can be mirrored into
the segment store on the way.
"""

import asyncio
import logging
from typing import Optional, Union

from models.validation import (
    FailureKind,
    QualityResult,
    SegmentCheck,
    SegmentValidationError,
    ValidationResults,
)
from models.video import Quality, Video
from services.probe import ProbeEngine
from services.segment_resolver import resolve_segment_count, resolve_segment_url
from services.segment_store import SegmentStore, mirror_key

logger = logging.getLogger(__name__)

FAST_PATH_NOTE = "last segment quick check"


class MirrorError(Exception):
    """Raised when a confirmed segment cannot be copied into the mirror."""


class SegmentValidator:
    """Validates segment availability for videos."""

    def __init__(
        self,
        probe_engine: ProbeEngine,
        store: Optional[SegmentStore] = None,
        max_segments: int = 300,
        concurrency: int = 6,
        default_segment_length: float = 6.0,
        probe_attempts: int = 2,
    ):
        """Initialize the validator.

        Args:
            probe_engine: Admission-gated prober used for every check
            store: Mirror store, required only when validating with ``mirror=True``
            max_segments: Hard ceiling on segments probed per quality in a full scan
            concurrency: Probes in flight per quality during a full scan
            default_segment_length: Seconds per segment for duration-derived counts
            probe_attempts: Attempts per individual probe
        """
        self.probe_engine = probe_engine
        self.store = store
        self.max_segments = max(1, max_segments)
        self.concurrency = max(1, concurrency)
        self.default_segment_length = default_segment_length
        self.probe_attempts = probe_attempts

    @classmethod
    def from_config(
        cls,
        config: dict,
        probe_engine: ProbeEngine,
        store: Optional[SegmentStore] = None,
    ) -> "SegmentValidator":
        return cls(
            probe_engine=probe_engine,
            store=store,
            max_segments=config.get("max_segments_per_scan", 300),
            concurrency=config.get("validation_concurrency", 6),
            default_segment_length=config.get("default_segment_length", 6.0),
            probe_attempts=config.get("probe_max_attempts", 2),
        )

    async def validate(
        self,
        video: Video,
        mirror: bool = False,
        allow_full_scan: bool = True,
    ) -> ValidationResults:
        """Validate every quality of ``video``.

        Args:
            video: Video to validate
            mirror: Copy confirmed segments into the segment store
            allow_full_scan: Fall back to per-segment probing when the
                last-segment check fails for a non-terminal reason

        Returns:
            Per-quality segment results plus a cross-quality meta

        Raises:
            SegmentValidationError: The last segment of some quality returned
                404/410 (kind TERMINAL), or failed while a full scan is not allowed
        """
        results = ValidationResults()
        for quality in video.qualities:
            results.qualities[quality.quality] = await self._validate_quality(
                video, quality, mirror, allow_full_scan
            )

        meta = results.meta
        logger.debug(
            f"Validated video {video.id}: {meta['total_checked']} checked, {meta['total_failed']} failed"
        )
        return results

    async def _validate_quality(
        self,
        video: Video,
        quality: Quality,
        mirror: bool,
        allow_full_scan: bool,
    ) -> QualityResult:
        result = QualityResult()
        template = quality.last_segment_url

        if not template:
            result.add(SegmentCheck(segment="last", ok=False, url="", error="quality has no segment URL"))
            return result

        probe = await self.probe_engine.probe(template, max_attempts=self.probe_attempts)
        if probe.ok:
            check = SegmentCheck(segment="last", ok=True, url=template, status=probe.status_code, note=FAST_PATH_NOTE)
            if mirror:
                await self._mirror_into(check, video.id, quality.quality, "last")
            result.add(check)
            return result

        if probe.kind == FailureKind.TERMINAL:
            raise SegmentValidationError(
                f"last segment returned {probe.status_code} for quality={quality.quality}",
                kind=FailureKind.TERMINAL,
                quality=quality.quality,
                status_code=probe.status_code,
            )
        if not allow_full_scan:
            raise SegmentValidationError(
                f"last segment check failed for quality={quality.quality}: {probe.error}",
                kind=probe.kind or FailureKind.TRANSIENT,
                quality=quality.quality,
                status_code=probe.status_code,
            )

        count = resolve_segment_count(quality, video.duration, self.default_segment_length)
        if count > self.max_segments:
            logger.warning(
                f"Video {video.id} quality {quality.quality} claims {count} segments, scanning first {self.max_segments}"
            )
            count = self.max_segments

        logger.info(f"Full scan of video {video.id} quality {quality.quality}: {count} segments")
        indexes = list(range(1, count + 1))
        for start in range(0, len(indexes), self.concurrency):
            batch = indexes[start:start + self.concurrency]
            checks = await asyncio.gather(
                *(self._check_segment(video, quality, index, mirror) for index in batch)
            )
            for check in checks:
                result.add(check)

        return result

    async def _check_segment(self, video: Video, quality: Quality, index: int, mirror: bool) -> SegmentCheck:
        url = resolve_segment_url(quality.last_segment_url, index)
        probe = await self.probe_engine.probe(url, max_attempts=self.probe_attempts)
        if not probe.ok:
            return SegmentCheck(segment=index, ok=False, url=url, status=probe.status_code, error=probe.error)

        check = SegmentCheck(segment=index, ok=True, url=url, status=probe.status_code)
        if mirror:
            await self._mirror_into(check, video.id, quality.quality, index)
        return check

    async def _mirror_into(
        self,
        check: SegmentCheck,
        video_id: str,
        quality_label: str,
        index: Union[int, str],
    ) -> None:
        """Copy a confirmed segment into the store, recording failures on ``check``."""
        try:
            check.mirrored = await self.mirror_segment(check.url, video_id, quality_label, index)
        except Exception as e:
            logger.warning(f"Mirror failed for video {video_id} quality {quality_label} segment {index}: {e}")
            check.mirror_error = str(e) or e.__class__.__name__

    async def mirror_segment(
        self,
        url: str,
        video_id: str,
        quality_label: str,
        index: Union[int, str],
    ) -> str:
        """Stream ``url`` into the segment store.

        Returns:
            Key of the stored copy

        Raises:
            MirrorError: No store is configured or upstream refused the download
        """
        if self.store is None:
            raise MirrorError("no segment store configured")

        key = mirror_key(video_id, quality_label, index)
        async with self.probe_engine.stream(url) as response:
            if response.status_code >= 400:
                raise MirrorError(f"upstream returned {response.status_code}")
            content_type = response.headers.get("content-type")
            stored = await self.store.upload_segment(key, response.aiter_bytes(), content_type)
        return stored.key
