"""Lightweight per-video availability status.

Unlike a validation job, a status check probes a single URL per video (the
first quality's last segment) and writes the outcome to the catalog. Status
transitions drive admin and user notifications.
"""

import asyncio
import logging
from typing import Any, Optional

from api.catalog_store import CatalogStore
from models.validation import SegmentValidationError
from models.video import Video, VideoStatus
from services.notification_service import NotificationService
from services.probe import ProbeEngine
from services.segment_validator import SegmentValidator
from services.validation_engine import BROKEN_VIDEO_TITLE_PREFIX

logger = logging.getLogger(__name__)

STATUS_PROBE_TIMEOUT_SECONDS = 5.0
STATUS_PROBE_ATTEMPTS = 2
DEFAULT_SUPPRESSION_SECONDS = 10 * 60


def _count_statuses(videos: list[Video]) -> dict[str, int]:
    counts = {"total": len(videos), "working": 0, "broken": 0, "unknown": 0}
    for video in videos:
        if video.status == VideoStatus.WORKING:
            counts["working"] += 1
        elif video.status == VideoStatus.BROKEN:
            counts["broken"] += 1
        else:
            counts["unknown"] += 1
    return counts


class VideoStatusService:
    """Probes videos, records their status and notifies on transitions."""

    def __init__(
        self,
        catalog: CatalogStore,
        probe_engine: ProbeEngine,
        notifications: Optional[NotificationService] = None,
        validator: Optional[SegmentValidator] = None,
        suppression_seconds: float = DEFAULT_SUPPRESSION_SECONDS,
    ):
        self.catalog = catalog
        self.probe_engine = probe_engine
        self.notifications = notifications
        self.validator = validator
        self.suppression_seconds = suppression_seconds
        self._background: set[asyncio.Task] = set()

    async def check_single_video(self, video: Video) -> dict[str, Any]:
        """Probe one video and record ``working`` or ``broken``.

        A video without any segment URL is recorded as ``unknown``.

        Returns:
            Dict with id, status, probe result and created notification ids
        """
        url = video.first_segment_url()
        if not url:
            if video.status != VideoStatus.UNKNOWN:
                await self.catalog.update_status(video.id, VideoStatus.UNKNOWN)
                video.status = VideoStatus.UNKNOWN
            return {"id": video.id, "status": VideoStatus.UNKNOWN.value, "probe": None, "notifications": []}

        previous = video.status
        await self.catalog.update_status(video.id, VideoStatus.CHECKING)

        try:
            probe = await self.probe_engine.probe(
                url,
                timeout=STATUS_PROBE_TIMEOUT_SECONDS,
                max_attempts=STATUS_PROBE_ATTEMPTS,
            )
        except Exception:
            # Never leave the video in "checking"
            await self.catalog.update_status(video.id, VideoStatus.BROKEN)
            video.status = VideoStatus.BROKEN
            raise
        status = VideoStatus.WORKING if probe.ok else VideoStatus.BROKEN
        await self.catalog.update_status(video.id, status)
        video.status = status

        created: list[str] = []
        if previous == VideoStatus.WORKING and status == VideoStatus.BROKEN:
            created.extend(await self._notify_video_broken(video))
        elif previous == VideoStatus.BROKEN and status == VideoStatus.WORKING:
            if video.lecture_id and await self._lecture_fully_working(video.lecture_id):
                created.extend(await self._notify_lecture_available(video.lecture_id))

        if previous != status:
            logger.info(f"Video {video.id} status {previous.value} -> {status.value}")
        return {"id": video.id, "status": status.value, "probe": probe.to_dict(), "notifications": created}

    async def check_video_by_id(self, video_id: str) -> Optional[dict[str, Any]]:
        video = await self.catalog.get_video(video_id)
        if video is None:
            return None
        return await self.check_single_video(video)

    async def check_lecture_videos(self, lecture_id: str) -> dict[str, Any]:
        """Check every video of a lecture and summarize.

        Notifies users when the lecture goes from not fully working to fully
        working over this check.
        """
        videos = await self.catalog.list_lecture_videos(lecture_id)
        was_fully_working = bool(videos) and all(v.status == VideoStatus.WORKING for v in videos)

        per_video: dict[str, str] = {}
        created: list[str] = []
        for video in videos:
            try:
                outcome = await self.check_single_video(video)
                per_video[video.id] = outcome["status"]
                created.extend(outcome["notifications"])
            except Exception as e:
                logger.warning(f"Status check of video {video.id} failed: {e}")
                per_video[video.id] = video.status.value

        summary = _count_statuses(videos)
        now_fully_working = summary["total"] > 0 and summary["working"] == summary["total"]
        if now_fully_working and not was_fully_working and not created:
            created.extend(await self._notify_lecture_available(lecture_id))

        return {**summary, "per_video": per_video, "notifications": created}

    async def lecture_availability(self, lecture_id: str) -> dict[str, Any]:
        """Summarize stored statuses of a lecture's videos without probing."""
        videos = await self.catalog.list_lecture_videos(lecture_id)
        summary = _count_statuses(videos)
        return {
            "lecture_id": lecture_id,
            **summary,
            "available": summary["total"] > 0 and summary["working"] == summary["total"],
            "per_video": {v.id: v.status.value for v in videos},
        }

    async def run_batch(self, limit: int = 20, delay_seconds: float = 0.15) -> int:
        """Check the ``limit`` videos whose status is oldest. Returns how many were checked."""
        videos = await self.catalog.list_stale_videos(limit)
        checked = 0
        for video in videos:
            try:
                await self.check_single_video(video)
                checked += 1
            except Exception as e:
                logger.warning(f"Status check of video {video.id} failed: {e}")
            await asyncio.sleep(delay_seconds)
        return checked

    # Post-edit revalidation

    def schedule_revalidation(self, video: Video) -> asyncio.Task:
        """Run ``revalidate_after_edit`` in the background."""
        task = asyncio.create_task(self.revalidate_after_edit(video))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def revalidate_after_edit(self, video: Video) -> bool:
        """Fully validate an edited video and clear stale unavailability notices.

        Returns:
            True if at least one quality validated with every segment ok
        """
        if self.validator is None:
            return False
        try:
            results = await self.validator.validate(video, mirror=False, allow_full_scan=True)
        except SegmentValidationError as e:
            logger.info(f"Revalidation of edited video {video.id} failed: {e}")
            return False
        except Exception as e:
            logger.warning(f"Revalidation of edited video {video.id} errored: {e}")
            return False

        if not any(quality.all_ok for quality in results.qualities.values()):
            return False

        if self.notifications is None:
            return True
        try:
            await self.notifications.delete_matching(video_id=video.id, title_prefix=BROKEN_VIDEO_TITLE_PREFIX)
            if not video.lecture_id:
                return True
            remaining = await self.notifications.count_matching(
                lecture_id=video.lecture_id,
                title_prefix=BROKEN_VIDEO_TITLE_PREFIX,
            )
            if remaining == 0:
                lecture = await self.catalog.get_lecture(video.lecture_id)
                title = f"Lecture working again: {lecture.title}" if lecture else "Lecture working again"
                await self.notifications.create_notification(
                    title=title,
                    lecture_id=video.lecture_id,
                    user_only=True,
                    data={"chapter_id": lecture.chapter_id} if lecture and lecture.chapter_id else None,
                )
        except Exception as e:
            logger.warning(f"Notification cleanup after editing video {video.id} failed: {e}")
        return True

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # Notifications. Failures are logged, never raised.

    async def _lecture_fully_working(self, lecture_id: str) -> bool:
        videos = await self.catalog.list_lecture_videos(lecture_id)
        return bool(videos) and all(v.status == VideoStatus.WORKING for v in videos)

    async def _notify_video_broken(self, video: Video) -> list[str]:
        if self.notifications is None:
            return []
        try:
            lecture = await self.catalog.get_lecture(video.lecture_id) if video.lecture_id else None
            title = f"Video broken: {video.title or 'Untitled'}"
            body = f"Lecture: {lecture.title if lecture else 'unknown'}, video: {video.title or 'untitled'}"
            recent = await self.notifications.find_recent(
                self.suppression_seconds,
                video_id=video.id,
                admin_only=True,
            )
            if recent is not None:
                # Live admins still hear about it; nothing new is stored
                await self.notifications.publish_realtime({
                    "title": title,
                    "body": body,
                    "video_id": video.id,
                    "lecture_id": video.lecture_id,
                    "admin_only": True,
                    "transient": True,
                })
                logger.info(f"Stored notification for broken video {video.id} suppressed")
                return []
            notification = await self.notifications.create_notification(
                title=title,
                body=body,
                lecture_id=video.lecture_id,
                video_id=video.id,
                admin_only=True,
            )
            return [notification.id]
        except Exception as e:
            logger.warning(f"Broken-video notification for {video.id} failed: {e}")
            return []

    async def _notify_lecture_available(self, lecture_id: str) -> list[str]:
        if self.notifications is None:
            return []
        try:
            recent = await self.notifications.find_recent(self.suppression_seconds, lecture_id=lecture_id)
            if recent is not None:
                return []
            lecture = await self.catalog.get_lecture(lecture_id)
            if lecture is None:
                return []
            notification = await self.notifications.create_notification(
                title=f"Lecture available: {lecture.title or 'Lecture'}",
                body=f'Lecture "{lecture.title}" is available again.',
                lecture_id=lecture_id,
                user_only=True,
            )
            return [notification.id]
        except Exception as e:
            logger.warning(f"Lecture recovery notification for {lecture_id} failed: {e}")
            return []
