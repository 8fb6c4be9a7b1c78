"""Catalog-wide validation jobs.

A job walks every catalog video in creation order, validates it with up to
two attempts under a per-video deadline, and records one result per video.
Jobs can be paused, resumed, stopped and deleted while running, and an
interrupted job is picked up again after a restart.

Live job state is held in a ``JobRegistry``. Only the job's own runner task
mutates a job's progress; admin controls only flip ``paused`` and ``status``.
Reads merge the live entry over the persisted snapshot.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from api.catalog_store import CatalogStore
from api.job_store import JobStore
from models.validation import (
    FailureKind,
    JobStatus,
    SegmentValidationError,
    TERMINAL_JOB_STATUSES,
    ValidationJob,
    VideoResult,
)
from models.video import Video, VideoStatus
from services.notification_service import NotificationService
from services.probe import REQUEST_ERRORS
from services.segment_validator import SegmentValidator
from utils.logging import job_context, video_context

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
ATTEMPT_BACKOFF_SECONDS = 0.2
RATE_LIMIT_BACKOFF_SECONDS = 0.8
BROKEN_NOTIFICATION_WINDOW_SECONDS = 24 * 60 * 60
WEBHOOK_TIMEOUT_SECONDS = 5.0

BROKEN_VIDEO_TITLE_PREFIX = "Video unavailable: "

ProgressPublisher = Callable[[str, dict], Awaitable[None]]


def broken_video_title(video_title: str) -> str:
    return f"{BROKEN_VIDEO_TITLE_PREFIX}{video_title or 'Untitled'}"


class ValidationAlreadyRunning(Exception):
    """Raised when a job is started while another is queued or running."""


class JobNotFound(Exception):
    """Raised when a job id is unknown to both the registry and the store."""


class JobRegistry:
    """In-process live state of validation jobs, keyed by job id."""

    def __init__(self):
        self._jobs: dict[str, ValidationJob] = {}

    def get(self, job_id: str) -> Optional[ValidationJob]:
        return self._jobs.get(job_id)

    def put(self, job: ValidationJob) -> None:
        self._jobs[job.id] = job

    def remove(self, job_id: str) -> Optional[ValidationJob]:
        return self._jobs.pop(job_id, None)

    def active_job(self) -> Optional[ValidationJob]:
        """The queued or running job, if any."""
        for job in self._jobs.values():
            if job.status in (JobStatus.QUEUED, JobStatus.RUNNING):
                return job
        return None

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)


class ValidationJobEngine:
    """Starts, controls and reports on validation jobs."""

    def __init__(
        self,
        job_store: JobStore,
        catalog: CatalogStore,
        validator: SegmentValidator,
        registry: Optional[JobRegistry] = None,
        notifications: Optional[NotificationService] = None,
        publisher: Optional[ProgressPublisher] = None,
        per_video_timeout: float = 120.0,
        pause_poll_seconds: float = 0.5,
        webhook_url: Optional[str] = None,
        webhook_min_fails: int = 1,
        webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the engine.

        Args:
            job_store: Durable job snapshots
            catalog: Source of videos and target of status write-back
            validator: Per-video segment validator
            registry: Live job cache (a fresh one if omitted)
            notifications: Used to flag broken videos to admins
            publisher: Async callback receiving (job_id, event) progress events
            per_video_timeout: Wall-clock budget for all attempts on one video
            pause_poll_seconds: How often a paused job re-checks its flags
            webhook_url: Endpoint notified when a job reaches a terminal state
            webhook_min_fails: Minimum failed videos before the webhook fires
            webhook_transport: Optional httpx transport for the webhook (tests)
        """
        self.job_store = job_store
        self.catalog = catalog
        self.validator = validator
        self.registry = registry or JobRegistry()
        self.notifications = notifications
        self.publisher = publisher
        self.per_video_timeout = per_video_timeout
        self.pause_poll_seconds = pause_poll_seconds
        self.webhook_url = webhook_url
        self.webhook_min_fails = max(1, webhook_min_fails)
        self.webhook_transport = webhook_transport
        # Keep references so runner tasks aren't garbage collected
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, config: dict, **kwargs: Any) -> "ValidationJobEngine":
        kwargs.setdefault("per_video_timeout", config.get("per_video_timeout_seconds", 120.0))
        kwargs.setdefault("pause_poll_seconds", config.get("pause_poll_seconds", 0.5))
        kwargs.setdefault("webhook_url", config.get("validation_webhook_url"))
        kwargs.setdefault("webhook_min_fails", config.get("validation_webhook_min_fails", 1))
        return cls(**kwargs)

    # Lifecycle

    async def start(self, mirror: bool = False) -> ValidationJob:
        """Create a job and run it in the background.

        Raises:
            ValidationAlreadyRunning: Another job is queued or running
        """
        active = self.registry.active_job()
        if active is not None:
            raise ValidationAlreadyRunning(f"Validation job {active.id} is already {active.status.value}")

        job = ValidationJob(id=uuid.uuid4().hex, mirror=mirror)
        # Registered before the first await so a concurrent start sees it
        self.registry.put(job)
        try:
            await self.job_store.create_job(job)
        except Exception:
            self.registry.remove(job.id)
            raise

        logger.info(f"Queued validation job {job.id} (mirror={mirror})")
        self._spawn(job, resume=False)
        return job

    async def recover_interrupted(self) -> Optional[ValidationJob]:
        """Resume the job a restart interrupted, if the store holds one.

        Videos with a final result are skipped; placeholders left by a crash
        mid-video are validated again.
        """
        if self.registry.active_job() is not None:
            return None

        stored = await self.job_store.find_active_job()
        if stored is None:
            return None

        job = ValidationJob.from_dict(stored)
        self.registry.put(job)
        logger.info(f"Resuming validation job {job.id} ({job.count_processed()} videos already done)")
        self._spawn(job, resume=True)
        return job

    def _spawn(self, job: ValidationJob, resume: bool) -> None:
        task = asyncio.create_task(self._run(job, resume=resume), name=f"validation-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

    async def wait(self, job_id: str) -> None:
        """Wait for a job's runner task to finish (used by the CLI)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel runner tasks. Persisted state lets them resume on next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def pause(self, job_id: str) -> dict:
        return await self._set_flags(job_id, paused=True)

    async def resume(self, job_id: str) -> dict:
        return await self._set_flags(job_id, paused=False)

    async def stop(self, job_id: str) -> dict:
        """Ask a job to stop. The runner finalizes it on its next check.

        Jobs already finished, failed or stopped are returned unchanged.
        """
        job = await self.get_job(job_id)
        if JobStatus(job["status"]) in TERMINAL_JOB_STATUSES:
            return job
        return await self._set_flags(job_id, status=JobStatus.STOPPED, paused=False)

    async def _set_flags(self, job_id: str, **flags: Any) -> dict:
        live = self.registry.get(job_id)
        stored = await self.job_store.get_job(job_id)
        if live is None and stored is None:
            raise JobNotFound(job_id)

        if live is not None:
            for name, value in flags.items():
                setattr(live, name, value)
        if stored is not None:
            await self.job_store.update_job(job_id, **flags)

        logger.info(f"Job {job_id} flags set: {', '.join(f'{k}={v}' for k, v in flags.items())}")
        job = await self.get_job(job_id)
        await self._publish(job_id, {"type": "job", "job": _without_videos(job)})
        return job

    async def delete(self, job_id: str) -> None:
        """Delete a job. A running loop notices and exits before the next video."""
        live = self.registry.remove(job_id)
        deleted = await self.job_store.delete_job(job_id)
        if live is None and not deleted:
            raise JobNotFound(job_id)

    # Reads

    def _merge(self, stored: Optional[dict], live: Optional[ValidationJob]) -> Optional[dict]:
        if live is None:
            return stored
        merged = dict(stored or {})
        merged.update(live.to_dict())
        return merged

    async def get_job(self, job_id: str) -> dict:
        merged = self._merge(await self.job_store.get_job(job_id), self.registry.get(job_id))
        if merged is None:
            raise JobNotFound(job_id)
        return merged

    async def latest_job(self) -> Optional[dict]:
        """The running job if there is one, otherwise the most recent."""
        active = self.registry.active_job()
        if active is not None:
            return self._merge(await self.job_store.get_job(active.id), active)
        stored = await self.job_store.find_latest_job()
        if stored is None:
            return None
        return self._merge(stored, self.registry.get(stored["id"]))

    async def list_jobs(self, limit: int = 100) -> list[dict]:
        """Newest jobs without their per-video results."""
        jobs = []
        for stored in await self.job_store.list_jobs(limit=limit):
            merged = self._merge(stored, self.registry.get(stored["id"]))
            summary = _without_videos(merged)
            summary["failed_videos"] = ValidationJob.from_dict(merged).failed_count()
            jobs.append(summary)
        return jobs

    # Running

    async def _run(self, job: ValidationJob, resume: bool) -> None:
        with job_context(job.id):
            await self._run_in_context(job, resume)

    async def _run_in_context(self, job: ValidationJob, resume: bool) -> None:
        try:
            if job.status == JobStatus.STOPPED:
                await self._finalize(job, JobStatus.STOPPED)
                return
            job.status = JobStatus.RUNNING
            job.started_at = job.started_at or datetime.now().isoformat()
            await self._persist(job, "status", "started_at")

            videos = await self.catalog.list_videos()
            job.total_videos = len(videos)
            job.processed_videos = job.count_processed()
            await self._persist(job, "total_videos", "processed_videos")
            logger.info(f"Validation job {job.id} running over {job.total_videos} videos")

            done = {r.video_id for r in job.videos if not r.is_placeholder} if resume else set()

            for video in videos:
                if video.id in done:
                    continue
                if not await self._wait_until_runnable(job):
                    if job.id in self.registry:
                        await self._finalize(job, JobStatus.STOPPED)
                    else:
                        logger.info(f"Job {job.id} was deleted, abandoning run")
                    return
                with video_context(video.id, video.lecture_id):
                    await self._process_video(job, video)

            await self._finalize(job, JobStatus.FINISHED)

        except asyncio.CancelledError:
            logger.info(f"Validation job {job.id} cancelled, will resume on next start")
            raise
        except Exception as e:
            logger.exception(f"Validation job {job.id} failed: {e}")
            await self._finalize(job, JobStatus.FAILED, error=str(e) or e.__class__.__name__)

    async def _wait_until_runnable(self, job: ValidationJob) -> bool:
        """Block while paused. False once the job is stopped or deleted."""
        while True:
            if job.id not in self.registry or job.status == JobStatus.STOPPED:
                return False
            if not job.paused:
                return True
            await asyncio.sleep(self.pause_poll_seconds)

    async def _process_video(self, job: ValidationJob, video: Video) -> None:
        job.current_video = {"video_id": video.id, "title": video.title}
        _upsert_result(job, VideoResult(
            video_id=video.id,
            title=video.title,
            lecture_id=video.lecture_id,
            started_at=datetime.now().isoformat(),
        ))
        job.processed_videos = job.count_processed()
        await self._persist(job, "current_video", "videos", "processed_videos")
        await self._publish_progress(job)

        result = await self.validate_video(video, mirror=job.mirror)

        _upsert_result(job, result)
        job.processed_videos = job.count_processed()
        await self._persist(job, "videos", "processed_videos")
        await self._publish_progress(job)

        await self._write_back_status(video, result)
        if not result.ok:
            await self._notify_broken(video)

        logger.info(
            f"Video {video.id} {'ok' if result.ok else 'FAILED'} "
            f"({job.processed_videos}/{job.total_videos})"
        )

    async def validate_video(self, video: Video, mirror: bool = False, full_scan: bool = True) -> VideoResult:
        """Validate one video with retries under the per-video deadline.

        When ``full_scan`` is set the last attempt may fall back to probing
        every segment. A terminal failure ends the attempts at once.
        """
        started_at = datetime.now().isoformat()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.per_video_timeout
        last_error: Optional[str] = None

        for attempt in range(MAX_ATTEMPTS):
            remaining = deadline - loop.time()
            if remaining <= 0:
                last_error = last_error or "video validation timed out"
                break

            allow_full_scan = full_scan and attempt == MAX_ATTEMPTS - 1
            kind = FailureKind.TRANSIENT
            try:
                results = await asyncio.wait_for(
                    self.validator.validate(video, mirror=mirror, allow_full_scan=allow_full_scan),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                last_error = f"video validation timed out after {self.per_video_timeout:.0f}s"
                logger.warning(f"Video {video.id} attempt {attempt + 1}: {last_error}")
                break
            except SegmentValidationError as e:
                last_error = str(e)
                kind = e.kind
                logger.warning(f"Video {video.id} attempt {attempt + 1} failed ({kind.value}): {e}")
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.exception(f"Video {video.id} attempt {attempt + 1} raised unexpectedly")
            else:
                meta = results.meta
                ok = results.ok and bool(results.qualities)
                if ok:
                    error = None
                elif not results.qualities:
                    error = "video has no qualities"
                else:
                    error = f"{meta['total_failed']} of {meta['total_checked']} segment checks failed"
                return VideoResult(
                    video_id=video.id,
                    title=video.title,
                    lecture_id=video.lecture_id,
                    ok=ok,
                    summary=results.summary(),
                    results=results.to_dict(),
                    error=error,
                    started_at=started_at,
                    processed_at=datetime.now().isoformat(),
                )

            if kind == FailureKind.TERMINAL:
                break
            if attempt < MAX_ATTEMPTS - 1:
                delay = ATTEMPT_BACKOFF_SECONDS * (attempt + 2)
                if kind == FailureKind.RATE_LIMITED:
                    delay += RATE_LIMIT_BACKOFF_SECONDS
                await asyncio.sleep(min(delay, max(0.0, deadline - loop.time())))

        return VideoResult(
            video_id=video.id,
            title=video.title,
            lecture_id=video.lecture_id,
            ok=False,
            error=last_error,
            started_at=started_at,
            processed_at=datetime.now().isoformat(),
        )

    async def revalidate_video(self, job_id: str, video_id: str) -> VideoResult:
        """Run a fast-path validation of one video and append the result to a job.

        Works regardless of whether the job is running, paused or finished.

        Raises:
            JobNotFound: Unknown job
            LookupError: Unknown video
        """
        live = self.registry.get(job_id)
        stored = await self.job_store.get_job(job_id)
        if live is None and stored is None:
            raise JobNotFound(job_id)

        video = await self.catalog.get_video(video_id)
        if video is None:
            raise LookupError(f"video {video_id} not found")

        result = await self.validate_video(video, mirror=False, full_scan=False)

        if live is not None:
            live.videos.append(result)
            live.processed_videos = live.count_processed()
            await self._persist(live, "videos", "processed_videos")
        else:
            job = ValidationJob.from_dict(stored)
            job.videos.append(result)
            job.processed_videos = job.count_processed()
            await self._persist(job, "videos", "processed_videos")

        await self._write_back_status(video, result)
        await self._publish(job_id, {"type": "revalidated", "result": result.to_dict()})
        return result

    async def _finalize(self, job: ValidationJob, status: JobStatus, error: Optional[str] = None) -> None:
        job.status = status
        job.current_video = None
        job.finished_at = datetime.now().isoformat()
        if error is not None:
            job.error = error
        try:
            await self._persist(job, "status", "current_video", "finished_at", "error", "paused")
        except Exception as e:
            logger.error(f"Could not persist final state of job {job.id}: {e}")

        logger.info(
            f"Validation job {job.id} {status.value}: "
            f"{job.processed_videos}/{job.total_videos} processed, {job.failed_count()} failed"
        )
        await self._publish(job.id, {"type": "job", "job": _without_videos(job.to_dict())})
        await self.send_webhook(job)

    async def _persist(self, job: ValidationJob, *fields: str) -> None:
        job.updated_at = datetime.now().isoformat()
        data = job.to_dict()
        await self.job_store.update_job(job.id, **{name: data[name] for name in (*fields, "updated_at")})

    # Side effects. Failures here are logged, never raised.

    async def _write_back_status(self, video: Video, result: VideoResult) -> None:
        status = VideoStatus.WORKING if result.ok else VideoStatus.BROKEN
        try:
            await self.catalog.update_status(video.id, status)
        except Exception as e:
            logger.warning(f"Could not update status of video {video.id}: {e}")

    async def _notify_broken(self, video: Video) -> None:
        if self.notifications is None:
            return
        title = broken_video_title(video.title)
        try:
            recent = await self.notifications.find_recent(
                BROKEN_NOTIFICATION_WINDOW_SECONDS,
                lecture_id=video.lecture_id,
                title=title,
            )
            if recent is not None:
                logger.debug(f"Broken-video notification for {video.id} already sent recently")
                return
            lecture = await self.catalog.get_lecture(video.lecture_id) if video.lecture_id else None
            await self.notifications.create_notification(
                title=title,
                body=f"Lecture: {lecture.title}" if lecture else None,
                lecture_id=video.lecture_id,
                video_id=video.id,
                admin_only=True,
                data={"chapter_id": lecture.chapter_id} if lecture and lecture.chapter_id else None,
            )
        except Exception as e:
            logger.warning(f"Failed to create notification for broken video {video.id}: {e}")

    async def _publish_progress(self, job: ValidationJob) -> None:
        await self._publish(job.id, {
            "type": "progress",
            "job_id": job.id,
            "status": job.status.value,
            "paused": job.paused,
            "processed_videos": job.processed_videos,
            "total_videos": job.total_videos,
            "current_video": job.current_video,
            "last_result": job.videos[-1].to_dict() if job.videos else None,
        })

    async def _publish(self, job_id: str, event: dict) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher(job_id, event)
        except Exception as e:
            logger.debug(f"Progress publish for job {job_id} failed: {e}")

    async def send_webhook(self, job: ValidationJob) -> bool:
        """POST a job summary to the configured webhook when enough videos failed.

        Returns:
            True if the webhook accepted the payload
        """
        if not self.webhook_url or job.status not in TERMINAL_JOB_STATUSES:
            return False

        total_failed = job.failed_count()
        if total_failed < self.webhook_min_fails:
            return False

        payload = {
            "id": job.id,
            "status": job.status.value,
            "total_videos": job.total_videos or len(job.videos),
            "processed_videos": job.processed_videos,
            "total_failed": total_failed,
            "finished_at": job.finished_at or datetime.now().isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self.webhook_transport) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            logger.info(f"Validation webhook sent for job {job.id}")
            return True
        except REQUEST_ERRORS as e:
            logger.warning(f"Validation webhook for job {job.id} failed: {e}")
            return False


def _upsert_result(job: ValidationJob, result: VideoResult) -> None:
    """Replace this video's in-progress placeholder, or append."""
    for i in range(len(job.videos) - 1, -1, -1):
        entry = job.videos[i]
        if entry.video_id == result.video_id and entry.is_placeholder:
            job.videos[i] = result
            return
    job.videos.append(result)


def _without_videos(job: dict) -> dict:
    return {k: v for k, v in job.items() if k != "videos"}
