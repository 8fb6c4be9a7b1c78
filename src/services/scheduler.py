"""Background schedules run inside the API process.

- On boot: resume an interrupted validation job, otherwise start a fresh one.
- Every ``validate_interval_minutes``: start a catalog-wide job unless one runs.
- Every ``status_check_interval_minutes``: status-check the stalest videos.
"""

import asyncio
import logging
from typing import Optional

from services.validation_engine import ValidationAlreadyRunning, ValidationJobEngine
from services.video_status_service import VideoStatusService

logger = logging.getLogger(__name__)

BOOT_DELAY_SECONDS = 5.0
STATUS_CHECK_SPACING_SECONDS = 0.15


class ValidationScheduler:
    """Owns the periodic validation and status-check loops."""

    def __init__(
        self,
        engine: ValidationJobEngine,
        status_service: Optional[VideoStatusService] = None,
        validate_interval_minutes: int = 720,
        status_check_interval_minutes: int = 30,
        status_check_batch_size: int = 20,
        boot_delay_seconds: float = BOOT_DELAY_SECONDS,
    ):
        self.engine = engine
        self.status_service = status_service
        self.validate_interval_seconds = max(60, validate_interval_minutes * 60) if validate_interval_minutes else 0
        self.status_interval_seconds = max(60, status_check_interval_minutes * 60)
        self.status_check_batch_size = status_check_batch_size
        self.boot_delay_seconds = boot_delay_seconds
        self._tasks: list[asyncio.Task] = []
        self._status_running = False

    @classmethod
    def from_config(
        cls,
        config: dict,
        engine: ValidationJobEngine,
        status_service: Optional[VideoStatusService] = None,
    ) -> "ValidationScheduler":
        return cls(
            engine=engine,
            status_service=status_service,
            validate_interval_minutes=config.get("validate_interval_minutes", 720),
            status_check_interval_minutes=config.get("status_check_interval_minutes", 30),
            status_check_batch_size=config.get("status_check_batch_size", 20),
        )

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks.append(asyncio.create_task(self._validation_loop()))
        if self.status_service is not None:
            self._tasks.append(asyncio.create_task(self._status_loop()))
        logger.info(
            f"Scheduler started: validate every {self.validate_interval_seconds / 60:g} min, "
            f"status check every {self.status_interval_seconds / 60:g} min"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def run_boot(self) -> None:
        """Resume an interrupted job, or start a fresh validation run."""
        try:
            job = await self.engine.recover_interrupted()
            if job is not None:
                logger.info(f"Resumed interrupted validation job {job.id}")
                return
            job = await self.engine.start(mirror=False)
            logger.info(f"Started boot validation job {job.id}")
        except ValidationAlreadyRunning:
            logger.info("Boot validation skipped, a job is already running")
        except Exception as e:
            logger.error(f"Boot validation failed to start: {e}")

    async def run_periodic_validation(self) -> None:
        try:
            job = await self.engine.start(mirror=False)
            logger.info(f"Started scheduled validation job {job.id}")
        except ValidationAlreadyRunning:
            logger.info("Scheduled validation skipped, a job is already running")
        except Exception as e:
            logger.error(f"Scheduled validation failed to start: {e}")

    async def run_status_batch(self) -> int:
        """Status-check one batch. Overlapping runs are skipped."""
        if self.status_service is None or self._status_running:
            return 0
        self._status_running = True
        try:
            return await self.status_service.run_batch(
                limit=self.status_check_batch_size,
                delay_seconds=STATUS_CHECK_SPACING_SECONDS,
            )
        except Exception as e:
            logger.error(f"Status check batch failed: {e}")
            return 0
        finally:
            self._status_running = False

    async def _validation_loop(self) -> None:
        await asyncio.sleep(self.boot_delay_seconds)
        await self.run_boot()
        if not self.validate_interval_seconds:
            return
        while True:
            await asyncio.sleep(self.validate_interval_seconds)
            await self.run_periodic_validation()

    async def _status_loop(self) -> None:
        await asyncio.sleep(self.boot_delay_seconds)
        while True:
            await self.run_status_batch()
            await asyncio.sleep(self.status_interval_seconds)
