"""Tests for per-video status checks and transition notifications."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from models.video import VideoStatus
from services.segment_validator import SegmentValidator
from services.validation_engine import broken_video_title
from services.video_status_service import VideoStatusService

URL = "https://cdn.example.com/v1/segment-10.ts"


async def add_video(catalog, video_id="v1", lecture_id="lec1", url=URL, status=None):
    video = await catalog.create_video(
        title=f"Video {video_id}",
        lecture_id=lecture_id,
        duration=60,
        qualities=[{"quality": "720p", "last_segment_url": url}] if url else [],
        video_id=video_id,
    )
    if status is not None:
        await catalog.update_status(video_id, status)
    return await catalog.get_video(video_id)


@pytest.fixture
def make_service(catalog, notifications, make_probe_engine, handler_factory):
    def _make(default_status: int = 200, validator: bool = False) -> VideoStatusService:
        probe_engine = make_probe_engine(handler_factory(default_status=default_status))
        return VideoStatusService(
            catalog,
            probe_engine,
            notifications=notifications,
            validator=SegmentValidator(probe_engine) if validator else None,
        )

    return _make


class TestCheckSingleVideo:
    """Tests for VideoStatusService.check_single_video."""

    @pytest.mark.asyncio
    async def test_reachable_video_is_working(self, catalog, make_service):
        video = await add_video(catalog)

        outcome = await make_service(200).check_single_video(video)

        assert outcome["status"] == "working"
        assert outcome["probe"]["ok"] is True
        assert (await catalog.get_video("v1")).status == VideoStatus.WORKING

    @pytest.mark.asyncio
    async def test_without_url_is_unknown(self, catalog, make_service):
        video = await add_video(catalog, url=None, status=VideoStatus.WORKING)

        outcome = await make_service(200).check_single_video(video)

        assert outcome["status"] == "unknown"
        assert outcome["probe"] is None
        assert (await catalog.get_video("v1")).status == VideoStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_working_to_broken_notifies_admins_once(self, catalog, notifications, make_service):
        await catalog.create_lecture("Lecture One", lecture_id="lec1")
        service = make_service(404)

        video = await add_video(catalog, status=VideoStatus.WORKING)
        first = await service.check_single_video(video)
        await catalog.update_status("v1", VideoStatus.WORKING)
        second = await service.check_single_video(await catalog.get_video("v1"))

        assert first["status"] == "broken"
        assert len(first["notifications"]) == 1
        assert second["notifications"] == []
        stored = await notifications.list_recent(admin=True)
        assert [n.title for n in stored] == ["Video broken: Video v1"]
        assert stored[0].body == "Lecture: Lecture One, video: Video v1"

    @pytest.mark.asyncio
    async def test_unknown_to_broken_is_silent(self, catalog, notifications, make_service):
        video = await add_video(catalog)

        outcome = await make_service(404).check_single_video(video)

        assert outcome["status"] == "broken"
        assert outcome["notifications"] == []

    @pytest.mark.asyncio
    async def test_recovery_announces_fully_working_lecture(self, catalog, notifications, make_service):
        await catalog.create_lecture("Lecture One", lecture_id="lec1")
        await add_video(catalog, video_id="v1", status=VideoStatus.WORKING)
        video = await add_video(catalog, video_id="v2", status=VideoStatus.BROKEN)

        outcome = await make_service(200).check_single_video(video)

        assert len(outcome["notifications"]) == 1
        stored = await notifications.list_recent(user_id="learner")
        assert [n.title for n in stored] == ["Lecture available: Lecture One"]
        assert stored[0].user_only is True

    @pytest.mark.asyncio
    async def test_recovery_of_partly_broken_lecture_is_silent(self, catalog, make_service):
        await catalog.create_lecture("Lecture One", lecture_id="lec1")
        await add_video(catalog, video_id="v1", status=VideoStatus.BROKEN)
        video = await add_video(catalog, video_id="v2", status=VideoStatus.BROKEN)

        outcome = await make_service(200).check_single_video(video)

        assert outcome["notifications"] == []

    @pytest.mark.asyncio
    async def test_malformed_url_is_broken(self, catalog, make_service):
        video = await add_video(catalog, url="http://[::1/v/segment-10.ts")

        outcome = await make_service(200).check_single_video(video)

        assert outcome["status"] == "broken"
        assert outcome["probe"]["ok"] is False
        assert (await catalog.get_video("v1")).status == VideoStatus.BROKEN

    @pytest.mark.asyncio
    async def test_status_check_crash_does_not_leave_checking(self, catalog):
        probe_engine = MagicMock()
        probe_engine.probe = AsyncMock(side_effect=RuntimeError("client closed"))
        service = VideoStatusService(catalog, probe_engine)
        video = await add_video(catalog, status=VideoStatus.WORKING)

        with pytest.raises(RuntimeError):
            await service.check_single_video(video)

        assert (await catalog.get_video("v1")).status == VideoStatus.BROKEN

    @pytest.mark.asyncio
    async def test_lecture_check_reports_stored_status_after_crash(self, catalog):
        probe_engine = MagicMock()
        probe_engine.probe = AsyncMock(side_effect=RuntimeError("client closed"))
        service = VideoStatusService(catalog, probe_engine)
        await add_video(catalog)

        summary = await service.check_lecture_videos("lec1")

        assert summary["per_video"] == {"v1": "broken"}
        assert (await catalog.get_video("v1")).status == VideoStatus.BROKEN


class TestLectureChecks:
    @pytest.mark.asyncio
    async def test_check_lecture_videos(self, catalog, make_service):
        await catalog.create_lecture("Lecture One", lecture_id="lec1")
        await add_video(catalog, video_id="v1")
        await add_video(catalog, video_id="v2", url=None)

        summary = await make_service(200).check_lecture_videos("lec1")

        assert summary["total"] == 2
        assert summary["working"] == 1
        assert summary["unknown"] == 1
        assert summary["per_video"] == {"v1": "working", "v2": "unknown"}

    @pytest.mark.asyncio
    async def test_lecture_availability_does_not_probe(self, catalog, make_service):
        await add_video(catalog, video_id="v1", status=VideoStatus.WORKING)
        await add_video(catalog, video_id="v2", status=VideoStatus.WORKING)
        service = make_service(404)

        availability = await service.lecture_availability("lec1")

        assert availability["available"] is True
        assert availability["working"] == 2
        assert availability["per_video"] == {"v1": "working", "v2": "working"}

    @pytest.mark.asyncio
    async def test_empty_lecture_is_not_available(self, make_service):
        availability = await make_service(200).lecture_availability("empty")

        assert availability["total"] == 0
        assert availability["available"] is False


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_checks_stalest_first(self, catalog, make_service):
        await add_video(catalog, video_id="v1", status=VideoStatus.WORKING)
        await add_video(catalog, video_id="v2")
        await add_video(catalog, video_id="v3")

        checked = await make_service(200).run_batch(limit=2, delay_seconds=0)

        assert checked == 2
        assert (await catalog.get_video("v2")).status == VideoStatus.WORKING
        assert (await catalog.get_video("v3")).status == VideoStatus.WORKING


class TestRevalidateAfterEdit:
    """Tests for clearing stale notices once an edited video works."""

    @pytest.mark.asyncio
    async def test_clears_notices_and_announces_lecture(self, catalog, notifications, make_service):
        await catalog.create_lecture("Lecture One", lecture_id="lec1")
        video = await add_video(catalog)
        await notifications.create_notification(
            broken_video_title(video.title), lecture_id="lec1", video_id="v1", admin_only=True
        )
        service = make_service(200, validator=True)

        ok = await service.schedule_revalidation(video)

        assert ok is True
        titles = [n.title for n in await notifications.list_recent(user_id="learner")]
        assert titles == ["Lecture working again: Lecture One"]
        assert await notifications.count_matching(lecture_id="lec1", title_prefix="Video unavailable: ") == 0

    @pytest.mark.asyncio
    async def test_other_broken_video_keeps_lecture_quiet(self, catalog, notifications, make_service):
        await catalog.create_lecture("Lecture One", lecture_id="lec1")
        video = await add_video(catalog)
        for video_id in ("v1", "v2"):
            await notifications.create_notification(
                broken_video_title(f"Video {video_id}"), lecture_id="lec1", video_id=video_id, admin_only=True
            )

        assert await make_service(200, validator=True).revalidate_after_edit(video) is True
        assert await notifications.count_matching(lecture_id="lec1") == 1

    @pytest.mark.asyncio
    async def test_still_broken(self, catalog, notifications, make_service):
        video = await add_video(catalog)
        await notifications.create_notification(
            broken_video_title(video.title), lecture_id="lec1", video_id="v1", admin_only=True
        )

        assert await make_service(404, validator=True).revalidate_after_edit(video) is False
        assert await notifications.count_matching(lecture_id="lec1") == 1
