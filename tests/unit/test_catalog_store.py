"""Tests for the lecture and video catalog."""

import pytest

from models.video import Quality, VideoStatus


class TestLectures:
    @pytest.mark.asyncio
    async def test_create_and_get(self, catalog):
        lecture = await catalog.create_lecture("Algebra", chapter_id="ch1")

        stored = await catalog.get_lecture(lecture.id)

        assert stored.title == "Algebra"
        assert stored.chapter_id == "ch1"
        assert await catalog.get_lecture("missing") is None


class TestVideos:
    """Tests for video rows."""

    @pytest.mark.asyncio
    async def test_legacy_qualities_are_normalized(self, catalog):
        await catalog.create_video(
            title="Intro",
            duration=60,
            qualities=[{"q": "720p", "lastSegmentUrl": "https://h/segment-10.ts", "segmentCount": 10}],
            video_id="v1",
        )

        video = await catalog.get_video("v1")

        assert video.qualities == [Quality("720p", "https://h/segment-10.ts", 10)]
        assert video.status == VideoStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_list_in_creation_order(self, catalog):
        for i in range(3):
            await catalog.create_video(title=f"Video {i}", lecture_id="lec1", video_id=f"v{i}")
        await catalog.create_video(title="Other", lecture_id="lec2", video_id="other")

        assert [v.id for v in await catalog.list_videos()] == ["v0", "v1", "v2", "other"]
        assert [v.id for v in await catalog.list_lecture_videos("lec1")] == ["v0", "v1", "v2"]

    @pytest.mark.asyncio
    async def test_update_status_stamps_time(self, catalog):
        await catalog.create_video(title="Intro", video_id="v1")

        assert await catalog.update_status("v1", VideoStatus.BROKEN) is True
        video = await catalog.get_video("v1")

        assert video.status == VideoStatus.BROKEN
        assert video.status_updated_at is not None
        assert await catalog.update_status("missing", VideoStatus.BROKEN) is False

    @pytest.mark.asyncio
    async def test_stale_videos_never_checked_first(self, catalog):
        for video_id in ("a", "b", "c"):
            await catalog.create_video(title=video_id, video_id=video_id)
        await catalog.update_status("a", VideoStatus.WORKING)

        stale = await catalog.list_stale_videos(limit=2)

        assert [v.id for v in stale] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_update_video(self, catalog):
        await catalog.create_video(title="Intro", duration=10, video_id="v1")

        updated = await catalog.update_video("v1", title="Renamed", qualities=[{"quality": "480p", "url": "u"}])

        assert updated.title == "Renamed"
        assert updated.duration == 10
        assert updated.qualities == [Quality("480p", "u", 0)]
        assert await catalog.update_video("missing", title="x") is None

    @pytest.mark.asyncio
    async def test_delete(self, catalog):
        await catalog.create_video(title="Intro", video_id="v1")

        assert await catalog.delete_video("v1") is True
        assert await catalog.get_video("v1") is None
        assert await catalog.delete_video("v1") is False
