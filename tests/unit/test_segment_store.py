"""Tests for the local segment mirror."""

import pytest

from services.segment_store import (
    LocalSegmentStore,
    get_segment_store,
    mirror_key,
    reset_segment_store,
)


async def chunks(*parts: bytes):
    for part in parts:
        yield part


async def read_all(store, handle) -> bytes:
    return b"".join([chunk async for chunk in store.open_read_stream(handle)])


def test_mirror_key():
    assert mirror_key("vid1", "720p", 4) == "videos/vid1/720p/segment-4.ts"
    assert mirror_key("vid1", "720p", "last") == "videos/vid1/720p/segment-last.ts"


class TestLocalSegmentStore:
    """Tests for LocalSegmentStore."""

    @pytest.mark.asyncio
    async def test_upload_then_read(self, segment_store):
        key = mirror_key("vid1", "720p", 1)

        stored = await segment_store.upload_segment(key, chunks(b"abc", b"def"), content_type="video/MP2T")
        handle = await segment_store.find_by_key(key)

        assert stored.size == 6
        assert handle.size == 6
        assert handle.content_type == "video/MP2T"
        assert await read_all(segment_store, handle) == b"abcdef"

    @pytest.mark.asyncio
    async def test_upload_replaces_previous_copy(self, segment_store):
        key = mirror_key("vid1", "720p", 1)
        await segment_store.upload_segment(key, chunks(b"old bytes"))
        await segment_store.upload_segment(key, chunks(b"new"))

        handle = await segment_store.find_by_key(key)

        assert await read_all(segment_store, handle) == b"new"

    @pytest.mark.asyncio
    async def test_failed_upload_leaves_no_partial_file(self, segment_store, tmp_path):
        async def broken_chunks():
            yield b"half"
            raise ConnectionError("upstream reset")

        key = mirror_key("vid1", "720p", 1)
        with pytest.raises(ConnectionError):
            await segment_store.upload_segment(key, broken_chunks())

        assert await segment_store.find_by_key(key) is None
        assert list((tmp_path / "mirror").rglob("*.part")) == []

    @pytest.mark.asyncio
    async def test_missing_key(self, segment_store):
        assert await segment_store.find_by_key(mirror_key("vid1", "720p", 9)) is None

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, segment_store):
        assert await segment_store.find_by_key("videos/../../etc/passwd") is None
        with pytest.raises(ValueError):
            await segment_store.upload_segment("../escape.ts", chunks(b"x"))

    @pytest.mark.asyncio
    async def test_delete_prefix(self, segment_store):
        for n in (1, 2):
            await segment_store.upload_segment(mirror_key("vid1", "720p", n), chunks(b"x"))
        await segment_store.upload_segment(mirror_key("vid2", "720p", 1), chunks(b"y"))

        deleted = await segment_store.delete_prefix("videos/vid1")

        assert deleted == 2
        assert await segment_store.find_by_key(mirror_key("vid1", "720p", 1)) is None
        assert await segment_store.find_by_key(mirror_key("vid2", "720p", 1)) is not None
        assert await segment_store.delete_prefix("videos/vid1") == 0


class TestGetSegmentStore:
    def test_local_without_r2_credentials(self, sample_config):
        reset_segment_store()
        try:
            store = get_segment_store(sample_config)
            assert isinstance(store, LocalSegmentStore)
            assert get_segment_store(sample_config) is store
        finally:
            reset_segment_store()
