"""Integration tests for the Segmentry HTTP API.

Runs the FastAPI app in-process over httpx's ASGI transport, with upstream
segment traffic served by a mock transport.
"""

import asyncio
import sys
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

# Add src directory to path
src_path = Path(__file__).parent.parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from api.dependencies import close_services, get_services, init_services
from api.server import create_app

CDN = "https://cdn.example.com/lesson"


class Upstream:
    """Async mock origin that can be held closed to keep jobs running."""

    def __init__(self, default_status: int = 200):
        self.default_status = default_status
        self.gate = asyncio.Event()
        self.gate.set()
        self.urls: list[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await self.gate.wait()
        self.urls.append(str(request.url))
        body = f"TS:{request.url.path}".encode() if request.method == "GET" else b""
        return httpx.Response(self.default_status, content=body, headers={"content-type": "video/mp2t"})


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest_asyncio.fixture
async def client(sample_config, upstream):
    app = create_app(sample_config, start_scheduler=False)
    # ASGITransport does not run the lifespan, so services are started here
    await init_services(sample_config, transport=httpx.MockTransport(upstream))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http
    await close_services()


async def create_video(client, duration: float = 12, last_segment: str = "segment-2.ts") -> dict:
    lecture = (await client.post("/api/admin/lectures", json={"title": "Lecture One"})).json()
    response = await client.post(
        f"/api/admin/lectures/{lecture['id']}/videos",
        json={
            "title": "Intro",
            "duration": duration,
            "qualities": [{"q": "720p", "lastSegmentUrl": f"{CDN}/{last_segment}"}],
        },
    )
    assert response.status_code == 201
    return response.json()


class TestCore:
    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")
        assert response.json() == {"message": "Segmentry API", "version": "1.0.0"}

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "running_job": None}


class TestCatalog:
    """Admin catalog routes."""

    @pytest.mark.asyncio
    async def test_legacy_quality_keys_are_normalized(self, client):
        video = await create_video(client)

        assert video["qualities"] == [
            {"quality": "720p", "last_segment_url": f"{CDN}/segment-2.ts", "segment_count": 0}
        ]
        assert video["status"] == "unknown"

    @pytest.mark.asyncio
    async def test_video_needs_existing_lecture(self, client):
        response = await client.post("/api/admin/lectures/missing/videos", json={"title": "Intro"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_lecture_listing_and_delete(self, client):
        video = await create_video(client)

        listed = await client.get(f"/api/videos/lecture/{video['lecture_id']}")
        deleted = await client.delete(f"/api/admin/videos/{video['id']}")
        again = await client.delete(f"/api/admin/videos/{video['id']}")

        assert [v["id"] for v in listed.json()] == [video["id"]]
        assert deleted.status_code == 200
        assert again.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_key_enforced(self, client):
        get_services().config["admin_api_key"] = "s3cret"

        denied = await client.post("/api/admin/lectures", json={"title": "Nope"})
        allowed = await client.post("/api/admin/lectures", json={"title": "Yes"}, headers={"X-Admin-Key": "s3cret"})

        assert denied.status_code == 401
        assert allowed.status_code == 201


class TestPlayback:
    """Playlist and segment delivery."""

    @pytest.mark.asyncio
    async def test_playlist_then_segment(self, client, upstream):
        video = await create_video(client, duration=12)

        response = await client.get(f"/api/videos/{video['id']}/playlist/720p.m3u8")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["x-playlist-total-seconds"] == "12.000"
        segment_urls = [line for line in response.text.splitlines() if line and not line.startswith("#")]
        assert len(segment_urls) == 2

        segment = await client.get(segment_urls[0])

        assert segment.status_code == 200
        assert segment.headers["x-segment-source"] == "upstream"
        assert segment.content == b"TS:/lesson/segment-1.ts"
        assert upstream.urls == [f"{CDN}/segment-1.ts"]

    @pytest.mark.asyncio
    async def test_unknown_quality(self, client):
        video = await create_video(client)

        response = await client.get(f"/api/videos/{video['id']}/playlist/4k.m3u8")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_sign_then_fetch_with_header(self, client):
        video = await create_video(client)

        signed = await client.post(f"/api/videos/{video['id']}/sign", json={"quality": "720p", "segment_number": 2})
        token = signed.json()["token"]
        segment = await client.get(f"/api/videos/{video['id']}/segments/720p/2", headers={"x-seg-token": token})

        assert signed.json()["expires_in"] == 120
        assert segment.status_code == 200
        assert segment.content == b"TS:/lesson/segment-2.ts"

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        video = await create_video(client)

        response = await client.get(f"/api/videos/{video['id']}/segments/720p/1")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_for_other_segment_shows_diagnostics(self, client):
        video = await create_video(client)
        signed = await client.post(f"/api/videos/{video['id']}/sign", json={"quality": "720p", "segment_number": 1})

        response = await client.get(
            f"/api/videos/{video['id']}/segments/720p/2", params={"token": signed.json()["token"]}
        )

        detail = response.json()["detail"]
        assert response.status_code == 403
        assert detail["error"] == "token does not match requested segment"
        assert detail["expected"]["segment_number"] == 2

    @pytest.mark.asyncio
    async def test_production_hides_diagnostics(self, client):
        video = await create_video(client)
        signed = await client.post(f"/api/videos/{video['id']}/sign", json={"quality": "720p", "segment_number": 1})
        get_services().config["environment"] = "production"

        response = await client.get(
            f"/api/videos/{video['id']}/segments/720p/2", params={"token": signed.json()["token"]}
        )

        assert response.status_code == 403
        assert response.json()["detail"] == {"message": "invalid token"}

    @pytest.mark.asyncio
    async def test_sign_rejects_bad_segment_number(self, client):
        video = await create_video(client)

        response = await client.post(f"/api/videos/{video['id']}/sign", json={"quality": "720p", "segment_number": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_download_concatenates_segments(self, client):
        video = await create_video(client)

        response = await client.get(f"/api/admin/videos/{video['id']}/download", params={"quality": "720p"})

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="Intro-720p.ts"'
        assert response.content == b"TS:/lesson/segment-1.tsTS:/lesson/segment-2.ts"


class TestValidationJobs:
    """Validation job routes."""

    @pytest.mark.asyncio
    async def test_single_running_job(self, client, upstream):
        video = await create_video(client)
        upstream.gate.clear()

        started = await client.post("/api/validate/start")
        conflict = await client.post("/api/validate/start", json={"mirror": False})
        health = await client.get("/api/health")

        assert started.status_code == 202
        assert conflict.status_code == 409
        job_id = started.json()["job_id"]
        assert health.json()["running_job"] == job_id

        upstream.gate.set()
        await get_services().engine.wait(job_id)

        job = (await client.get(f"/api/validate/job/{job_id}")).json()
        assert job["status"] == "finished"
        assert job["videos"][0]["video_id"] == video["id"]
        assert job["videos"][0]["ok"] is True

        listed = (await client.get("/api/validate/jobs")).json()["jobs"]
        assert listed[0]["id"] == job_id
        assert listed[0]["failed_videos"] == 0
        assert "videos" not in listed[0]

        availability = (await client.get(f"/api/videos/lecture/{video['lecture_id']}/availability")).json()
        assert availability["available"] is True

    @pytest.mark.asyncio
    async def test_pause_and_stop(self, client, upstream):
        await create_video(client)
        upstream.gate.clear()
        job_id = (await client.post("/api/validate/start")).json()["job_id"]

        paused = await client.post(f"/api/validate/{job_id}/pause")
        stopped = await client.post(f"/api/validate/{job_id}/stop")
        upstream.gate.set()
        await get_services().engine.wait(job_id)

        assert paused.json()["paused"] is True
        assert stopped.json()["status"] == "stopped"
        assert (await client.get("/api/validate/latest")).json()["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        assert (await client.get("/api/validate/job/missing")).status_code == 404
        assert (await client.post("/api/validate/missing/pause")).status_code == 404
        assert (await client.get("/api/validate/latest")).status_code == 404

    @pytest.mark.asyncio
    async def test_broken_video_notifies_admins(self, client, upstream):
        upstream.default_status = 404
        video = await create_video(client)

        job_id = (await client.post("/api/validate/start")).json()["job_id"]
        await get_services().engine.wait(job_id)

        notifications = (await client.get("/api/notifications", params={"admin": True})).json()
        assert [n["title"] for n in notifications] == ["Video unavailable: Intro"]
        assert notifications[0]["video_id"] == video["id"]

        get_services().config["admin_api_key"] = "s3cret"
        denied = await client.get("/api/notifications", params={"admin": True})
        assert denied.status_code == 401
