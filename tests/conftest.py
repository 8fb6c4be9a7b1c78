"""Shared pytest fixtures for segmentry tests."""

import sys
from pathlib import Path
from typing import Callable

import httpx
import pytest
import pytest_asyncio

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from api.catalog_store import CatalogStore
from api.job_store import JobStore
from services.host_rate_limiter import HostAdmissionController
from services.notification_service import NotificationService
from services.probe import ProbeEngine
from services.segment_store import LocalSegmentStore


async def no_sleep(_seconds: float) -> None:
    """Drop-in for asyncio.sleep that returns immediately."""


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHandler:
    """httpx.MockTransport handler that routes by URL and records requests.

    ``routes`` maps a full URL to a status code or an ``httpx.Response``
    factory. Unknown URLs return ``default_status``.
    """

    def __init__(self, routes: dict | None = None, default_status: int = 404, body: bytes = b"TSDATA"):
        self.routes = dict(routes or {})
        self.default_status = default_status
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url), self.default_status)
        if callable(route):
            return route(request)
        content = self.body if route < 400 and request.method == "GET" else b""
        return httpx.Response(route, content=content, headers={"content-type": "video/mp2t"})

    def urls(self, method: str | None = None) -> list[str]:
        return [str(r.url) for r in self.requests if method is None or r.method == method]


@pytest.fixture
def sample_config(tmp_path) -> dict:
    """Configuration for testing, pointing every path into tmp_path."""
    return {
        "api_prefix": "/api",
        "environment": "development",
        "database_path": str(tmp_path / "segmentry.db"),
        "admin_api_key": None,
        "probe_timeout_seconds": 5.0,
        "probe_max_attempts": 2,
        "allow_insecure_upstream": False,
        "host_rate_window_seconds": 60.0,
        "host_rate_max_requests": 1000,
        "host_rate_max_wait_seconds": 30.0,
        "per_video_timeout_seconds": 30.0,
        "max_segments_per_scan": 300,
        "validation_concurrency": 6,
        "default_segment_length": 6.0,
        "pause_poll_seconds": 0.01,
        "validation_webhook_url": None,
        "validation_webhook_min_fails": 1,
        "scheduler_enabled": False,
        "validate_interval_minutes": 720,
        "status_check_interval_minutes": 30,
        "status_check_batch_size": 20,
        "segment_token_ttl_seconds": 120,
        "segment_sign_secret": "test-secret",
        "playlist_cache_ttl_seconds": 20,
        "notify_suppression_seconds": 600,
        "segment_store_dir": str(tmp_path / "segments"),
        "r2_account_id": None,
        "r2_access_key_id": None,
        "r2_secret_access_key": None,
        "r2_bucket_name": "segmentry-segments",
        "r2_public_url": None,
        "log_level": "INFO",
        "log_json": False,
    }


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "test.db")


@pytest_asyncio.fixture
async def catalog(db_path):
    store = CatalogStore(db_path)
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def job_store(db_path):
    store = JobStore(db_path)
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def notifications(db_path):
    service = NotificationService(db_path)
    await service.connect()
    yield service
    await service.close()


@pytest.fixture
def segment_store(tmp_path) -> LocalSegmentStore:
    return LocalSegmentStore(tmp_path / "mirror")


@pytest_asyncio.fixture
async def make_probe_engine():
    """Factory for ProbeEngines backed by a mock transport; closed after the test."""
    engines: list[ProbeEngine] = []

    def _make(handler, max_attempts: int = 2, admission: HostAdmissionController | None = None) -> ProbeEngine:
        engine = ProbeEngine(
            admission=admission,
            max_attempts=max_attempts,
            transport=httpx.MockTransport(handler),
            sleep=no_sleep,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.close()


@pytest.fixture
def handler_factory() -> Callable[..., RecordingHandler]:
    return RecordingHandler


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
