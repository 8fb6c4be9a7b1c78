"""Tests for the HEAD-then-ranged-GET probe engine."""

from unittest.mock import patch

import httpx
import pytest

from models.validation import FailureKind
from services.host_rate_limiter import HostAdmissionController
from services.probe import BACKOFF_CAP_SECONDS, ProbeEngine, backoff_delay

URL = "https://cdn.example.com/v1/segment-5.ts"


def by_method(head_status: int, get_status: int, seen: list):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status = head_status if request.method == "HEAD" else get_status
        return httpx.Response(status, content=b"x" * 10 if request.method == "GET" else b"")

    return handler


class TestBackoffDelay:
    def test_grows_exponentially(self):
        assert 0.25 <= backoff_delay(0) <= 0.45
        assert 0.5 <= backoff_delay(1) <= 0.7

    def test_rate_limited_adds_extra(self):
        assert backoff_delay(0, FailureKind.RATE_LIMITED) >= 1.05

    def test_capped(self):
        assert backoff_delay(20) == BACKOFF_CAP_SECONDS


class TestProbe:
    """Tests for ProbeEngine.probe."""

    @pytest.mark.asyncio
    async def test_head_success(self, make_probe_engine):
        seen = []
        engine = make_probe_engine(by_method(200, 200, seen))

        result = await engine.probe(URL)

        assert result.ok is True
        assert result.method == "HEAD"
        assert result.attempts == 1
        assert [r.method for r in seen] == ["HEAD"]

    @pytest.mark.asyncio
    async def test_falls_back_to_ranged_get(self, make_probe_engine):
        seen = []
        engine = make_probe_engine(by_method(405, 206, seen))

        result = await engine.probe(URL)

        assert result.ok is True
        assert result.method == "GET"
        assert result.status_code == 206
        get_request = seen[-1]
        assert get_request.method == "GET"
        assert get_request.headers["range"] == "bytes=0-1023"

    @pytest.mark.asyncio
    async def test_not_found_is_terminal_without_retry(self, make_probe_engine):
        seen = []
        engine = make_probe_engine(by_method(404, 404, seen), max_attempts=3)

        result = await engine.probe(URL)

        assert result.ok is False
        assert result.kind == FailureKind.TERMINAL
        assert result.status_code == 404
        assert result.attempts == 1
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_gone_is_terminal(self, make_probe_engine):
        engine = make_probe_engine(by_method(410, 410, []))

        result = await engine.probe(URL)

        assert result.kind == FailureKind.TERMINAL
        assert result.error == "HTTP 410"

    @pytest.mark.asyncio
    async def test_server_error_is_rate_limited_and_retried(self):
        seen = []
        sleeps = []

        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)

        engine = ProbeEngine(max_attempts=2, transport=httpx.MockTransport(by_method(503, 503, seen)), sleep=sleep)
        try:
            result = await engine.probe(URL)
        finally:
            await engine.close()

        assert result.ok is False
        assert result.kind == FailureKind.RATE_LIMITED
        assert result.attempts == 2
        assert len(seen) == 4
        assert len(sleeps) == 1
        assert sleeps[0] >= 0.25 + 0.8

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, make_probe_engine):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        engine = make_probe_engine(handler)

        result = await engine.probe(URL)

        assert result.ok is False
        assert result.kind == FailureKind.TRANSIENT
        assert result.status_code is None
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_admission_checked_per_attempt(self, make_probe_engine):
        admission = HostAdmissionController(window_seconds=60, max_requests=100)
        engine = make_probe_engine(by_method(500, 500, []), max_attempts=2, admission=admission)

        await engine.probe(URL)

        assert admission.pending("cdn.example.com") == 2

    @pytest.mark.asyncio
    async def test_open_returns_streaming_response(self, make_probe_engine):
        engine = make_probe_engine(by_method(200, 200, []))

        response = await engine.open(URL)
        try:
            body = b"".join([chunk async for chunk in response.aiter_bytes()])
        finally:
            await response.aclose()

        assert response.status_code == 200
        assert body == b"x" * 10

    @pytest.mark.asyncio
    async def test_malformed_url_resolves_to_failure(self, make_probe_engine):
        seen = []
        engine = make_probe_engine(by_method(200, 200, seen))

        result = await engine.probe("http://[::1/v/segment-10.ts")

        assert result.ok is False
        assert result.kind == FailureKind.TRANSIENT
        assert result.error
        assert seen == []


class TestTlsVerification:
    """Upstream certificate checks are on unless explicitly disabled."""

    def test_verified_by_default(self, sample_config):
        with patch("services.probe.httpx.AsyncClient") as client_cls:
            ProbeEngine.from_config(sample_config)

        assert client_cls.call_args.kwargs["verify"] is True

    def test_insecure_mode_disables_verification(self, sample_config):
        sample_config["allow_insecure_upstream"] = True
        with patch("services.probe.httpx.AsyncClient") as client_cls:
            ProbeEngine.from_config(sample_config)

        assert client_cls.call_args.kwargs["verify"] is False
