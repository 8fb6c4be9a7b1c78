"""Lightweight availability probes for remote segment URLs.

A probe tries HEAD first and falls back to a ranged GET whose body is closed
as soon as headers arrive. Results are always returned, never raised.
"""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from models.validation import FailureKind, ProbeResult, classify_status_code
from services.host_rate_limiter import HostAdmissionController

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 0.25
BACKOFF_JITTER_SECONDS = 0.2
BACKOFF_CAP_SECONDS = 10.0
# Added on top of the regular backoff after a 429/5xx
RATE_LIMIT_EXTRA_SECONDS = 0.8
RANGE_HEADER = {"Range": "bytes=0-1023"}
# httpx.InvalidURL is not an HTTPError
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


def backoff_delay(attempt: int, kind: Optional[FailureKind] = None) -> float:
    """Exponential backoff with jitter for the given zero-based attempt."""
    delay = BACKOFF_BASE_SECONDS * (2**attempt) + random.uniform(0, BACKOFF_JITTER_SECONDS)
    if kind == FailureKind.RATE_LIMITED:
        delay += RATE_LIMIT_EXTRA_SECONDS
    return min(BACKOFF_CAP_SECONDS, delay)


class ProbeEngine:
    """Async HTTP prober shared by the validator, proxy and status checker."""

    def __init__(
        self,
        admission: Optional[HostAdmissionController] = None,
        timeout: float = 5.0,
        max_attempts: int = 2,
        allow_insecure: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the probe engine.

        Args:
            admission: Per-host admission controller gating every request
            timeout: Default per-request timeout in seconds
            max_attempts: Default attempts per probe
            allow_insecure: Disable upstream TLS certificate verification
            transport: Optional httpx transport (used by tests)
            sleep: Async sleep used for backoff
        """
        self.admission = admission
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._sleep = sleep
        if allow_insecure:
            logger.warning("Upstream TLS verification is disabled")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            verify=not allow_insecure,
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: dict,
        admission: Optional[HostAdmissionController] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProbeEngine":
        return cls(
            admission=admission,
            timeout=config.get("probe_timeout_seconds", 5.0),
            max_attempts=config.get("probe_max_attempts", 2),
            allow_insecure=config.get("allow_insecure_upstream", False),
            transport=transport,
        )

    async def _admit(self, url: str) -> None:
        if self.admission is not None:
            await self.admission.admit_url(url)

    async def _head(self, url: str, timeout: float) -> Optional[httpx.Response]:
        try:
            return await self.client.head(url, timeout=timeout)
        except REQUEST_ERRORS as e:
            logger.debug(f"HEAD {url} failed: {e}")
            return None

    async def _ranged_get(self, url: str, timeout: float) -> tuple[Optional[int], Optional[str]]:
        """Issue a ranged GET and close the body without reading it."""
        try:
            async with self.client.stream("GET", url, headers=RANGE_HEADER, timeout=timeout) as response:
                return response.status_code, None
        except REQUEST_ERRORS as e:
            return None, str(e) or e.__class__.__name__

    async def probe(
        self,
        url: str,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> ProbeResult:
        """Check whether ``url`` is reachable.

        A status below 400 on either method is success. 404/410 end the probe
        immediately with a terminal result; other failures are retried with
        exponential backoff.

        Args:
            url: URL to probe
            timeout: Per-request timeout override
            max_attempts: Attempt count override

        Returns:
            ProbeResult with ``error`` populated on failure
        """
        timeout = timeout or self.timeout
        attempts = max(1, max_attempts or self.max_attempts)
        status_code: Optional[int] = None
        error: Optional[str] = None
        kind = FailureKind.TRANSIENT

        for attempt in range(attempts):
            await self._admit(url)

            head = await self._head(url, timeout)
            if head is not None and head.status_code < 400:
                return ProbeResult(ok=True, status_code=head.status_code, method="HEAD", attempts=attempt + 1)

            get_status, get_error = await self._ranged_get(url, timeout)
            if get_status is not None and get_status < 400:
                return ProbeResult(ok=True, status_code=get_status, method="GET", attempts=attempt + 1)

            status_code = get_status if get_status is not None else (head.status_code if head is not None else None)
            error = f"HTTP {status_code}" if status_code is not None else get_error
            kind = classify_status_code(status_code)

            if kind == FailureKind.TERMINAL:
                logger.debug(f"Probe {url} returned {status_code}, not retrying")
                break

            if attempt < attempts - 1:
                await self._sleep(backoff_delay(attempt, kind))

        return ProbeResult(
            ok=False,
            status_code=status_code,
            error=error,
            kind=kind,
            attempts=attempt + 1,
        )

    @asynccontextmanager
    async def stream(self, url: str, timeout: Optional[float] = None) -> AsyncIterator[httpx.Response]:
        """Open an admission-gated streaming GET.

        The caller checks ``status_code`` and iterates ``aiter_bytes()``.
        """
        await self._admit(url)
        async with self.client.stream("GET", url, timeout=timeout or self.timeout) as response:
            yield response

    async def open(self, url: str, timeout: Optional[float] = None) -> httpx.Response:
        """Send an admission-gated GET and return the unread streaming response.

        The caller must ``aclose()`` the response.
        """
        await self._admit(url)
        request = self.client.build_request("GET", url, timeout=timeout or self.timeout)
        return await self.client.send(request, stream=True)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
