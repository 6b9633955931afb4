"""Per-exchange HTTP throttle and retry wrapper around aiohttp."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import aiohttp

from ta_watcher.errors import DataFetchError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30.0


@dataclass(slots=True)
class RateLimitState:
    """Request budget and retry policy owned by exactly one exchange client.

    Attributes:
        requests_per_minute: Budget; consecutive requests are spaced at least
                             ``60 / requests_per_minute`` seconds apart.
        retry_delay:         Fixed pause in seconds between retry attempts.
        max_retries:         Retries after the first attempt (0 disables retrying).
        last_request_at:     Clock reading of the most recent request, or ``None``.
    """

    requests_per_minute: int
    retry_delay: float
    max_retries: int
    last_request_at: float | None = None

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ValueError(
                f"requests_per_minute must be positive, got {self.requests_per_minute}"
            )
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {self.retry_delay}")

    @property
    def min_interval(self) -> float:
        return 60.0 / self.requests_per_minute


@dataclass(slots=True, frozen=True)
class Response:
    """A fully read HTTP response."""

    status: int
    body: bytes
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class RateLimitedTransport:
    """Serialises requests through a per-instance lock and retries transient failures.

    The throttle step and the ``last_request_at`` update happen under one
    ``asyncio.Lock``, so concurrent callers on the same transport queue up
    behind each other while other transports are unaffected.

    Transport errors and HTTP 5xx responses are retried ``max_retries`` times
    with a fixed ``retry_delay`` pause. Anything below 500 (including 4xx) is
    returned immediately. When retries run out the last 5xx response is
    returned, or :class:`~ta_watcher.errors.DataFetchError` is raised if no
    response was ever received.

    ``clock`` and ``sleep`` are injectable so tests can run without real delays.
    """

    def __init__(
        self,
        state: RateLimitState,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        headers: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.state = state
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._clock = clock
        self._sleep = sleep
        self._session = session
        self._owns_session = session is None
        self._throttle_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()

    async def get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                    headers=self._headers,
                )
                self._owns_session = True
            return self._session

    async def close(self) -> None:
        async with self._session_lock:
            if self._session is not None and self._owns_session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def throttle(self) -> None:
        """Block until the request budget allows another call, then claim the slot."""
        async with self._throttle_lock:
            now = self._clock()
            last = self.state.last_request_at
            if last is not None:
                wait = self.state.min_interval - (now - last)
                if wait > 0:
                    await self._sleep(wait)
                    now = self._clock()
            self.state.last_request_at = now

    async def execute(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
    ) -> Response:
        attempts = self.state.max_retries + 1
        response: Response | None = None
        last_exc: BaseException | None = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self._sleep(self.state.retry_delay)
            await self.throttle()

            try:
                session = await self.get_session()
                async with session.request(method, url, params=params, json=json_body) as resp:
                    body = await resp.read()
                    response = Response(status=resp.status, body=body, url=str(resp.url))
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_exc = exc
                response = None
                logger.warning(
                    "%s %s failed (attempt %d/%d): %s", method, url, attempt, attempts, exc
                )
                continue

            if response.status < 500:
                return response
            logger.warning(
                "%s %s returned HTTP %d (attempt %d/%d)",
                method, url, response.status, attempt, attempts,
            )

        if response is not None:
            return response
        raise DataFetchError(
            f"{method} {url} failed after {attempts} attempts: {last_exc}"
        ) from last_exc

    async def get(self, url: str, params: Mapping[str, Any] | None = None) -> Response:
        return await self.execute("GET", url, params=params)
