"""
Rate-limited HTTP client for outreach platform APIs

Every call waits a fixed per-platform delay first. 429 responses back off
linearly, 401 fails immediately, anything else is retried up to the
ceiling and then surfaced to the caller.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import aiohttp

from outreach_sync.utils.exceptions import ApiError, AuthenticationError, NotFoundError, RateLimitError
from outreach_sync.utils.logger import log
from outreach_sync.utils.retry import RetryStats, calculate_backoff, rate_limit_wait

# (method, url, headers, params) -> (status, body text)
Transport = Callable[[str, str, Dict[str, str], Dict[str, Any]], Awaitable[Tuple[int, str]]]


class RateLimitedClient:
    """
    Async client bound to one platform and one set of credentials.

    Use as an async context manager; a transport can be injected in place
    of the aiohttp session.
    """

    def __init__(
        self,
        base_url: str,
        *,
        platform: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        request_delay: float = 0.5,
        rate_limit_backoff: float = 2.0,
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.platform = platform
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.params = dict(params or {})
        self.request_delay = request_delay
        self.rate_limit_backoff = rate_limit_backoff
        self.max_retries = max_retries
        self.timeout = timeout
        self.stats = RetryStats()
        self._transport = transport
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        if self._transport is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _send(self, method: str, url: str, params: Dict[str, Any]) -> Tuple[int, str]:
        if self._transport is not None:
            return await asyncio.wait_for(self._transport(method, url, self.headers, params), timeout=self.timeout)
        if self._session is None:
            raise RuntimeError("RateLimitedClient must be used as an async context manager")
        async with self._session.request(method, url, headers=self.headers, params=params) as response:
            return response.status, await response.text()

    async def request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        allow_404: bool = False,
    ) -> Any:
        """
        Issue a request and return the decoded JSON body.

        Returns None for an empty body, or for a 404 when allow_404 is set.

        Raises:
            AuthenticationError: on HTTP 401, without retrying
            RateLimitError: when every attempt was throttled
            NotFoundError / ApiError: when the retry ceiling is exhausted
        """
        url = f"{self.base_url}{endpoint}"
        query = {**self.params, **(params or {})}
        last_error: Optional[ApiError] = None

        for attempt in range(self.max_retries):
            await self._sleep(self.request_delay)
            self.stats.record_attempt()
            log.debug(f"{self.platform}: {method} {endpoint} (attempt {attempt + 1}/{self.max_retries})")

            try:
                status, body = await self._send(method, url, query)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = ApiError(f"{self.platform} request failed: {type(e).__name__}: {e}", endpoint=endpoint)
                await self._backoff(attempt, str(last_error))
                continue

            if status == 429:
                wait = rate_limit_wait(attempt, self.rate_limit_backoff)
                log.warning(f"{self.platform} rate limited on {endpoint}, waiting {wait:.1f}s")
                last_error = RateLimitError(f"{self.platform} rate limited", status_code=429, endpoint=endpoint)
                self.stats.record_retry(str(last_error), delay=wait, rate_limited=True)
                await self._sleep(wait)
                continue

            if status == 401:
                raise AuthenticationError(
                    f"{self.platform} rejected credentials (401): {body[:200]}",
                    status_code=401,
                    endpoint=endpoint,
                )

            if status == 404 and allow_404:
                log.info(f"{self.platform}: {endpoint} not found, treating as empty")
                return None

            if not 200 <= status < 300:
                error_cls = NotFoundError if status == 404 else ApiError
                last_error = error_cls(
                    f"{self.platform} API error ({status}): {body[:200]}",
                    status_code=status,
                    endpoint=endpoint,
                )
                log.error(f"{self.platform} API error {status} on {endpoint}")
                await self._backoff(attempt, str(last_error))
                continue

            if not body:
                return None
            try:
                return json.loads(body)
            except json.JSONDecodeError as e:
                raise ApiError(
                    f"{self.platform} returned invalid JSON on {endpoint}: {e}",
                    status_code=status,
                    endpoint=endpoint,
                )

        raise last_error or ApiError(f"{self.platform} request failed", endpoint=endpoint)

    async def _backoff(self, attempt: int, error: str):
        """Wait before the next attempt, unless this was the last one."""
        if attempt >= self.max_retries - 1:
            self.stats.record_retry(error)
            return
        delay = calculate_backoff(attempt + 1, base_delay=1.0, max_delay=10.0, jitter=False)
        log.warning(f"{self.platform} retry {attempt + 1}/{self.max_retries} in {delay:.1f}s: {error}")
        self.stats.record_retry(error, delay=delay)
        await self._sleep(delay)
