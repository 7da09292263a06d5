"""Cheap-check HTTP client with retries and error handling."""
import logging
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from oem_monitor.config import config
from oem_monitor.errors import FetchError
from oem_monitor.fetch.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RetryableStatus(Exception):
    """A response status worth retrying."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class FetchClient:
    """Fetches raw HTML without executing client-side code."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = config.FETCH_TIMEOUT,
    ):
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(
            http2=True,
            timeout=timeout,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            headers={"User-Agent": config.USER_AGENT, "Accept": "text/html,application/xhtml+xml"},
        )
        self.rate_limiter = rate_limiter or RateLimiter(config.RATE_PER_DOMAIN)
        self.retry_count = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(max(1, config.MAX_RETRIES)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, RetryableStatus)),
        reraise=True,
    )
    async def _get(self, url: str) -> httpx.Response:
        await self.rate_limiter.acquire(url)
        try:
            response = await self.client.get(url, timeout=self.timeout)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            self.retry_count += 1
            logger.warning(f"Network error for {url}: {e}")
            raise
        if response.status_code in RETRYABLE_STATUS:
            self.retry_count += 1
            logger.warning(f"Retryable status {response.status_code} for {url}")
            raise RetryableStatus(response)
        return response

    async def fetch_html(self, url: str) -> str:
        """Raw HTML of ``url``. Raises FetchError on network errors and non-2xx."""
        try:
            response = await self._get(url)
        except RetryableStatus as e:
            raise FetchError(url, f"HTTP {e.response.status_code} after retries", e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise FetchError(url, f"Timeout: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise FetchError(url, f"HTTP {response.status_code}", response.status_code)
        return response.text
