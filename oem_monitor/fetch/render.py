"""Client for the headless render service."""
import logging
from typing import Any, Optional

import httpx
import orjson
from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from oem_monitor.config import config
from oem_monitor.errors import RenderError
from oem_monitor.parse.models import NetworkExchange

logger = logging.getLogger(__name__)


class RenderResult(BaseModel):
    """Rendered HTML plus the network exchanges captured during the render."""

    html: str
    exchanges: list[NetworkExchange] = Field(default_factory=list)
    final_url: Optional[str] = None


class RenderClient:
    """POSTs ``{"url": ...}`` to the render service and reads ``{html, exchanges}``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.RENDER_TIMEOUT,
    ):
        self.base_url = (base_url or config.RENDER_SERVICE_URL or "").rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.NetworkError),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/render",
            content=orjson.dumps(payload),
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )

    async def render(self, url: str) -> RenderResult:
        """Render ``url``. Any failure, including a non-2xx reply, is a RenderError."""
        if not self.base_url:
            raise RenderError(url, "RENDER_SERVICE_URL is not configured")
        try:
            response = await self._post({"url": url, "capture_network": True})
        except httpx.TimeoutException as e:
            raise RenderError(url, f"Render timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RenderError(url, f"Render request failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            raise RenderError(url, f"Render service returned HTTP {response.status_code}")
        try:
            data = orjson.loads(response.content)
            result = RenderResult.model_validate(data)
        except (orjson.JSONDecodeError, ValidationError) as e:
            raise RenderError(url, f"Invalid render response: {e}") from e

        logger.debug(f"Rendered {url}: {len(result.html)} chars, {len(result.exchanges)} exchanges")
        return result
