"""Client for the LLM completion gateway."""
import logging
from typing import Optional

import httpx
import orjson
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from oem_monitor.config import config
from oem_monitor.errors import LlmFallbackError

logger = logging.getLogger(__name__)


class CompletionClient:
    """Sends an extraction prompt and returns the raw completion text."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.LLM_TIMEOUT,
        task_type: str = "extraction",
    ):
        self.base_url = (base_url or config.LLM_GATEWAY_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else config.LLM_API_KEY
        self.timeout = timeout
        self.task_type = task_type
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.calls = 0

    async def aclose(self) -> None:
        await self.client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.NetworkError),
        reraise=True,
    )
    async def _post(self, payload: dict) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/complete",
            content=orjson.dumps(payload),
            headers=self._headers(),
            timeout=self.timeout,
        )

    async def complete(self, prompt: str) -> str:
        """Completion text for ``prompt``. Raises LlmFallbackError."""
        if not self.base_url:
            raise LlmFallbackError("LLM_GATEWAY_URL is not configured")
        self.calls += 1
        try:
            response = await self._post(
                {"task_type": self.task_type, "prompt": prompt, "require_json": True}
            )
        except httpx.HTTPError as e:
            raise LlmFallbackError(f"Completion request failed: {type(e).__name__}: {e}") from e
        if not response.is_success:
            raise LlmFallbackError(f"Completion gateway returned HTTP {response.status_code}")
        try:
            data = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise LlmFallbackError(f"Completion gateway returned invalid JSON: {e}") from e
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise LlmFallbackError("Completion gateway response has no content")
        return content
