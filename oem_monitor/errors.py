"""Error taxonomy for the monitoring pipeline."""


class MonitorError(Exception):
    """Base class for pipeline errors."""


class FetchError(MonitorError):
    """Cheap check failed (network, DNS, 4xx, 5xx)."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code


class RenderError(MonitorError):
    """Render collaborator failed or timed out."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url


class ClassificationError(MonitorError):
    """A captured response body could not be interpreted."""


class ExtractionError(MonitorError):
    """An extraction stage could not run against the page."""


class LlmFallbackError(MonitorError):
    """LLM collaborator failed or returned invalid JSON."""


class SnapshotCorrupt(MonitorError):
    """A stored snapshot could not be decoded."""
