"""Collaborator contracts consumed by the pipeline."""
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from oem_monitor.crawl.models import TrackedPage
from oem_monitor.fetch.render import RenderResult
from oem_monitor.notify.models import ChangeEvent, EntityType
from oem_monitor.parse.engine import LlmClient
from oem_monitor.parse.models import ApiCandidate

__all__ = [
    "ChangeSink",
    "DiscoveryStore",
    "Fetcher",
    "LlmClient",
    "PageStore",
    "RenderLog",
    "Renderer",
    "SnapshotStore",
]


class Fetcher(Protocol):
    async def fetch_html(self, url: str) -> str: ...


class Renderer(Protocol):
    async def render(self, url: str) -> RenderResult: ...


class SnapshotStore(Protocol):
    async def load(self, entity_type: EntityType, entity_id: str) -> Optional[dict[str, Any]]: ...

    async def save(self, entity_type: EntityType, entity_id: str, snapshot: dict[str, Any]) -> None: ...

    async def delete(self, entity_type: EntityType, entity_id: str) -> None: ...

    async def list_keys(self, entity_type: EntityType, prefix: str = "") -> list[str]: ...


class PageStore(Protocol):
    async def save_page(self, page: TrackedPage) -> None: ...

    async def list_pages(self, site_id: Optional[str] = None) -> list[TrackedPage]: ...


class RenderLog(Protocol):
    async def log_render(self, site_id: str, url: str, rendered_at: datetime) -> None: ...

    async def count_renders(self, site_id: Optional[str], since: datetime) -> int: ...


class ChangeSink(Protocol):
    async def emit(self, event: ChangeEvent) -> None: ...


class DiscoveryStore(Protocol):
    async def save_discovered_apis(
        self, site_id: str, page_url: str, candidates: Iterable[ApiCandidate], seen_at: datetime
    ) -> None: ...

    async def save_repaired_selector(
        self, site_id: str, record_type: str, configured_selector: str, selector: str, repaired_at: datetime
    ) -> None: ...

    async def get_repaired_selectors(self, site_id: str) -> dict[str, tuple[str, str]]: ...
