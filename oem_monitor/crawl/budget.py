"""Render budget ledger shared by concurrent workers."""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from oem_monitor.crawl.models import BudgetDecision, TrackedPage
from oem_monitor.crawl.scheduler import CrawlScheduler, utc_now

logger = logging.getLogger(__name__)

# (site_id or None for the global total, start of month) -> renders so far
CountProvider = Callable[[Optional[str], datetime], Awaitable[int]]


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class BudgetLedger:
    """Month-to-date render counters with an atomic reserve operation.

    All reads and increments happen under one lock, so two workers racing
    for the last slot of a site (or of the global cap) cannot both win.
    """

    def __init__(self, scheduler: CrawlScheduler, count_provider: Optional[CountProvider] = None):
        self.scheduler = scheduler
        self.count_provider = count_provider
        self._lock = asyncio.Lock()
        self._month: Optional[datetime] = None
        self._site_counts: Dict[str, int] = defaultdict(int)
        self._global_count = 0
        self._seeded_sites: set[str] = set()
        self._global_seeded = count_provider is None
        self._last_render: Dict[str, datetime] = {}

    def _roll_month(self, now: datetime) -> None:
        start = month_start(now)
        if self._month != start:
            if self._month is not None:
                logger.info(f"Render budget rolled over to {start:%Y-%m}")
            self._month = start
            self._site_counts.clear()
            self._global_count = 0
            self._seeded_sites.clear()
            self._global_seeded = self.count_provider is None

    def seed(self, site_counts: Dict[str, int], global_count: Optional[int] = None, now: Optional[datetime] = None) -> None:
        """Load known month-to-date counts (e.g. from the render log)."""
        self._roll_month(now or utc_now())
        for site_id, count in site_counts.items():
            self._site_counts[site_id] = count
            self._seeded_sites.add(site_id)
        self._global_count = global_count if global_count is not None else sum(self._site_counts.values())
        self._global_seeded = True

    async def _counts(self, site_id: str) -> tuple[Optional[int], Optional[int]]:
        """Current counts; None where the provider could not be read."""
        if self.count_provider is None:
            return self._site_counts[site_id], self._global_count

        site_count: Optional[int] = self._site_counts[site_id]
        global_count: Optional[int] = self._global_count
        if site_id not in self._seeded_sites:
            try:
                self._site_counts[site_id] += await self.count_provider(site_id, self._month)
                self._seeded_sites.add(site_id)
                site_count = self._site_counts[site_id]
            except Exception as e:
                logger.warning(f"Could not read render count for site {site_id}: {e}")
                site_count = None
        if not self._global_seeded:
            try:
                self._global_count += await self.count_provider(None, self._month)
                self._global_seeded = True
                global_count = self._global_count
            except Exception as e:
                logger.warning(f"Could not read global render count: {e}")
                global_count = None
        return site_count, global_count

    async def reserve(self, page: TrackedPage, now: Optional[datetime] = None) -> BudgetDecision:
        """Check the budget and, if allowed, count the render in one step."""
        now = now or utc_now()
        async with self._lock:
            self._roll_month(now)
            site_count, global_count = await self._counts(page.site_id)

            last_rendered_at = page.last_rendered_at
            reserved_at = self._last_render.get(page.url)
            if reserved_at and (last_rendered_at is None or reserved_at > last_rendered_at):
                last_rendered_at = reserved_at

            decision = self.scheduler.check_budget(
                page.site_id,
                site_count,
                global_count,
                last_rendered_at=last_rendered_at,
                now=now,
            )
            if decision.allowed:
                self._site_counts[page.site_id] += 1
                self._global_count += 1
                self._last_render[page.url] = now
            else:
                logger.info(f"Render denied for {page.url}: {decision.reason}")
            return decision

    async def release(self, page: TrackedPage) -> None:
        """Refund a reservation whose render failed or timed out."""
        async with self._lock:
            if self._site_counts[page.site_id] > 0:
                self._site_counts[page.site_id] -= 1
            if self._global_count > 0:
                self._global_count -= 1
            self._last_render.pop(page.url, None)

    def site_count(self, site_id: str) -> int:
        return self._site_counts.get(site_id, 0)

    @property
    def global_count(self) -> int:
        return self._global_count
