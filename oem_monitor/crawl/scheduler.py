"""Cost-controlled crawl scheduling.

Decides when a page is due for a cheap check, when the cheap-check result
justifies an expensive render, and whether a render fits the budget. All
decisions are pure functions of page state plus the clock.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from oem_monitor.config import SiteConfig, config
from oem_monitor.crawl.models import (
    BudgetDecision,
    CheckDecision,
    MonthlyEstimate,
    PageCategory,
    PageStatus,
    RenderDecision,
    TrackedPage,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440

DEFAULT_INTERVALS_MINUTES: dict[PageCategory, int] = {
    PageCategory.HOMEPAGE: 120,
    PageCategory.OFFERS: 240,
    PageCategory.CATALOG: 720,
    PageCategory.NEWS: 1440,
    PageCategory.SITEMAP: 1440,
    PageCategory.OTHER: 720,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CostControl:
    """Render budget and backoff knobs."""

    min_render_interval: timedelta = field(
        default_factory=lambda: timedelta(minutes=config.MIN_RENDER_INTERVAL_MINUTES)
    )
    monthly_render_cap_per_site: int = config.MONTHLY_RENDER_CAP_PER_SITE
    global_monthly_render_cap: int = config.GLOBAL_MONTHLY_RENDER_CAP
    backoff_after_days: int = config.BACKOFF_AFTER_DAYS
    # Interval multiplier applied per backoff step; 1.0 disables backoff
    backoff_factor: float = config.BACKOFF_FACTOR
    max_backoff_multiplier: float = config.MAX_BACKOFF_MULTIPLIER
    warning_ratio: float = 0.8

    def __post_init__(self):
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.max_backoff_multiplier < 1:
            raise ValueError("max_backoff_multiplier must be >= 1")


class CrawlScheduler:
    """The stateful gate of the pipeline. Holds config only, never page state."""

    def __init__(
        self,
        cost_control: Optional[CostControl] = None,
        sites: Optional[dict[str, SiteConfig]] = None,
        intervals_minutes: Optional[dict[PageCategory, int]] = None,
        always_render: Iterable[PageCategory] = (),
    ):
        self.cost_control = cost_control or CostControl()
        self.sites = sites or {}
        self.intervals_minutes = {**DEFAULT_INTERVALS_MINUTES, **(intervals_minutes or {})}
        self.always_render = set(always_render)

    # --- intervals -------------------------------------------------------

    def base_interval(self, page: TrackedPage) -> timedelta:
        """Per-category interval, with site overrides."""
        minutes = self.intervals_minutes.get(
            page.page_category, DEFAULT_INTERVALS_MINUTES[PageCategory.OTHER]
        )
        site = self.sites.get(page.site_id)
        if site and page.page_category in site.intervals_minutes:
            minutes = site.intervals_minutes[page.page_category]
        return timedelta(minutes=max(1, minutes))

    def backoff_threshold(self, page: TrackedPage) -> int:
        """Number of unchanged checks that make up the backoff window at the page's cadence."""
        base_minutes = self.base_interval(page).total_seconds() / 60
        checks_per_day = MINUTES_PER_DAY / base_minutes
        return max(1, round(self.cost_control.backoff_after_days * checks_per_day))

    def backoff_multiplier(self, page: TrackedPage) -> float:
        cc = self.cost_control
        if cc.backoff_factor <= 1:
            return 1.0
        steps = page.consecutive_no_change_count // self.backoff_threshold(page)
        multiplier = 1.0
        for _ in range(steps):
            multiplier *= cc.backoff_factor
            if multiplier >= cc.max_backoff_multiplier:
                return cc.max_backoff_multiplier
        return multiplier

    def effective_interval(self, page: TrackedPage) -> timedelta:
        """Base interval stretched by the no-change backoff, capped at the max multiplier."""
        return self.base_interval(page) * self.backoff_multiplier(page)

    # --- decisions -------------------------------------------------------

    def should_check(self, page: TrackedPage, now: Optional[datetime] = None) -> CheckDecision:
        """Decide whether a cheap check is due."""
        now = now or utc_now()

        if page.status in (PageStatus.BLOCKED, PageStatus.REMOVED):
            return CheckDecision(
                due=False,
                next_check_at=now + self.effective_interval(page),
                reason=f"Page status is {page.status.value}",
            )

        if page.last_checked_at is None:
            return CheckDecision(due=True, next_check_at=now, reason="Never checked")

        interval = self.effective_interval(page)
        next_check_at = page.last_checked_at + interval
        if now < next_check_at:
            elapsed_minutes = (now - page.last_checked_at).total_seconds() / 60
            return CheckDecision(
                due=False,
                next_check_at=next_check_at,
                reason=(
                    f"Too soon (checked {round(elapsed_minutes)}m ago, "
                    f"interval: {round(interval.total_seconds() / 60)}m)"
                ),
            )
        return CheckDecision(due=True, next_check_at=next_check_at, reason="Scheduled check due")

    def is_always_render(self, page: TrackedPage) -> bool:
        site = self.sites.get(page.site_id)
        if site and page.page_category in site.always_render_categories:
            return True
        return page.page_category in self.always_render

    def should_render(self, page: TrackedPage, new_content_hash: str) -> RenderDecision:
        """Decide whether the cheap-check result warrants a full render."""
        if page.last_rendered_at is None:
            return RenderDecision(render=True, reason="Never rendered")
        if self.is_always_render(page):
            return RenderDecision(
                render=True,
                reason=f"Category {page.page_category.value} always renders",
            )
        if new_content_hash != page.last_content_hash:
            return RenderDecision(render=True, reason="Content hash changed")
        return RenderDecision(render=False, reason="Content hash unchanged")

    def site_cap(self, site_id: str) -> int:
        site = self.sites.get(site_id)
        if site and site.monthly_render_cap is not None:
            return site.monthly_render_cap
        return self.cost_control.monthly_render_cap_per_site

    def check_budget(
        self,
        site_id: str,
        month_to_date_render_count: Optional[int],
        global_render_count: Optional[int] = None,
        last_rendered_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> BudgetDecision:
        """Check whether one more render is affordable.

        ``None`` counts mean the collaborator holding them was unavailable; the
        check then fails open so crawling is never starved.
        """
        now = now or utc_now()
        cc = self.cost_control

        if last_rendered_at is not None:
            since = now - last_rendered_at
            if since < cc.min_render_interval:
                return BudgetDecision(
                    allowed=False,
                    reason=(
                        f"Render spacing (last render {round(since.total_seconds() / 60)}m ago, "
                        f"min interval: {round(cc.min_render_interval.total_seconds() / 60)}m)"
                    ),
                )

        if month_to_date_render_count is None:
            logger.warning(
                f"Render count unavailable for site {site_id}; allowing render (degraded mode)"
            )
            return BudgetDecision(allowed=True, reason="Render count unavailable", degraded=True)

        cap = self.site_cap(site_id)
        if month_to_date_render_count >= cap:
            return BudgetDecision(
                allowed=False,
                reason=f"Site {site_id} monthly render cap ({cap}) reached",
            )

        if global_render_count is not None and global_render_count >= cc.global_monthly_render_cap:
            return BudgetDecision(
                allowed=False,
                reason=f"Global monthly render cap ({cc.global_monthly_render_cap}) reached",
            )

        if month_to_date_render_count >= cap * cc.warning_ratio:
            return BudgetDecision(
                allowed=True,
                reason=(
                    f"WARNING: site {site_id} approaching monthly render cap "
                    f"({month_to_date_render_count}/{cap})"
                ),
            )
        return BudgetDecision(allowed=True)

    # --- state updates ---------------------------------------------------

    def after_crawl(
        self,
        page: TrackedPage,
        content_changed: bool,
        was_rendered: bool,
        now: Optional[datetime] = None,
        content_hash: Optional[str] = None,
        rendered_hash: Optional[str] = None,
        render_skipped: bool = False,
    ) -> TrackedPage:
        """Return the page updated after a crawl attempt.

        ``render_skipped`` marks a render that was wanted but denied by the
        budget: the no-change counter is left alone and the content hash is not
        advanced, so the render is requested again at the next check. The
        denied hash is kept as pending so later checks that see the same hash
        do not move ``last_changed_at`` again.
        """
        now = now or utc_now()
        updates: dict = {
            "last_checked_at": max(now, page.last_checked_at) if page.last_checked_at else now,
        }

        if content_changed:
            already_reported = (
                render_skipped and content_hash is not None and content_hash == page.pending_content_hash
            )
            if not already_reported:
                updates["last_changed_at"] = now
            updates["consecutive_no_change_count"] = 0
        elif not render_skipped:
            updates["consecutive_no_change_count"] = page.consecutive_no_change_count + 1

        if render_skipped and content_changed:
            updates["pending_content_hash"] = content_hash
        elif not render_skipped:
            updates["pending_content_hash"] = None

        if content_hash is not None and not render_skipped:
            updates["last_content_hash"] = content_hash

        if was_rendered:
            updates["last_rendered_at"] = now
            updates["last_rendered_hash"] = rendered_hash or content_hash

        if page.status == PageStatus.ERROR:
            updates["status"] = PageStatus.ACTIVE
            updates["error_message"] = None

        return page.model_copy(update=updates)

    def record_failure(
        self,
        page: TrackedPage,
        error: str,
        now: Optional[datetime] = None,
    ) -> TrackedPage:
        """Record a fetch or render failure on the page; the counter is untouched."""
        now = now or utc_now()
        updates: dict = {
            "last_checked_at": max(now, page.last_checked_at) if page.last_checked_at else now,
            "error_message": error[:500],
            "last_error_at": now,
        }
        # blocked/removed are operator decisions
        if page.status in (PageStatus.ACTIVE, PageStatus.ERROR):
            updates["status"] = PageStatus.ERROR
        return page.model_copy(update=updates)

    def due_pages(self, pages: Iterable[TrackedPage], now: Optional[datetime] = None) -> list[TrackedPage]:
        """Due pages, least recently checked first."""
        now = now or utc_now()
        due = [p for p in pages if self.should_check(p, now).due]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(due, key=lambda p: p.last_checked_at or epoch)

    def estimate_monthly_cost(
        self,
        site_id: str,
        pages: list[TrackedPage],
        render_ratio: float = 0.2,
        cost_per_render_usd: float = 0.05,
    ) -> MonthlyEstimate:
        """Rough monthly cost: about one cheap check in five triggers a render."""
        minutes_per_month = 30 * MINUTES_PER_DAY
        cheap_checks = 0
        for page in pages:
            cheap_checks += round(minutes_per_month / (self.base_interval(page).total_seconds() / 60))
        renders = round(cheap_checks * render_ratio)
        renders = min(renders, self.site_cap(site_id))
        return MonthlyEstimate(
            site_id=site_id,
            pages_monitored=len(pages),
            cheap_checks_per_month=cheap_checks,
            estimated_renders_per_month=renders,
            estimated_cost_usd=round(renders * cost_per_render_usd, 2),
        )
