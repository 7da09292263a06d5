"""Tracked page state and scheduler decisions."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PageCategory(str, Enum):
    HOMEPAGE = "homepage"
    OFFERS = "offers"
    CATALOG = "catalog"
    NEWS = "news"
    SITEMAP = "sitemap"
    OTHER = "other"


class PageStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    BLOCKED = "blocked"
    REMOVED = "removed"


class TrackedPage(BaseModel):
    """One monitored URL and its crawl history."""

    url: str
    site_id: str
    page_category: PageCategory = PageCategory.OTHER
    last_content_hash: Optional[str] = None
    # Hash already reported as changed while its render waits on the budget
    pending_content_hash: Optional[str] = None
    last_rendered_hash: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    last_rendered_at: Optional[datetime] = None
    last_changed_at: Optional[datetime] = None
    consecutive_no_change_count: int = Field(default=0, ge=0)
    status: PageStatus = PageStatus.ACTIVE
    error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None


class CheckDecision(BaseModel):
    due: bool
    next_check_at: datetime
    reason: str


class RenderDecision(BaseModel):
    render: bool
    reason: str


class BudgetDecision(BaseModel):
    """Outcome of a render budget check. A denial is normal control flow."""

    allowed: bool
    reason: Optional[str] = None
    degraded: bool = False


class MonthlyEstimate(BaseModel):
    site_id: str
    pages_monitored: int
    cheap_checks_per_month: int
    estimated_renders_per_month: int
    estimated_cost_usd: float
