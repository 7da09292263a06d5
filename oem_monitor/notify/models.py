"""Change events emitted by the change detector."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EntityType(str, Enum):
    PRODUCT = "product"
    OFFER = "offer"
    BANNER = "banner"


class EventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"
    PRICE_CHANGED = "price_changed"
    AVAILABILITY_CHANGED = "availability_changed"
    DISCLAIMER_CHANGED = "disclaimer_changed"
    IMAGE_CHANGED = "image_changed"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AlertChannel(str, Enum):
    IMMEDIATE = "immediate"
    BATCH_HOURLY = "batch_hourly"
    BATCH_DAILY = "batch_daily"


class FieldDiff(BaseModel):
    old: Any = None
    new: Any = None


class ChangeEvent(BaseModel):
    """One detected change to a tracked entity."""

    entity_type: EntityType
    # None for created events: the entity has no stored identity yet
    entity_id: Optional[str] = None
    entity_key: str
    event_type: EventType
    severity: Severity
    field_diffs: dict[str, FieldDiff] = Field(default_factory=dict)
    summary: str = ""
    site_id: Optional[str] = None
    source_url: Optional[str] = None
    alert_channel: AlertChannel = AlertChannel.IMMEDIATE
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
