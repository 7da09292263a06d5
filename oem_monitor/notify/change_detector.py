"""Change detection and alert routing.

Snapshots are plain dicts::

    {"entity_type": "product", "entity_key": "...", "fields": {...},
     "content_hash": "<sha256 of fields>", "meta": {...}}

Only ``fields`` is hashed and diffed; ``meta`` rides along untouched.
"""
import hashlib
import logging
import re
from typing import Any, Iterable, Optional, Union

import orjson

from oem_monitor.config import DEFAULT_NOISE_FIELDS, DEFAULT_TRACKING_PARAMS
from oem_monitor.notify.models import (
    AlertChannel,
    ChangeEvent,
    EntityType,
    EventType,
    FieldDiff,
    Severity,
)
from oem_monitor.parse.models import BannerSlide, Offer, Product, RecordBase
from oem_monitor.parse.normalize import strip_tracking_params
from oem_monitor.parse.values import title_key

logger = logging.getLogger(__name__)

Snapshot = dict[str, Any]

# Field -> severity. Fields absent from the table are not tracked.
DEFAULT_SEVERITY_TABLE: dict[EntityType, dict[str, Severity]] = {
    EntityType.PRODUCT: {
        "title": Severity.HIGH,
        "price_amount": Severity.HIGH,
        "price_type": Severity.MEDIUM,
        "availability": Severity.HIGH,
        "variants": Severity.HIGH,
        "variants_price_amount": Severity.HIGH,
        "disclaimer_text": Severity.MEDIUM,
        "subtitle": Severity.MEDIUM,
        "category": Severity.MEDIUM,
        "fuel_type": Severity.MEDIUM,
        "primary_image_url": Severity.MEDIUM,
        "key_features": Severity.LOW,
        "cta_links": Severity.LOW,
    },
    EntityType.OFFER: {
        "title": Severity.HIGH,
        "price_amount": Severity.HIGH,
        "price_type": Severity.MEDIUM,
        "saving_amount": Severity.HIGH,
        "offer_type": Severity.MEDIUM,
        "start_date": Severity.MEDIUM,
        "end_date": Severity.MEDIUM,
        "description": Severity.MEDIUM,
        "disclaimer_text": Severity.MEDIUM,
        "applicable_models": Severity.MEDIUM,
        "hero_image_url": Severity.MEDIUM,
        "eligibility": Severity.LOW,
        "cta_url": Severity.LOW,
    },
    EntityType.BANNER: {
        "headline": Severity.MEDIUM,
        "sub_headline": Severity.LOW,
        "cta_text": Severity.MEDIUM,
        "cta_url": Severity.LOW,
        "image_sha256": Severity.MEDIUM,
        "image_url_desktop": Severity.MEDIUM,
        "image_url_mobile": Severity.LOW,
        "disclaimer_text": Severity.MEDIUM,
    },
}

CREATED_SEVERITY = {
    EntityType.PRODUCT: Severity.CRITICAL,
    EntityType.OFFER: Severity.HIGH,
    EntityType.BANNER: Severity.MEDIUM,
}
REMOVED_SEVERITY = {
    EntityType.PRODUCT: Severity.CRITICAL,
    EntityType.OFFER: Severity.CRITICAL,
    EntityType.BANNER: Severity.HIGH,
}
DEFAULT_CHANNEL = {
    EntityType.PRODUCT: AlertChannel.IMMEDIATE,
    EntityType.OFFER: AlertChannel.IMMEDIATE,
    EntityType.BANNER: AlertChannel.BATCH_HOURLY,
}

PRICE_FIELDS = {"price_amount", "variants_price_amount", "saving_amount"}
IMAGE_FIELDS = {"image_sha256", "primary_image_url", "hero_image_url", "image_url_desktop", "image_url_mobile"}
RECORD_ENTITY_TYPES = {Product: EntityType.PRODUCT, Offer: EntityType.OFFER, BannerSlide: EntityType.BANNER}

WHITESPACE_RE = re.compile(r"\s+")
IGNORE = "ignore"


def entity_type_of(record: RecordBase) -> EntityType:
    return RECORD_ENTITY_TYPES[type(record)]


def entity_key(record: RecordBase) -> str:
    """Natural key of a record: external key, else title; banners by position."""
    if isinstance(record, BannerSlide):
        return f"slide-{record.position}"
    external = getattr(record, "external_key", None)
    if external:
        return f"id:{external.strip()}"
    return f"title:{title_key(record.title)}"


def _fields(record: RecordBase) -> dict[str, Any]:
    if isinstance(record, Product):
        return {
            "title": record.title,
            "subtitle": record.subtitle,
            "category": record.category,
            "fuel_type": record.fuel_type,
            "availability": record.availability,
            "price_amount": record.price.amount if record.price else None,
            "price_type": record.price.type if record.price else None,
            "disclaimer_text": record.disclaimer_text,
            "primary_image_url": record.primary_image_url,
            "key_features": record.key_features,
            "variants": [v.name for v in record.variants] if record.variants else None,
            "variants_price_amount": (
                [v.price.amount if v.price else None for v in record.variants] if record.variants else None
            ),
            "cta_links": [c.url for c in record.cta_links] if record.cta_links else None,
        }
    if isinstance(record, Offer):
        return {
            "title": record.title,
            "description": record.description,
            "offer_type": record.offer_type,
            "applicable_models": record.applicable_models,
            "price_amount": record.price.amount if record.price else None,
            "price_type": record.price.type if record.price else None,
            "saving_amount": record.saving_amount,
            "start_date": record.validity.start_date if record.validity else None,
            "end_date": (
                (record.validity.end_date or record.validity.raw_string) if record.validity else None
            ),
            "disclaimer_text": record.disclaimer_text,
            "eligibility": record.eligibility,
            "cta_url": record.cta_url,
            "hero_image_url": record.hero_image_url,
        }
    if isinstance(record, BannerSlide):
        return {
            "headline": record.headline,
            "sub_headline": record.sub_headline,
            "cta_text": record.cta_text,
            "cta_url": record.cta_url,
            "image_sha256": record.image_sha256,
            "image_url_desktop": record.image_url_desktop,
            "image_url_mobile": record.image_url_mobile,
            "disclaimer_text": record.disclaimer_text,
        }
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def content_hash(fields: dict[str, Any]) -> str:
    """SHA-256 over the fields serialized with sorted keys."""
    return hashlib.sha256(orjson.dumps(fields, option=orjson.OPT_SORT_KEYS)).hexdigest()


def snapshot_of(record: RecordBase) -> Snapshot:
    fields = _fields(record)
    return {
        "entity_type": entity_type_of(record).value,
        "entity_key": entity_key(record),
        "fields": fields,
        "content_hash": content_hash(fields),
        "meta": record.meta,
        "source_url": record.source_url,
    }


def _valid_snapshot(snapshot: Any) -> bool:
    return (
        isinstance(snapshot, dict)
        and isinstance(snapshot.get("fields"), dict)
        and isinstance(snapshot.get("content_hash"), str)
    )


class ChangeDetector:
    """Turns two snapshots of one entity into at most one ChangeEvent."""

    def __init__(
        self,
        severity_overrides: Optional[dict[str, dict[str, str]]] = None,
        noise_fields: Optional[Iterable[str]] = None,
        tracking_params: Optional[Iterable[str]] = None,
        site_id: Optional[str] = None,
    ):
        self.site_id = site_id
        self.tracking_params = list(tracking_params or DEFAULT_TRACKING_PARAMS)
        self.noise_patterns = [
            re.compile(p, re.IGNORECASE) for p in [*DEFAULT_NOISE_FIELDS, *(noise_fields or [])]
        ]
        self.severity_table: dict[EntityType, dict[str, Severity]] = {
            entity: dict(table) for entity, table in DEFAULT_SEVERITY_TABLE.items()
        }
        for entity_name, overrides in (severity_overrides or {}).items():
            table = self.severity_table[EntityType(entity_name)]
            for field_name, severity in overrides.items():
                if severity == IGNORE:
                    table.pop(field_name, None)
                else:
                    table[field_name] = Severity(severity)

    def is_noise(self, field_name: str) -> bool:
        return any(p.search(field_name) for p in self.noise_patterns)

    def _canonical(self, value: Any) -> Any:
        """Value with whitespace collapsed and tracking parameters stripped."""
        if isinstance(value, str):
            text = WHITESPACE_RE.sub(" ", value).strip()
            if text.startswith(("http://", "https://", "/")):
                text = strip_tracking_params(text, self.tracking_params)
            return text or None
        if isinstance(value, list):
            return [self._canonical(v) for v in value] or None
        if isinstance(value, dict):
            return {k: self._canonical(v) for k, v in value.items()} or None
        return value

    def diff(self, entity_type: EntityType, old: dict[str, Any], new: dict[str, Any]) -> dict[str, FieldDiff]:
        """Tracked, non-noise fields whose canonical values differ."""
        table = self.severity_table[entity_type]
        diffs = {}
        for name in sorted(set(old) | set(new)):
            if self.is_noise(name) or name not in table:
                continue
            if self._canonical(old.get(name)) != self._canonical(new.get(name)):
                diffs[name] = FieldDiff(old=old.get(name), new=new.get(name))
        return diffs

    def _event_type(self, diffs: dict[str, FieldDiff]) -> EventType:
        if any(name in PRICE_FIELDS for name in diffs):
            return EventType.PRICE_CHANGED
        if "availability" in diffs:
            return EventType.AVAILABILITY_CHANGED
        if "disclaimer_text" in diffs:
            return EventType.DISCLAIMER_CHANGED
        if any(name in IMAGE_FIELDS for name in diffs):
            return EventType.IMAGE_CHANGED
        return EventType.UPDATED

    def _severity(self, entity_type: EntityType, diffs: dict[str, FieldDiff]) -> Severity:
        table = self.severity_table[entity_type]
        return max((table[name] for name in diffs), key=lambda s: s.rank, default=Severity.LOW)

    def _channel(self, entity_type: EntityType, diffs: dict[str, FieldDiff], severity: Severity) -> AlertChannel:
        if diffs and all(name in IMAGE_FIELDS for name in diffs):
            return AlertChannel.BATCH_HOURLY
        if severity == Severity.LOW:
            return AlertChannel.BATCH_DAILY
        return DEFAULT_CHANNEL[entity_type]

    def _summary(self, entity_type: EntityType, name: str, diffs: dict[str, FieldDiff]) -> str:
        parts = []
        for field_name, change in diffs.items():
            if field_name == "price_amount":
                old = f"${change.old}" if change.old is not None else "N/A"
                new = f"${change.new}" if change.new is not None else "N/A"
                parts.append(f"price changed from {old} to {new}")
            elif field_name == "availability":
                parts.append(f"availability changed from {change.old} to {change.new}")
            else:
                parts.append(f"{field_name} changed")
        return f"{entity_type.value} {name}: {', '.join(parts)}"

    @staticmethod
    def _display_name(entity_type: EntityType, snapshot: Snapshot) -> str:
        fields = snapshot.get("fields", {})
        if entity_type == EntityType.BANNER:
            return fields.get("headline") or snapshot.get("entity_key", "")
        return fields.get("title") or snapshot.get("entity_key", "")

    def detect(
        self,
        previous: Optional[Snapshot],
        candidate: Union[RecordBase, Snapshot],
        entity_id: Optional[str] = None,
    ) -> Optional[ChangeEvent]:
        """Compare the stored snapshot with a fresh record; None means nothing to report.

        ``entity_id`` is the id the snapshot is stored under; it defaults to the
        natural key.
        """
        current = snapshot_of(candidate) if isinstance(candidate, RecordBase) else candidate
        if not _valid_snapshot(current):
            raise ValueError("Candidate snapshot must carry fields and content_hash")
        entity_type = EntityType(current["entity_type"])
        key = current["entity_key"]
        name = self._display_name(entity_type, current)

        if previous is not None and not _valid_snapshot(previous):
            logger.warning(f"Corrupt snapshot for {entity_type.value} {key}; treating as unseen")
            previous = None

        if previous is None:
            severity = CREATED_SEVERITY[entity_type]
            return ChangeEvent(
                entity_type=entity_type,
                entity_id=None,
                entity_key=key,
                event_type=EventType.CREATED,
                severity=severity,
                summary=f"New {entity_type.value} discovered: {name}",
                site_id=self.site_id,
                source_url=current.get("source_url"),
                alert_channel=DEFAULT_CHANNEL[entity_type],
            )

        if previous["content_hash"] == current["content_hash"]:
            return None

        diffs = self.diff(entity_type, previous["fields"], current["fields"])
        if not diffs:
            logger.debug(f"Hash changed for {entity_type.value} {key} but only noise differs")
            return None

        severity = self._severity(entity_type, diffs)
        return ChangeEvent(
            entity_type=entity_type,
            entity_id=entity_id or key,
            entity_key=key,
            event_type=self._event_type(diffs),
            severity=severity,
            field_diffs=diffs,
            summary=self._summary(entity_type, name, diffs),
            site_id=self.site_id,
            source_url=current.get("source_url"),
            alert_channel=self._channel(entity_type, diffs, severity),
        )

    def detect_removed(
        self,
        entity_type: EntityType,
        previous_keys: Iterable[str],
        current_keys: Iterable[str],
        previous_snapshots: Optional[dict[str, Snapshot]] = None,
    ) -> list[ChangeEvent]:
        """Removed events for keys seen before but absent from a fresh full extraction."""
        current = set(current_keys)
        severity = REMOVED_SEVERITY[entity_type]
        events = []
        for key in sorted(set(previous_keys) - current):
            snapshot = (previous_snapshots or {}).get(key)
            name = self._display_name(entity_type, snapshot) if _valid_snapshot(snapshot) else key
            events.append(
                ChangeEvent(
                    entity_type=entity_type,
                    entity_id=key,
                    entity_key=key,
                    event_type=EventType.REMOVED,
                    severity=severity,
                    summary=f"{entity_type.value} removed: {name}",
                    site_id=self.site_id,
                    source_url=snapshot.get("source_url") if isinstance(snapshot, dict) else None,
                    alert_channel=DEFAULT_CHANNEL[entity_type],
                )
            )
        return events
