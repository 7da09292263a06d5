"""Field coverage scoring for extracted records."""
from typing import Any, Iterable

from oem_monitor.parse.models import BannerSlide, Offer, Product, RecordBase

PRODUCT_WEIGHTS = {
    "title": 0.2,
    "availability": 0.2,
    "price": 0.1,
    "category": 0.1,
    "variants": 0.1,
    "key_features": 0.1,
    "fuel_type": 0.1,
    "primary_image_url": 0.1,
}
OFFER_WEIGHTS = {
    "title": 0.2,
    "description": 0.2,
    "price": 0.2,
    "validity": 0.2,
    "cta_url": 0.2,
}
BANNER_WEIGHTS = {
    "headline": 0.3,
    "image_url_desktop": 0.3,
    "cta_url": 0.2,
    "cta_text": 0.1,
    "sub_headline": 0.1,
}

WEIGHTS: dict[type, dict[str, float]] = {
    Product: PRODUCT_WEIGHTS,
    Offer: OFFER_WEIGHTS,
    BannerSlide: BANNER_WEIGHTS,
}

FALLBACK_THRESHOLD = 0.8


def _filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def record_coverage(record: RecordBase) -> float:
    """Weighted share of important fields that are populated, capped at 1.0."""
    weights = WEIGHTS.get(type(record), {})
    score = sum(weight for name, weight in weights.items() if _filled(getattr(record, name, None)))
    return min(1.0, round(score, 4))


def mean_coverage(records: Iterable[RecordBase]) -> float:
    """Mean per-record coverage; 0.0 when there are no records."""
    scores = [record_coverage(r) for r in records]
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 4)


def score_records(records: Iterable[RecordBase]) -> float:
    """Stamp each record with its own coverage and return the mean."""
    scores = []
    for record in records:
        record.coverage = record_coverage(record)
        scores.append(record.coverage)
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 4)
