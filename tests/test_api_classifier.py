"""Tests for API candidate classification."""
import orjson
import pytest
from pydantic import ValidationError

from oem_monitor.config import ClassifierSettings
from oem_monitor.parse.api_classifier import ApiClassifier
from oem_monitor.parse.models import ApiDataType, NetworkExchange

VEHICLES = [
    {"id": f"ranger-{i}", "name": f"Ranger {trim}", "price": 40000 + i * 1000}
    for i, trim in enumerate(["XL", "XLS", "XLT", "Sport", "Wildtrak", "Platinum", "Raptor"] * 3)
]


def exchange(url: str, body=None, content_type: str = "application/json", status_code: int = 200) -> NetworkExchange:
    text = body if isinstance(body, str) or body is None else orjson.dumps(body).decode()
    return NetworkExchange(
        url=url,
        status_code=status_code,
        content_type=content_type,
        body_text=text,
        body_size_bytes=len(text or ""),
    )


def test_vehicle_api_scores_high():
    """A JSON list of records under /api/ is a confident products candidate."""
    classifier = ApiClassifier()
    candidate = classifier.classify_one(exchange("https://www.example-motors.com.au/api/v1/vehicles", VEHICLES))
    assert candidate is not None
    assert candidate.is_json is True
    assert candidate.looks_like_data_api is True
    assert candidate.data_type == ApiDataType.PRODUCTS
    assert candidate.confidence == 1.0
    assert candidate.matched_rules[:3] == ["json_content_type", "data_shape", "api_path"]
    assert candidate.payload == VEHICLES


def test_collection_key_counts_as_data_shape():
    """A dict holding a collection under a known key looks like a data API."""
    classifier = ApiClassifier()
    candidate = classifier.classify_one(
        exchange("https://www.example-motors.com.au/content/promotions", {"items": [{"title": "0% finance"}]})
    )
    assert candidate.looks_like_data_api is True
    assert candidate.data_type == ApiDataType.OFFERS
    assert candidate.confidence == 0.7


def test_tracking_endpoint_scores_zero():
    """Tracking keywords pull the score down and it never goes negative."""
    classifier = ApiClassifier()
    candidate = classifier.classify_one(
        exchange("https://www.example-motors.com.au/collect?v=1&tid=1", "", content_type="image/gif")
    )
    assert candidate is not None
    assert candidate.confidence == 0.0
    assert candidate.data_type == ApiDataType.NONE
    assert candidate.matched_rules == ["tracking_keyword"]


def test_excluded_exchanges():
    """Non-2xx, denylisted hosts and static assets are never candidates."""
    classifier = ApiClassifier()
    assert classifier.classify_one(exchange("https://www.example.com/api/models", VEHICLES, status_code=404)) is None
    assert classifier.classify_one(exchange("https://www.example.com/api/models", VEHICLES, status_code=302)) is None
    assert classifier.classify_one(exchange("https://www.google-analytics.com/g/collect", {"data": []})) is None
    assert classifier.classify_one(
        exchange("https://www.example.com/static/app.js", "var a = 1;", content_type="application/javascript")
    ) is None


def test_unparsable_json_is_excluded():
    """A body that claims JSON but does not parse is skipped."""
    classifier = ApiClassifier()
    assert classifier.classify_one(exchange("https://www.example.com/api/offers", "{not json")) is None


def test_confidence_bounded_on_garbage():
    """Whatever the input, confidence stays within [0, 1]."""
    settings = ClassifierSettings(
        allowlist_domains=["example.com"],
        trusted_patterns=[r"/api/", "[unclosed"],
        data_endpoint_patterns=["models"],
    )
    classifier = ApiClassifier(settings)
    garbage = [
        exchange("https://api.example.com/api/v2/models.json", VEHICLES * 10),
        exchange("https://api.example.com/api/track/pixel", ""),
        exchange("https://api.example.com/", "null"),
        exchange("https://api.example.com/x", "[1, 2, 3]"),
        exchange("https://api.example.com/y", '"just a string"', content_type="text/plain"),
        exchange("https://api.example.com/z", None, content_type=None),
        exchange("HTTPS://API.EXAMPLE.COM/API/[unclosed", "{}"),
    ]
    candidates = classifier.classify(garbage)
    assert candidates
    for candidate in candidates:
        assert 0.0 <= candidate.confidence <= 1.0
    assert candidates[0].confidence == 1.0


def test_classify_sorted_and_discovery_threshold():
    """Candidates come back most confident first; discovery keeps those >= 0.3."""
    classifier = ApiClassifier()
    exchanges = [
        exchange("https://www.example.com/page-data/beacon", "", content_type="text/html"),
        exchange("https://www.example.com/api/v1/vehicles", VEHICLES),
        exchange("https://www.example.com/settings.json", {"locale": "en-AU"}),
    ]
    candidates = classifier.classify(exchanges)
    confidences = [c.confidence for c in candidates]
    assert confidences == sorted(confidences, reverse=True)

    discovered = classifier.discover(exchanges)
    assert [c.url for c in discovered] == [
        "https://www.example.com/api/v1/vehicles",
        "https://www.example.com/settings.json",
    ]


def test_data_type_from_body_keywords():
    """Without a telling path, keys in the body decide the data type."""
    classifier = ApiClassifier()
    candidate = classifier.classify_one(
        exchange("https://www.example.com/bff/query", {"data": {"offerList": [{"id": 1}]}})
    )
    assert candidate.data_type == ApiDataType.OFFERS


def test_json_without_known_keywords_is_other():
    """JSON that matches no keyword set is typed as other."""
    classifier = ApiClassifier()
    candidate = classifier.classify_one(exchange("https://www.example.com/bff/query", {"data": {"x": 1}}))
    assert candidate.data_type == ApiDataType.OTHER


def test_malformed_url_is_excluded_not_fatal():
    """One unparsable captured URL is dropped; the rest of the render still classifies."""
    classifier = ApiClassifier()
    exchanges = [
        exchange("https://www.example.com/api/v1/vehicles", VEHICLES),
        exchange("https://[tracker/collect", {"items": []}),
        exchange("https://[broken/api/x", VEHICLES),
    ]
    assert classifier.classify_one(exchanges[2]) is None

    candidates = classifier.classify(exchanges)
    assert [c.url for c in candidates] == ["https://www.example.com/api/v1/vehicles"]
    assert candidates[0].confidence == 1.0


def test_unknown_data_type_key_rejected_at_load():
    """Data-type keyword sets are keyed by known data types only."""
    with pytest.raises(ValidationError):
        ClassifierSettings(data_type_keywords={"vehicles": ["vehicle"]})

    settings = ClassifierSettings(data_type_keywords={"inventory": ["stocklist"]})
    candidate = ApiClassifier(settings).classify_one(
        exchange("https://www.example.com/api/stocklist", VEHICLES)
    )
    assert candidate.data_type == ApiDataType.INVENTORY


def test_tracking_keyword_matches_whole_words():
    """First-party paths that merely contain a tracking word are not penalized."""
    classifier = ApiClassifier()
    collections = classifier.classify_one(
        exchange("https://www.example.com/api/vehicle-collections", VEHICLES)
    )
    assert "tracking_keyword" not in collections.matched_rules
    assert collections.confidence == 1.0

    tracked = classifier.classify_one(exchange("https://www.example.com/api/collect", {"items": [{"a": 1}]}))
    assert "tracking_keyword" in tracked.matched_rules
