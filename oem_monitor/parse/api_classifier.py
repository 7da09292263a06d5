"""Classify captured network exchanges as structured-data endpoints."""
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Iterable, Optional
from urllib.parse import ParseResult, urlparse

import orjson

from oem_monitor.config import ClassifierSettings
from oem_monitor.errors import ClassificationError
from oem_monitor.parse.models import ApiCandidate, ApiDataType, NetworkExchange

logger = logging.getLogger(__name__)

# Body keyword scan is limited to the head of the payload
BODY_SCAN_CHARS = 20_000


@dataclass
class ExchangeFeatures:
    """What the scoring rules look at for one exchange."""

    exchange: NetworkExchange
    url: str
    host: str
    path: str
    is_json: bool = False
    looks_like_data_api: bool = False
    payload: Any = None
    settings: ClassifierSettings = field(default_factory=ClassifierSettings)

    @property
    def size(self) -> int:
        if self.exchange.body_size_bytes:
            return self.exchange.body_size_bytes
        return len(self.exchange.body_text or "")


@dataclass(frozen=True)
class ScoringRule:
    name: str
    weight: float
    predicate: Callable[[ExchangeFeatures], bool]


def _matches_any(patterns: Iterable[str], text: str) -> bool:
    for pattern in patterns:
        try:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        except re.error:
            if pattern.lower() in text:
                return True
    return False


def split_url(url: str) -> ParseResult:
    """``urlparse`` that raises ClassificationError on malformed URLs (bad IPv6 brackets)."""
    try:
        return urlparse(url)
    except ValueError as e:
        raise ClassificationError(f"Malformed URL {url!r}: {e}") from e


def _host_matches(host: str, domains: Iterable[str]) -> bool:
    for domain in domains:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False


def _is_trusted(f: ExchangeFeatures) -> bool:
    return _host_matches(f.host, f.settings.allowlist_domains) or _matches_any(
        f.settings.trusted_patterns, f.url
    )


@lru_cache(maxsize=256)
def _keyword_re(keyword: str) -> re.Pattern:
    # Whole URL words only: "collect" hits /g/collect, not /vehicle-collections
    return re.compile(rf"(?<![a-z0-9]){re.escape(keyword.lower())}(?![a-z0-9])")


def _has_tracking_keyword(f: ExchangeFeatures) -> bool:
    return any(_keyword_re(keyword).search(f.url) for keyword in f.settings.tracking_keywords)


DEFAULT_RULES: list[ScoringRule] = [
    ScoringRule("json_content_type", 0.3, lambda f: f.is_json),
    ScoringRule("data_shape", 0.4, lambda f: f.looks_like_data_api),
    ScoringRule("api_path", 0.2, lambda f: _matches_any(f.settings.api_path_patterns, f.path)),
    ScoringRule("trusted_endpoint", 0.5, _is_trusted),
    ScoringRule("size_over_small_threshold", 0.1, lambda f: f.size > f.settings.size_thresholds[0]),
    ScoringRule("size_over_large_threshold", 0.1, lambda f: f.size > f.settings.size_thresholds[1]),
    ScoringRule("tracking_keyword", -0.3, _has_tracking_keyword),
]


class ApiClassifier:
    """Scores exchanges from one render and ranks the likely data APIs."""

    def __init__(
        self,
        settings: Optional[ClassifierSettings] = None,
        rules: Optional[list[ScoringRule]] = None,
    ):
        self.settings = settings or ClassifierSettings()
        self.rules = rules if rules is not None else list(DEFAULT_RULES)

    def is_excluded(self, exchange: NetworkExchange) -> bool:
        """Non-2xx, denylisted hosts and static assets never become candidates.

        Raises ClassificationError when the URL cannot be parsed.
        """
        if not 200 <= exchange.status_code < 300:
            return True
        url = exchange.url.lower()
        parsed = split_url(url)
        host = parsed.hostname or ""
        for entry in self.settings.denylist:
            entry = entry.lower()
            if "/" in entry:
                if entry in url:
                    return True
            elif _host_matches(host, [entry]):
                return True
        return parsed.path.endswith(tuple(self.settings.asset_suffixes))

    def _parse_body(self, exchange: NetworkExchange, is_json: bool) -> Any:
        body = (exchange.body_text or "").strip()
        if not body:
            return None
        if not is_json:
            return None
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise ClassificationError(f"Unparsable JSON body from {exchange.url}: {e}") from e

    def _looks_like_data(self, payload: Any, url: str) -> bool:
        if isinstance(payload, list) and payload and all(isinstance(item, dict) for item in payload):
            return True
        if isinstance(payload, dict):
            for key in self.settings.collection_keys:
                if isinstance(payload.get(key), (list, dict)):
                    return True
        return _matches_any(self.settings.data_endpoint_patterns, url)

    def _data_type(self, f: ExchangeFeatures) -> ApiDataType:
        for data_type, keywords in self.settings.data_type_keywords.items():
            if any(keyword in f.path for keyword in keywords):
                return data_type
        body = (f.exchange.body_text or "")[:BODY_SCAN_CHARS].lower()
        if body:
            for data_type, keywords in self.settings.data_type_keywords.items():
                if any(f'"{keyword}' in body for keyword in keywords):
                    return data_type
        if f.is_json or f.looks_like_data_api:
            return ApiDataType.OTHER
        return ApiDataType.NONE

    def features(self, exchange: NetworkExchange) -> ExchangeFeatures:
        """Parse one exchange into scoring features. Raises ClassificationError."""
        url = exchange.url.lower()
        parsed = split_url(url)
        is_json = "json" in (exchange.content_type or "").lower()
        payload = self._parse_body(exchange, is_json)
        return ExchangeFeatures(
            exchange=exchange,
            url=url,
            host=parsed.hostname or "",
            path=parsed.path + (f"?{parsed.query}" if parsed.query else ""),
            is_json=is_json,
            looks_like_data_api=self._looks_like_data(payload, url),
            payload=payload,
            settings=self.settings,
        )

    def score(self, f: ExchangeFeatures) -> tuple[float, list[str]]:
        """Evaluate every rule in order; the sum is clamped to [0, 1]."""
        total = 0.0
        matched = []
        for rule in self.rules:
            try:
                hit = rule.predicate(f)
            except Exception as e:
                logger.debug(f"Scoring rule {rule.name} failed on {f.url}: {e}")
                hit = False
            if hit:
                total += rule.weight
                matched.append(rule.name)
        return max(0.0, min(1.0, round(total, 4))), matched

    def classify_one(self, exchange: NetworkExchange) -> Optional[ApiCandidate]:
        try:
            if self.is_excluded(exchange):
                return None
            f = self.features(exchange)
        except ClassificationError as e:
            logger.debug(f"Excluding exchange: {e}")
            return None
        confidence, matched = self.score(f)
        return ApiCandidate(
            url=exchange.url,
            method=exchange.method,
            is_json=f.is_json,
            looks_like_data_api=f.looks_like_data_api,
            data_type=self._data_type(f),
            confidence=confidence,
            body_size_bytes=f.size,
            matched_rules=matched,
            payload=f.payload,
        )

    def classify(self, exchanges: Iterable[NetworkExchange]) -> list[ApiCandidate]:
        """Candidates for every usable exchange, most confident first."""
        candidates = []
        for exchange in exchanges:
            candidate = self.classify_one(exchange)
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    def discovered(self, candidates: Iterable[ApiCandidate]) -> list[ApiCandidate]:
        """Candidates at or above the discovery threshold."""
        return [c for c in candidates if c.confidence >= self.settings.discovery_threshold]

    def discover(self, exchanges: Iterable[NetworkExchange]) -> list[ApiCandidate]:
        discovered = self.discovered(self.classify(exchanges))
        if discovered:
            logger.info(
                f"Discovered {len(discovered)} API candidates "
                f"(top: {discovered[0].url} @ {discovered[0].confidence:.2f})"
            )
        return discovered
