"""Prompt building and response parsing for the LLM extraction fallback."""
import logging
import re
from typing import Any, Optional

import orjson
from pydantic import ValidationError

from oem_monitor.errors import LlmFallbackError
from oem_monitor.parse.models import (
    BannerSlide,
    CtaLink,
    ExtractionMethod,
    Offer,
    OfferValidity,
    Product,
    Variant,
)
from oem_monitor.parse.values import clean_text, map_availability, parse_price, resolve_url

logger = logging.getLogger(__name__)

MAX_EXCERPT_CHARS = 50_000
FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

PROMPT_TEMPLATE = """You are an expert web scraping assistant. Extract structured data from the following HTML page.

Site: {site}
URL: {url}

Extract the following information as JSON:
- products: array of vehicles with title, category, price (number), availability, fuel_type, variants (names), key_features, primary_image_url
- offers: array of promotional offers with title, description, price, validity (start_date, end_date), cta_text, cta_url
- banner_slides: array of hero carousel slides with headline, sub_headline, cta_text, cta_url, image_url_desktop, image_url_mobile

HTML:
```html
{excerpt}
```

Respond ONLY with valid JSON in this format:
{{"products": [...], "offers": [...], "banner_slides": [...]}}
"""


def build_prompt(html: str, url: str, site: str = "") -> str:
    """Prompt with the page excerpt truncated to MAX_EXCERPT_CHARS."""
    excerpt = html if len(html) <= MAX_EXCERPT_CHARS else html[:MAX_EXCERPT_CHARS] + "\n...[truncated]"
    return PROMPT_TEMPLATE.format(site=site or url, url=url, excerpt=excerpt)


def parse_response(content: str) -> dict[str, list[dict[str, Any]]]:
    """Parse the completion into record lists. Raises LlmFallbackError on bad JSON."""
    if not content or not content.strip():
        raise LlmFallbackError("Empty LLM response")
    text = FENCE_RE.sub("", content.strip())
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise LlmFallbackError(f"LLM response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise LlmFallbackError(f"LLM response must be a JSON object, got {type(data).__name__}")

    def records(*keys: str) -> list[dict[str, Any]]:
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
        return []

    return {
        "products": records("products"),
        "offers": records("offers"),
        "banner_slides": records("banner_slides", "bannerSlides"),
    }


def _str(value: Any) -> Optional[str]:
    return clean_text(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _str_list(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    items = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("name") or item.get("title")
        text = _str(item)
        if text:
            items.append(text)
    return items or None


def _product(raw: dict[str, Any], base_url: str, currency: Optional[str]) -> Product:
    variants = None
    names = _str_list(raw.get("variants"))
    if names:
        variants = [Variant(name=name) for name in names]
    cta = resolve_url(_str(raw.get("cta_url") or raw.get("url")), base_url)
    return Product(
        extraction_method=ExtractionMethod.LLM_FALLBACK,
        title=_str(raw.get("title") or raw.get("name")),
        subtitle=_str(raw.get("subtitle")),
        category=_str(raw.get("category") or raw.get("body_type")),
        fuel_type=_str(raw.get("fuel_type")),
        availability=map_availability(_str(raw.get("availability"))),
        price=parse_price(raw.get("price"), currency),
        variants=variants,
        key_features=_str_list(raw.get("key_features")),
        cta_links=[CtaLink(url=cta)] if cta else None,
        disclaimer_text=_str(raw.get("disclaimer_text")),
        primary_image_url=resolve_url(_str(raw.get("primary_image_url") or raw.get("image")), base_url),
    )


def _offer(raw: dict[str, Any], base_url: str, currency: Optional[str]) -> Offer:
    validity = None
    raw_validity = raw.get("validity")
    if isinstance(raw_validity, dict):
        validity = OfferValidity(
            start_date=_str(raw_validity.get("start_date")),
            end_date=_str(raw_validity.get("end_date")),
            raw_string=_str(raw_validity.get("raw_string")),
        )
    elif _str(raw_validity):
        validity = OfferValidity(raw_string=_str(raw_validity))
    return Offer(
        extraction_method=ExtractionMethod.LLM_FALLBACK,
        title=_str(raw.get("title")),
        description=_str(raw.get("description")),
        offer_type=_str(raw.get("offer_type")),
        applicable_models=_str_list(raw.get("applicable_models")),
        price=parse_price(raw.get("price"), currency),
        validity=validity,
        cta_text=_str(raw.get("cta_text")),
        cta_url=resolve_url(_str(raw.get("cta_url")), base_url),
        hero_image_url=resolve_url(_str(raw.get("hero_image_url") or raw.get("image")), base_url),
        disclaimer_text=_str(raw.get("disclaimer_text")),
    )


def _banner(raw: dict[str, Any], position: int, base_url: str) -> BannerSlide:
    return BannerSlide(
        extraction_method=ExtractionMethod.LLM_FALLBACK,
        position=position,
        headline=_str(raw.get("headline") or raw.get("title")),
        sub_headline=_str(raw.get("sub_headline")),
        cta_text=_str(raw.get("cta_text")),
        cta_url=resolve_url(_str(raw.get("cta_url")), base_url),
        image_url_desktop=resolve_url(_str(raw.get("image_url_desktop") or raw.get("image")), base_url),
        image_url_mobile=resolve_url(_str(raw.get("image_url_mobile")), base_url),
        disclaimer_text=_str(raw.get("disclaimer_text")),
    )


def to_records(
    parsed: dict[str, list[dict[str, Any]]], base_url: str = "", currency: Optional[str] = None
) -> dict[str, list]:
    """Convert parsed LLM output into typed records; invalid entries are dropped."""
    out: dict[str, list] = {"products": [], "offers": [], "banner_slides": []}
    for raw in parsed.get("products", []):
        try:
            product = _product(raw, base_url, currency)
        except ValidationError as e:
            logger.debug(f"Dropping invalid LLM product: {e}")
            continue
        if product.title:
            out["products"].append(product)
    for raw in parsed.get("offers", []):
        try:
            offer = _offer(raw, base_url, currency)
        except ValidationError as e:
            logger.debug(f"Dropping invalid LLM offer: {e}")
            continue
        if offer.title:
            out["offers"].append(offer)
    for position, raw in enumerate(parsed.get("banner_slides", [])):
        try:
            slide = _banner(raw, position, base_url)
        except ValidationError as e:
            logger.debug(f"Dropping invalid LLM banner slide: {e}")
            continue
        if slide.headline or slide.image_url_desktop:
            out["banner_slides"].append(slide)
    return out
