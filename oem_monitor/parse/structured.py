"""Structured metadata embedded in pages: JSON-LD, OpenGraph and JSON data islands."""
import logging
from typing import Any, Optional

import orjson
from selectolax.lexbor import LexborHTMLParser

from oem_monitor.parse.models import (
    CtaLink,
    ExtractionMethod,
    Offer,
    OfferValidity,
    PageMetadata,
    Product,
)
from oem_monitor.parse.values import clean_text, map_availability, parse_price, resolve_url

logger = logging.getLogger(__name__)

PRODUCT_TYPES = {"Product", "Vehicle", "Car", "IndividualProduct", "ProductModel"}
OFFER_TYPES = {"Offer", "AggregateOffer"}
DATA_ISLAND_SELECTORS = [
    'script[type="application/json"]',
    "script#__NEXT_DATA__",
    "script#__NUXT_DATA__",
]


def parse_json_ld(parser: LexborHTMLParser) -> list[dict[str, Any]]:
    """All JSON-LD objects on the page, with ``@graph`` containers flattened."""
    schemas: list[dict[str, Any]] = []
    for node in parser.css('script[type="application/ld+json"]'):
        text = node.text(deep=True, separator="", strip=True)
        if not text:
            continue
        try:
            parsed = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            logger.debug(f"Skipping malformed JSON-LD block: {e}")
            continue
        _collect_schemas(parsed, schemas)
    return schemas


def _collect_schemas(value: Any, out: list[dict[str, Any]]) -> None:
    if isinstance(value, list):
        for item in value:
            _collect_schemas(item, out)
    elif isinstance(value, dict):
        if "@graph" in value:
            _collect_schemas(value["@graph"], out)
        if "@type" in value:
            out.append(value)


def schema_types(schema: dict[str, Any]) -> set[str]:
    raw = schema.get("@type")
    if isinstance(raw, list):
        return {str(t) for t in raw}
    return {str(raw)} if raw else set()


def _image_url(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return _image_url(value[0]) if value else None
    if isinstance(value, dict):
        return value.get("url") or value.get("contentUrl")
    return value if isinstance(value, str) else None


def _first_offer(value: Any) -> Optional[dict[str, Any]]:
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else None


def products_from_json_ld(
    schemas: list[dict[str, Any]], base_url: str = "", currency: Optional[str] = None
) -> list[Product]:
    products = []
    for schema in schemas:
        if not schema_types(schema) & PRODUCT_TYPES:
            continue
        title = clean_text(schema.get("name"))
        if not title:
            continue
        offer = _first_offer(schema.get("offers"))
        price = None
        availability = map_availability(schema.get("availability"))
        if offer:
            price = parse_price(
                offer.get("price", offer.get("lowPrice")),
                offer.get("priceCurrency") or currency,
                offer.get("priceValidUntil"),
            )
            availability = availability or map_availability(offer.get("availability"))
        url = resolve_url(schema.get("url"), base_url)
        meta: dict[str, Any] = {"json_ld_type": sorted(schema_types(schema))}
        brand = schema.get("brand")
        if isinstance(brand, dict):
            brand = brand.get("name")
        if brand:
            meta["brand"] = brand
        products.append(
            Product(
                extraction_method=ExtractionMethod.STRUCTURED_METADATA,
                external_key=clean_text(schema.get("sku") or schema.get("productID")),
                title=title,
                subtitle=clean_text(schema.get("description")),
                category=clean_text(schema.get("category") or schema.get("bodyType")),
                fuel_type=clean_text(schema.get("fuelType")),
                availability=availability,
                price=price,
                primary_image_url=resolve_url(_image_url(schema.get("image")), base_url),
                cta_links=[CtaLink(url=url)] if url else None,
                meta=meta,
            )
        )
    return products


def offers_from_json_ld(
    schemas: list[dict[str, Any]], base_url: str = "", currency: Optional[str] = None
) -> list[Offer]:
    offers = []
    for schema in schemas:
        if not schema_types(schema) & OFFER_TYPES:
            continue
        title = clean_text(schema.get("name")) or "Special Offer"
        start = schema.get("validFrom")
        end = schema.get("validThrough") or schema.get("priceValidUntil")
        offers.append(
            Offer(
                extraction_method=ExtractionMethod.STRUCTURED_METADATA,
                external_key=clean_text(schema.get("url") or schema.get("sku")),
                title=title,
                description=clean_text(schema.get("description")),
                price=parse_price(
                    schema.get("price", schema.get("lowPrice")),
                    schema.get("priceCurrency") or currency,
                    schema.get("priceValidUntil"),
                ),
                validity=OfferValidity(start_date=start, end_date=end) if (start or end) else None,
                cta_url=resolve_url(schema.get("url"), base_url),
                hero_image_url=resolve_url(_image_url(schema.get("image")), base_url),
            )
        )
    return offers


def page_metadata(parser: LexborHTMLParser, schemas: Optional[list[dict[str, Any]]] = None) -> PageMetadata:
    """Title, description and image from OpenGraph tags with HTML fallbacks."""

    def meta(prop: str) -> str:
        node = parser.css_first(f'meta[property="{prop}"]') or parser.css_first(f'meta[name="{prop}"]')
        if node is None:
            return ""
        return (node.attributes.get("content") or "").strip()

    title = meta("og:title")
    if not title:
        title_node = parser.css_first("title")
        title = title_node.text(strip=True) if title_node else ""
    types: list[str] = []
    for schema in schemas or []:
        for t in sorted(schema_types(schema)):
            if t not in types:
                types.append(t)
    return PageMetadata(
        title=title,
        description=meta("og:description") or meta("description"),
        image=meta("og:image"),
        json_ld_types=types,
    )


def embedded_json(parser: LexborHTMLParser) -> list[Any]:
    """Parsed JSON data islands (framework state blobs, inline catalogs)."""
    islands = []
    seen = set()
    for selector in DATA_ISLAND_SELECTORS:
        for node in parser.css(selector):
            text = node.text(deep=True, separator="", strip=True)
            if not text or text in seen:
                continue
            seen.add(text)
            try:
                islands.append(orjson.loads(text))
            except orjson.JSONDecodeError:
                logger.debug("Skipping malformed JSON data island")
    return islands
