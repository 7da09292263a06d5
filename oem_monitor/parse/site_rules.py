"""CSS-selector extraction driven by per-site rules, link discovery and container repair."""
import asyncio
import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse

import orjson
from selectolax.lexbor import LexborHTMLParser, LexborNode

from oem_monitor.config import RecordRules, SiteRules
from oem_monitor.errors import ExtractionError
from oem_monitor.parse.models import (
    BannerSlide,
    CtaLink,
    ExtractionMethod,
    Offer,
    OfferValidity,
    Product,
    Variant,
)
from oem_monitor.parse.values import (
    background_image_url,
    clean_text,
    extract_numeric,
    map_availability,
    parse_price,
    resolve_url,
)

logger = logging.getLogger(__name__)

LIST_FIELDS = {"key_features", "applicable_models"}
PRICE_FIELDS = {"price"}
URL_FIELDS = {"cta_url", "primary_image_url", "hero_image_url", "image_url_desktop", "image_url_mobile"}
IMAGE_FIELDS = {"primary_image_url", "hero_image_url", "image_url_desktop", "image_url_mobile"}

PRODUCT_FIELDS = set(Product.model_fields) - {"extraction_method", "coverage", "source_url", "meta"}
OFFER_FIELDS = set(Offer.model_fields) - {"extraction_method", "coverage", "source_url", "meta"}
BANNER_FIELDS = set(BannerSlide.model_fields) - {"extraction_method", "coverage", "source_url", "meta"}

RECORD_RULES = ("products", "offers", "banner_slides")
MAX_REPAIR_DOM_CHARS = 50_000
MAX_SELECTOR_CHARS = 500
SELECTOR_START_RE = re.compile(r"^[.#\[\w*:]")
FENCE_RE = re.compile(r"^```\w*\s*|\s*```$")

REPAIR_PROMPT = """You are a CSS selector expert for web scraping.

The selector below used to match one element per {record} on this page and now matches nothing.
Find a CSS selector that matches every {record} container on the page.

Site: {site}
URL: {url}
Broken selector: {selector}
Fields read inside each container: {fields}

Rules:
1. Prefer class names, data attributes and aria labels
2. Avoid selectors that also match unrelated elements

HTML (may be truncated):
```html
{excerpt}
```

Respond ONLY with valid JSON in this format:
{{"selector": "..."}}
"""

RECORD_LABELS = {"products": "vehicle", "offers": "offer", "banner_slides": "banner slide"}


def split_selector(selector: str) -> tuple[str, Optional[str]]:
    """``"a.cta@href"`` -> ``("a.cta", "href")``."""
    if "@" in selector:
        css, attr = selector.rsplit("@", 1)
        return css.strip(), attr.strip() or None
    return selector.strip(), None


def select(node, css: str) -> list[LexborNode]:
    try:
        return node.css(css)
    except Exception as e:
        raise ExtractionError(f"Invalid selector {css!r}: {e}") from e


def _node_image(node: LexborNode) -> Optional[str]:
    for attr in ("src", "data-src", "srcset"):
        value = node.attributes.get(attr)
        if value:
            return value.split(",")[0].split(" ")[0]
    img = node.css_first("img")
    if img is not None and img is not node:
        value = img.attributes.get("src") or img.attributes.get("data-src")
        if value:
            return value
    return background_image_url(node.attributes.get("style"))


def read_values(container: LexborNode, selector: str, image: bool = False) -> list[str]:
    """Text (or attribute) of every node matching ``selector`` inside ``container``."""
    css, attr = split_selector(selector)
    if not css or css == ":self":
        nodes = [container]
    else:
        nodes = select(container, css)
    values = []
    for node in nodes:
        if attr:
            value = node.attributes.get(attr)
        elif image:
            value = _node_image(node)
        else:
            value = node.text(separator=" ", strip=True)
        value = clean_text(value)
        if value:
            values.append(value)
    return values


def _convert(field: str, values: list[str], rules: SiteRules) -> Any:
    if not values:
        return None
    if field in LIST_FIELDS:
        return values
    if field == "variants":
        return [Variant(name=v) for v in values]
    value = values[0]
    if field in PRICE_FIELDS:
        return parse_price(value, rules.currency)
    if field in URL_FIELDS:
        return resolve_url(value, rules.base_url)
    if field == "availability":
        return map_availability(value)
    if field == "saving_amount":
        return extract_numeric(value)
    if field == "validity":
        return OfferValidity(raw_string=value)
    return value


def _record_fields(
    container: LexborNode, record_rules: RecordRules, allowed: set[str], rules: SiteRules
) -> tuple[dict[str, Any], dict[str, Any]]:
    fields: dict[str, Any] = {}
    meta: dict[str, Any] = {}
    for field, selector in record_rules.fields.items():
        values = read_values(container, selector, image=field in IMAGE_FIELDS)
        value = _convert(field, values, rules)
        if value is None:
            continue
        if field in allowed:
            fields[field] = value
        elif field in ("cta_url", "url") and "cta_links" in allowed:
            url = resolve_url(values[0], rules.base_url) or values[0]
            fields.setdefault("cta_links", []).append(CtaLink(url=url))
        else:
            meta[field] = value
    return fields, meta


def extract_products(parser: LexborHTMLParser, rules: SiteRules) -> list[Product]:
    if rules.products is None:
        return []
    products = []
    for container in select(parser, rules.products.container):
        fields, meta = _record_fields(container, rules.products, PRODUCT_FIELDS, rules)
        if not fields.get("title"):
            continue
        products.append(Product(extraction_method=ExtractionMethod.SITE_RULES, meta=meta, **fields))
    return products


def extract_offers(parser: LexborHTMLParser, rules: SiteRules) -> list[Offer]:
    if rules.offers is None:
        return []
    offers = []
    for container in select(parser, rules.offers.container):
        fields, meta = _record_fields(container, rules.offers, OFFER_FIELDS, rules)
        if not fields.get("title"):
            continue
        offers.append(Offer(extraction_method=ExtractionMethod.SITE_RULES, meta=meta, **fields))
    return offers


def extract_banner_slides(parser: LexborHTMLParser, rules: SiteRules) -> list[BannerSlide]:
    if rules.banner_slides is None:
        return []
    slides = []
    for position, container in enumerate(select(parser, rules.banner_slides.container)):
        fields, meta = _record_fields(container, rules.banner_slides, BANNER_FIELDS, rules)
        fields.pop("position", None)
        if not fields.get("headline") and not fields.get("image_url_desktop"):
            continue
        slides.append(
            BannerSlide(extraction_method=ExtractionMethod.SITE_RULES, position=position, meta=meta, **fields)
        )
    return slides


def discover_links(parser: LexborHTMLParser, rules: SiteRules, page_url: str = "") -> list[str]:
    """
    Same-site links worth tracking:
    - links matched by the site's link selectors
    - otherwise every <a href> on the page
    Returns absolute URLs without fragments, deduplicated and sorted.
    """
    base = rules.base_url or page_url
    host = urlparse(base).hostname if base else None
    selectors = rules.link_selectors or ["a[href]"]

    links: set[str] = set()
    for selector in selectors:
        css, attr = split_selector(selector)
        for node in select(parser, css):
            href = node.attributes.get(attr or "href")
            url = resolve_url(href, base)
            if not url:
                continue
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https"):
                continue
            if host and parsed.hostname != host:
                continue
            links.add(url.split("#", 1)[0])
    return sorted(links)


def empty_containers(parser: LexborHTMLParser, rules: SiteRules) -> list[str]:
    """Record types whose configured container selector matches nothing on the page."""
    empty = []
    for name in RECORD_RULES:
        record_rules = getattr(rules, name)
        if record_rules is None:
            continue
        try:
            matched = select(parser, record_rules.container)
        except ExtractionError:
            matched = []
        if not matched:
            empty.append(name)
    return empty


def with_containers(rules: SiteRules, containers: dict[str, str]) -> SiteRules:
    """Copy of ``rules`` with the container selector of some record types replaced."""
    update = {}
    for name, selector in containers.items():
        record_rules = getattr(rules, name, None)
        if record_rules is not None:
            update[name] = record_rules.model_copy(update={"container": selector})
    return rules.model_copy(update=update)


def build_repair_prompt(name: str, record_rules: RecordRules, html: str, url: str, site: str = "") -> str:
    excerpt = html if len(html) <= MAX_REPAIR_DOM_CHARS else html[:MAX_REPAIR_DOM_CHARS] + "\n...[truncated]"
    return REPAIR_PROMPT.format(
        record=RECORD_LABELS[name],
        site=site or url,
        url=url,
        selector=record_rules.container,
        fields=", ".join(sorted(record_rules.fields)) or "none",
        excerpt=excerpt,
    )


def parse_repaired_selector(content: str) -> Optional[str]:
    """Selector from a repair completion, either ``{"selector": ...}`` or bare. None when unusable."""
    text = FENCE_RE.sub("", (content or "").strip())
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError:
        data = text
    if isinstance(data, dict):
        data = data.get("selector")
    if not isinstance(data, str):
        return None
    selector = data.strip().strip("'\"").strip()
    if not selector or len(selector) > MAX_SELECTOR_CHARS or not SELECTOR_START_RE.match(selector):
        return None
    return selector


async def repair_containers(
    parser: LexborHTMLParser,
    html: str,
    rules: SiteRules,
    names: list[str],
    url: str,
    llm_client,
    timeout: float,
    site: str = "",
) -> dict[str, str]:
    """Ask the LLM for a new container selector for each record type in ``names``.

    A suggestion is kept only when it differs from the broken selector and
    matches at least one node of this page. Failed repairs are logged and
    skipped; the result maps record type to its new container selector.
    """
    repaired: dict[str, str] = {}
    for name in names:
        record_rules = getattr(rules, name)
        prompt = build_repair_prompt(name, record_rules, html, url, site)
        try:
            response = await asyncio.wait_for(llm_client.complete(prompt), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Selector repair for {name} on {url} timed out after {timeout}s")
            continue
        except Exception as e:
            logger.warning(f"Selector repair for {name} on {url} failed: {e}")
            continue

        selector = parse_repaired_selector(response)
        if selector is None or selector == record_rules.container:
            logger.warning(f"No usable {name} selector in repair response for {url}")
            continue
        try:
            matched = select(parser, selector)
        except ExtractionError as e:
            logger.warning(f"Repaired {name} selector for {url} rejected: {e}")
            continue
        if not matched:
            logger.warning(f"Repaired {name} selector {selector!r} matches nothing on {url}")
            continue

        logger.info(f"Repaired {name} container on {url}: {record_rules.container!r} -> {selector!r}")
        repaired[name] = selector
    return repaired
