"""Structural walk over arbitrary JSON trees (vendor menus, CMS payloads).

Any object that has a title-like field and either a price-like or an
image-like field is taken as one record. The walk is bounded in depth, does
not descend into matched objects, and keeps the first record per title.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from oem_monitor.parse.models import ExtractionMethod, Offer, Product, Variant
from oem_monitor.parse.values import clean_text, map_availability, parse_price, resolve_url, title_key

logger = logging.getLogger(__name__)

MAX_DEPTH = 10

TITLE_KEYS = ("name", "title", "modelname", "displayname", "nameplate", "label", "headline")
PRICE_KEYS = (
    "price", "pricefrom", "fromprice", "startingprice", "driveawayprice", "msrp", "rrp", "baseprice",
)
IMAGE_KEYS = ("image", "imageurl", "img", "thumbnail", "thumbnailurl", "heroimage", "picture", "media")
CATEGORY_KEYS = ("category", "categoryname", "bodytype", "bodystyle", "segment", "vehicletype")


def _norm_key(key: Any) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def _find(obj: dict[str, Any], keys: tuple[str, ...]) -> tuple[Optional[str], Any]:
    """First (original key, value) whose normalized key is in ``keys`` and has a value."""
    normalized = {_norm_key(k): k for k in obj}
    for key in keys:
        original = normalized.get(key)
        if original is None:
            continue
        value = obj[original]
        if value is not None and value != "" and value != [] and value != {}:
            return original, value
    return None, None


def _title(obj: dict[str, Any]) -> Optional[str]:
    _, value = _find(obj, TITLE_KEYS)
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return clean_text(value)
    return None


def _category(obj: dict[str, Any]) -> Optional[str]:
    _, value = _find(obj, CATEGORY_KEYS)
    if isinstance(value, dict):
        value = value.get("name") or value.get("title")
    if isinstance(value, str):
        return clean_text(value)
    return None


@dataclass
class MenuItem:
    """One matched object and the category label inherited from its ancestors."""

    title: str
    data: dict[str, Any]
    category: Optional[str] = None
    path: list[str] = field(default_factory=list)


def is_record(obj: dict[str, Any]) -> bool:
    if _title(obj) is None:
        return False
    return _find(obj, PRICE_KEYS)[0] is not None or _find(obj, IMAGE_KEYS)[0] is not None


def walk(tree: Any, max_depth: int = MAX_DEPTH) -> list[MenuItem]:
    """Collect record-shaped objects from ``tree``. The root is at depth 0."""
    items: list[MenuItem] = []
    seen: set[str] = set()
    _walk(tree, 0, max_depth, None, [], items, seen)
    return items


def _walk(
    node: Any,
    depth: int,
    max_depth: int,
    category: Optional[str],
    path: list[str],
    items: list[MenuItem],
    seen: set[str],
) -> None:
    if depth > max_depth:
        return

    if isinstance(node, dict):
        category = _category(node) or category
        if is_record(node):
            title = _title(node)
            key = title_key(title)
            if key not in seen:
                seen.add(key)
                items.append(MenuItem(title=title, data=node, category=category, path=list(path)))
            return
        for key, child in node.items():
            if isinstance(child, (dict, list)):
                _walk(child, depth + 1, max_depth, category, path + [str(key)], items, seen)

    elif isinstance(node, list):
        for index, child in enumerate(node):
            if isinstance(child, (dict, list)):
                _walk(child, depth + 1, max_depth, category, path + [str(index)], items, seen)


def _image(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return _image(value[0]) if value else None
    if isinstance(value, dict):
        for key in ("url", "src", "desktop", "large", "original", "href"):
            if isinstance(value.get(key), str):
                return value[key]
        return None
    return value if isinstance(value, str) else None


def _variants(data: dict[str, Any], currency: Optional[str]) -> Optional[list[Variant]]:
    for key in ("variants", "grades", "trims", "derivatives"):
        raw = data.get(key)
        if not isinstance(raw, list):
            continue
        variants = []
        for entry in raw:
            if isinstance(entry, dict):
                name = _title(entry)
                if name:
                    _, price = _find(entry, PRICE_KEYS)
                    variants.append(Variant(name=name, price=parse_price(price, currency)))
            elif isinstance(entry, str) and entry.strip():
                variants.append(Variant(name=entry.strip()))
        if variants:
            return variants
    return None


def _features(data: dict[str, Any]) -> Optional[list[str]]:
    for key in ("keyFeatures", "key_features", "features", "highlights"):
        raw = data.get(key)
        if isinstance(raw, list):
            features = []
            for entry in raw:
                if isinstance(entry, dict):
                    text = _title(entry)
                else:
                    text = clean_text(entry) if isinstance(entry, str) else None
                if text:
                    features.append(text)
            if features:
                return features
    return None


def to_product(
    item: MenuItem,
    method: ExtractionMethod,
    base_url: str = "",
    currency: Optional[str] = None,
    source_url: Optional[str] = None,
) -> Product:
    data = item.data
    _, price = _find(data, PRICE_KEYS)
    _, image = _find(data, IMAGE_KEYS)
    _, availability = _find(data, ("availability", "status", "stockstatus"))
    _, fuel = _find(data, ("fueltype", "fuel", "powertrain"))
    return Product(
        extraction_method=method,
        external_key=clean_text(data.get("id") or data.get("code") or data.get("sku")),
        title=item.title,
        category=_category(data) or item.category,
        fuel_type=clean_text(fuel) if isinstance(fuel, str) else None,
        availability=map_availability(availability) if isinstance(availability, str) else None,
        price=parse_price(price, currency),
        variants=_variants(data, currency),
        key_features=_features(data),
        primary_image_url=resolve_url(_image(image), base_url),
        source_url=source_url,
        meta={"path": "/".join(item.path)},
    )


def to_offer(
    item: MenuItem,
    method: ExtractionMethod,
    base_url: str = "",
    currency: Optional[str] = None,
    source_url: Optional[str] = None,
) -> Offer:
    data = item.data
    _, price = _find(data, PRICE_KEYS)
    _, image = _find(data, IMAGE_KEYS)
    _, description = _find(data, ("description", "summary", "subtitle", "body"))
    _, url = _find(data, ("url", "ctaurl", "link", "href"))
    meta = {"path": "/".join(item.path)}
    if item.category:
        meta["category"] = item.category
    return Offer(
        extraction_method=method,
        external_key=clean_text(data.get("id") or data.get("code")),
        title=item.title,
        description=clean_text(description) if isinstance(description, str) else None,
        price=parse_price(price, currency),
        cta_url=resolve_url(url, base_url) if isinstance(url, str) else None,
        hero_image_url=resolve_url(_image(image), base_url),
        source_url=source_url,
        meta=meta,
    )
