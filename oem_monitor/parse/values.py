"""Small value parsers shared by the extraction stages."""
import re
from typing import Any, Optional
from urllib.parse import urljoin, urlparse

from oem_monitor.parse.models import Price

PRICE_RE = re.compile(r"\$\s*[\d,]+(?:\.\d{1,2})?")
WHITESPACE_RE = re.compile(r"\s+")


def clean_text(value: Any) -> Optional[str]:
    """Collapse whitespace; empty strings become None."""
    if value is None:
        return None
    text = WHITESPACE_RE.sub(" ", str(value)).strip()
    return text or None


def title_key(title: Optional[str]) -> str:
    """Key used to match records across stages (case-folded, trimmed)."""
    return WHITESPACE_RE.sub(" ", title or "").strip().casefold()


def extract_numeric(text: Any) -> Optional[float]:
    """Extract a numeric value from text like "$41,990" or "41990.00"."""
    if text is None or isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return float(text)
    cleaned = str(text).replace(",", "").replace(" ", "")
    match = re.search(r"\d+(?:\.\d+)?", cleaned)
    if match:
        try:
            return float(match.group())
        except ValueError:
            pass
    return None


def infer_price_type(raw: Optional[str], valid_until: Any = None) -> Optional[str]:
    if not raw:
        return None
    lower = raw.lower()
    if "driveaway" in lower or "drive away" in lower:
        return "driveaway"
    if "from" in lower or "starting" in lower:
        return "from"
    if "rrp" in lower or "recommended" in lower:
        return "rrp"
    if "week" in lower and "month" not in lower:
        return "per_week"
    if "month" in lower:
        return "per_month"
    if valid_until:
        return "rrp"
    return None


def parse_price(value: Any, currency: Optional[str] = None, valid_until: Any = None) -> Optional[Price]:
    """Build a Price from a number, a display string, or a price-like dict."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        amount = value.get("amount", value.get("price", value.get("value")))
        return parse_price(
            amount,
            value.get("currency") or value.get("priceCurrency") or currency,
            value.get("priceValidUntil") or valid_until,
        )
    raw = str(value).strip()
    if isinstance(value, str):
        match = PRICE_RE.search(raw)
        amount = extract_numeric(match.group() if match else raw)
    else:
        amount = extract_numeric(value)
    if amount is None:
        return None
    return Price(
        amount=amount,
        currency=currency,
        type=infer_price_type(raw, valid_until),
        raw_string=raw,
        qualifier="starting from" if "from" in raw.lower() else None,
    )


def map_availability(value: Any) -> Optional[str]:
    if value is None:
        return None
    lower = str(value).lower()
    if "instock" in lower or "in stock" in lower or "available" == lower:
        return "available"
    if "outofstock" in lower or "out of stock" in lower or "discontinued" in lower:
        return "discontinued"
    if "preorder" in lower or "coming" in lower:
        return "coming_soon"
    return clean_text(value)


def resolve_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Absolute form of a link, or None for anchors and script links."""
    if not url:
        return None
    url = url.strip()
    if not url or url.startswith("#") or url.lower().startswith(("javascript:", "mailto:", "tel:")):
        return None
    if url.startswith(("http://", "https://")):
        return url
    if not base_url:
        return url
    if url.startswith("//"):
        return f"{urlparse(base_url).scheme or 'https'}:{url}"
    return urljoin(base_url, url)


def background_image_url(style: Optional[str]) -> Optional[str]:
    if not style:
        return None
    match = re.search(r"background-image\s*:\s*url\((['\"]?)(.*?)\1\)", style)
    return match.group(2) if match else None
