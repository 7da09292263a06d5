"""Canonicalize HTML before hashing so only meaningful content moves the hash."""
import hashlib
import logging
import re
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from selectolax.lexbor import LexborHTMLParser

from oem_monitor.config import DEFAULT_TRACKING_PARAMS

logger = logging.getLogger(__name__)

STRIPPED_TAGS = ["script", "noscript", "style", "template", "iframe"]
DYNAMIC_SELECTORS = [
    ".cookie-consent",
    ".cookie-banner",
    "#cookie-banner",
    "#onetrust-consent-sdk",
    ".chat-widget",
    ".analytics",
]
VOLATILE_ATTRIBUTES = {"class", "nonce", "integrity", "style", "aria-describedby", "aria-controls"}
URL_ATTRIBUTES = ("href", "src", "action", "srcset")

COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
HASH_LIKE_ID_RE = re.compile(r"[a-f0-9]{8,}", re.IGNORECASE)
BETWEEN_TAGS_RE = re.compile(r">\s+<")
WHITESPACE_RE = re.compile(r"\s+")


def strip_tracking_params(url: str, params: Optional[Iterable[str]] = None) -> str:
    """Drop tracking query parameters (utm_*, click ids, session ids) from a URL."""
    if not url or "?" not in url:
        return url
    blocked = {p.lower() for p in (params or DEFAULT_TRACKING_PARAMS)}
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in blocked and not k.lower().startswith("utm_")
    ]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def normalize_html(html: str, tracking_params: Optional[Iterable[str]] = None) -> str:
    """
    Canonical form of a page for change detection:
    - scripts, styles, templates and comments removed
    - cookie/chat/analytics widgets removed
    - data-*, class and other volatile attributes removed
    - ids that look like build hashes removed
    - tracking parameters stripped from URLs
    - whitespace collapsed
    """
    if not html:
        return ""

    parser = LexborHTMLParser(COMMENT_RE.sub("", html))
    parser.strip_tags(STRIPPED_TAGS)

    for selector in DYNAMIC_SELECTORS:
        for node in parser.css(selector):
            node.decompose()

    for node in parser.css("*"):
        attributes = node.attributes
        if not attributes:
            continue
        for name, value in attributes.items():
            lowered = name.lower()
            if lowered.startswith("data-") or lowered in VOLATILE_ATTRIBUTES:
                del node.attrs[name]
            elif lowered == "id" and value and HASH_LIKE_ID_RE.search(value):
                del node.attrs[name]
            elif lowered in URL_ATTRIBUTES and value:
                cleaned = strip_tracking_params(value.strip(), tracking_params)
                if cleaned != value:
                    node.attrs[name] = cleaned

    normalized = parser.html or ""
    normalized = BETWEEN_TAGS_RE.sub("><", normalized)
    return WHITESPACE_RE.sub(" ", normalized).strip()


def compute_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_content_hash(html: str, tracking_params: Optional[Iterable[str]] = None) -> str:
    """SHA-256 of the normalized page."""
    return compute_hash(normalize_html(html, tracking_params))
