"""Configuration management from environment variables and site config files."""
import logging
import os
from pathlib import Path
from typing import Any, Optional

import orjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from oem_monitor.crawl.models import PageCategory
from oem_monitor.parse.models import ApiDataType

# Load .env file
load_dotenv()

logger = logging.getLogger(__name__)

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
SPOOL_DIR = DATA_DIR / "spool"
STATE_DB = DATA_DIR / "state.db"
SITES_FILE = Path(os.getenv("SITES_FILE", str(PROJECT_ROOT / "sites.json")))


class Config:
    """Application configuration."""

    # Pipeline
    CONCURRENCY: int = int(os.getenv("CONCURRENCY", "8"))
    RATE_PER_DOMAIN: float = float(os.getenv("RATE_PER_DOMAIN", "1.0"))
    FETCH_TIMEOUT: float = float(os.getenv("FETCH_TIMEOUT", "20"))
    RENDER_TIMEOUT: float = float(os.getenv("RENDER_TIMEOUT", "90"))
    LLM_TIMEOUT: float = float(os.getenv("LLM_TIMEOUT", "60"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    USER_AGENT: str = os.getenv(
        "USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko)",
    )

    # Render budget
    MONTHLY_RENDER_CAP_PER_SITE: int = int(os.getenv("MONTHLY_RENDER_CAP_PER_SITE", "1000"))
    GLOBAL_MONTHLY_RENDER_CAP: int = int(os.getenv("GLOBAL_MONTHLY_RENDER_CAP", "10000"))
    MIN_RENDER_INTERVAL_MINUTES: int = int(os.getenv("MIN_RENDER_INTERVAL_MINUTES", "120"))
    BACKOFF_AFTER_DAYS: int = int(os.getenv("BACKOFF_AFTER_DAYS", "7"))
    BACKOFF_FACTOR: float = float(os.getenv("BACKOFF_FACTOR", "2.0"))
    MAX_BACKOFF_MULTIPLIER: float = float(os.getenv("MAX_BACKOFF_MULTIPLIER", "8"))

    # Collaborator endpoints
    RENDER_SERVICE_URL: str | None = os.getenv("RENDER_SERVICE_URL")
    LLM_GATEWAY_URL: str | None = os.getenv("LLM_GATEWAY_URL")
    LLM_API_KEY: str | None = os.getenv("LLM_API_KEY")

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE")
    SUPABASE_CHANGE_TABLE: str = os.getenv("SUPABASE_CHANGE_TABLE", "change_events")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls, require_render: bool = True, require_supabase: bool = False) -> None:
        """Validate required configuration."""
        errors = []
        if require_render and not cls.RENDER_SERVICE_URL:
            errors.append("RENDER_SERVICE_URL is required")
        if require_supabase:
            if not cls.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not cls.SUPABASE_SERVICE_ROLE:
                errors.append("SUPABASE_SERVICE_ROLE is required")
        if cls.BACKOFF_FACTOR < 1:
            errors.append("BACKOFF_FACTOR must be >= 1 (it lengthens the check interval)")
        if cls.CONCURRENCY < 1:
            errors.append("CONCURRENCY must be >= 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()


# Generic infrastructure hosts and asset suffixes. Site configs extend these.
DEFAULT_DENYLIST = [
    "google-analytics.com",
    "googletagmanager.com",
    "doubleclick.net",
    "facebook.net",
    "facebook.com/tr",
    "hotjar.com",
    "clarity.ms",
    "adobedtm.com",
    "omtrdc.net",
    "demdex.net",
    "newrelic.com",
    "nr-data.net",
    "sentry.io",
    "segment.io",
    "optimizely.com",
    "cookielaw.org",
    "onetrust.com",
]
DEFAULT_ASSET_SUFFIXES = [
    ".js", ".css", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif", ".svg",
    ".ico", ".woff", ".woff2", ".ttf", ".otf", ".mp4", ".webm", ".map",
]
DEFAULT_API_PATH_PATTERNS = [
    r"/api/",
    r"/graphql",
    r"/rest/",
    r"/v\d+/",
    r"\.json(\?|$)",
    r"\.data(\?|$)",
]
DEFAULT_COLLECTION_KEYS = ["data", "items", "results"]
DEFAULT_TRACKING_KEYWORDS = [
    "analytics", "tracking", "track", "pixel", "beacon", "telemetry", "collect", "metrics",
]
DEFAULT_DATA_TYPE_KEYWORDS = {
    "products": ["product", "vehicle", "model", "nameplate", "catalog", "range", "variant", "trim"],
    "offers": ["offer", "promotion", "promo", "deal", "special", "campaign"],
    "inventory": ["inventory", "stock", "dealer", "availability"],
    "pricing": ["price", "pricing", "msrp", "driveaway", "quote", "finance"],
    "config": ["config", "settings", "feature-flag", "featureflag", "i18n", "locale"],
}
DEFAULT_NOISE_FIELDS = [
    r"^utm_",
    r"^gclid$",
    r"^fbclid$",
    r"^session",
    r"^_ga$",
    r"^_gid$",
    r"copyright.*year",
    r"last.*updated",
    r"page.*generated",
    r"^experiment",
    r"^ab_",
    r"analytics",
    r"tracking",
    r"css.?hash",
    r"comment.*count",
    r"share.*count",
    r"cookie",
    r"consent",
]
DEFAULT_TRACKING_PARAMS = [
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "gclid", "fbclid", "msclkid", "sessionid", "_ga", "_gid", "_gl",
]


class ClassifierSettings(BaseModel):
    """Per-site lists that drive the API classifier."""

    denylist: list[str] = Field(default_factory=lambda: list(DEFAULT_DENYLIST))
    asset_suffixes: list[str] = Field(default_factory=lambda: list(DEFAULT_ASSET_SUFFIXES))
    allowlist_domains: list[str] = Field(default_factory=list)
    trusted_patterns: list[str] = Field(default_factory=list)
    data_endpoint_patterns: list[str] = Field(default_factory=list)
    api_path_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_API_PATH_PATTERNS))
    collection_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_COLLECTION_KEYS))
    tracking_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_TRACKING_KEYWORDS))
    # Keys are ApiDataType values; unknown keys fail at load time
    data_type_keywords: dict[ApiDataType, list[str]] = Field(
        default_factory=lambda: {ApiDataType(k): list(v) for k, v in DEFAULT_DATA_TYPE_KEYWORDS.items()}
    )
    size_thresholds: tuple[int, int] = (1_000, 10_000)
    discovery_threshold: float = 0.3


class RecordRules(BaseModel):
    """Selector mapping for one record type.

    ``container`` selects one node per record; ``fields`` maps a record field
    to a selector evaluated inside the container. A selector ending with
    ``@attr`` reads that attribute instead of the node text.
    """

    container: str
    fields: dict[str, str] = Field(default_factory=dict)


class SiteRules(BaseModel):
    """CSS-selector extraction rules for one site."""

    base_url: str = ""
    products: Optional[RecordRules] = None
    offers: Optional[RecordRules] = None
    banner_slides: Optional[RecordRules] = None
    link_selectors: list[str] = Field(default_factory=list)
    currency: str = "AUD"


class SiteConfig(BaseModel):
    """Read-only configuration for one monitored site."""

    site_id: str
    name: str = ""
    intervals_minutes: dict[PageCategory, int] = Field(default_factory=dict)
    always_render_categories: list[PageCategory] = Field(default_factory=list)
    monthly_render_cap: Optional[int] = None
    rules: SiteRules = Field(default_factory=SiteRules)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    severity_overrides: dict[str, dict[str, str]] = Field(default_factory=dict)
    noise_fields: list[str] = Field(default_factory=list)
    tracking_params: list[str] = Field(default_factory=list)


def load_site_configs(path: Path = SITES_FILE) -> dict[str, SiteConfig]:
    """Load site configurations from a JSON file (a list of site objects)."""
    if not path.exists():
        logger.warning(f"Site config file not found: {path}")
        return {}
    raw: Any = orjson.loads(path.read_bytes())
    if isinstance(raw, dict):
        raw = raw.get("sites", [])
    sites = {}
    for item in raw:
        site = SiteConfig.model_validate(item)
        sites[site.site_id] = site
    logger.info(f"Loaded {len(sites)} site configs from {path}")
    return sites
