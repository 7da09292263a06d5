"""Data models for captured exchanges and extracted records."""
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class NetworkExchange(BaseModel):
    """One captured request/response pair from a render."""

    model_config = ConfigDict(frozen=True)

    url: str
    method: str = "GET"
    status_code: int = 0
    content_type: Optional[str] = None
    body_text: Optional[str] = None
    body_size_bytes: int = 0
    captured_at_millis: int = 0


class ApiDataType(str, Enum):
    PRODUCTS = "products"
    OFFERS = "offers"
    INVENTORY = "inventory"
    PRICING = "pricing"
    CONFIG = "config"
    OTHER = "other"
    NONE = "none"


class ApiCandidate(BaseModel):
    """Classifier verdict for one exchange."""

    url: str
    method: str = "GET"
    is_json: bool = False
    looks_like_data_api: bool = False
    data_type: ApiDataType = ApiDataType.NONE
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    body_size_bytes: int = 0
    matched_rules: list[str] = Field(default_factory=list)
    payload: Any = Field(default=None, exclude=True, repr=False)


class DiscoveredApi(BaseModel):
    """Data API remembered across runs for one site."""

    site_id: str
    url: str
    page_url: str
    method: str = "GET"
    data_type: ApiDataType = ApiDataType.NONE
    confidence: float = 0.0
    matched_rules: list[str] = Field(default_factory=list)
    first_seen_at: datetime
    last_seen_at: datetime
    seen_count: int = 1


class ExtractionMethod(str, Enum):
    STRUCTURED_METADATA = "structured-metadata"
    PAGE_METADATA = "page-metadata"
    SITE_RULES = "site-rules"
    EMBEDDED_JSON = "embedded-json"
    LLM_FALLBACK = "llm-fallback"
    API = "api"


class Price(BaseModel):
    amount: Optional[float] = None
    currency: Optional[str] = None
    type: Optional[str] = None
    raw_string: Optional[str] = None
    qualifier: Optional[str] = None


class Variant(BaseModel):
    name: str
    price: Optional[Price] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class CtaLink(BaseModel):
    text: Optional[str] = None
    url: str


class OfferValidity(BaseModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    raw_string: Optional[str] = None


class RecordBase(BaseModel):
    """Fields common to every extracted record."""

    model_config = ConfigDict(validate_assignment=True)

    extraction_method: ExtractionMethod
    coverage: float = Field(default=0.0, ge=0.0, le=1.0)
    source_url: Optional[str] = None
    # Extension fields passed through untouched
    meta: dict[str, Any] = Field(default_factory=dict)


class Product(RecordBase):
    external_key: Optional[str] = None
    title: Optional[str] = None
    subtitle: Optional[str] = None
    category: Optional[str] = None
    fuel_type: Optional[str] = None
    availability: Optional[str] = None
    price: Optional[Price] = None
    variants: Optional[list[Variant]] = None
    key_features: Optional[list[str]] = None
    cta_links: Optional[list[CtaLink]] = None
    disclaimer_text: Optional[str] = None
    primary_image_url: Optional[str] = None


class Offer(RecordBase):
    external_key: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    offer_type: Optional[str] = None
    applicable_models: Optional[list[str]] = None
    price: Optional[Price] = None
    saving_amount: Optional[float] = None
    validity: Optional[OfferValidity] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None
    hero_image_url: Optional[str] = None
    disclaimer_text: Optional[str] = None
    eligibility: Optional[str] = None


class BannerSlide(RecordBase):
    position: int = 0
    headline: Optional[str] = None
    sub_headline: Optional[str] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None
    image_url_desktop: Optional[str] = None
    image_url_mobile: Optional[str] = None
    image_sha256: Optional[str] = None
    disclaimer_text: Optional[str] = None


R = TypeVar("R", bound=RecordBase)


class ExtractionResult(BaseModel, Generic[R]):
    records: list[R] = Field(default_factory=list)
    confidence: float = 0.0
    method: Optional[ExtractionMethod] = None
    coverage: float = 0.0
    errors: list[str] = Field(default_factory=list)


class PageMetadata(BaseModel):
    title: str = ""
    description: str = ""
    image: str = ""
    json_ld_types: list[str] = Field(default_factory=list)


class PageExtractionResult(BaseModel):
    url: str
    products: ExtractionResult[Product] = Field(default_factory=ExtractionResult[Product])
    offers: ExtractionResult[Offer] = Field(default_factory=ExtractionResult[Offer])
    banner_slides: ExtractionResult[BannerSlide] = Field(default_factory=ExtractionResult[BannerSlide])
    discovered_urls: list[str] = Field(default_factory=list)
    metadata: PageMetadata = Field(default_factory=PageMetadata)
    llm_attempted: bool = False
    repair_attempted: bool = False
    # Record type -> container selector that replaced a configured one matching nothing
    repaired_selectors: dict[str, str] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)

    def results(self) -> dict[str, ExtractionResult]:
        """Per-type results keyed by record type name."""
        return {
            "products": self.products,
            "offers": self.offers,
            "banner_slides": self.banner_slides,
        }
