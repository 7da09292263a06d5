"""Extraction cascade: structured metadata, page metadata, site rules, embedded JSON, LLM."""
import asyncio
import logging
from typing import Any, Callable, Iterable, Optional, Protocol

from selectolax.lexbor import LexborHTMLParser

from oem_monitor.config import SiteRules, config
from oem_monitor.errors import LlmFallbackError
from oem_monitor.parse import llm_fallback, menu_walk, site_rules as rules_stage, structured
from oem_monitor.parse.coverage import FALLBACK_THRESHOLD, score_records
from oem_monitor.parse.models import (
    ApiCandidate,
    ApiDataType,
    BannerSlide,
    ExtractionMethod,
    ExtractionResult,
    Offer,
    PageExtractionResult,
    PageMetadata,
    Product,
    RecordBase,
)
from oem_monitor.parse.values import title_key

logger = logging.getLogger(__name__)

PRODUCT_API_TYPES = {ApiDataType.PRODUCTS, ApiDataType.INVENTORY, ApiDataType.PRICING, ApiDataType.OTHER}
OFFER_API_TYPES = {ApiDataType.OFFERS}


class LlmClient(Protocol):
    async def complete(self, prompt: str) -> str: ...


def record_key(record: RecordBase) -> str:
    """Identity used to merge records across stages."""
    if isinstance(record, BannerSlide):
        return title_key(record.headline) or (record.image_url_desktop or "") or f"#{record.position}"
    return title_key(getattr(record, "title", None))


def merge_records(existing: list, incoming: Iterable[RecordBase]) -> list:
    """Fill null fields of matching records, append records with new keys.

    Non-null fields of an existing record are never overwritten, so the stage
    that found a record first keeps its values and its extraction method.
    """
    by_key = {record_key(r): r for r in existing}
    for record in incoming:
        key = record_key(record)
        current = by_key.get(key)
        if current is None:
            existing.append(record)
            by_key[key] = record
            continue
        for name in type(current).model_fields:
            if name in ("extraction_method", "coverage", "meta", "position"):
                continue
            if getattr(current, name) is None and getattr(record, name) is not None:
                setattr(current, name, getattr(record, name))
        for meta_key, value in record.meta.items():
            current.meta.setdefault(meta_key, value)
    return existing


RECORD_TYPES: dict[str, type] = {"products": Product, "offers": Offer, "banner_slides": BannerSlide}


def _result(records: list, record_type: type) -> ExtractionResult:
    coverage = score_records(records)
    return ExtractionResult[record_type](
        records=records,
        confidence=coverage,
        method=records[0].extraction_method if records else None,
        coverage=coverage,
    )


class ExtractionEngine:
    """Runs the deterministic cascade and, when asked, the LLM fallback."""

    def __init__(self, currency: Optional[str] = None):
        self.currency = currency

    def _stage(self, name: str, fn: Callable[[], Any], errors: list[str], default: Any) -> Any:
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Extraction stage {name} failed: {e}")
            errors.append(f"{name}: {e}")
            return default

    def extract(
        self,
        content: str,
        api_candidates: Iterable[ApiCandidate] = (),
        site_rules: Optional[SiteRules] = None,
        url: str = "",
    ) -> PageExtractionResult:
        """Deterministic extraction of one page (no network, no LLM)."""
        rules = site_rules or SiteRules()
        base_url = rules.base_url or url
        currency = self.currency or rules.currency
        errors: list[str] = []

        parser = LexborHTMLParser(content or "")
        products: list[Product] = []
        offers: list[Offer] = []
        slides: list[BannerSlide] = []

        # 1. JSON-LD
        schemas = self._stage("json-ld", lambda: structured.parse_json_ld(parser), errors, [])
        merge_records(products, self._stage(
            "json-ld products",
            lambda: structured.products_from_json_ld(schemas, base_url, currency),
            errors,
            [],
        ))
        merge_records(offers, self._stage(
            "json-ld offers",
            lambda: structured.offers_from_json_ld(schemas, base_url, currency),
            errors,
            [],
        ))

        # 2. OpenGraph / title, gap fill only
        metadata = self._stage(
            "page metadata", lambda: structured.page_metadata(parser, schemas), errors, PageMetadata()
        )
        self._fill_from_metadata(products, metadata)

        # 3. Site rules
        merge_records(products, self._stage(
            "site-rules products", lambda: rules_stage.extract_products(parser, rules), errors, []
        ))
        merge_records(offers, self._stage(
            "site-rules offers", lambda: rules_stage.extract_offers(parser, rules), errors, []
        ))
        merge_records(slides, self._stage(
            "site-rules banners", lambda: rules_stage.extract_banner_slides(parser, rules), errors, []
        ))
        discovered = self._stage(
            "link discovery", lambda: rules_stage.discover_links(parser, rules, url), errors, []
        )

        # 4. Embedded JSON data islands
        merge_records(products, self._stage(
            "embedded json", lambda: self.extract_embedded(parser, base_url, currency), errors, []
        ))

        # API payloads replace the HTML-sourced set when they cover anything
        api_products, api_offers = self._stage(
            "api", lambda: self.extract_from_api(api_candidates, base_url, currency), errors, ([], [])
        )
        if score_records(api_products) > 0:
            products = api_products
        if score_records(api_offers) > 0:
            offers = api_offers

        for record in [*products, *offers, *slides]:
            if record.source_url is None:
                record.source_url = url or None

        result = PageExtractionResult(
            url=url,
            products=_result(products, Product),
            offers=_result(offers, Offer),
            banner_slides=_result(slides, BannerSlide),
            discovered_urls=discovered,
            metadata=metadata,
            errors=errors,
        )
        if not (products or offers or slides):
            logger.debug(f"No records extracted from {url}")
        return result

    def _fill_from_metadata(self, products: list[Product], metadata: PageMetadata) -> None:
        # A single product on the page is the page's subject
        if len(products) != 1:
            return
        product = products[0]
        if product.primary_image_url is None and metadata.image:
            product.primary_image_url = metadata.image
        if product.subtitle is None and metadata.description:
            product.subtitle = metadata.description

    def extract_embedded(
        self, parser: LexborHTMLParser, base_url: str = "", currency: Optional[str] = None
    ) -> list[Product]:
        """Products found by the structural walk over JSON data islands."""
        products: list[Product] = []
        for island in structured.embedded_json(parser):
            merge_records(products, [
                menu_walk.to_product(item, ExtractionMethod.EMBEDDED_JSON, base_url, currency)
                for item in menu_walk.walk(island)
            ])
        return products

    def extract_from_api(
        self,
        candidates: Iterable[ApiCandidate],
        base_url: str = "",
        currency: Optional[str] = None,
    ) -> tuple[list[Product], list[Offer]]:
        """Walk every candidate payload and merge the results across candidates."""
        products: list[Product] = []
        offers: list[Offer] = []
        for candidate in candidates:
            if candidate.payload is None:
                continue
            items = menu_walk.walk(candidate.payload)
            if not items:
                continue
            if candidate.data_type in OFFER_API_TYPES:
                merge_records(offers, [
                    menu_walk.to_offer(item, ExtractionMethod.API, base_url, currency, candidate.url)
                    for item in items
                ])
            elif candidate.data_type in PRODUCT_API_TYPES:
                merge_records(products, [
                    menu_walk.to_product(item, ExtractionMethod.API, base_url, currency, candidate.url)
                    for item in items
                ])
        return products, offers

    @staticmethod
    def needs_llm_fallback(result: PageExtractionResult) -> bool:
        """True when some record type is under-covered and did not come from the LLM."""
        for typed in result.results().values():
            if typed.coverage < FALLBACK_THRESHOLD and typed.method != ExtractionMethod.LLM_FALLBACK:
                return True
        return False

    async def llm_extract(
        self,
        content: str,
        url: str,
        llm_client: LlmClient,
        timeout: float,
        site_rules: Optional[SiteRules] = None,
        site_name: str = "",
    ) -> dict[str, list]:
        """Ask the LLM collaborator for records. Raises LlmFallbackError."""
        rules = site_rules or SiteRules()
        prompt = llm_fallback.build_prompt(content, url, site_name)
        try:
            response = await asyncio.wait_for(llm_client.complete(prompt), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise LlmFallbackError(f"LLM completion timed out after {timeout}s") from e
        except LlmFallbackError:
            raise
        except Exception as e:
            raise LlmFallbackError(f"LLM completion failed: {e}") from e
        parsed = llm_fallback.parse_response(response)
        return llm_fallback.to_records(parsed, rules.base_url or url, self.currency or rules.currency)

    async def extract_with_fallback(
        self,
        content: str,
        api_candidates: Iterable[ApiCandidate] = (),
        site_rules: Optional[SiteRules] = None,
        url: str = "",
        llm_client: Optional[LlmClient] = None,
        timeout: float = config.LLM_TIMEOUT,
        site_name: str = "",
        repair_selectors: bool = False,
    ) -> PageExtractionResult:
        """Deterministic cascade, then the LLM for record types still under-covered.

        With ``repair_selectors`` set, configured containers that match nothing
        are first repaired by the LLM and the cascade runs with the new ones.
        """
        repaired: dict[str, str] = {}
        names: list[str] = []
        if repair_selectors and llm_client is not None and site_rules is not None:
            parser = LexborHTMLParser(content or "")
            names = rules_stage.empty_containers(parser, site_rules)
            if names:
                repaired = await rules_stage.repair_containers(
                    parser, content or "", site_rules, names, url, llm_client, timeout, site_name
                )
            if repaired:
                site_rules = rules_stage.with_containers(site_rules, repaired)

        result = self.extract(content, api_candidates, site_rules, url)
        result.repair_attempted = bool(names)
        result.repaired_selectors = repaired
        if llm_client is None or not self.needs_llm_fallback(result):
            return result

        result.llm_attempted = True
        try:
            llm_records = await self.llm_extract(content, url, llm_client, timeout, site_rules, site_name)
        except LlmFallbackError as e:
            logger.warning(f"LLM fallback failed for {url}: {e}")
            result.errors.append(f"llm-fallback: {e}")
            return result

        self.adopt_llm_records(result, llm_records, url)
        return result

    def adopt_llm_records(self, result: PageExtractionResult, llm_records: dict[str, list], url: str = "") -> None:
        """Replace a record type with LLM output only when that raises its coverage."""
        for name, typed in result.results().items():
            if typed.coverage >= FALLBACK_THRESHOLD or typed.method == ExtractionMethod.LLM_FALLBACK:
                continue
            candidates = llm_records.get(name, [])
            if not candidates:
                continue
            for record in candidates:
                record.source_url = record.source_url or url or None
            llm_result = _result(candidates, RECORD_TYPES[name])
            if llm_result.coverage > typed.coverage:
                logger.info(
                    f"Adopted LLM {name} for {url}: coverage {typed.coverage:.2f} -> {llm_result.coverage:.2f}"
                )
                setattr(result, name, llm_result)
