"""Main job runner orchestrating the monitoring pipeline."""
import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from oem_monitor.config import SiteConfig, SiteRules, config
from oem_monitor.crawl.budget import BudgetLedger
from oem_monitor.crawl.models import BudgetDecision, TrackedPage
from oem_monitor.crawl.scheduler import CrawlScheduler, utc_now
from oem_monitor.errors import FetchError, RenderError, SnapshotCorrupt
from oem_monitor.fetch.render import RenderResult
from oem_monitor.jobs.metrics import Metrics
from oem_monitor.jobs.protocols import (
    ChangeSink,
    DiscoveryStore,
    Fetcher,
    LlmClient,
    PageStore,
    RenderLog,
    Renderer,
    SnapshotStore,
)
from oem_monitor.notify.change_detector import (
    ChangeDetector,
    entity_key,
    entity_type_of,
    snapshot_of,
)
from oem_monitor.notify.models import ChangeEvent, EntityType
from oem_monitor.parse import site_rules as rules_stage
from oem_monitor.parse.api_classifier import ApiClassifier
from oem_monitor.parse.engine import ExtractionEngine
from oem_monitor.parse.models import ApiCandidate, PageExtractionResult
from oem_monitor.parse.normalize import compute_content_hash

logger = logging.getLogger(__name__)

RESULT_ENTITY_TYPES = {
    "products": EntityType.PRODUCT,
    "offers": EntityType.OFFER,
    "banner_slides": EntityType.BANNER,
}


class PageOutcome(str, Enum):
    NOT_DUE = "not_due"
    UNCHANGED = "unchanged"
    PROCESSED = "processed"
    ERROR = "error"


class PageResult(BaseModel):
    """What happened to one page in one run."""

    url: str
    site_id: str
    outcome: PageOutcome
    page: TrackedPage
    content_hash: Optional[str] = None
    rendered: bool = False
    budget: Optional[BudgetDecision] = None
    events: list[ChangeEvent] = Field(default_factory=list)
    extraction: Optional[PageExtractionResult] = None
    error: Optional[str] = None


def snapshot_id(page_url: str, key: str) -> str:
    """Snapshots are scoped to the page the entity was seen on."""
    return f"{page_url}#{key}"


class CrawlRunner:
    """Runs the per-page pipeline over every due page with bounded concurrency."""

    def __init__(
        self,
        fetcher: Fetcher,
        renderer: Renderer,
        snapshots: SnapshotStore,
        pages: PageStore,
        sink: ChangeSink,
        scheduler: Optional[CrawlScheduler] = None,
        ledger: Optional[BudgetLedger] = None,
        sites: Optional[dict[str, SiteConfig]] = None,
        llm_client: Optional[LlmClient] = None,
        render_log: Optional[RenderLog] = None,
        discovery: Optional[DiscoveryStore] = None,
        concurrency: int = config.CONCURRENCY,
        fetch_timeout: float = config.FETCH_TIMEOUT,
        render_timeout: float = config.RENDER_TIMEOUT,
        llm_timeout: float = config.LLM_TIMEOUT,
    ):
        self.fetcher = fetcher
        self.renderer = renderer
        self.snapshots = snapshots
        self.pages = pages
        self.sink = sink
        self.sites = sites or {}
        self.scheduler = scheduler or CrawlScheduler(sites=self.sites)
        self.render_log = render_log
        self.discovery = discovery
        self.ledger = ledger or BudgetLedger(
            self.scheduler,
            count_provider=render_log.count_renders if render_log is not None else None,
        )
        self.llm_client = llm_client
        self.concurrency = max(1, concurrency)
        self.fetch_timeout = fetch_timeout
        self.render_timeout = render_timeout
        self.llm_timeout = llm_timeout

        self.run_id = str(uuid.uuid4())
        self.metrics = Metrics(0)
        self._detectors: dict[str, ChangeDetector] = {}
        self._classifiers: dict[str, ApiClassifier] = {}

    def _site(self, site_id: str) -> SiteConfig:
        return self.sites.get(site_id) or SiteConfig(site_id=site_id)

    def _detector(self, site: SiteConfig) -> ChangeDetector:
        if site.site_id not in self._detectors:
            self._detectors[site.site_id] = ChangeDetector(
                severity_overrides=site.severity_overrides,
                noise_fields=site.noise_fields,
                tracking_params=site.tracking_params or None,
                site_id=site.site_id,
            )
        return self._detectors[site.site_id]

    def _classifier(self, site: SiteConfig) -> ApiClassifier:
        if site.site_id not in self._classifiers:
            self._classifiers[site.site_id] = ApiClassifier(site.classifier)
        return self._classifiers[site.site_id]

    async def run(self, pages: Optional[Iterable[TrackedPage]] = None, now: Optional[datetime] = None) -> list[PageResult]:
        """Process every due page. One page's failure never aborts the others."""
        now = now or utc_now()
        if pages is None:
            pages = await self.pages.list_pages()
        due = self.scheduler.due_pages(pages, now)
        self.metrics = Metrics(len(due))
        logger.info(f"Run ID: {self.run_id} - {len(due)} pages due")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def process(page: TrackedPage) -> PageResult:
            async with semaphore:
                return await self.process_page(page, now)

        outcomes = await asyncio.gather(*(process(p) for p in due), return_exceptions=True)

        results = []
        for page, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                error = f"{type(outcome).__name__}: {outcome}"
                logger.error(f"Unexpected error processing {page.url}: {outcome}", exc_info=outcome)
                self.metrics.increment("unexpected_error")
                outcome = PageResult(
                    url=page.url,
                    site_id=page.site_id,
                    outcome=PageOutcome.ERROR,
                    page=await self._record_unexpected(page, error, now),
                    error=error,
                )
            results.append(outcome)

        self._final_report()
        return results

    def _final_report(self) -> None:
        summary = self.metrics.get_summary()
        logger.info("=" * 60)
        logger.info("FINAL REPORT")
        logger.info(f"Run ID: {self.run_id}")
        logger.info(f"Elapsed: {summary['elapsed_seconds']:.1f}s")
        logger.info(f"Processed: {summary['processed']}/{summary['total']}")
        logger.info(f"Unchanged: {summary['unchanged']}")
        logger.info(f"Rendered: {summary['rendered']}")
        logger.info(f"Budget denied: {summary['budget_denied']}")
        logger.info(f"Fetch errors: {summary['fetch_errors']}")
        logger.info(f"Render errors: {summary['render_errors']}")
        logger.info(f"LLM calls: {summary['llm_calls']}")
        logger.info(f"Selector repairs: {summary['selector_repairs']}")
        logger.info(f"Change events: {summary['events']}")
        for site_id, counts in summary["sites"].items():
            logger.info(
                f"  {site_id}: rendered={counts['rendered']} denied={counts['budget_denied']} "
                f"errors={counts['fetch_error'] + counts['render_error']} events={counts['events']}"
            )
        logger.info(f"Renders this month: {self.ledger.global_count}")
        logger.info("=" * 60)

    async def _fail(self, page: TrackedPage, error: str, kind: str, now: datetime, **extra) -> PageResult:
        self.metrics.increment(kind, site_id=page.site_id)
        self.metrics.increment("processed")
        page = self.scheduler.record_failure(page, error, now)
        await self.pages.save_page(page)
        logger.warning(f"{kind} for {page.url}: {error}")
        return PageResult(
            url=page.url, site_id=page.site_id, outcome=PageOutcome.ERROR, page=page, error=error, **extra
        )

    async def _record_unexpected(self, page: TrackedPage, error: str, now: datetime) -> TrackedPage:
        """Record an unexpected failure on the page so it is not retried before its next check."""
        failed = self.scheduler.record_failure(page, error, now)
        try:
            await self.pages.save_page(failed)
        except Exception as e:
            logger.error(f"Could not record failure for {page.url}: {e}")
        return failed

    async def _render(self, page: TrackedPage) -> RenderResult:
        try:
            return await asyncio.wait_for(self.renderer.render(page.url), timeout=self.render_timeout)
        except asyncio.TimeoutError as e:
            raise RenderError(page.url, f"Render timed out after {self.render_timeout}s") from e

    async def process_page(self, page: TrackedPage, now: Optional[datetime] = None) -> PageResult:
        """Check, maybe render, extract and diff one page."""
        now = now or utc_now()
        check = self.scheduler.should_check(page, now)
        if not check.due:
            return PageResult(url=page.url, site_id=page.site_id, outcome=PageOutcome.NOT_DUE, page=page)

        site = self._site(page.site_id)
        self.metrics.increment("checked")

        # Cheap check
        try:
            html = await asyncio.wait_for(self.fetcher.fetch_html(page.url), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            return await self._fail(page, f"Fetch timed out after {self.fetch_timeout}s", "fetch_error", now)
        except FetchError as e:
            return await self._fail(page, str(e), "fetch_error", now)

        content_hash = compute_content_hash(html, site.tracking_params or None)
        hash_changed = content_hash != page.last_content_hash

        # Render gate
        rendered: Optional[RenderResult] = None
        budget: Optional[BudgetDecision] = None
        render_skipped = False
        render_decision = self.scheduler.should_render(page, content_hash)
        if render_decision.render:
            budget = await self.ledger.reserve(page, now)
            if budget.allowed:
                try:
                    rendered = await self._render(page)
                except RenderError as e:
                    await self.ledger.release(page)
                    return await self._fail(page, str(e), "render_error", now, content_hash=content_hash, budget=budget)
                self.metrics.increment("rendered", site_id=page.site_id)
                if self.render_log is not None:
                    await self.render_log.log_render(page.site_id, page.url, now)
            else:
                render_skipped = True
                self.metrics.increment("budget_denied", site_id=page.site_id)
            logger.debug(f"Render decision for {page.url}: {render_decision.reason}")

        # Extraction and change detection
        extraction: Optional[PageExtractionResult] = None
        events: list[ChangeEvent] = []
        if hash_changed or rendered is not None:
            extraction = await self._extract(page, site, html, rendered, now)
            events = await self._detect_changes(page, site, extraction, full=rendered is not None)
        else:
            self.metrics.increment("unchanged")

        page = self.scheduler.after_crawl(
            page,
            content_changed=hash_changed,
            was_rendered=rendered is not None,
            now=now,
            content_hash=content_hash,
            rendered_hash=compute_content_hash(rendered.html, site.tracking_params or None) if rendered else None,
            render_skipped=render_skipped,
        )
        await self.pages.save_page(page)
        self.metrics.increment("processed")

        return PageResult(
            url=page.url,
            site_id=page.site_id,
            outcome=PageOutcome.PROCESSED if extraction is not None else PageOutcome.UNCHANGED,
            page=page,
            content_hash=content_hash,
            rendered=rendered is not None,
            budget=budget,
            events=events,
            extraction=extraction,
        )

    async def _extract(
        self,
        page: TrackedPage,
        site: SiteConfig,
        html: str,
        rendered: Optional[RenderResult],
        now: datetime,
    ) -> PageExtractionResult:
        engine = ExtractionEngine()
        rules = await self._site_rules(site)
        if rendered is None:
            # Budget denied the render: cheap HTML only, no LLM
            return engine.extract(html, (), rules, page.url)

        candidates = self._classifier(site).discover(rendered.exchanges)
        await self._remember_apis(page, candidates, now)
        result = await engine.extract_with_fallback(
            rendered.html,
            candidates,
            rules,
            page.url,
            llm_client=self.llm_client,
            timeout=self.llm_timeout,
            site_name=site.name or site.site_id,
            repair_selectors=True,
        )
        if result.repair_attempted:
            self.metrics.increment("llm_calls")
        if result.llm_attempted:
            self.metrics.increment("llm_calls")
        if result.repaired_selectors:
            self.metrics.increment("selector_repairs", len(result.repaired_selectors))
            await self._remember_repairs(site, result.repaired_selectors, now)
        return result

    async def _site_rules(self, site: SiteConfig) -> SiteRules:
        """Configured rules with remembered container repairs applied.

        A repair only applies while the configured selector is the one it replaced.
        """
        if self.discovery is None:
            return site.rules
        try:
            repairs = await self.discovery.get_repaired_selectors(site.site_id)
        except Exception as e:
            logger.warning(f"Could not load repaired selectors for {site.site_id}: {e}")
            return site.rules
        containers = {}
        for name, (configured, selector) in repairs.items():
            record_rules = getattr(site.rules, name, None)
            if record_rules is not None and record_rules.container == configured:
                containers[name] = selector
        return rules_stage.with_containers(site.rules, containers) if containers else site.rules

    async def _remember_apis(self, page: TrackedPage, candidates: list[ApiCandidate], now: datetime) -> None:
        if self.discovery is None or not candidates:
            return
        try:
            await self.discovery.save_discovered_apis(page.site_id, page.url, candidates, now)
        except Exception as e:
            logger.warning(f"Could not store discovered APIs for {page.url}: {e}")

    async def _remember_repairs(self, site: SiteConfig, repaired: dict[str, str], now: datetime) -> None:
        if self.discovery is None:
            return
        for name, selector in repaired.items():
            configured = getattr(site.rules, name).container
            try:
                await self.discovery.save_repaired_selector(site.site_id, name, configured, selector, now)
            except Exception as e:
                logger.warning(f"Could not store repaired {name} selector for {site.site_id}: {e}")

    async def _emit(self, event: ChangeEvent) -> None:
        try:
            await self.sink.emit(event)
            self.metrics.increment("events", site_id=event.site_id)
        except Exception as e:
            self.metrics.increment("emit_error")
            logger.error(f"Change sink failed for {event.entity_key}: {e}")

    async def _load_snapshot(self, entity_type: EntityType, entity_id: str) -> Optional[dict]:
        try:
            return await self.snapshots.load(entity_type, entity_id)
        except SnapshotCorrupt as e:
            logger.warning(f"{e}; treating {entity_id} as unseen")
            return None

    async def _detect_changes(
        self,
        page: TrackedPage,
        site: SiteConfig,
        extraction: PageExtractionResult,
        full: bool,
    ) -> list[ChangeEvent]:
        detector = self._detector(site)
        events: list[ChangeEvent] = []

        for name, typed in extraction.results().items():
            entity_type = RESULT_ENTITY_TYPES[name]
            seen: dict[str, dict] = {}
            for record in typed.records:
                snapshot = snapshot_of(record)
                key = snapshot_id(page.url, entity_key(record))
                if key in seen:
                    continue
                seen[key] = snapshot

                previous = await self._load_snapshot(entity_type_of(record), key)
                event = detector.detect(previous, snapshot, entity_id=key)
                if event is not None:
                    event.source_url = event.source_url or page.url
                    events.append(event)
                    await self._emit(event)
                if previous is None or previous.get("content_hash") != snapshot["content_hash"]:
                    await self.snapshots.save(entity_type, key, snapshot)

            # Removal needs a full extraction that found this record type at all
            if full and seen:
                prefix = snapshot_id(page.url, "")
                stored = await self.snapshots.list_keys(entity_type, prefix=prefix)
                current_keys = {s["entity_key"] for s in seen.values()}
                gone = {k[len(prefix):]: k for k in stored if k[len(prefix):] not in current_keys}
                previous = {key: await self._load_snapshot(entity_type, stored_id) for key, stored_id in gone.items()}
                for event in detector.detect_removed(entity_type, gone.keys(), current_keys, previous):
                    event.entity_id = gone[event.entity_key]
                    event.source_url = event.source_url or page.url
                    events.append(event)
                    await self._emit(event)
                    await self.snapshots.delete(entity_type, event.entity_id)

        if events:
            logger.info(f"{len(events)} change events for {page.url}")
        return events
