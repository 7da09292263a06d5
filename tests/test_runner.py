"""End-to-end tests for the crawl runner with in-memory collaborators."""
import asyncio
from datetime import datetime, timedelta, timezone

import orjson

from oem_monitor.config import RecordRules, SiteConfig, SiteRules
from oem_monitor.crawl.models import PageStatus, TrackedPage
from oem_monitor.crawl.scheduler import CostControl, CrawlScheduler
from oem_monitor.errors import FetchError, RenderError
from oem_monitor.fetch.render import RenderResult
from oem_monitor.jobs.runner import CrawlRunner, PageOutcome
from oem_monitor.notify.models import EntityType, EventType, Severity
from oem_monitor.parse.models import ApiDataType, ExtractionMethod, NetworkExchange

BASE = "https://www.example-motors.com.au"
MODELS_URL = f"{BASE}/models"
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

SITE = SiteConfig(
    site_id="example",
    name="Example Motors",
    rules=SiteRules(
        base_url=BASE,
        products=RecordRules(container=".model-card", fields={"title": ".name", "price": ".price"}),
    ),
)


def models_html(price: str = "$41,000", models=("Ranger", "Everest")) -> str:
    cards = "".join(
        f'<div class="model-card"><h3 class="name">{m}</h3><span class="price">{price}</span></div>' for m in models
    )
    return f"<html><body>{cards}</body></html>"


class MemoryStore:
    """Pages, snapshots and render log kept in dicts."""

    def __init__(self):
        self.pages = {}
        self.snapshots = {}
        self.renders = []

    async def save_page(self, page):
        self.pages[page.url] = page

    async def list_pages(self, site_id=None):
        return [p for p in self.pages.values() if site_id is None or p.site_id == site_id]

    async def load(self, entity_type, entity_id):
        return self.snapshots.get((entity_type, entity_id))

    async def save(self, entity_type, entity_id, snapshot):
        self.snapshots[(entity_type, entity_id)] = snapshot

    async def delete(self, entity_type, entity_id):
        self.snapshots.pop((entity_type, entity_id), None)

    async def list_keys(self, entity_type, prefix=""):
        return sorted(k for t, k in self.snapshots if t == entity_type and k.startswith(prefix))

    async def log_render(self, site_id, url, rendered_at):
        self.renders.append((site_id, url, rendered_at))

    async def count_renders(self, site_id, since):
        return sum(1 for s, _, at in self.renders if (site_id is None or s == site_id) and at >= since)


class FakeFetcher:
    def __init__(self, pages: dict):
        self.pages = pages
        self.calls = []

    async def fetch_html(self, url):
        self.calls.append(url)
        value = self.pages[url]
        if isinstance(value, Exception):
            raise value
        return value


class FakeRenderer:
    def __init__(self, fetcher: FakeFetcher, exchanges=(), error: Exception = None, delay: float = 0):
        self.fetcher = fetcher
        self.exchanges = list(exchanges)
        self.error = error
        self.delay = delay
        self.calls = []

    async def render(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return RenderResult(html=self.fetcher.pages[url], exchanges=self.exchanges, final_url=url)


class ListSink:
    def __init__(self, error: Exception = None):
        self.events = []
        self.error = error

    async def emit(self, event):
        if self.error:
            raise self.error
        self.events.append(event)


class FakeLlm:
    def __init__(self, response: str):
        self.response = response
        self.prompts = []

    async def complete(self, prompt):
        self.prompts.append(prompt)
        return self.response


def make_runner(fetcher, renderer=None, sink=None, store=None, scheduler=None, **kwargs) -> CrawlRunner:
    store = store or MemoryStore()
    return CrawlRunner(
        fetcher=fetcher,
        renderer=renderer or FakeRenderer(fetcher),
        snapshots=store,
        pages=store,
        sink=sink or ListSink(),
        scheduler=scheduler or CrawlScheduler(sites={"example": SITE}),
        sites={"example": SITE},
        render_log=store,
        **kwargs,
    )


def new_page(url: str = MODELS_URL) -> TrackedPage:
    return TrackedPage(url=url, site_id="example")


def test_first_crawl_renders_and_reports_new_products():
    """A never-seen page is rendered and every product is new."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    store = MemoryStore()
    sink = ListSink()
    runner = make_runner(fetcher, sink=sink, store=store)

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert result.outcome == PageOutcome.PROCESSED
    assert result.rendered is True
    assert result.budget.allowed is True
    assert [e.event_type for e in result.events] == [EventType.CREATED, EventType.CREATED]
    assert [e.entity_key for e in sink.events] == ["title:ranger", "title:everest"]
    assert all(e.severity == Severity.CRITICAL for e in sink.events)
    assert all(e.site_id == "example" for e in sink.events)

    page = store.pages[MODELS_URL]
    assert page.last_rendered_at == NOW
    assert page.last_checked_at == NOW
    assert page.last_content_hash == result.content_hash
    assert (EntityType.PRODUCT, f"{MODELS_URL}#title:ranger") in store.snapshots
    assert store.renders == [("example", MODELS_URL, NOW)]


def test_unchanged_page_skips_render_and_extraction():
    """Same normalized content: no render, no events, the no-change counter grows."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    renderer = FakeRenderer(fetcher)
    sink = ListSink()
    runner = make_runner(fetcher, renderer=renderer, sink=sink)

    first = asyncio.run(runner.process_page(new_page(), NOW))
    # class churn only
    fetcher.pages[MODELS_URL] = models_html().replace('class="price"', 'class="price price--v2"')
    second = asyncio.run(runner.process_page(first.page, NOW + timedelta(hours=13)))

    assert second.outcome == PageOutcome.UNCHANGED
    assert second.rendered is False
    assert second.extraction is None
    assert second.events == []
    assert second.page.consecutive_no_change_count == 1
    assert len(renderer.calls) == 1
    assert len(sink.events) == 2


def test_not_due_page_is_left_alone():
    """A page checked moments ago is not fetched again."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    runner = make_runner(fetcher)
    first = asyncio.run(runner.process_page(new_page(), NOW))
    again = asyncio.run(runner.process_page(first.page, NOW + timedelta(minutes=5)))
    assert again.outcome == PageOutcome.NOT_DUE
    assert fetcher.calls == [MODELS_URL]


def test_price_change_emits_price_changed():
    """A drop from 41000 to 39000 is reported as a high price change."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    sink = ListSink()
    runner = make_runner(fetcher, sink=sink)

    first = asyncio.run(runner.process_page(new_page(), NOW))
    fetcher.pages[MODELS_URL] = models_html(price="$39,000")
    second = asyncio.run(runner.process_page(first.page, NOW + timedelta(hours=13)))

    assert second.rendered is True
    assert [e.event_type for e in second.events] == [EventType.PRICE_CHANGED, EventType.PRICE_CHANGED]
    ranger = second.events[0]
    assert ranger.severity == Severity.HIGH
    assert ranger.entity_id == f"{MODELS_URL}#title:ranger"
    assert ranger.field_diffs["price_amount"].old == 41000
    assert ranger.field_diffs["price_amount"].new == 39000
    assert second.page.consecutive_no_change_count == 0


def test_removed_product_after_full_render():
    """A product missing from a rendered page is removed and its snapshot dropped."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    store = MemoryStore()
    runner = make_runner(fetcher, store=store)

    first = asyncio.run(runner.process_page(new_page(), NOW))
    fetcher.pages[MODELS_URL] = models_html(models=("Ranger",))
    second = asyncio.run(runner.process_page(first.page, NOW + timedelta(hours=13)))

    assert [e.event_type for e in second.events] == [EventType.REMOVED]
    removed = second.events[0]
    assert removed.entity_key == "title:everest"
    assert removed.entity_id == f"{MODELS_URL}#title:everest"
    assert removed.severity == Severity.CRITICAL
    assert "Everest" in removed.summary
    assert (EntityType.PRODUCT, f"{MODELS_URL}#title:everest") not in store.snapshots


def test_fetch_error_recorded_on_page():
    """A failed cheap check marks the page in error and keeps the counter."""
    fetcher = FakeFetcher({MODELS_URL: FetchError(MODELS_URL, "HTTP 503", 503)})
    store = MemoryStore()
    runner = make_runner(fetcher, store=store)
    page = new_page().model_copy(update={"consecutive_no_change_count": 4})

    result = asyncio.run(runner.process_page(page, NOW))

    assert result.outcome == PageOutcome.ERROR
    assert "HTTP 503" in result.error
    assert store.pages[MODELS_URL].status == PageStatus.ERROR
    assert store.pages[MODELS_URL].consecutive_no_change_count == 4
    assert runner.metrics.get_summary()["fetch_errors"] == 1


def test_render_failure_releases_budget():
    """A failed render is an error and does not consume the render budget."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    renderer = FakeRenderer(fetcher, error=RenderError(MODELS_URL, "Render service returned HTTP 500"))
    store = MemoryStore()
    runner = make_runner(fetcher, renderer=renderer, store=store)

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert result.outcome == PageOutcome.ERROR
    assert runner.ledger.site_count("example") == 0
    assert store.renders == []
    page = store.pages[MODELS_URL]
    assert page.status == PageStatus.ERROR
    assert page.last_rendered_at is None
    assert page.last_content_hash is None


def test_render_timeout_is_render_error():
    """A render that overruns its timeout is handled like a failed render."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    renderer = FakeRenderer(fetcher, delay=1)
    runner = make_runner(fetcher, renderer=renderer, render_timeout=0.01)

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert result.outcome == PageOutcome.ERROR
    assert "timed out" in result.error
    assert runner.ledger.site_count("example") == 0


def test_budget_denied_extracts_cheap_html_without_llm():
    """With no budget left the cheap HTML is extracted and the render retried later."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    renderer = FakeRenderer(fetcher)
    llm = FakeLlm('{"products": []}')
    scheduler = CrawlScheduler(cost_control=CostControl(monthly_render_cap_per_site=0), sites={"example": SITE})
    runner = make_runner(fetcher, renderer=renderer, scheduler=scheduler, llm_client=llm)

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert result.budget.allowed is False
    assert result.rendered is False
    assert renderer.calls == []
    assert llm.prompts == []
    assert result.outcome == PageOutcome.PROCESSED
    assert len(result.events) == 2
    assert result.page.last_content_hash is None
    assert runner.scheduler.should_render(result.page, result.content_hash).render is True
    assert runner.metrics.get_summary()["budget_denied"] == 1


def test_llm_fallback_after_render():
    """Under-covered rendered pages go to the LLM once."""
    fetcher = FakeFetcher({MODELS_URL: models_html(models=("Puma",))})
    llm = FakeLlm(orjson.dumps({
        "products": [{
            "title": "Puma", "category": "SUV", "price": 34990, "availability": "In stock",
            "fuel_type": "Petrol", "variants": ["ST-Line"], "key_features": ["Sync 4"],
            "primary_image_url": "/img/puma.jpg",
        }],
    }).decode())
    runner = make_runner(fetcher, llm_client=llm)

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert len(llm.prompts) == 1
    assert result.extraction.llm_attempted is True
    assert result.extraction.products.method == ExtractionMethod.LLM_FALLBACK
    assert result.events[0].entity_key == "title:puma"
    assert runner.metrics.get_summary()["llm_calls"] == 1


def test_api_exchanges_feed_extraction():
    """Captured data APIs supersede the HTML products."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    exchanges = [
        NetworkExchange(
            url=f"{BASE}/api/v1/vehicles",
            status_code=200,
            content_type="application/json",
            body_text='[{"id": "RA-01", "name": "Ranger", "price": 40500, "image": "/img/ranger.png"}]',
        ),
        NetworkExchange(url="https://www.google-analytics.com/g/collect", status_code=204),
    ]
    runner = make_runner(fetcher, renderer=FakeRenderer(fetcher, exchanges=exchanges))

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert [e.entity_key for e in result.events] == ["id:RA-01"]
    assert result.extraction.products.method == ExtractionMethod.API


def test_sink_failure_does_not_fail_page():
    """Emit errors are counted; the page is still processed."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    runner = make_runner(fetcher, sink=ListSink(error=ConnectionError("sink down")))

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert result.outcome == PageOutcome.PROCESSED
    assert runner.metrics.get_summary()["emit_errors"] == 2


def test_run_isolates_page_failures():
    """One page blowing up never aborts the others."""
    offers_url = f"{BASE}/offers"
    fetcher = FakeFetcher({MODELS_URL: models_html(), offers_url: RuntimeError("boom")})
    store = MemoryStore()
    runner = make_runner(fetcher, store=store, concurrency=2)
    fresh = TrackedPage(url=f"{BASE}/news", site_id="example", last_checked_at=NOW)

    results = asyncio.run(runner.run([new_page(), new_page(offers_url), fresh], NOW))

    by_url = {r.url: r for r in results}
    assert set(by_url) == {MODELS_URL, offers_url}
    assert by_url[MODELS_URL].outcome == PageOutcome.PROCESSED
    assert by_url[offers_url].outcome == PageOutcome.ERROR
    assert by_url[offers_url].error == "RuntimeError: boom"
    summary = runner.metrics.get_summary()
    assert summary["total"] == 2
    assert summary["events"] == 2
    assert summary["sites"]["example"]["events"] == 2
    assert summary["unexpected_errors"] == 1


def test_run_reads_pages_from_store():
    """Without an explicit page list every stored page is considered."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    store = MemoryStore()
    asyncio.run(store.save_page(new_page()))
    runner = make_runner(fetcher, store=store)

    results = asyncio.run(runner.run(now=NOW))

    assert [r.url for r in results] == [MODELS_URL]
    assert store.pages[MODELS_URL].last_checked_at == NOW


def test_malformed_exchange_url_does_not_fail_page():
    """A captured request with a broken URL is ignored; the page is processed once."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    exchanges = [
        NetworkExchange(
            url="https://[tracker/collect",
            status_code=200,
            content_type="application/json",
            body_text='{"items": []}',
        )
    ]
    renderer = FakeRenderer(fetcher, exchanges=exchanges)
    store = MemoryStore()
    runner = make_runner(fetcher, renderer=renderer, store=store)

    [first] = asyncio.run(runner.run([new_page()], NOW))
    assert first.outcome == PageOutcome.PROCESSED
    assert len(first.events) == 2
    assert store.pages[MODELS_URL].last_checked_at == NOW

    [second] = asyncio.run(runner.run(None, NOW + timedelta(hours=13)))
    assert second.outcome == PageOutcome.UNCHANGED
    assert len(renderer.calls) == 1
    assert len(store.renders) == 1


def test_unexpected_error_after_render_is_recorded():
    """A crash past the render marks the page as failed and checked."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    renderer = FakeRenderer(fetcher)
    store = MemoryStore()
    runner = make_runner(fetcher, renderer=renderer, store=store)

    async def broken_extract(*args, **kwargs):
        raise RuntimeError("extractor bug")

    runner._extract = broken_extract
    [result] = asyncio.run(runner.run([new_page()], NOW))

    assert result.outcome == PageOutcome.ERROR
    assert result.error == "RuntimeError: extractor bug"
    saved = store.pages[MODELS_URL]
    assert saved.status == PageStatus.ERROR
    assert saved.last_checked_at == NOW
    assert saved.error_message == "RuntimeError: extractor bug"
    assert len(store.renders) == 1

    # Not due again until its interval passes, so no second render
    assert asyncio.run(runner.run(None, NOW + timedelta(minutes=5))) == []
    assert len(renderer.calls) == 1


class FailingSaveStore(MemoryStore):
    async def save_page(self, page):
        raise ConnectionError("state store down")


def test_unexpected_error_survives_store_failure():
    """Recording the failure never raises out of the batch."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    runner = make_runner(fetcher, store=FailingSaveStore())

    async def broken_extract(*args, **kwargs):
        raise RuntimeError("extractor bug")

    runner._extract = broken_extract
    [result] = asyncio.run(runner.run([new_page()], NOW))
    assert result.outcome == PageOutcome.ERROR
    assert result.page.status == PageStatus.ERROR
    assert runner.metrics.get_summary()["unexpected_errors"] == 1


class DiscoveryMemoryStore(MemoryStore):
    """MemoryStore that also remembers discovered APIs and repaired selectors."""

    def __init__(self):
        super().__init__()
        self.apis = {}
        self.repairs = {}

    async def save_discovered_apis(self, site_id, page_url, candidates, seen_at):
        for candidate in candidates:
            self.apis[(site_id, candidate.url)] = (page_url, candidate.data_type, seen_at)

    async def save_repaired_selector(self, site_id, record_type, configured_selector, selector, repaired_at):
        self.repairs[(site_id, record_type)] = (configured_selector, selector)

    async def get_repaired_selectors(self, site_id):
        return {name: value for (s, name), value in self.repairs.items() if s == site_id}


def tiles_html() -> str:
    tiles = "".join(
        f'<div class="vehicle-tile"><h3 class="name">{m}</h3><span class="price">$41,000</span></div>'
        for m in ("Ranger", "Everest")
    )
    return f"<html><body>{tiles}</body></html>"


def test_discovered_apis_are_remembered():
    """Data APIs found during a render land in the discovery store, trackers do not."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    exchanges = [
        NetworkExchange(
            url=f"{BASE}/api/v1/vehicles",
            status_code=200,
            content_type="application/json",
            body_text='[{"id": "RA-01", "name": "Ranger", "price": 40500}]',
        ),
        NetworkExchange(url="https://www.google-analytics.com/g/collect", status_code=204),
    ]
    store = DiscoveryMemoryStore()
    runner = make_runner(fetcher, renderer=FakeRenderer(fetcher, exchanges=exchanges), store=store, discovery=store)

    asyncio.run(runner.process_page(new_page(), NOW))

    assert list(store.apis) == [("example", f"{BASE}/api/v1/vehicles")]
    page_url, data_type, seen_at = store.apis[("example", f"{BASE}/api/v1/vehicles")]
    assert page_url == MODELS_URL
    assert data_type == ApiDataType.PRODUCTS
    assert seen_at == NOW


def test_repaired_container_is_remembered():
    """A repaired container is stored and reused on the next run without asking again."""
    fetcher = FakeFetcher({MODELS_URL: tiles_html()})
    store = DiscoveryMemoryStore()
    llm = FakeLlm('{"selector": ".vehicle-tile"}')
    runner = make_runner(fetcher, store=store, discovery=store, llm_client=llm)

    first = asyncio.run(runner.process_page(new_page(), NOW))

    assert "Broken selector: .model-card" in llm.prompts[0]
    assert store.repairs == {("example", "products"): (".model-card", ".vehicle-tile")}
    assert [e.entity_key for e in first.events] == ["title:ranger", "title:everest"]
    assert runner.metrics.get_summary()["selector_repairs"] == 1

    later = make_runner(fetcher, store=store, discovery=store, llm_client=FakeLlm("{}"))
    second = asyncio.run(later.process_page(new_page(), NOW + timedelta(days=1)))

    assert not any("Broken selector" in p for p in later.llm_client.prompts)
    assert [p.title for p in second.extraction.products.records] == ["Ranger", "Everest"]
    assert second.extraction.repaired_selectors == {}


def test_stale_repair_is_ignored_after_config_change():
    """A stored repair only applies while the configured selector is the one it replaced."""
    fetcher = FakeFetcher({MODELS_URL: models_html()})
    store = DiscoveryMemoryStore()
    store.repairs[("example", "products")] = (".old-card", ".vehicle-tile")
    runner = make_runner(fetcher, store=store, discovery=store)

    result = asyncio.run(runner.process_page(new_page(), NOW))

    assert [p.title for p in result.extraction.products.records] == ["Ranger", "Everest"]
