"""Tests for the shared render budget ledger."""
import asyncio
from datetime import datetime, timezone

from oem_monitor.crawl.budget import BudgetLedger
from oem_monitor.crawl.models import TrackedPage
from oem_monitor.crawl.scheduler import CostControl, CrawlScheduler

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_page(url: str, site_id: str = "example") -> TrackedPage:
    return TrackedPage(url=url, site_id=site_id)


def make_ledger(site_cap: int = 1000, global_cap: int = 10_000, **kwargs) -> BudgetLedger:
    scheduler = CrawlScheduler(
        cost_control=CostControl(monthly_render_cap_per_site=site_cap, global_monthly_render_cap=global_cap)
    )
    return BudgetLedger(scheduler, **kwargs)


def test_reserve_denied_at_cap():
    """A site at its cap gets no more renders."""
    ledger = make_ledger(site_cap=1000)
    ledger.seed({"example": 1000}, now=NOW)
    decision = asyncio.run(ledger.reserve(make_page("https://a.example/"), NOW))
    assert decision.allowed is False


def test_reserve_allowed_one_below_cap_then_denied():
    """The last slot is handed out exactly once."""
    ledger = make_ledger(site_cap=1000)
    ledger.seed({"example": 999}, now=NOW)

    first = asyncio.run(ledger.reserve(make_page("https://a.example/"), NOW))
    second = asyncio.run(ledger.reserve(make_page("https://b.example/"), NOW))
    assert first.allowed is True
    assert second.allowed is False
    assert ledger.site_count("example") == 1000


def test_concurrent_reservations_for_last_slot():
    """Two workers racing for the last slot cannot both win."""
    ledger = make_ledger(site_cap=1000)
    ledger.seed({"example": 999}, now=NOW)

    async def race():
        return await asyncio.gather(
            ledger.reserve(make_page("https://a.example/"), NOW),
            ledger.reserve(make_page("https://b.example/"), NOW),
        )

    decisions = asyncio.run(race())
    assert sum(d.allowed for d in decisions) == 1


def test_release_refunds_reservation():
    """A failed render gives its slot back."""
    ledger = make_ledger(site_cap=1)
    page = make_page("https://a.example/")

    async def reserve_release_reserve():
        first = await ledger.reserve(page, NOW)
        await ledger.release(page)
        return first, await ledger.reserve(page, NOW)

    first, second = asyncio.run(reserve_release_reserve())
    assert first.allowed is True
    assert second.allowed is True
    assert ledger.site_count("example") == 1


def test_same_page_not_rendered_twice_within_spacing():
    """A reservation counts as a render for the spacing rule."""
    ledger = make_ledger()
    page = make_page("https://a.example/")

    async def twice():
        return await ledger.reserve(page, NOW), await ledger.reserve(page, NOW)

    first, second = asyncio.run(twice())
    assert first.allowed is True
    assert second.allowed is False


def test_global_cap_spans_sites():
    """The global cap is shared by every site."""
    ledger = make_ledger(global_cap=2)

    async def three_sites():
        return [
            await ledger.reserve(make_page("https://a.example/", "a"), NOW),
            await ledger.reserve(make_page("https://b.example/", "b"), NOW),
            await ledger.reserve(make_page("https://c.example/", "c"), NOW),
        ]

    decisions = asyncio.run(three_sites())
    assert [d.allowed for d in decisions] == [True, True, False]


def test_count_provider_seeds_counts():
    """Month-to-date counts come from the provider on first use."""
    calls = []

    async def provider(site_id, since):
        calls.append((site_id, since))
        return 5 if site_id else 40

    ledger = make_ledger(site_cap=6, count_provider=provider)
    page_a = make_page("https://a.example/")
    page_b = make_page("https://b.example/")

    async def two():
        return await ledger.reserve(page_a, NOW), await ledger.reserve(page_b, NOW)

    first, second = asyncio.run(two())
    assert first.allowed is True
    assert second.allowed is False
    assert ledger.global_count == 41
    assert calls == [
        ("example", datetime(2026, 3, 1, tzinfo=timezone.utc)),
        (None, datetime(2026, 3, 1, tzinfo=timezone.utc)),
    ]


def test_failing_count_provider_fails_open():
    """An unreachable render log allows the render in degraded mode."""

    async def provider(site_id, since):
        raise ConnectionError("render log unavailable")

    ledger = make_ledger(count_provider=provider)
    decision = asyncio.run(ledger.reserve(make_page("https://a.example/"), NOW))
    assert decision.allowed is True
    assert decision.degraded is True


def test_month_rollover_resets_counts():
    """Counts restart at the beginning of a month."""
    ledger = make_ledger(site_cap=1)
    ledger.seed({"example": 1}, now=NOW)
    next_month = datetime(2026, 4, 1, 0, 5, tzinfo=timezone.utc)
    decision = asyncio.run(ledger.reserve(make_page("https://a.example/"), next_month))
    assert decision.allowed is True
    assert ledger.site_count("example") == 1
