"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

from oem_monitor.config import SITES_FILE, Config, config, load_site_configs
from oem_monitor.crawl.models import PageCategory
from oem_monitor.crawl.scheduler import CrawlScheduler
from oem_monitor.fetch.client import FetchClient
from oem_monitor.fetch.llm import CompletionClient
from oem_monitor.fetch.render import RenderClient
from oem_monitor.jobs.runner import CrawlRunner
from oem_monitor.logging_conf import setup_logging
from oem_monitor.store.spool import SpoolChangeSink
from oem_monitor.store.state import StateDB
from oem_monitor.store.supabase_writer import SupabaseChangeSink

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="OEM website monitor")

    parser.add_argument(
        "--sites-file",
        type=Path,
        default=SITES_FILE,
        help=f"Site configuration JSON (default: {SITES_FILE})",
    )
    parser.add_argument(
        "--site",
        default=None,
        help="Only process pages of this site id",
    )

    # Page tracking
    parser.add_argument(
        "--track",
        nargs="+",
        metavar="URL",
        default=None,
        help="Start tracking these URLs (requires --site) and exit",
    )
    parser.add_argument(
        "--category",
        choices=[c.value for c in PageCategory],
        default=PageCategory.OTHER.value,
        help="Page category for --track (default: other)",
    )

    # Mode flags
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Write change events to the local spool only, never to Supabase",
    )
    parser.add_argument(
        "--flush-spool",
        action="store_true",
        help="Re-send spooled change events to Supabase and exit",
    )
    parser.add_argument(
        "--estimate",
        action="store_true",
        help="Log the estimated monthly render cost per site and exit",
    )

    # Performance arguments
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Concurrency level (default: {config.CONCURRENCY})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {config.LOG_LEVEL})",
    )

    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    sites = load_site_configs(args.sites_file)
    state = StateDB()
    await state.initialize()

    if args.track:
        if not args.site:
            logger.error("--track requires --site")
            return 1
        for url in args.track:
            await state.track(url, args.site, PageCategory(args.category))
        logger.info(f"Tracking {len(args.track)} new URLs for site {args.site}")
        return 0

    scheduler = CrawlScheduler(sites=sites)

    if args.estimate:
        pages = await state.list_pages(args.site)
        for site_id in sorted({p.site_id for p in pages}):
            estimate = scheduler.estimate_monthly_cost(site_id, [p for p in pages if p.site_id == site_id])
            logger.info(
                f"{site_id}: {estimate.pages_monitored} pages, "
                f"{estimate.cheap_checks_per_month} cheap checks, "
                f"~{estimate.estimated_renders_per_month} renders, "
                f"~${estimate.estimated_cost_usd}/month"
            )
        return 0

    spool = SpoolChangeSink()
    if args.flush_spool:
        sent = await SupabaseChangeSink(spool=spool).flush_spool()
        logger.info(f"Flushed {sent} spooled change events")
        return 0

    sink = spool if args.dry_run else SupabaseChangeSink(spool=spool)
    llm_client = CompletionClient() if config.LLM_GATEWAY_URL else None

    async with FetchClient() as fetcher, RenderClient() as renderer:
        runner = CrawlRunner(
            fetcher=fetcher,
            renderer=renderer,
            snapshots=state,
            pages=state,
            sink=sink,
            scheduler=scheduler,
            sites=sites,
            llm_client=llm_client,
            render_log=state,
            discovery=state,
            concurrency=config.CONCURRENCY,
        )
        try:
            await runner.run(await state.list_pages(args.site))
        finally:
            if llm_client is not None:
                await llm_client.aclose()

    logger.info(f"State: {await state.get_stats()}")
    return 0


def main(argv=None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.concurrency:
        config.CONCURRENCY = args.concurrency

    needs_run = not (args.track or args.estimate)
    try:
        Config.validate(
            require_render=needs_run and not args.flush_spool,
            require_supabase=args.flush_spool or (needs_run and not args.dry_run),
        )
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.dry_run:
        logger.info("DRY-RUN mode: change events go to the local spool only")

    logger.info("=" * 60)
    logger.info("OEM Monitor Starting")
    logger.info(f"Site: {args.site or 'all'}")
    logger.info(f"Concurrency: {config.CONCURRENCY}")
    logger.info(f"Rate per domain: {config.RATE_PER_DOMAIN}")
    logger.info(f"Render caps: {config.MONTHLY_RENDER_CAP_PER_SITE}/site, {config.GLOBAL_MONTHLY_RENDER_CAP} global")
    logger.info("=" * 60)

    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
