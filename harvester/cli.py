# harvester/cli.py
import argparse
import asyncio
import logging

from .batch import BatchOrchestrator
from .config import get_settings
from .crawler import CatalogCrawler
from .db import CatalogStore

logger = logging.getLogger("harvester.cli")


def build_parser():
    parser = argparse.ArgumentParser(prog="harvester", description="Bookstore catalog harvester")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log fetch attempts too")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("categories", help="Discover categories on the browse page")

    def with_common(p):
        p.add_argument("--threads", type=int, help="Concurrent categories")
        p.add_argument(
            "--category-id",
            action="append",
            dest="category_ids",
            help="Restrict to this category (repeatable)",
        )
        return p

    best = with_common(sub.add_parser("bestsellers", help="Resolve bestseller URLs"))
    best.add_argument("--force", action="store_true", help="Re-resolve categories that have one")

    links = with_common(sub.add_parser("links", help="Collect product links"))
    links.add_argument("--start-page", type=int, default=1)
    links.add_argument("--end-page", type=int, default=5)

    products = with_common(sub.add_parser("products", help="Crawl product pages"))
    products.add_argument("--batch-size", type=int, help="Product pages fetched together")
    return parser


async def _select_categories(store, args, require_bestseller=False):
    if args.category_ids:
        found = [await store.get_category_by_id(cid) for cid in args.category_ids]
        missing = [cid for cid, c in zip(args.category_ids, found) if c is None]
        if missing:
            logger.warning("Unknown category ids: %s", ", ".join(missing))
        categories = [c for c in found if c is not None]
    else:
        categories = await store.get_categories()
    if require_bestseller:
        categories = [c for c in categories if c.bestseller_url]
    return categories


async def run_command(args):
    """Run one sub-command to completion and return the final progress (None for categories)."""
    settings = get_settings()
    store = CatalogStore()
    await store.ensure_indexes()
    crawler = CatalogCrawler(store, settings=settings)
    try:
        if args.command == "categories":
            counts = await crawler.crawl_categories()
            print(f"categories: {counts['found']} found, {counts['created']} new")
            return None

        orchestrator = BatchOrchestrator(crawler, store, settings=settings)
        if args.command == "bestsellers":
            categories = await _select_categories(store, args)
            task = orchestrator.start_bestseller_batch(
                categories, threads=args.threads, force_recrawl=args.force
            )
        elif args.command == "links":
            categories = await _select_categories(store, args, require_bestseller=True)
            task = orchestrator.start_links_batch(
                categories,
                threads=args.threads,
                start_page=args.start_page,
                end_page=args.end_page,
            )
        else:
            categories = await _select_categories(store, args, require_bestseller=True)
            task = orchestrator.start_products_batch(
                categories, threads=args.threads, batch_size=args.batch_size
            )

        try:
            progress = await task
        except asyncio.CancelledError:
            orchestrator.stop()
            raise
        print(
            f"{args.command}: {progress.completed} completed, {progress.failed} failed, "
            f"{progress.cancelled} cancelled of {progress.total}"
        )
        for key, value in sorted(progress.details.items()):
            print(f"  {key}: {value}")
        return progress
    finally:
        await crawler.close()


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger("harvester").setLevel(logging.DEBUG)
    try:
        progress = asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    if progress is not None and progress.failed:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
