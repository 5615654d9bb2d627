# harvester/crawler.py
import asyncio
import logging
import random

from .config import get_settings
from .errors import FetchError, HarvestError, MissingTitleError
from .extraction import (
    discover_categories,
    extract_product,
    extract_product_links,
    find_bestseller_link,
)
from .fetcher import ResilientFetcher
from .models import (
    Category,
    CategoryStatus,
    InsertOutcome,
    LinkCrawlStats,
    Product,
    ProductCrawlStats,
    ProductLink,
)
from .profile import get_site_profile
from .utils import chunked, listing_page_url, with_query

logger = logging.getLogger("harvester")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)

crawl_logger = logging.getLogger("harvester.crawl")

# upper bound on uncrawled links loaded for one category
PRODUCT_LINK_LIMIT = 10000
DUPLICATES_LOGGED_PER_PAGE = 3


class CatalogCrawler:
    """
    The per-category crawl steps, shared by the CLI and the batch orchestrator.

    Every step fetches through a ResilientFetcher, hands the body to the
    extraction cascades and writes the result through a CatalogStore. Steps
    that run inside a batch take an optional run context, used for the
    shared log, progress details and the cancellation flag.
    """

    def __init__(
        self,
        store,
        fetcher=None,
        profile=None,
        settings=None,
        sleep=asyncio.sleep,
        rng=None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.profile = profile or get_site_profile()
        self.fetcher = fetcher or ResilientFetcher(self.settings, self.profile)
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def close(self):
        """
        Close the underlying fetcher and its HTTP clients.

        Should be called once the crawler is no longer needed, typically in a
        ``finally`` block around a batch run.
        """
        await self.fetcher.close()

    async def fetch(self, url, force_proxy=False, max_attempts=None):
        return await self.fetcher.fetch(
            url, max_attempts=max_attempts, force_proxy=force_proxy
        )

    def _log(self, ctx, message, worker_id=None):
        if ctx is not None:
            ctx.log(message, worker_id)
        else:
            crawl_logger.info(message)

    @staticmethod
    def _cancelled(ctx):
        return ctx is not None and ctx.cancelled

    def _page_delay(self):
        low = self.settings.page_delay_min
        high = max(low, self.settings.page_delay_max)
        return self._rng.uniform(low, high)

    async def crawl_categories(self, ctx=None):
        """
        Discover categories on the browse page and store the new ones.

        Args:
            ctx (RunContext, optional): run context receiving log lines.

        Returns:
            dict: ``found``, ``created`` and ``duplicate`` counts.

        Raises:
            FetchError: the browse page could not be fetched at all.

        Note:
            Categories already stored (same URL) are left untouched and
            counted as duplicates.
        """
        page = await self.fetch(self.profile.browse_url)
        discovered = discover_categories(page.body, self.profile, base_url=page.url)
        counts = {"found": len(discovered), "created": 0, "duplicate": 0}
        for item in discovered:
            outcome = await self.store.insert_category(Category(name=item.name, url=item.url))
            if outcome == InsertOutcome.DUPLICATE:
                counts["duplicate"] += 1
            else:
                counts["created"] += 1
        self._log(
            ctx,
            f"Categories: {counts['found']} found, {counts['created']} new, "
            f"{counts['duplicate']} already known",
        )
        return counts

    async def find_bestseller_url(
        self, category, ctx=None, worker_id=None, force_proxy=False, overwrite=False
    ):
        """
        Work out the bestseller listing URL for a category and store it.

        Discovery always produces a URL:
            1. Fetch the category page and run the bestseller-link cascade.
            2. Otherwise fetch each sales-rank probe URL built from the
               category URL and take the first that answers cleanly.
            3. Otherwise use the category URL itself.

        Args:
            category (Category): category to resolve.
            ctx (RunContext, optional): run context for log lines.
            worker_id (int, optional): worker number shown in log lines.
            force_proxy (bool): send every attempt through the proxy.
            overwrite (bool): replace an already stored bestseller URL.

        Returns:
            str: the URL passed to ``update_category_bestseller_url``.

        Note:
            When the category page itself cannot be fetched the probes are
            skipped, since they hit the same host with the same path.
        """
        url = None
        try:
            page = await self.fetch(category.url, force_proxy=force_proxy)
        except FetchError as exc:
            self._log(ctx, f"Category page failed for {category.name}: {exc}", worker_id)
            page = None

        if page is not None:
            url = find_bestseller_link(page.body, self.profile, base_url=page.url)
            if url:
                self._log(ctx, f"Bestseller link found for {category.name}: {url}", worker_id)
            else:
                url = await self._probe_bestseller_urls(category, ctx, worker_id, force_proxy)

        if not url:
            url = category.url
            self._log(
                ctx,
                f"No bestseller URL for {category.name}, using category URL",
                worker_id,
            )

        await self.store.update_category_bestseller_url(category.id, url, overwrite=overwrite)
        return url

    async def _probe_bestseller_urls(self, category, ctx, worker_id, force_proxy):
        for params in self.profile.bestseller_probe_params:
            candidate = with_query(category.url, params)
            try:
                result = await self.fetch(
                    candidate,
                    force_proxy=force_proxy,
                    max_attempts=self.settings.probe_max_attempts,
                )
            except FetchError as exc:
                crawl_logger.debug("Probe %s failed: %s", candidate, exc)
                continue
            if result.ok:
                self._log(ctx, f"Bestseller probe accepted for {category.name}: {candidate}", worker_id)
                return candidate
        return None

    async def extract_product_links(self, page_url, force_proxy=False):
        """Fetch one listing page and return its ranked product links."""
        result = await self.fetch(page_url, force_proxy=force_proxy)
        return extract_product_links(result.body, self.profile, base_url=result.url)

    async def crawl_links(
        self,
        category,
        start_page=1,
        end_page=5,
        ctx=None,
        worker_id=None,
        force_proxy=False,
    ):
        """
        Walk listing pages ``start_page..end_page`` of a category's bestseller
        URL and store every product link found.

        Pages are visited strictly in order. A page that cannot be fetched is
        logged and counted in ``pages_failed``; the walk continues with the
        next page. Duplicate links are expected and counted separately from
        links whose insert failed.

        Args:
            category (Category): category with a bestseller URL.
            start_page (int): first listing page (1-based).
            end_page (int): last listing page, inclusive.
            ctx (RunContext, optional): run context (log, details, cancel).
            worker_id (int, optional): worker number for log lines.
            force_proxy (bool): send every attempt through the proxy.

        Returns:
            LinkCrawlStats: page and link counters for this category.

        Raises:
            HarvestError: the category has no bestseller URL.

        Status:
            crawling_links on entry, completed on exit. A run cancelled part
            way through puts the category back to ready.
        """
        if not category.bestseller_url:
            raise HarvestError(f"Category {category.name} has no bestseller URL")

        stats = LinkCrawlStats()
        await self.store.update_category_status(category.id, CategoryStatus.CRAWLING_LINKS)
        self._log(ctx, f"Crawling links for {category.name} (pages {start_page}-{end_page})", worker_id)

        for page_number in range(start_page, end_page + 1):
            if self._cancelled(ctx):
                break
            if page_number > start_page:
                await self._sleep(self._page_delay())
            if ctx is not None:
                ctx.set_current(f"{category.name} page {page_number}")
            page_url = listing_page_url(
                category.bestseller_url, page_number, self.profile.listing_page_size
            )
            try:
                links = await self.extract_product_links(page_url, force_proxy)
            except FetchError as exc:
                stats.pages_failed += 1
                self._bump(ctx, pages_failed=1)
                self._log(ctx, f"Page {page_number} of {category.name} failed: {exc}", worker_id)
                continue

            page_stats = await self._store_links(category, page_number, links, ctx, worker_id)
            stats.pages_ok += 1
            stats.links_found += len(links)
            stats.links_saved += page_stats["saved"]
            stats.links_duplicate += page_stats["duplicate"]
            stats.links_failed += page_stats["failed"]
            self._bump(
                ctx,
                pages_ok=1,
                links_found=len(links),
                links_saved=page_stats["saved"],
                links_duplicate=page_stats["duplicate"],
                links_failed=page_stats["failed"],
            )
            self._log(
                ctx,
                f"{category.name} page {page_number}: {len(links)} links, "
                f"{page_stats['saved']} saved, {page_stats['duplicate']} duplicate",
                worker_id,
            )

        final = CategoryStatus.READY if self._cancelled(ctx) else CategoryStatus.COMPLETED
        await self.store.update_category_status(category.id, final)
        return stats

    async def _store_links(self, category, page_number, links, ctx, worker_id):
        counts = {"saved": 0, "duplicate": 0, "failed": 0}
        for link in links:
            if self._cancelled(ctx):
                break
            record = ProductLink(
                url=link.url,
                category_id=category.id,
                page_number=page_number,
                rank_in_page=link.rank,
            )
            try:
                outcome = await self.store.create_product_link(record)
            except Exception as exc:
                counts["failed"] += 1
                self._log(ctx, f"Saving link {link.url} failed: {exc}", worker_id)
                continue
            if outcome == InsertOutcome.DUPLICATE:
                counts["duplicate"] += 1
                if counts["duplicate"] <= DUPLICATES_LOGGED_PER_PAGE:
                    self._log(ctx, f"Duplicate link skipped: {link.url}", worker_id)
            else:
                counts["saved"] += 1
        return counts

    @staticmethod
    def _bump(ctx, **counts):
        if ctx is None:
            return
        for key, n in counts.items():
            if n:
                ctx.bump(key, n)

    async def crawl_product(self, link, force_proxy=False):
        """
        Fetch and extract one product page, upsert it and mark the link crawled.

        Args:
            link (ProductLink): stored link to visit.
            force_proxy (bool): send every attempt through the proxy.

        Returns:
            Product or None: the stored product, or None when the page could
            not be fetched or had no title. The link stays uncrawled then.

        Note:
            Products read from a page accepted on the fetcher's final attempt
            are stored with ``low_confidence=True``.
        """
        try:
            result = await self.fetch(link.url, force_proxy=force_proxy)
        except FetchError as exc:
            crawl_logger.warning("Product page failed %s: %s", link.url, exc)
            return None
        try:
            details = extract_product(result.body, link.url, self.profile)
        except MissingTitleError as exc:
            crawl_logger.warning("%s", exc)
            return None

        product = Product(
            **details.model_dump(),
            category_id=link.category_id,
            page_number=link.page_number,
            rank_in_page=link.rank_in_page,
            low_confidence=result.degraded,
        )
        await self.store.create_product(product)
        await self.store.mark_link_crawled(link.id)
        return product

    async def crawl_products(
        self, category, ctx=None, worker_id=None, batch_size=None, force_proxy=False
    ):
        """
        Visit every uncrawled product link of a category, ``batch_size`` at a time.

        Returns:
            ProductCrawlStats: links visited, products stored and failures.
        """
        batch_size = batch_size or self.settings.product_batch_size
        stats = ProductCrawlStats()
        await self.store.update_category_status(category.id, CategoryStatus.CRAWLING_PRODUCTS)

        links = await self.store.get_product_links(
            {"category_id": category.id, "crawled": False}, page=1, limit=PRODUCT_LINK_LIMIT
        )
        stats.total = len(links)
        self._log(ctx, f"{category.name}: {len(links)} uncrawled product links", worker_id)

        for batch in chunked(links, batch_size):
            if self._cancelled(ctx):
                break
            if ctx is not None:
                ctx.set_current(f"{category.name} products")
            results = await asyncio.gather(
                *(self.crawl_product(link, force_proxy) for link in batch),
                return_exceptions=True,
            )
            ok = failed = 0
            for link, res in zip(batch, results):
                if isinstance(res, Exception):
                    failed += 1
                    self._log(ctx, f"Product {link.url} failed: {res}", worker_id)
                elif res is None:
                    failed += 1
                else:
                    ok += 1
            stats.products_ok += ok
            stats.products_failed += failed
            self._bump(ctx, products_ok=ok, products_failed=failed)
            if not self._cancelled(ctx):
                await self._sleep(self._page_delay())

        self._log(
            ctx,
            f"{category.name}: {stats.products_ok} products saved, {stats.products_failed} failed",
            worker_id,
        )
        final = CategoryStatus.READY if self._cancelled(ctx) else CategoryStatus.COMPLETED
        await self.store.update_category_status(category.id, final)
        return stats
