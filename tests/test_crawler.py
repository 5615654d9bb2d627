import pytest

from conftest import FakeDB, FakeFetcher
from harvester.batch import RunContext
from harvester.crawler import CatalogCrawler
from harvester.db import CatalogStore
from harvester.errors import FailureKind, FetchExhaustedError, HarvestError, RetryableFetchError
from harvester.fetcher import FetchResult
from harvester.models import Category, ProductLink
from harvester.utils import listing_page_url

FICTION = {"_id": "1", "name": "Fiction", "url": "https://x/genre/fiction", "status": "pending"}
BESTSELLERS = "https://x/genre/fiction?Ns=P_Sales_Rank"


def _exhausted(url):
    return FetchExhaustedError(
        url, 20, RetryableFetchError(url, FailureKind.TRANSPORT, "connection reset")
    )


def _crawler(fetcher, db, profile, settings, sleeps):
    return CatalogCrawler(
        CatalogStore(db), fetcher=fetcher, profile=profile, settings=settings, sleep=sleeps
    )


def _ean(slug):
    return "978" + str(sum(map(ord, slug))).zfill(10)


def _product_url(slug):
    return f"https://x/w/{slug}/1?ean={_ean(slug)}"


def _listing(html_page, *slugs):
    anchors = "".join(f'<a href="/w/{s}/1?ean={_ean(s)}">{s.title()}</a>' for s in slugs)
    return html_page(f"<div class='product-shelf'>{anchors}</div>")


@pytest.mark.asyncio
async def test_bestseller_falls_back_to_category_url(monkeypatch, html_page, profile, settings, sleeps):
    """
    Category page has no bestseller link and every probe URL fails: the
    category URL itself is stored as the bestseller URL.
    """
    fetcher = FakeFetcher({"https://x/genre/fiction": html_page("<h1>Fiction</h1>")})
    db = FakeDB(categories=[dict(FICTION)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)

    calls = []
    original = crawler.store.update_category_bestseller_url

    async def spy(category_id, url, overwrite=False):
        calls.append((category_id, url))
        return await original(category_id, url, overwrite=overwrite)

    monkeypatch.setattr(crawler.store, "update_category_bestseller_url", spy)

    category = Category.model_validate(FICTION)
    url = await crawler.find_bestseller_url(category)

    assert url == "https://x/genre/fiction"
    assert calls == [("1", "https://x/genre/fiction")]
    assert db.categories.docs[0]["bestseller_url"] == "https://x/genre/fiction"
    # category page plus every probe
    assert len(fetcher.calls) == 1 + len(profile.bestseller_probe_params)
    assert fetcher.calls[1] == "https://x/genre/fiction?Ns=P_Sales_Rank"


@pytest.mark.asyncio
async def test_bestseller_link_found_on_category_page(html_page, profile, settings, sleeps):
    page = html_page('<a class="see-all-link" href="/genre/fiction?Ns=P_Sales_Rank">See All</a>')
    fetcher = FakeFetcher({"https://x/genre/fiction": page})
    db = FakeDB(categories=[dict(FICTION)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)

    url = await crawler.find_bestseller_url(Category.model_validate(FICTION))

    assert url == BESTSELLERS
    assert fetcher.calls == ["https://x/genre/fiction"]


@pytest.mark.asyncio
async def test_first_clean_probe_is_accepted(html_page, profile, settings, sleeps):
    degraded = FetchResult(
        url=BESTSELLERS, status_code=200, body="captcha", attempts=2, degraded=True
    )
    fetcher = FakeFetcher(
        {
            "https://x/genre/fiction": html_page("<h1>Fiction</h1>"),
            BESTSELLERS: degraded,
            "https://x/genre/fiction?Ns=P_Sales_Rank|0": html_page("<h1>Top sellers</h1>"),
        }
    )
    db = FakeDB(categories=[dict(FICTION)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)

    url = await crawler.find_bestseller_url(Category.model_validate(FICTION))

    assert url == "https://x/genre/fiction?Ns=P_Sales_Rank|0"
    assert db.categories.docs[0]["bestseller_url"] == url


@pytest.mark.asyncio
async def test_link_crawl_survives_failed_page(html_page, profile, settings, sleeps):
    """
    Pages 1-3 where page 2 exhausts its retries: pages 1 and 3 still yield
    links, the page failure is only counted, and the category completes.
    """
    pages = {
        listing_page_url(BESTSELLERS, 1, 20): _listing(html_page, "alpha", "beta"),
        listing_page_url(BESTSELLERS, 2, 20): _exhausted(listing_page_url(BESTSELLERS, 2, 20)),
        listing_page_url(BESTSELLERS, 3, 20): _listing(html_page, "gamma", "alpha"),
    }
    fetcher = FakeFetcher(pages)
    db = FakeDB(categories=[dict(FICTION, bestseller_url=BESTSELLERS)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)
    category = Category.model_validate(db.categories.docs[0])
    ctx = RunContext(total=1)

    stats = await crawler.crawl_links(category, start_page=1, end_page=3, ctx=ctx, worker_id=1)

    assert stats.pages_ok == 2
    assert stats.pages_failed == 1
    assert stats.links_found == 4
    assert stats.links_saved == 3
    assert stats.links_duplicate == 1
    assert stats.links_failed == 0
    assert db.categories.docs[0]["status"] == "completed"
    assert db.categories.docs[0]["last_crawled"] is not None

    stored = [(d["url"], d["page_number"], d["rank_in_page"]) for d in db.product_links.docs]
    assert stored == [
        (_product_url("alpha"), 1, 1),
        (_product_url("beta"), 1, 2),
        (_product_url("gamma"), 3, 1),
    ]
    details = ctx.snapshot().details
    assert details["pages_failed"] == 1
    assert details["links_saved"] == 3
    assert any("Duplicate link skipped" in line for line in ctx.logs())


@pytest.mark.asyncio
async def test_link_crawl_visits_pages_in_order(html_page, profile, settings, sleeps):
    pages = {listing_page_url(BESTSELLERS, n, 20): _listing(html_page, f"book{n}") for n in (2, 3, 4)}
    fetcher = FakeFetcher(pages)
    db = FakeDB(categories=[dict(FICTION, bestseller_url=BESTSELLERS)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)

    await crawler.crawl_links(Category.model_validate(db.categories.docs[0]), start_page=2, end_page=4)

    assert fetcher.calls == [listing_page_url(BESTSELLERS, n, 20) for n in (2, 3, 4)]
    assert len(sleeps.calls) == 2


@pytest.mark.asyncio
async def test_link_crawl_requires_bestseller_url(profile, settings, sleeps):
    db = FakeDB(categories=[dict(FICTION)])
    crawler = _crawler(FakeFetcher(), db, profile, settings, sleeps)

    with pytest.raises(HarvestError):
        await crawler.crawl_links(Category.model_validate(FICTION))


@pytest.mark.asyncio
async def test_cancelled_link_crawl_stops_before_next_page(html_page, profile, settings, sleeps):
    pages = {listing_page_url(BESTSELLERS, n, 20): _listing(html_page, f"book{n}") for n in (1, 2)}
    fetcher = FakeFetcher(pages)
    db = FakeDB(categories=[dict(FICTION, bestseller_url=BESTSELLERS)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)
    ctx = RunContext(total=1)

    original = crawler.extract_product_links

    async def cancel_after_first(page_url, force_proxy=False):
        links = await original(page_url, force_proxy)
        ctx.cancel()
        return links

    crawler.extract_product_links = cancel_after_first
    stats = await crawler.crawl_links(
        Category.model_validate(db.categories.docs[0]), start_page=1, end_page=2, ctx=ctx
    )

    assert len(fetcher.calls) == 1
    assert stats.pages_ok == 1
    assert stats.links_saved == 0
    assert db.categories.docs[0]["status"] == "ready"


@pytest.mark.asyncio
async def test_product_crawl_counts_missing_title_as_failure(html_page, profile, settings, sleeps):
    hobbit = "https://x/w/the-hobbit/1?ean=9780547928227"
    untitled = "https://x/w/untitled/2"
    dune = "https://x/w/dune/3?ean=9780441172719"
    fetcher = FakeFetcher(
        {
            hobbit: html_page('<h1>The Hobbit</h1><span class="price">$12.99</span>'),
            untitled: html_page("<p>No heading</p>", title=""),
            dune: FetchResult(
                url=dune,
                status_code=200,
                body=html_page("<h1>Dune</h1>"),
                attempts=4,
                degraded=True,
            ),
        }
    )
    db = FakeDB(categories=[dict(FICTION, bestseller_url=BESTSELLERS)])
    crawler = _crawler(fetcher, db, profile, settings, sleeps)
    for rank, url in enumerate([hobbit, untitled, dune], start=1):
        await crawler.store.create_product_link(
            ProductLink(url=url, category_id="1", page_number=1, rank_in_page=rank)
        )

    stats = await crawler.crawl_products(
        Category.model_validate(db.categories.docs[0]), batch_size=2
    )

    assert stats.total == 3
    assert stats.products_ok == 2
    assert stats.products_failed == 1
    crawled = {d["url"]: d["crawled"] for d in db.product_links.docs}
    assert crawled == {hobbit: True, untitled: False, dune: True}

    products = {d["product_url"]: d for d in db.products.docs}
    assert products[hobbit]["isbn"] == "9780547928227"
    assert products[hobbit]["price"] == 12.99
    assert products[hobbit]["category_id"] == "1"
    assert products[hobbit]["rank_in_page"] == 1
    assert products[hobbit]["low_confidence"] is False
    assert products[dune]["low_confidence"] is True
    assert db.categories.docs[0]["status"] == "completed"


@pytest.mark.asyncio
async def test_crawl_categories_stores_new_ones(html_page, profile, settings, sleeps):
    browse = html_page(
        '<nav><a href="/b/books/fiction/_/N-1">Fiction</a>'
        '<a href="/b/books/history/_/N-2">History</a></nav>'
    )
    fetcher = FakeFetcher({profile.browse_url: browse})
    db = FakeDB(
        categories=[{"_id": "old", "name": "Fiction", "url": "https://www.barnesandnoble.com/b/books/fiction/_/N-1"}]
    )
    crawler = _crawler(fetcher, db, profile, settings, sleeps)

    counts = await crawler.crawl_categories()

    assert counts == {"found": 2, "created": 1, "duplicate": 1}
    assert [d["name"] for d in db.categories.docs] == ["Fiction", "History"]
    assert db.categories.docs[1]["status"] == "pending"
