import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

from bson import ObjectId
import httpx
import pytest
from typing import List, Dict, Any
from pymongo.errors import DuplicateKeyError

from harvester.config import Settings
from harvester.db import CatalogStore
from harvester.errors import FetchExhaustedError, RetryableFetchError, FailureKind
from harvester.fetcher import FetchResult, ResilientFetcher
from harvester.profile import SiteProfile

FILLER = "<p>" + "Lorem ipsum dolor sit amet, consectetur adipiscing elit. " * 6 + "</p>"


def _matches(doc, q):
    for k, v in (q or {}).items():
        if isinstance(v, dict):
            docv = doc.get(k)
            if docv is None:
                return False
            if "$gte" in v and docv < v["$gte"]:
                return False
            if "$lte" in v and docv > v["$lte"]:
                return False
        elif doc.get(k) != v:
            return False
    return True


class UpdateResult:
    def __init__(self, matched_count, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = matched_count
        self.upserted_id = upserted_id


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = list(docs)
        self._skip = 0
        self._limit = None

    def sort(self, order):
        """
        Sort the documents in the cursor by one or more fields.

        Args:
            order (list[tuple]): (field, direction) pairs, most significant
                first, e.g. [("page_number", 1), ("rank_in_page", 1)].

        Returns:
            FakeCursor: The same cursor instance to allow method chaining.

        Behavior:
            - Applies the keys from least to most significant so the
              resulting order honours every pair (stable sort).
            - Missing fields sort first.
        """
        for field, direction in reversed(order):
            self._docs.sort(
                key=lambda d: (d.get(field) is not None, d.get(field)),
                reverse=(direction < 0),
            )
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def to_list(self, length=None):
        """
        Return copies of the documents left after skip() and limit().

        Args:
            length (int or None): Upper bound on returned documents, as in
                Motor; None means no bound.
        """
        start = self._skip
        end = None if self._limit is None else start + self._limit
        docs = [dict(d) for d in self._docs[start:end]]
        return docs if length is None else docs[:length]


class FakeCollection:
    def __init__(self, docs=None, unique=()):
        self.docs = list(docs or [])
        self.unique = set(unique)
        self.indexes = []
        for d in self.docs:
            if "_id" not in d:
                d["_id"] = str(ObjectId())

    def _check_unique(self, doc, ignore_id=None):
        for field in self.unique:
            value = doc.get(field)
            for d in self.docs:
                if d["_id"] != ignore_id and d.get(field) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error: {field} {value!r}")

    async def create_index(self, keys, unique=False):
        self.indexes.append((keys, unique))
        if unique:
            self.unique.update(field for field, _ in keys)
        return "_".join(field for field, _ in keys)

    async def find_one(self, q):
        for d in self.docs:
            if _matches(d, q):
                return dict(d)
        return None

    def find(self, q=None):
        return FakeCursor([d for d in self.docs if _matches(d, q)])

    async def insert_one(self, doc):
        """
        Insert a single document, enforcing the collection's unique keys.

        Raises:
            DuplicateKeyError: another document already holds the same value
                for one of the unique fields, as a real unique index would.
        """
        doc = dict(doc)
        if "_id" not in doc:
            doc["_id"] = str(ObjectId())
        self._check_unique(doc)
        self.docs.append(doc)

        class R:
            inserted_id = doc["_id"]

        return R()

    async def update_one(self, q, u, upsert=False):
        """
        Update the first document matching the query.

        Supports ``$set`` on a match and, with ``upsert=True``, inserting a
        new document built from the query's equality fields plus ``$set``
        and ``$setOnInsert`` when nothing matches.

        Returns:
            UpdateResult: ``matched_count`` and ``upserted_id`` like Motor's.
        """
        for stored in self.docs:
            if _matches(stored, q):
                stored.update(u.get("$set", {}))
                return UpdateResult(1)
        if not upsert:
            return UpdateResult(0)
        doc = {k: v for k, v in q.items() if not isinstance(v, dict)}
        doc.update(u.get("$set", {}))
        doc.update(u.get("$setOnInsert", {}))
        doc.setdefault("_id", str(ObjectId()))
        self._check_unique(doc)
        self.docs.append(doc)
        return UpdateResult(0, upserted_id=doc["_id"])

    async def count_documents(self, q=None):
        return sum(1 for d in self.docs if _matches(d, q))


class FakeDB:
    def __init__(self, categories=None, product_links=None, products=None):
        self.categories = FakeCollection(categories, unique=("url",))
        self.product_links = FakeCollection(product_links, unique=("url",))
        self.products = FakeCollection(products, unique=("product_url",))


class FakeFetcher:
    """
    Stand-in for ResilientFetcher serving canned pages.

    ``pages`` maps a URL to an HTML string, a FetchResult, or an exception
    instance to raise. Unknown URLs fail the way an exhausted fetch does.
    """

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    async def fetch(self, url, max_attempts=None, force_proxy=False):
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            cause = RetryableFetchError(url, FailureKind.TRANSPORT, "connection refused")
            raise FetchExhaustedError(url, max_attempts or 1, cause)
        if isinstance(page, Exception):
            raise page
        if isinstance(page, FetchResult):
            return page
        return FetchResult(url=url, status_code=200, body=page)

    async def close(self):
        pass


@pytest.fixture
def profile():
    """
    Default bookstore profile with a lower content-length threshold.

    Keeps fixture pages short: anything of at least 200 characters without
    block phrases passes the block heuristic.
    """
    return SiteProfile(min_content_length=200)


@pytest.fixture
def settings():
    return Settings(
        max_attempts=4,
        direct_attempts=3,
        probe_max_attempts=2,
        batch_threads=5,
        batch_force_proxy=False,
        product_batch_size=2,
        log_buffer_size=50,
        log_tail=20,
        page_delay_min=0.0,
        page_delay_max=0.0,
    )


@pytest.fixture
def html_page():
    """Build a full page around ``body`` that clears the content-length check."""

    def build(body="", title="Books"):
        return f"<html><head><title>{title}</title></head><body>{body}{FILLER}</body></html>"

    return build


@pytest.fixture
def sleeps():
    """Async sleep replacement recording requested delays instead of waiting."""
    recorded = []

    async def fake_sleep(delay):
        recorded.append(delay)

    fake_sleep.calls = recorded
    return fake_sleep


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def store(fake_db):
    return CatalogStore(fake_db)


@pytest.fixture
def make_fetcher(settings, profile, sleeps):
    """
    Factory for a ResilientFetcher wired to httpx.MockTransport handlers.

    Every request is appended to the returned ``calls`` list as
    ``("direct" | "proxy", request)`` so tests can check attempt counts and
    the transport chosen for each attempt.
    """

    def factory(handler, proxy_handler=None, with_proxy=True, **overrides):
        calls = []

        def route(name, fn):
            def wrapped(request):
                calls.append((name, request))
                return fn(request)

            return wrapped

        proxy_transport = None
        if with_proxy:
            proxy_transport = httpx.MockTransport(route("proxy", proxy_handler or handler))
        fetcher = ResilientFetcher(
            overrides.pop("settings", settings),
            overrides.pop("profile", profile),
            direct_transport=httpx.MockTransport(route("direct", handler)),
            proxy_transport=proxy_transport,
            sleep=sleeps,
            **overrides,
        )
        return fetcher, calls

    return factory
