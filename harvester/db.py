# harvester/db.py
from datetime import datetime, timezone

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .config import get_settings
from .models import (
    Category,
    CategoryStatus,
    InsertOutcome,
    Product,
    ProductLink,
)

_client = None
_db = None


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.mongo_uri)
        _db = _client[settings.mongo_db]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed."""
    global _db
    if _db is None:
        get_client()
    return _db


def _now():
    return datetime.now(timezone.utc)


def _status_value(status):
    return status.value if isinstance(status, CategoryStatus) else CategoryStatus(status).value


class CatalogStore:
    """
    Categories, product links and products in MongoDB.

    Unique URL keys do the de-duplication: inserting a link or category
    whose URL already exists reports InsertOutcome.DUPLICATE instead of
    raising, and products are upserted by ``product_url``.
    """

    def __init__(self, db=None):
        self.db = db if db is not None else get_db()

    async def ensure_indexes(self):
        await self.db.categories.create_index([("url", ASCENDING)], unique=True)
        await self.db.product_links.create_index([("url", ASCENDING)], unique=True)
        await self.db.product_links.create_index(
            [("category_id", ASCENDING), ("crawled", ASCENDING)]
        )
        await self.db.products.create_index([("product_url", ASCENDING)], unique=True)
        await self.db.products.create_index([("isbn", ASCENDING)])

    # categories

    async def get_categories(self, status=None):
        query = {} if status is None else {"status": _status_value(status)}
        docs = await self.db.categories.find(query).sort([("name", ASCENDING)]).to_list(length=None)
        return [Category.model_validate(d) for d in docs]

    async def get_category_by_id(self, category_id):
        doc = await self.db.categories.find_one({"_id": category_id})
        return Category.model_validate(doc) if doc else None

    async def insert_category(self, category):
        doc = category.to_doc()
        doc.setdefault("_id", str(ObjectId()))
        try:
            await self.db.categories.insert_one(doc)
        except DuplicateKeyError:
            return InsertOutcome.DUPLICATE
        category.id = doc["_id"]
        return InsertOutcome.CREATED

    async def update_category_bestseller_url(self, category_id, url, overwrite=False):
        """
        Record the category's bestseller URL.

        Without ``overwrite`` an already stored URL is left alone. Returns
        True when a category matched the update.
        """
        query = {"_id": category_id}
        if not overwrite:
            query["bestseller_url"] = None
        res = await self.db.categories.update_one(query, {"$set": {"bestseller_url": url}})
        return res.matched_count > 0

    async def update_category_status(self, category_id, status):
        fields = {"status": _status_value(status)}
        if fields["status"] == CategoryStatus.COMPLETED.value:
            fields["last_crawled"] = _now()
        res = await self.db.categories.update_one({"_id": category_id}, {"$set": fields})
        return res.matched_count > 0

    # product links

    async def create_product_link(self, link):
        doc = link.to_doc()
        doc.setdefault("_id", str(ObjectId()))
        doc.setdefault("created_at", _now())
        try:
            await self.db.product_links.insert_one(doc)
        except DuplicateKeyError:
            return InsertOutcome.DUPLICATE
        link.id = doc["_id"]
        return InsertOutcome.CREATED

    async def update_product_link(self, link_id, patch):
        """Apply ``patch`` to one link. The crawled flag may only move to True."""
        if "crawled" in patch and not patch["crawled"]:
            raise ValueError("A crawled product link cannot be reset to uncrawled")
        res = await self.db.product_links.update_one({"_id": link_id}, {"$set": dict(patch)})
        return res.matched_count > 0

    async def mark_link_crawled(self, link_id):
        return await self.update_product_link(link_id, {"crawled": True})

    async def get_product_links(self, filters=None, page=1, limit=100):
        skip = (max(page, 1) - 1) * limit
        cursor = (
            self.db.product_links.find(dict(filters or {}))
            .sort([("page_number", ASCENDING), ("rank_in_page", ASCENDING)])
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [ProductLink.model_validate(d) for d in docs]

    async def count_product_links(self, filters=None):
        return await self.db.product_links.count_documents(dict(filters or {}))

    # products

    async def create_product(self, product):
        """
        Upsert by product_url. Every field is written on a re-crawl, so a value
        the page no longer shows is cleared rather than kept.
        """
        fields = product.model_dump(by_alias=True, exclude={"id"})
        fields["last_updated"] = _now()
        res = await self.db.products.update_one(
            {"product_url": product.product_url},
            {
                "$set": fields,
                "$setOnInsert": {"_id": str(ObjectId()), "created_at": _now()},
            },
            upsert=True,
        )
        if res.upserted_id is not None:
            return InsertOutcome.CREATED
        return InsertOutcome.UPDATED

    async def get_product_by_url(self, url):
        doc = await self.db.products.find_one({"product_url": url})
        return Product.model_validate(doc) if doc else None
