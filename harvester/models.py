# harvester/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class CategoryStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    CRAWLING_LINKS = "crawling_links"
    CRAWLING_PRODUCTS = "crawling_products"
    COMPLETED = "completed"
    ERROR = "error"


class InsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"


class Document(BaseModel):
    """Mongo-backed record; ``id`` maps to the ``_id`` field."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: Optional[str] = Field(None, alias="_id")

    def to_doc(self):
        return self.model_dump(by_alias=True, exclude_none=True)


class Category(Document):
    name: str
    url: str
    bestseller_url: Optional[str] = None
    status: CategoryStatus = CategoryStatus.PENDING
    last_crawled: Optional[datetime] = None


class ProductLink(Document):
    url: str
    category_id: str
    page_number: int
    rank_in_page: int
    crawled: bool = False
    created_at: Optional[datetime] = None


class Product(Document):
    isbn: Optional[str] = None
    title: str
    price: Optional[float] = None
    original_price: Optional[float] = None
    book_format: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[str] = None
    category_id: Optional[str] = None
    page_number: Optional[int] = None
    rank_in_page: Optional[int] = None
    product_url: str
    in_stock: bool = True
    low_confidence: bool = False
    last_updated: Optional[datetime] = None


class DiscoveredCategory(BaseModel):
    name: str
    url: str


class ExtractedLink(BaseModel):
    url: str
    text: str
    rank: int


class ProductDetails(BaseModel):
    """Fields resolved from one product page. Only the title is mandatory."""

    title: str
    product_url: str
    isbn: Optional[str] = None
    price: Optional[float] = None
    original_price: Optional[float] = None
    book_format: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[str] = None
    in_stock: bool = True


class BatchProgress(BaseModel):
    """
    Counters for one batch run.

    Categories that were never started because the run was stopped count in
    ``cancelled``, so once a run ends completed + failed + cancelled == total.
    """

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    current: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class LinkCrawlStats(BaseModel):
    pages_ok: int = 0
    pages_failed: int = 0
    links_found: int = 0
    links_saved: int = 0
    links_duplicate: int = 0
    links_failed: int = 0


class ProductCrawlStats(BaseModel):
    total: int = 0
    products_ok: int = 0
    products_failed: int = 0
