# harvester/profile.py
"""
Site profile: every piece of target-specific vocabulary the harvester uses.

The defaults describe the Barnes & Noble storefront. A JSON file with any
subset of the fields replaces the matching defaults, so selectors, keyword
lists and user agents can be tuned without touching code.
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from .config import get_settings

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0",
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:119.0) Gecko/20100101 Firefox/119.0",
    "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:118.0) Gecko/20100101 Firefox/118.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_14_6) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]


class SiteProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_url: str = "https://www.barnesandnoble.com"
    browse_path: str = "/h/books/browse"

    # identity
    user_agents: List[str] = Field(default_factory=lambda: list(DEFAULT_USER_AGENTS))
    referers: List[str] = Field(
        default_factory=lambda: [
            "https://www.google.com/",
            "https://www.bing.com/",
            "https://duckduckgo.com/",
            "https://www.yahoo.com/search",
            "https://search.yahoo.com/",
            "",
        ]
    )
    accept_languages: List[str] = Field(
        default_factory=lambda: ["en-US,en;q=0.9", "en-US,en;q=0.9,fr;q=0.8,de;q=0.7"]
    )

    # block heuristics
    block_indicators: List[str] = Field(
        default_factory=lambda: [
            "captcha",
            "blocked",
            "access denied",
            "cloudflare",
            "please verify",
            "robot",
            "security check",
            "rate limit",
            "too many requests",
            "forbidden",
            "temporarily unavailable",
            "service unavailable",
            "bot detected",
            "suspicious activity",
            "verify you are human",
            "are you a robot",
        ]
    )
    brand_tokens: List[str] = Field(default_factory=lambda: ["barnes", "noble"])
    content_tokens: List[str] = Field(default_factory=lambda: ["book", "category", "browse"])
    error_title_tokens: List[str] = Field(
        default_factory=lambda: ["error", "page not found", "service unavailable"]
    )
    min_content_length: int = 10000

    # category discovery
    category_selectors: List[str] = Field(
        default_factory=lambda: [
            'a[href*="/b/books/"]',
            'a[href*="/books/"]',
            'a[href*="category"]',
            'a[href*="browse"]',
            ".category-link",
            ".browse-link",
            ".nav-link",
            "nav a",
            ".menu a",
            ".navigation a",
        ]
    )
    category_path_tokens: List[str] = Field(default_factory=lambda: ["/b/books/", "/books/"])
    genre_keywords: List[str] = Field(
        default_factory=lambda: [
            "fiction", "mystery", "romance", "science", "history", "biography",
            "children", "young", "teen", "adult", "fantasy", "horror", "thriller",
            "business", "health", "travel", "cooking", "art", "religion", "poetry",
            "drama", "humor", "self-help", "education", "reference", "textbook",
            "graphic", "comic", "manga", "literature", "classic", "contemporary",
        ]
    )
    category_deny_words: List[str] = Field(
        default_factory=lambda: ["gift", "member", "account", "help", "store", "sign"]
    )
    broad_category_words: List[str] = Field(
        default_factory=lambda: [
            "fiction", "non-fiction", "mystery", "romance", "children", "teen",
            "young adult", "science", "history", "biography",
        ]
    )
    broad_path_tokens: List[str] = Field(default_factory=lambda: ["book", "/b/"])
    min_categories: int = 10

    # bestseller discovery
    bestseller_selectors: List[str] = Field(
        default_factory=lambda: [
            ".record-spotlight-header a.see-all-link",
            "header.record-spotlight-header a.see-all-link",
            ".product-editorial-see-all-link a.see-all-link",
            'a[href*="Ns=P_Sales_Rank"]',
            'a[href*="P_Sales_Rank"]',
            'a:-soup-contains("See All")',
            ".see-all-link",
            "a.see-all-link",
            ".record-spotlight-header a",
            ".product-editorial-see-all-link a",
            'header:-soup-contains("Bestsellers") a',
            'h2:-soup-contains("Bestsellers") + a',
            'a[href*="bestseller"]',
            'a[href*="best-seller"]',
            'a[href*="best_seller"]',
            'a[href*="sort=bestselling"]',
            'a[href*="sort=popular"]',
            'a[href*="sort=sales"]',
            'a[href*="orderBy=sales"]',
            'a[href*="orderBy=popularity"]',
            'a:-soup-contains("Best Seller")',
            'a:-soup-contains("Bestseller")',
            'a:-soup-contains("Bestselling")',
            'a:-soup-contains("Top 100")',
            'a:-soup-contains("Most Popular")',
            'a:-soup-contains("Popular")',
            "a.bestseller-link",
            ".best-sellers a",
            "a#bestseller",
            'a[data-sort*="sales"]',
            'a[data-sort*="popular"]',
        ]
    )
    bestseller_probe_params: List[Dict[str, str]] = Field(
        default_factory=lambda: [
            {"Ns": "P_Sales_Rank"},
            {"Ns": "P_Sales_Rank|0"},
            {"Ns": "P_Sales_Rank|1"},
            {"sort": "bestselling"},
            {"sort": "popular"},
        ]
    )

    # listing pages
    product_link_selectors: List[str] = Field(
        default_factory=lambda: [
            'a[href*="/w/"][href*="?ean="]',
            'a[href^="/w/"]',
            'a[href*="/w/"]',
        ]
    )
    product_path_token: str = "/w/"
    listing_page_size: int = 20
    session_params: List[str] = Field(default_factory=lambda: ["jsessionid"])

    # product pages
    title_selectors: List[str] = Field(
        default_factory=lambda: [
            ".product-title",
            ".pdp-product-title",
            ".book-title",
            '[data-testid="product-title"]',
            "h1",
        ]
    )
    title_suffix: str = " | Barnes & Noble®"
    isbn_query_param: str = "ean"
    isbn_data_attributes: List[str] = Field(
        default_factory=lambda: ["data-isbn", "data-ean", "data-product-isbn", "data-product-ean"]
    )
    isbn_meta_selectors: List[str] = Field(
        default_factory=lambda: [
            'meta[name="isbn"]',
            'meta[property="isbn"]',
            'meta[name="book:isbn"]',
            'meta[property="books:isbn"]',
        ]
    )
    isbn_scopes: List[str] = Field(
        default_factory=lambda: [
            ".isbn", ".product-isbn", ".book-details", ".product-details",
            ".product-info", ".book-info", ".item-details", ".publication-details",
        ]
    )
    format_selectors: List[str] = Field(
        default_factory=lambda: [
            ".format", ".product-format", ".book-format", ".edition",
            ".format-type", ".book-type", ".publication-format",
            ".format-selector", ".format-option", ".item-format",
            ".binding", ".binding-type", ".book-binding",
        ]
    )
    format_patterns: List[str] = Field(
        default_factory=lambda: [
            "hardcover", "paperback", "mass market", "trade paperback",
            "ebook", "kindle", "audiobook", "audio cd",
            "board book", "spiral-bound", "leather bound",
        ]
    )
    format_url_clues: Dict[str, str] = Field(
        default_factory=lambda: {
            "hardcover": "Hardcover",
            "paperback": "Paperback",
            "ebook": "eBook",
            "audio": "Audiobook",
        }
    )
    price_selectors: List[str] = Field(
        default_factory=lambda: [
            ".price", ".current-price", ".sale-price", ".product-price",
            '[data-testid="price"]', ".price-current", ".price-value",
            ".pdp-price", ".book-price", ".price-display", ".current",
        ]
    )
    original_price_selectors: List[str] = Field(
        default_factory=lambda: [
            ".original-price", ".list-price", ".msrp", ".price-original",
            ".was-price", ".price-strike", ".price-crossed", ".regular-price",
            ".price-was", ".strikethrough", ".price-compare",
        ]
    )
    currency_symbol: str = "$"
    stock_selectors: List[str] = Field(
        default_factory=lambda: [
            ".availability", ".stock-status", ".in-stock", ".inventory-status",
            '[data-testid="availability"]', ".product-availability",
            ".availability-status", ".stock-info",
        ]
    )
    out_of_stock_phrases: List[str] = Field(
        default_factory=lambda: [
            "out of stock", "unavailable", "sold out", "not available", "coming soon",
        ]
    )
    author_selectors: List[str] = Field(
        default_factory=lambda: [
            ".contributor", ".author", ".book-author", ".product-contributor", ".by-author",
        ]
    )
    description_selectors: List[str] = Field(
        default_factory=lambda: [
            ".product-description", ".book-description", ".product-summary", ".synopsis",
        ]
    )
    description_limit: int = 500
    rating_selectors: List[str] = Field(
        default_factory=lambda: [".rating", ".stars", ".product-rating", ".star-rating"]
    )

    @property
    def browse_url(self) -> str:
        return self.base_url.rstrip("/") + self.browse_path


def load_site_profile(path=None) -> SiteProfile:
    """
    Build a SiteProfile, layering the JSON file at ``path`` over the defaults.

    Raises FileNotFoundError for a missing file and pydantic's
    ValidationError for unknown keys or wrongly typed values.
    """
    if path is None:
        return SiteProfile()
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Site profile not found: {file_path}")
    raw = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Site profile must be a JSON object")
    return SiteProfile.model_validate(raw)


@lru_cache(maxsize=1)
def get_site_profile() -> SiteProfile:
    return load_site_profile(get_settings().profile_path)
