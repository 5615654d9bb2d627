# harvester/extraction.py
"""
Selector cascades for the four page roles the harvester reads.

    browse page   -> discover_categories()
    category page -> find_bestseller_link()
    listing page  -> extract_product_links()
    product page  -> extract_product()

Each cascade tries its strategies in a fixed order and stops at the first
one producing a usable result; results of different strategies are never
merged. Category discovery is the exception: its broad pass only tops up
the allow-listed pass when that found fewer than ``min_categories``.

Every function accepts raw HTML or an already parsed HtmlDocument.
"""
import logging
import re
from urllib.parse import parse_qs, urlsplit

from .dom import HtmlDocument, parse_html
from .errors import MissingTitleError
from .models import DiscoveredCategory, ExtractedLink, ProductDetails
from .utils import is_navigable_href, money_to_float, normalize_url

logger = logging.getLogger("harvester.extract")

ISBN_LABEL_RE = re.compile(r"(?:ISBN|EAN)(?:-1[03])?[:\s-]*([0-9]{10,13})", re.IGNORECASE)
ISBN_DIGITS_RE = re.compile(r"[0-9]{10,13}")
AUTHOR_PREFIX_RE = re.compile(r"^by\s+", re.IGNORECASE)


def _doc(page):
    return page if isinstance(page, HtmlDocument) else parse_html(page)


# --- categories --------------------------------------------------------------


def _link_candidate(el, profile, base_url, max_len):
    href = el.get("href")
    text = el.get_text(" ", strip=True)
    if not is_navigable_href(href) or not (3 <= len(text) <= max_len):
        return None
    return text, normalize_url(href, base_url, profile.session_params)


def _denied(text_lower, profile):
    return any(word in text_lower for word in profile.category_deny_words)


def discover_categories(page, profile, base_url=None):
    """
    Category links from the browse page, de-duplicated by normalized URL.

    Pass 1 walks the category selectors and keeps links whose text or URL
    hits the genre allow-list (or a category path token). When that yields
    fewer than ``profile.min_categories`` a broader pass over every anchor
    adds links matching the relaxed vocabulary. The deny-list applies to
    both passes.
    """
    doc = _doc(page)
    base_url = base_url or profile.base_url
    found = {}

    for selector in profile.category_selectors:
        for el in doc.select(selector):
            candidate = _link_candidate(el, profile, base_url, max_len=100)
            if candidate is None:
                continue
            name, url = candidate
            if url in found:
                continue
            text_l, url_l = name.lower(), url.lower()
            related = any(kw in text_l or kw in url_l for kw in profile.genre_keywords) or any(
                token in url_l for token in profile.category_path_tokens
            )
            if related and not _denied(text_l, profile):
                found[url] = name

    if len(found) < profile.min_categories:
        logger.info(
            "Only %d categories from selectors, running broad pass", len(found)
        )
        for el in doc.select("a"):
            candidate = _link_candidate(el, profile, base_url, max_len=80)
            if candidate is None:
                continue
            name, url = candidate
            if url in found:
                continue
            text_l, url_l = name.lower(), url.lower()
            relaxed = (
                any(token in url_l for token in profile.broad_path_tokens)
                or any(kw in text_l for kw in profile.genre_keywords)
                or any(word in text_l for word in profile.broad_category_words)
            )
            if relaxed and not _denied(text_l, profile):
                found[url] = name

    return [DiscoveredCategory(name=name, url=url) for url, name in found.items()]


# --- bestseller link ---------------------------------------------------------


def find_bestseller_link(page, profile, base_url=None):
    """URL of the category's bestseller listing, or None if no selector matches."""
    doc = _doc(page)
    base_url = base_url or profile.base_url
    for selector in profile.bestseller_selectors:
        for el in doc.select(selector):
            href = el.get("href")
            if not is_navigable_href(href):
                continue
            url = normalize_url(href, base_url, profile.session_params)
            logger.info("Bestseller link via %r: %s", selector, url)
            return url
    return None


# --- product links -----------------------------------------------------------


def extract_product_links(page, profile, base_url=None):
    """
    Product links from a listing page, ranked in extraction order.

    Selectors go from most to least specific; the first one producing any
    valid link is the only one used.
    """
    doc = _doc(page)
    base_url = base_url or profile.base_url
    token = profile.product_path_token

    for selector in profile.product_link_selectors:
        links = []
        seen = set()
        for el in doc.select(selector):
            href = el.get("href")
            text = el.get_text(" ", strip=True)
            if not text or not is_navigable_href(href) or token not in href:
                continue
            url = normalize_url(href, base_url, profile.session_params)
            if url in seen:
                continue
            seen.add(url)
            links.append(ExtractedLink(url=url, text=text[:100], rank=len(links) + 1))
        if links:
            logger.debug("%d product links via %r", len(links), selector)
            return links

    logger.warning("No product links found (page title: %r)", doc.title())
    return []


# --- product fields ----------------------------------------------------------


def _title(doc, url, profile):
    title = doc.first_text(profile.title_selectors)
    if title:
        return title
    page_title = doc.title()
    if profile.title_suffix:
        page_title = page_title.replace(profile.title_suffix, "")
    return page_title.strip() or None


def _isbn_from_url(doc, url, profile):
    query = parse_qs(urlsplit(url).query)
    for key, values in query.items():
        if key.lower() != profile.isbn_query_param.lower():
            continue
        for value in values:
            if ISBN_DIGITS_RE.fullmatch(value):
                return value
    return None


def _isbn_from_attributes(doc, url, profile):
    for attr in profile.isbn_data_attributes:
        el = doc.select_one(f"[{attr}]")
        if el is not None and el.get(attr, "").strip():
            return el[attr].strip()
    return None


def _isbn_from_meta(doc, url, profile):
    for selector in profile.isbn_meta_selectors:
        el = doc.select_one(selector)
        if el is not None and el.get("content", "").strip():
            return el["content"].strip()
    return None


def _isbn_from_scoped_text(doc, url, profile):
    for selector in profile.isbn_scopes:
        m = ISBN_LABEL_RE.search(doc.all_text(selector))
        if m:
            return m.group(1)
    return None


def _isbn_from_page_text(doc, url, profile):
    m = ISBN_LABEL_RE.search(doc.text())
    return m.group(1) if m else None


ISBN_STRATEGIES = (
    _isbn_from_url,
    _isbn_from_attributes,
    _isbn_from_meta,
    _isbn_from_scoped_text,
    _isbn_from_page_text,
)


def _isbn(doc, url, profile):
    for strategy in ISBN_STRATEGIES:
        value = strategy(doc, url, profile)
        if value:
            return value
    return None


def _book_format(doc, url, title, profile):
    found = doc.first_text(profile.format_selectors)
    if found:
        return found
    haystack = f"{title} {doc.all_text('.product-description')}".lower()
    for pattern in profile.format_patterns:
        if pattern in haystack:
            return pattern
    url_l = url.lower()
    for clue, label in profile.format_url_clues.items():
        if clue in url_l:
            return label
    return None


def _price(doc, selectors, profile):
    text = doc.first_text(selectors, predicate=lambda t: profile.currency_symbol in t)
    return money_to_float(text)


def _in_stock(doc, profile):
    status = " ".join(doc.all_text(selector) for selector in profile.stock_selectors).lower()
    return not any(phrase in status for phrase in profile.out_of_stock_phrases)


def extract_product(page, url, profile):
    """
    Resolve every product field through its own fallback chain.

    Missing optional fields come back as None. A missing title raises
    MissingTitleError, since a record without one is not worth keeping.
    """
    doc = _doc(page)
    title = _title(doc, url, profile)
    if not title:
        raise MissingTitleError(url)

    author = doc.first_text(profile.author_selectors)
    if author:
        author = AUTHOR_PREFIX_RE.sub("", author).strip() or None
    description = doc.first_text(profile.description_selectors)
    if description:
        description = description[: profile.description_limit]

    return ProductDetails(
        title=title,
        product_url=url,
        isbn=_isbn(doc, url, profile),
        price=_price(doc, profile.price_selectors, profile),
        original_price=_price(doc, profile.original_price_selectors, profile),
        book_format=_book_format(doc, url, title, profile),
        author=author,
        description=description,
        rating=doc.first_text(profile.rating_selectors),
        in_stock=_in_stock(doc, profile),
    )
