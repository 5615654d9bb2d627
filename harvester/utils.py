# harvester/utils.py
import re
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

UNSAFE_SCHEMES = ("javascript:", "mailto:", "tel:", "data:")


def money_to_float(s):
    """
    Parse a display price like "$12.99" or "Was $24.00" into a float.

    Returns None when the string is empty or holds no parsable number.
    """
    if not s:
        return None
    m = re.search(r"\d[\d,]*(?:\.\d+)?", s)
    if not m:
        return None
    try:
        return float(m.group(0).replace(",", ""))
    except ValueError:
        return None


def is_navigable_href(href):
    """False for empty, fragment-only and script/mail hrefs."""
    if not href:
        return False
    href = href.strip()
    if not href or href.startswith("#"):
        return False
    return not href.lower().startswith(UNSAFE_SCHEMES)


def strip_session_params(url, session_params=("jsessionid",)):
    """
    Remove session-id artifacts, both the ``;jsessionid=...`` path
    parameter form and ``jsessionid=...`` query parameters.
    """
    parts = urlsplit(url)
    path = parts.path
    for name in session_params:
        path = re.sub(rf";{re.escape(name)}=[^/?#]*", "", path, flags=re.IGNORECASE)
    lowered = {name.lower() for name in session_params}
    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in lowered
    ]
    query = urlencode(query_pairs, safe="|/") if query_pairs else ""
    return urlunsplit((parts.scheme, parts.netloc, path, query, parts.fragment))


def normalize_url(href, base_url, session_params=("jsessionid",)):
    """Absolute URL with session artifacts and the fragment removed."""
    absolute = urljoin(base_url, href.strip())
    cleaned = strip_session_params(absolute, session_params)
    parts = urlsplit(cleaned)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def with_query(url, params):
    """Return ``url`` with ``params`` merged into its query string (replacing keys)."""
    parts = urlsplit(url)
    pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in params
    ]
    pairs.extend((k, str(v)) for k, v in params.items())
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(pairs, safe="|/"), parts.fragment)
    )


def listing_page_url(bestseller_url, page, page_size):
    return with_query(bestseller_url, {"Nrpp": page_size, "page": page})


def chunked(items, size):
    for start in range(0, len(items), size):
        yield items[start : start + size]
