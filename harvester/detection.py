# harvester/detection.py
"""
Response classification: was a page actually served, or silently blocked?

Order of checks for a response:
    1. HTTP status: 429 rate limited, 403 bot suspicion, >=500 server error
       (including the 520-522 edge errors), other 4xx a definitive client
       error.
    2. Body heuristics for everything else:
       - a body shorter than the profile's minimum content length is
         blocked, whatever it contains;
       - a body carrying every brand token plus at least one content token
         is genuine even if it also mentions block phrases;
       - otherwise any block-indicator phrase marks it blocked.
    3. An error-page title ("Error", "Page Not Found", ...) is retryable.
"""
import re
from enum import Enum

from .errors import FailureKind

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


class Verdict(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    BOT_SUSPECTED = "bot_suspected"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    BLOCKED = "blocked"
    ERROR_PAGE = "error_page"

    @property
    def failure_kind(self):
        return {
            Verdict.RATE_LIMITED: FailureKind.RATE_LIMITED,
            Verdict.BOT_SUSPECTED: FailureKind.BOT_SUSPECTED,
            Verdict.SERVER_ERROR: FailureKind.SERVER_ERROR,
            Verdict.BLOCKED: FailureKind.BLOCKED,
            Verdict.ERROR_PAGE: FailureKind.ERROR_PAGE,
        }.get(self)


def has_identity_markers(body, profile):
    lower = body.lower()
    return all(token in lower for token in profile.brand_tokens) and any(
        token in lower for token in profile.content_tokens
    )


def looks_blocked(body, profile):
    if len(body) < profile.min_content_length:
        return True
    if has_identity_markers(body, profile):
        return False
    lower = body.lower()
    return any(indicator in lower for indicator in profile.block_indicators)


def looks_like_error_page(body, profile):
    match = TITLE_RE.search(body)
    if not match:
        return False
    title = match.group(1).strip().lower()
    return any(token in title for token in profile.error_title_tokens)


def classify_response(status_code, body, profile):
    if status_code == 429:
        return Verdict.RATE_LIMITED
    if status_code == 403:
        return Verdict.BOT_SUSPECTED
    if status_code >= 500:
        return Verdict.SERVER_ERROR
    if status_code >= 400:
        return Verdict.CLIENT_ERROR
    if looks_blocked(body, profile):
        return Verdict.BLOCKED
    if looks_like_error_page(body, profile):
        return Verdict.ERROR_PAGE
    return Verdict.OK
