# harvester/errors.py
from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    BOT_SUSPECTED = "bot_suspected"
    SERVER_ERROR = "server_error"
    BLOCKED = "blocked"
    ERROR_PAGE = "error_page"


class HarvestError(Exception):
    """Base class for every error raised by the harvester."""


class FetchError(HarvestError):
    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class RetryableFetchError(FetchError):
    """
    One physical attempt failed in a way that is worth another try.

    The kind drives the backoff magnitude: rate limiting waits longest,
    bot suspicion (403 or a blocked body) waits a medium amount and
    everything else waits a short amount.
    """

    def __init__(
        self,
        url: str,
        kind: FailureKind,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(url, message)
        self.kind = kind
        self.status_code = status_code


class FetchHTTPError(FetchError):
    """A definitive client error (404, 410, ...). Not retried."""

    def __init__(self, url: str, status_code: int):
        super().__init__(url, f"HTTP {status_code} for {url}")
        self.status_code = status_code


class FetchExhaustedError(FetchError):
    def __init__(self, url: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(
            url, f"All {attempts} attempts failed for {url}. Last error: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class ExtractionError(HarvestError):
    pass


class MissingTitleError(ExtractionError):
    def __init__(self, url: str):
        super().__init__(f"Could not extract product title from {url}")
        self.url = url


class BatchAlreadyRunningError(HarvestError):
    pass
