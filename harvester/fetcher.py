# harvester/fetcher.py
import asyncio
import logging
import random
from typing import Dict

import httpx
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from .config import get_settings
from .detection import Verdict, classify_response
from .errors import (
    FailureKind,
    FetchExhaustedError,
    FetchHTTPError,
    RetryableFetchError,
)
from .identity import IdentityPool
from .profile import get_site_profile

logger = logging.getLogger("harvester.fetch")

# (base seconds, added per attempt, cap)
RATE_LIMIT_BACKOFF = (5.0, 2.0, 15.0)
BOT_BACKOFF = (3.0, 1.5, 12.0)
DEFAULT_BACKOFF = (1.0, 0.5, 5.0)
JITTER_SECONDS = 2.0
MAX_REDIRECTS = 5


def use_proxy_for_attempt(attempt, force_proxy=False, direct_attempts=3):
    """
    Transport choice for a 1-based attempt number.

    Attempt 1 goes direct, the rest of the direct-first window alternates
    (even attempts proxied) and every attempt past the window is proxied.
    ``force_proxy`` proxies all of them.
    """
    if force_proxy:
        return True
    if attempt == 1:
        return False
    if attempt <= direct_attempts:
        return attempt % 2 == 0
    return True


class ClassScaledBackoff(wait_base):
    """tenacity wait strategy: delay grows with the attempt, scaled by failure kind."""

    def __init__(self, rng=None, jitter=JITTER_SECONDS):
        self._rng = rng or random.Random()
        self.jitter = jitter

    def base_delay(self, kind, attempt):
        if kind == FailureKind.RATE_LIMITED:
            base, step, cap = RATE_LIMIT_BACKOFF
        elif kind in (FailureKind.BOT_SUSPECTED, FailureKind.BLOCKED):
            base, step, cap = BOT_BACKOFF
        else:
            base, step, cap = DEFAULT_BACKOFF
        return min(base + attempt * step, cap)

    def __call__(self, retry_state):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        kind = getattr(exc, "kind", None)
        delay = self.base_delay(kind, retry_state.attempt_number)
        return delay + self._rng.uniform(0, self.jitter)


class FetchResult(BaseModel):
    url: str
    status_code: int
    body: str
    headers: Dict[str, str] = Field(default_factory=dict)
    attempts: int = 1
    via_proxy: bool = False
    # accepted on the final attempt although it looked blocked or failed
    degraded: bool = False

    @property
    def ok(self):
        return 200 <= self.status_code < 400 and not self.degraded


class ResilientFetcher:
    """
    One logical GET, carried out as up to ``max_attempts`` physical requests.

    Each attempt picks a transport (direct or the upstream proxy), a fresh
    browser identity and classifies what came back. Retryable outcomes
    back off and try again; the final attempt hands back whatever response
    it received (flagged ``degraded``) so callers can work with best-effort
    data. Only when the last attempt produced no response at all does
    ``fetch`` raise FetchExhaustedError.
    """

    def __init__(
        self,
        settings=None,
        profile=None,
        identities=None,
        *,
        direct_transport=None,
        proxy_transport=None,
        sleep=asyncio.sleep,
        rng=None,
    ):
        self.settings = settings or get_settings()
        self.profile = profile or get_site_profile()
        self._rng = rng or random.Random()
        self.identities = identities or IdentityPool.from_profile(self.profile, rng=self._rng)
        self._sleep = sleep
        self._backoff = ClassScaledBackoff(rng=self._rng)
        self.requests_sent = 0
        self._warned_no_proxy = False

        timeout = httpx.Timeout(self.settings.timeout_seconds)
        self._direct = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            transport=direct_transport,
        )
        if proxy_transport is not None:
            self._proxied = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                transport=proxy_transport,
            )
        elif self.settings.proxy_url:
            self._proxied = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                proxy=self.settings.proxy_url,
            )
        else:
            self._proxied = None

    async def close(self):
        await self._direct.aclose()
        if self._proxied is not None:
            await self._proxied.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def fetch(self, url, max_attempts=None, force_proxy=False):
        """
        Fetch ``url`` and return a FetchResult.

        Raises:
            FetchHTTPError: definitive 4xx (other than 403/429), not retried.
            FetchExhaustedError: every attempt failed at the transport level.
        """
        max_attempts = max_attempts or self.settings.max_attempts
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=self._backoff,
            retry=retry_if_exception_type(RetryableFetchError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(
                        url, attempt.retry_state.attempt_number, max_attempts, force_proxy
                    )
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise FetchExhaustedError(url, max_attempts, last) from last

    def _client_for(self, use_proxy):
        if not use_proxy:
            return self._direct, False
        if self._proxied is None:
            if not self._warned_no_proxy:
                logger.warning("No proxy configured, proxied attempts go direct")
                self._warned_no_proxy = True
            return self._direct, False
        return self._proxied, True

    async def _attempt(self, url, attempt, max_attempts, force_proxy):
        wants_proxy = use_proxy_for_attempt(
            attempt, force_proxy, self.settings.direct_attempts
        )
        client, via_proxy = self._client_for(wants_proxy)
        headers = self.identities.headers(first_request=attempt == 1)
        logger.debug(
            "Attempt %s/%s %s %s UA=%s",
            attempt,
            max_attempts,
            "PROXY" if via_proxy else "DIRECT",
            url,
            headers["User-Agent"][:50],
        )

        self.requests_sent += 1
        try:
            response = await client.get(url, headers=headers)
        except httpx.RequestError as exc:
            raise RetryableFetchError(
                url, FailureKind.TRANSPORT, f"{type(exc).__name__}: {exc}"
            ) from exc

        body = response.text
        verdict = classify_response(response.status_code, body, self.profile)
        result = FetchResult(
            url=url,
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
            attempts=attempt,
            via_proxy=via_proxy,
        )
        if verdict is Verdict.OK:
            return result
        if verdict is Verdict.CLIENT_ERROR:
            raise FetchHTTPError(url, response.status_code)
        if attempt >= max_attempts:
            logger.warning(
                "Final attempt for %s: accepting %s response (HTTP %s, %d chars)",
                url,
                verdict.value,
                response.status_code,
                len(body),
            )
            result.degraded = True
            return result
        raise RetryableFetchError(
            url,
            verdict.failure_kind,
            f"{verdict.value} response (HTTP {response.status_code})",
            status_code=response.status_code,
        )

    def _log_retry(self, retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(
            "Attempt %s for %s failed (%s: %s), waiting %.1fs",
            retry_state.attempt_number,
            getattr(exc, "url", "?"),
            getattr(getattr(exc, "kind", None), "value", "error"),
            exc,
            retry_state.next_action.sleep,
        )
