"""Async HTTP fetcher with transient-error classification and JS-shell detection.

Uses ``httpx`` for all HTTP requests.  :func:`fetch_url` never raises for
network trouble; it returns a :class:`FetchResult` whose ``transient`` flag
tells the scheduler whether a retry can help.  :func:`raise_for_transient`
turns such a result into a :class:`~product_scraper.core.exceptions.NetworkError`
for the retry loop.

Pages whose body is nearly empty are flagged with ``needs_browser=True`` so
the caller can re-render them with
:mod:`product_scraper.scraper.playwright_fetcher`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from product_scraper.core.exceptions import NetworkError, RequestTimeoutError
from product_scraper.scraper.config import (
    ACCEPT_HTML,
    BINARY_CONTENT_TYPES,
    JS_SHELL_BODY_THRESHOLD,
    TRANSIENT_STATUS_CODES,
    USER_AGENT,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class FetchResult:
    """Result of a single page fetch attempt.

    Attributes:
        html: Raw HTML string, or ``None`` if the fetch failed or was skipped.
        status_code: HTTP status code, or ``None`` on network error.
        final_url: URL after following redirects (the request URL on error).
        error: Human-readable error description, or ``None`` on success.
        transient: ``True`` when the failure is worth retrying (timeouts,
            connection errors, 429 and 5xx responses).
        timed_out: ``True`` when the failure was a request timeout.
        needs_browser: ``True`` if the response body appears to be a
            JS-only shell that requires a headless browser render.
    """

    html: str | None
    status_code: int | None
    final_url: str
    error: str | None
    transient: bool = False
    timed_out: bool = False
    needs_browser: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.html is not None


def raise_for_transient(result: FetchResult) -> FetchResult:
    """Raise for a transient failure, otherwise return *result* unchanged.

    Raises:
        RequestTimeoutError: If the request timed out.
        NetworkError: For any other transient failure.
    """
    if result.transient:
        if result.timed_out:
            raise RequestTimeoutError(
                result.error or "timeout",
                url=result.final_url,
                status_code=result.status_code,
            )
        raise NetworkError(
            result.error or "network error",
            url=result.final_url,
            status_code=result.status_code,
        )
    return result


# ---------------------------------------------------------------------------
# Content checks
# ---------------------------------------------------------------------------


def _is_binary_content_type(content_type: str) -> bool:
    """Return ``True`` if the Content-Type indicates a non-text binary resource."""
    ct = content_type.lower().split(";")[0].strip()
    return any(ct.startswith(prefix) for prefix in BINARY_CONTENT_TYPES)


def _is_js_shell(html: str) -> bool:
    """Return ``True`` if the page body is too short to contain real content."""
    return len(html.strip()) < JS_SHELL_BODY_THRESHOLD


# ---------------------------------------------------------------------------
# Client factory
# ---------------------------------------------------------------------------


def build_client(timeout_seconds: float, max_connections: int = 20) -> httpx.AsyncClient:
    """Return the shared :class:`httpx.AsyncClient` for one job.

    Args:
        timeout_seconds: Default per-request timeout.
        max_connections: Connection pool ceiling; callers size it to the
            job's ``maxConcurrent`` plus headroom for listing pages.
    """
    return httpx.AsyncClient(
        timeout=timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT, "Accept": ACCEPT_HTML},
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        ),
    )


# ---------------------------------------------------------------------------
# Public fetch function
# ---------------------------------------------------------------------------


async def fetch_url(
    url: str,
    *,
    client: httpx.AsyncClient,
    timeout: float,
) -> FetchResult:
    """Fetch a single URL using httpx.

    Performs the following steps in order:

    1. **HTTP GET**: follows redirects; timeouts and connection errors are
       reported as transient failures.
    2. **Status**: 429/5xx are transient, other 4xx are permanent.
    3. **Binary content-type**: returns a permanent skip for PDFs, images, etc.
    4. **JS-shell detection**: sets ``needs_browser=True`` if the response
       body is too short to contain real content.

    Args:
        url: Target URL to fetch.
        client: Shared :class:`httpx.AsyncClient` instance.
        timeout: Request timeout in seconds.

    Returns:
        A :class:`FetchResult` instance.
    """
    # 1. HTTP GET
    try:
        response = await client.get(url, timeout=timeout)
    except httpx.TimeoutException:
        logger.warning("scraper: timeout fetching %s", url)
        return FetchResult(
            html=None,
            status_code=None,
            final_url=url,
            error="timeout",
            transient=True,
            timed_out=True,
        )
    except httpx.TooManyRedirects:
        logger.warning("scraper: too many redirects for %s", url)
        return FetchResult(
            html=None, status_code=None, final_url=url, error="too many redirects"
        )
    except httpx.RequestError as exc:
        logger.warning("scraper: request error for %s: %s", url, exc)
        return FetchResult(
            html=None,
            status_code=None,
            final_url=url,
            error=f"request error: {exc}",
            transient=True,
        )

    final_url = str(response.url)

    # 2. HTTP error status
    if response.status_code >= 400:
        transient = response.status_code in TRANSIENT_STATUS_CODES
        logger.info(
            "scraper: HTTP %d for %s (%s)",
            response.status_code,
            url,
            "transient" if transient else "permanent",
        )
        return FetchResult(
            html=None,
            status_code=response.status_code,
            final_url=final_url,
            error=f"HTTP {response.status_code}",
            transient=transient,
        )

    # 3. Binary content-type check
    content_type = response.headers.get("content-type", "")
    if _is_binary_content_type(content_type):
        logger.info("scraper: skipping binary content-type '%s' for %s", content_type, url)
        return FetchResult(
            html=None,
            status_code=response.status_code,
            final_url=final_url,
            error=f"binary content-type: {content_type}",
        )

    try:
        html = response.text
    except (UnicodeDecodeError, LookupError) as exc:
        logger.warning("scraper: decode error for %s: %s", url, exc)
        return FetchResult(
            html=None,
            status_code=response.status_code,
            final_url=final_url,
            error=f"decode error: {exc}",
        )

    # 4. JS-only shell detection
    needs_browser = _is_js_shell(html)
    if needs_browser:
        logger.info(
            "scraper: JS-only shell detected for %s (body_len=%d)",
            url,
            len(html.strip()),
        )

    return FetchResult(
        html=html,
        status_code=response.status_code,
        final_url=final_url,
        error=None,
        needs_browser=needs_browser,
    )
