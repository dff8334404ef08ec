"""Pool of headless Chromium pages for JavaScript-heavy sites.

Playwright is an optional dependency, only needed for recipes with
``behavior.useBrowser`` or for sites that serve JS-only shells.  If it is not
installed, :meth:`BrowserPool.start` raises
:class:`~product_scraper.core.exceptions.BrowserError`, which fails the job.

Install Playwright and download the Chromium browser binary::

    pip install "product-scraper[browser]"
    playwright install chromium

One browser process is launched per job.  Each fetch opens its own context
and page inside :meth:`BrowserPool.page`, which caps the number of open pages
at ``size`` (independently of the job's ``maxConcurrent``) and always closes
the page and its context, including when the fetch raises or the job task is
cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

from product_scraper.core.exceptions import BrowserError
from product_scraper.scraper.config import (
    BROWSER_USER_AGENT,
    TRANSIENT_STATUS_CODES,
    WAIT_FOR_SELECTOR_TIMEOUT_MS,
)
from product_scraper.scraper.http_fetcher import FetchResult

logger = logging.getLogger(__name__)

# Guard import: playwright is an optional dependency
try:
    from playwright.async_api import TimeoutError as _PlaywrightTimeoutError
    from playwright.async_api import async_playwright as _async_playwright

    _PLAYWRIGHT_AVAILABLE = True
except ImportError:
    _PLAYWRIGHT_AVAILABLE = False


def playwright_available() -> bool:
    """Return ``True`` if the ``playwright`` package can be imported."""
    return _PLAYWRIGHT_AVAILABLE


class BrowserPool:
    """Bounded set of browser pages sharing one Chromium instance.

    Args:
        size: Maximum pages open at once.
        browser: An already launched browser object.  Used by tests; when
            omitted :meth:`start` launches Chromium through Playwright.
    """

    def __init__(self, size: int, *, browser: Any = None) -> None:
        if size < 1:
            raise ValueError("browser pool size must be >= 1")
        self.size = size
        self._slots = asyncio.Semaphore(size)
        self._browser = browser
        self._playwright: Any = None
        self.in_use = 0
        self.peak_in_use = 0

    async def start(self) -> "BrowserPool":
        """Launch Chromium unless a browser was injected.

        Raises:
            BrowserError: If Playwright is missing or the browser fails to launch.
        """
        if self._browser is not None:
            return self
        if not _PLAYWRIGHT_AVAILABLE:
            raise BrowserError(
                "Playwright is not installed. Install it with: "
                "pip install 'product-scraper[browser]' && playwright install chromium"
            )
        try:
            self._playwright = await _async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=True)
        except Exception as exc:  # noqa: BLE001
            await self._stop_playwright()
            raise BrowserError(f"Browser launch failed: {exc}") from exc
        logger.info("browser: launched chromium (pool size %d)", self.size)
        return self

    async def close(self) -> None:
        """Close the browser and stop Playwright.  Safe to call twice."""
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("browser: close failed: %s", exc)
        await self._stop_playwright()

    async def _stop_playwright(self) -> None:
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:  # noqa: BLE001
                logger.warning("browser: playwright stop failed: %s", exc)

    async def __aenter__(self) -> "BrowserPool":
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Any]:
        """Acquire a fresh page; it and its context are closed on exit.

        Raises:
            BrowserError: If the pool has not been started or was closed.
        """
        if self._browser is None:
            raise BrowserError("Browser pool is not running")
        async with self._slots:
            self.in_use += 1
            self.peak_in_use = max(self.peak_in_use, self.in_use)
            context = None
            page = None
            try:
                context = await self._browser.new_context(user_agent=BROWSER_USER_AGENT)
                page = await context.new_page()
                yield page
            finally:
                self.in_use -= 1
                if page is not None:
                    try:
                        await page.close()
                    except Exception as exc:  # noqa: BLE001
                        logger.debug("browser: page close failed: %s", exc)
                if context is not None:
                    try:
                        await context.close()
                    except Exception as exc:  # noqa: BLE001
                        logger.debug("browser: context close failed: %s", exc)

    async def fetch(
        self,
        url: str,
        *,
        timeout: float,
        wait_for: Sequence[str] = (),
    ) -> FetchResult:
        """Render *url* and return the page source.

        Navigation waits for network idle, then for each selector in
        *wait_for* (missing selectors are logged, not fatal).

        Args:
            url: Target URL.
            timeout: Navigation timeout in seconds.
            wait_for: CSS selectors to wait for after navigation.

        Returns:
            A :class:`~product_scraper.scraper.http_fetcher.FetchResult`.
            Navigation failures are reported as transient.
        """
        async with self.page() as page:
            try:
                response = await page.goto(
                    url,
                    timeout=timeout * 1000,
                    wait_until="networkidle",
                )
                for selector in wait_for:
                    try:
                        await page.wait_for_selector(
                            selector, timeout=WAIT_FOR_SELECTOR_TIMEOUT_MS
                        )
                    except Exception as exc:  # noqa: BLE001
                        logger.debug("browser: selector %r not found on %s: %s", selector, url, exc)
                status_code = response.status if response else None
                final_url = page.url
                html = await page.content()
            except Exception as exc:  # noqa: BLE001
                timed_out = _PLAYWRIGHT_AVAILABLE and isinstance(exc, _PlaywrightTimeoutError)
                logger.warning("browser: fetch failed for %s: %s", url, exc)
                return FetchResult(
                    html=None,
                    status_code=None,
                    final_url=url,
                    error="timeout" if timed_out else f"browser error: {exc}",
                    transient=True,
                    timed_out=timed_out,
                )

        if status_code is not None and status_code >= 400:
            return FetchResult(
                html=None,
                status_code=status_code,
                final_url=final_url,
                error=f"HTTP {status_code}",
                transient=status_code in TRANSIENT_STATUS_CODES,
            )
        return FetchResult(
            html=html,
            status_code=status_code,
            final_url=final_url,
            error=None,
        )
