"""Constants and tuning parameters for the scrape job engine.

Per-deployment tunables (defaults, bounds, pool sizes) live in
:class:`product_scraper.config.settings.Settings`; this module only holds
values that are part of the engine's behaviour.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

#: User-agent string sent with every HTTP request.
USER_AGENT: str = (
    "Mozilla/5.0 (compatible; ProductScraper/1.0; "
    "+https://github.com/product-scraper/product-scraper)"
)

#: Accept header for page requests.
ACCEPT_HTML: str = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"

#: HTTP statuses treated as transient and retried with backoff.
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})

#: Content-Type prefixes that indicate binary/non-text resources that should
#: be skipped without attempting extraction.
BINARY_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/zip",
        "application/octet-stream",
        "application/vnd.",
        "image/",
        "video/",
        "audio/",
        "font/",
    }
)

#: Body length threshold (stripped characters) below which a page is
#: considered a JS-only shell requiring a browser render.
JS_SHELL_BODY_THRESHOLD: int = 500

# ---------------------------------------------------------------------------
# Browser
# ---------------------------------------------------------------------------

#: User agent presented by the headless browser.
BROWSER_USER_AGENT: str = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

#: How long the browser waits for each recipe ``waitForSelectors`` entry (ms).
WAIT_FOR_SELECTOR_TIMEOUT_MS: int = 5_000

# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

#: Separator used when a list is flattened into one CSV cell.
LIST_SEPARATOR: str = " | "

#: Skip reasons recorded in job metadata and metrics.
SKIP_NETWORK: str = "network"
SKIP_HTTP: str = "http"
SKIP_PARSE: str = "parse"
