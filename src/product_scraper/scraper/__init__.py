"""Scrape job engine.

Turns a ``{siteUrl, recipe, options}`` request into a tracked, cancellable,
bounded-concurrency crawl that produces parent and variation CSV files.

Sub-modules:
- ``config``             - constants and tuning parameters
- ``http_fetcher``       - async httpx-based page fetcher with JS-shell detection
- ``playwright_fetcher`` - bounded pool of headless Chromium pages
- ``extractor``          - selector-chain evaluation over listing and product pages
- ``normalizer``         - pure cleaning of extracted fields into product records
- ``rate_control``       - adaptive inter-request delay
- ``csv_generator``      - parent / variation CSV rendering
- ``orchestrator``       - job state machine and single owner of job mutation
- ``scheduler``          - per-job pipeline and the job dispatcher
- ``router``             - FastAPI router (``/api/scrape/``)
"""
