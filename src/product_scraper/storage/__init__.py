"""Job and result persistence.

Sub-modules:
- ``store``   - ``ScrapeStorage`` repository over ``scrape_jobs`` / ``scrape_results``
- ``router``  - FastAPI router (``/api/storage/``)
"""
