"""ORM models.  Importing this package registers every table on ``Base.metadata``."""

from __future__ import annotations

from product_scraper.core.models.base import Base
from product_scraper.core.models.jobs import ScrapeJobRow, ScrapeResultRow

__all__ = ["Base", "ScrapeJobRow", "ScrapeResultRow"]
