"""Configuration package for the product scraper.

Re-exports the settings symbols so callers can write::

    from product_scraper.config import get_settings
"""

from __future__ import annotations

from product_scraper.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
