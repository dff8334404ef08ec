"""Factory Boy factories, page builders and fakes for test data generation.

Available factories
-------------------
RecipeDataFactory       - raw recipe document dict (the ``test-shop`` recipe)
JobFactory              - pending :class:`Job` snapshot
ProductRecordFactory    - normalized parent product record
VariationRecordFactory  - normalized variation record
RawProductFactory       - extractor output for one product page

Page builders
-------------
listing_page()          - category page with product links and pagination
product_page()          - product page matching the ``test-shop`` recipe

Fakes
-----
FakeShop                - storefront served through ``httpx.MockTransport``
FakeBrowser             - launched-browser stand-in for ``BrowserPool``
"""

from __future__ import annotations

from tests.factories.jobs import JobFactory
from tests.factories.pages import listing_page, product_page
from tests.factories.recipes import RecipeDataFactory, make_recipe
from tests.factories.records import (
    ProductRecordFactory,
    RawProductFactory,
    VariationRecordFactory,
)
from tests.factories.shop import FakeBrowser, FakeShop

__all__ = [
    "FakeBrowser",
    "FakeShop",
    "JobFactory",
    "ProductRecordFactory",
    "RawProductFactory",
    "RecipeDataFactory",
    "VariationRecordFactory",
    "listing_page",
    "make_recipe",
    "product_page",
]
