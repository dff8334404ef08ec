"""Factory Boy factories for extractor and normalizer records.

Usage::

    from tests.factories.records import ProductRecordFactory

    record = ProductRecordFactory.build(sku="MUG-1", title="Ceramic Mug")
"""

from __future__ import annotations

from decimal import Decimal

import factory

from product_scraper.scraper.extractor import RawProduct
from product_scraper.scraper.normalizer import (
    ProductRecord,
    StockStatus,
    VariationRecord,
    slugify,
)


class RawProductFactory(factory.Factory):
    """Uncleaned extractor output for one product page."""

    class Meta:
        model = RawProduct

    url = factory.Sequence(lambda n: f"https://shop.test/products/p{n}")
    title = factory.Sequence(lambda n: f"  Product&nbsp;{n} ")
    price = "$19.99"
    images = ("https://shop.test/img/front.jpg",)
    stock = "In stock"
    description = "A product."
    sku = None
    attributes = ()
    variations = ()


class ProductRecordFactory(factory.Factory):
    """Normalized parent record with an explicit SKU."""

    class Meta:
        model = ProductRecord

    sku = factory.Sequence(lambda n: f"SKU-{n}")
    title = factory.Sequence(lambda n: f"Product {n}")
    slug = factory.LazyAttribute(lambda o: slugify(o.title))
    price = Decimal("19.99")
    stock_status = StockStatus.IN_STOCK
    images = ("https://shop.test/img/front.jpg",)
    description = ""
    attributes = ()
    source_url = factory.Sequence(lambda n: f"https://shop.test/products/p{n}")
    position = factory.Sequence(lambda n: n)
    sku_generated = False
    variations = ()


class VariationRecordFactory(factory.Factory):
    """Normalized variation row."""

    class Meta:
        model = VariationRecord

    parent_sku = "SKU-PARENT"
    sku = factory.Sequence(lambda n: f"SKU-PARENT-{n}")
    title = factory.Sequence(lambda n: f"Variant {n}")
    price = Decimal("19.99")
    stock_status = StockStatus.IN_STOCK
    image = ""
    attributes = (("Color", "Red"),)
    sku_generated = False
