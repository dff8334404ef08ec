"""Unit tests for product record normalization.

Covers text cleaning, price and stock parsing, image filtering, attribute
keying, recipe transforms, SKU generation and job-level SKU uniqueness.
Every function under test is pure, so no fixtures are needed.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from product_scraper.core.schemas.recipes import (
    CollapseWhitespaceStep,
    RegexExtractStep,
    RemoveCurrencyStep,
    ReplaceStep,
    StripHtmlStep,
)
from product_scraper.scraper.extractor import RawVariation
from product_scraper.scraper.normalizer import (
    SkuAllocator,
    StockStatus,
    apply_transforms,
    attribute_name,
    canonical_sku,
    clean_text,
    dedupe_by_sku,
    finalize_records,
    format_price,
    generate_sku,
    map_stock_status,
    normalize_attributes,
    normalize_images,
    normalize_product,
    parse_price,
    slugify,
)
from tests.factories.recipes import make_recipe
from tests.factories.records import (
    ProductRecordFactory,
    RawProductFactory,
    VariationRecordFactory,
)

SITE = "https://shop.test"


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


class TestCleanText:
    def test_none_becomes_empty(self) -> None:
        assert clean_text(None) == ""

    def test_entities_and_whitespace(self) -> None:
        assert clean_text("  Blue&nbsp;&amp;   Green \n") == "Blue & Green"

    def test_percent_escapes_decoded(self) -> None:
        assert clean_text("Caf%C3%A9") == "Café"

    @pytest.mark.parametrize("placeholder", ["N/A", "null", "undefined", "-", "  none  "])
    def test_placeholders_become_empty(self, placeholder: str) -> None:
        assert clean_text(placeholder) == ""

    def test_non_string_values_are_stringified(self) -> None:
        assert clean_text(42) == "42"


class TestSlugify:
    def test_accents_and_punctuation(self) -> None:
        assert slugify("Café Crème Deluxe!") == "cafe-creme-deluxe"

    def test_max_length_does_not_end_with_separator(self) -> None:
        slug = slugify("aaaa bbbb cccc", max_length=5)
        assert slug == "aaaa"

    def test_empty(self) -> None:
        assert slugify("   ") == ""


# ---------------------------------------------------------------------------
# Price
# ---------------------------------------------------------------------------


class TestParsePrice:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("$1,299.00", Decimal("1299.00")),
            ("1.299,00 kr", Decimal("1299.00")),
            ("€12,50", Decimal("12.50")),
            ("1,299", Decimal("1299.00")),
            ("1 299,95 kr", Decimal("1299.95")),
            ("CHF 1'250.50", Decimal("1250.50")),
            ("From $10", Decimal("10.00")),
            ("1.299.000", Decimal("1299000.00")),
            ("0.5", Decimal("0.50")),
        ],
    )
    def test_formats(self, raw: str, expected: Decimal) -> None:
        assert parse_price(raw) == expected

    @pytest.mark.parametrize("raw", ["Call for price", "", None, "N/A"])
    def test_no_number_is_unknown(self, raw: str | None) -> None:
        assert parse_price(raw) is None

    def test_format_price(self) -> None:
        assert format_price(Decimal("5")) == "5.00"
        assert format_price(None) == ""


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------


class TestMapStockStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("In stock", StockStatus.IN_STOCK),
            ("Only 3 left!", StockStatus.IN_STOCK),
            ("0 left", StockStatus.OUT_OF_STOCK),
            ("Out of stock", StockStatus.OUT_OF_STOCK),
            ("Sold out", StockStatus.OUT_OF_STOCK),
            ("Currently unavailable", StockStatus.OUT_OF_STOCK),
            ("Not in stock", StockStatus.OUT_OF_STOCK),
            ("Currently not in stock", StockStatus.OUT_OF_STOCK),
            ("No stock", StockStatus.OUT_OF_STOCK),
            ("Not available", StockStatus.OUT_OF_STOCK),
            ("https://schema.org/InStock", StockStatus.IN_STOCK),
            ("http://schema.org/OutOfStock", StockStatus.OUT_OF_STOCK),
            ("Add to cart", StockStatus.IN_STOCK),
            ("Ships in 2 weeks", StockStatus.UNKNOWN),
            ("", StockStatus.UNKNOWN),
            (None, StockStatus.UNKNOWN),
        ],
    )
    def test_mapping(self, raw: str | None, expected: StockStatus) -> None:
        assert map_stock_status(raw) is expected


# ---------------------------------------------------------------------------
# Images and attributes
# ---------------------------------------------------------------------------


class TestNormalizeImages:
    def test_filters_and_dedupes_in_order(self) -> None:
        images = normalize_images(
            [
                "https://shop.test/1.jpg",
                "https://shop.test/1.jpg",
                "/relative.jpg",
                "data:image/png;base64,AAAA",
                "https://shop.test/placeholder.png",
                "https://shop.test/2.jpg",
            ]
        )
        assert images == ("https://shop.test/1.jpg", "https://shop.test/2.jpg")

    def test_capped(self) -> None:
        urls = [f"https://shop.test/{n}.jpg" for n in range(5)]
        assert len(normalize_images(urls, max_images=2)) == 2

    def test_spaces_are_encoded(self) -> None:
        assert normalize_images(["https://shop.test/my image.jpg"]) == (
            "https://shop.test/my%20image.jpg",
        )


class TestAttributes:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("attribute_pa_color", "Color"),
            ("Material:", "Material"),
            ("pa_shoe-size", "Shoe size"),
            ("Screen Size", "Screen Size"),
        ],
    )
    def test_attribute_name(self, raw: str, expected: str) -> None:
        assert attribute_name(raw) == expected

    def test_first_value_per_name_wins(self) -> None:
        pairs = [("Color", "Red"), ("color", "Blue"), ("Size", ""), ("", "XL")]
        assert normalize_attributes(pairs) == (("Color", "Red"),)


# ---------------------------------------------------------------------------
# Recipe transforms
# ---------------------------------------------------------------------------


class TestApplyTransforms:
    def test_regex_extract_first_group(self) -> None:
        assert apply_transforms("Price: 42 USD", [RegexExtractStep(pattern=r"(\d+)")]) == "42"

    def test_regex_extract_no_match_is_empty(self) -> None:
        assert apply_transforms("no digits", [RegexExtractStep(pattern=r"\d+")]) == ""

    def test_bad_group_leaves_value(self) -> None:
        step = RegexExtractStep(pattern=r"\d+", group=3)
        assert apply_transforms("abc 12", [step]) == "abc 12"

    def test_steps_run_in_order(self) -> None:
        steps = [StripHtmlStep(), CollapseWhitespaceStep()]
        assert apply_transforms("<b>Bold</b>   text", steps) == "Bold text"

    def test_replace(self) -> None:
        assert apply_transforms("12,50", [ReplaceStep(pattern=",", replacement=".")]) == "12.50"

    def test_remove_currency(self) -> None:
        assert apply_transforms("$ 19.99 USD", [RemoveCurrencyStep()]).strip() == "19.99"

    def test_none_passes_through(self) -> None:
        assert apply_transforms(None, [StripHtmlStep()]) is None


# ---------------------------------------------------------------------------
# SKU
# ---------------------------------------------------------------------------


class TestSku:
    def test_canonical_sku(self) -> None:
        assert canonical_sku("  ab 12 ") == "AB-12"

    def test_generate_sku_is_stable(self) -> None:
        first = generate_sku("Blue Mug", SITE, 3)
        assert first == generate_sku("Blue Mug", SITE, 3)
        assert first.startswith("BLUE-MUG-")

    def test_generate_sku_depends_on_position(self) -> None:
        assert generate_sku("Blue Mug", SITE, 1) != generate_sku("Blue Mug", SITE, 2)

    def test_generate_sku_without_title(self) -> None:
        assert generate_sku("", SITE, 0).startswith("PRODUCT-")

    def test_allocator_suffixes_collisions(self) -> None:
        allocator = SkuAllocator()
        assert [allocator.allocate("A") for _ in range(3)] == ["A", "A-2", "A-3"]
        assert "A-2" in allocator
        assert allocator.reserve("A") is False


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


class TestNormalizeProduct:
    def test_fields_are_cleaned(self) -> None:
        recipe = make_recipe()
        raw = RawProductFactory.build(
            title="  Ceramic&nbsp;Mug ",
            price="$12.50",
            stock="Only 2 left",
            sku="mug 1",
            attributes=(("attribute_pa_color", "Blue"),),
        )
        record = normalize_product(raw, recipe, site_url=SITE, position=4)

        assert record.title == "Ceramic Mug"
        assert record.slug == "ceramic-mug"
        assert record.price == Decimal("12.50")
        assert record.stock_status is StockStatus.IN_STOCK
        assert record.sku == "MUG-1"
        assert record.sku_generated is False
        assert record.attributes == (("Color", "Blue"),)
        assert record.position == 4
        assert record.product_type == "simple"

    def test_missing_sku_is_generated(self) -> None:
        record = normalize_product(
            RawProductFactory.build(title="Tea Cup", sku=None), make_recipe(), site_url=SITE, position=0
        )
        assert record.sku_generated is True
        assert record.sku == generate_sku("Tea Cup", SITE, 0)

    def test_is_deterministic(self) -> None:
        recipe = make_recipe()
        raw = RawProductFactory.build()
        assert normalize_product(raw, recipe, site_url=SITE, position=1) == normalize_product(
            raw, recipe, site_url=SITE, position=1
        )

    def test_variations_inherit_and_get_skus(self) -> None:
        raw = RawProductFactory.build(
            title="Ceramic Mug",
            sku="MUG-1",
            price="$12.50",
            stock="In stock",
            variations=(
                RawVariation(attributes=(("attribute_pa_color", "Red"),)),
                RawVariation(price="14.00", stock="Sold out", attributes=(("color", "Blue"),)),
            ),
        )
        record = normalize_product(raw, make_recipe(), site_url=SITE, position=0)

        assert record.product_type == "variable"
        red, blue = record.variations
        assert red.parent_sku == "MUG-1"
        assert red.sku == "MUG-1-RED"
        assert red.title == "Ceramic Mug - Red"
        assert red.price == Decimal("12.50")
        assert red.stock_status is StockStatus.IN_STOCK
        assert red.sku_generated is True
        assert blue.sku == "MUG-1-BLUE"
        assert blue.price == Decimal("14.00")
        assert blue.stock_status is StockStatus.OUT_OF_STOCK

    def test_duplicate_variation_skus_are_replaced(self) -> None:
        raw = RawProductFactory.build(
            sku="MUG-1",
            variations=(
                RawVariation(sku="V1", attributes=(("Color", "Red"),)),
                RawVariation(sku="V1", attributes=(("Color", "Blue"),)),
                RawVariation(sku="mug-1"),
            ),
        )
        record = normalize_product(raw, make_recipe(), site_url=SITE, position=0)
        skus = [variation.sku for variation in record.variations]

        assert skus[0] == "V1"
        assert skus[1] == "MUG-1-BLUE"
        assert skus[2] == "MUG-1-3"
        assert len(set(skus)) == 3


# ---------------------------------------------------------------------------
# Job-level uniqueness
# ---------------------------------------------------------------------------


class TestFinalizeRecords:
    def test_duplicate_explicit_sku_keeps_first(self) -> None:
        first = ProductRecordFactory.build(sku="DUP", position=0, title="First")
        second = ProductRecordFactory.build(sku="DUP", position=1, title="Second")
        parents, _ = finalize_records([second, first])

        assert [p.title for p in parents] == ["First"]

    def test_colliding_generated_skus_are_suffixed(self) -> None:
        variation = VariationRecordFactory.build(
            parent_sku="MUG-ABC", sku="MUG-ABC-RED", sku_generated=True
        )
        records = [
            ProductRecordFactory.build(sku="MUG-ABC", sku_generated=True, position=0),
            ProductRecordFactory.build(
                sku="MUG-ABC", sku_generated=True, position=1, variations=(variation,)
            ),
        ]
        parents, variations = finalize_records(records)

        assert [p.sku for p in parents] == ["MUG-ABC", "MUG-ABC-2"]
        assert variations[0].parent_sku == "MUG-ABC-2"
        assert variations[0].sku == "MUG-ABC-2-RED"

    def test_generated_sku_never_displaces_explicit(self) -> None:
        generated = ProductRecordFactory.build(sku="X", sku_generated=True, position=0)
        explicit = ProductRecordFactory.build(sku="X", sku_generated=False, position=1)
        parents = dedupe_by_sku([generated, explicit])

        assert [(p.sku, p.sku_generated) for p in parents] == [("X-2", True), ("X", False)]

    def test_ordered_by_position(self) -> None:
        records = [ProductRecordFactory.build(position=p) for p in (2, 0, 1)]
        parents, _ = finalize_records(records)
        assert [p.position for p in parents] == [0, 1, 2]

    def test_inputs_are_not_mutated(self) -> None:
        record = ProductRecordFactory.build(sku="SAME", sku_generated=True, position=1)
        twin = ProductRecordFactory.build(sku="SAME", sku_generated=True, position=0)
        finalize_records([record, twin])
        assert record.sku == "SAME"
        assert twin.sku == "SAME"
