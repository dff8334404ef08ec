"""Unit tests for parent and variation CSV rendering."""

from __future__ import annotations

import csv
import io
from decimal import Decimal

from product_scraper.scraper.csv_generator import (
    CHUNK_SIZE,
    PARENT_COLUMNS,
    VARIATION_COLUMNS,
    CsvGenerator,
    to_download_bytes,
)
from product_scraper.scraper.normalizer import StockStatus
from tests.factories.records import ProductRecordFactory, VariationRecordFactory


def _rows(document: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(document, newline="")))


class TestParentCsv:
    def test_header_is_fixed(self) -> None:
        artifacts = CsvGenerator().generate([ProductRecordFactory.build()], [])
        header = _rows(artifacts.parent_csv)[0]
        assert header == list(PARENT_COLUMNS.values())
        assert header[0] == "SKU"

    def test_row_values(self) -> None:
        record = ProductRecordFactory.build(
            sku="MUG-1",
            title="Ceramic Mug",
            price=Decimal("12.5"),
            stock_status=StockStatus.OUT_OF_STOCK,
            images=("https://shop.test/a.jpg", "https://shop.test/b.jpg"),
            attributes=(("Color", "Blue"), ("Size", "L")),
            source_url="https://shop.test/products/mug",
        )
        row = dict(zip(PARENT_COLUMNS.values(), _rows(CsvGenerator().generate([record], []).parent_csv)[1]))

        assert row["SKU"] == "MUG-1"
        assert row["Price"] == "12.50"
        assert row["Stock Status"] == "out_of_stock"
        assert row["Images"] == "https://shop.test/a.jpg | https://shop.test/b.jpg"
        assert row["Attributes"] == "Color: Blue | Size: L"
        assert row["Type"] == "simple"
        assert row["Source URL"] == "https://shop.test/products/mug"

    def test_unknown_price_is_empty_cell(self) -> None:
        record = ProductRecordFactory.build(price=None)
        row = _rows(CsvGenerator().generate([record], []).parent_csv)[1]
        assert row[list(PARENT_COLUMNS).index("price")] == ""

    def test_quoting_survives_commas_quotes_and_newlines(self) -> None:
        description = 'Line one, with "quotes"\nLine two'
        record = ProductRecordFactory.build(description=description)
        document = CsvGenerator().generate([record], []).parent_csv
        row = _rows(document)[1]

        assert row[list(PARENT_COLUMNS).index("description")] == description
        assert document.endswith("\r\n")

    def test_every_row_has_full_column_set(self) -> None:
        records = ProductRecordFactory.build_batch(3, images=(), attributes=())
        rows = _rows(CsvGenerator().generate(records, []).parent_csv)
        assert all(len(row) == len(PARENT_COLUMNS) for row in rows)

    def test_large_input_is_rendered_in_chunks(self) -> None:
        records = ProductRecordFactory.build_batch(CHUNK_SIZE * 2 + 1)
        artifacts = CsvGenerator().generate(records, [])

        assert artifacts.total_products == CHUNK_SIZE * 2 + 1
        assert len(_rows(artifacts.parent_csv)) == CHUNK_SIZE * 2 + 2


class TestVariationCsv:
    def test_none_without_variations(self) -> None:
        artifacts = CsvGenerator().generate([ProductRecordFactory.build()], [])
        assert artifacts.variation_csv is None
        assert artifacts.total_variations == 0

    def test_rows_reference_parent(self) -> None:
        variation = VariationRecordFactory.build(
            parent_sku="MUG-1", sku="MUG-1-RED", attributes=(("Color", "Red"),), price=None
        )
        parent = ProductRecordFactory.build(sku="MUG-1", variations=(variation,))
        artifacts = CsvGenerator().generate([parent], [variation])
        rows = _rows(artifacts.variation_csv or "")

        assert rows[0] == list(VARIATION_COLUMNS.values())
        row = dict(zip(rows[0], rows[1]))
        assert row["Parent SKU"] == "MUG-1"
        assert row["SKU"] == "MUG-1-RED"
        assert row["Attributes"] == "Color: Red"
        assert row["Price"] == ""
        parent_row = dict(zip(PARENT_COLUMNS.values(), _rows(artifacts.parent_csv)[1]))
        assert parent_row["Type"] == "variable"


class TestDownloadBytes:
    def test_utf8_bom_prepended(self) -> None:
        body = to_download_bytes("SKU\r\nKAFFEKOP-Ø\r\n")
        assert body.startswith(b"\xef\xbb\xbf")
        assert body.decode("utf-8-sig") == "SKU\r\nKAFFEKOP-Ø\r\n"
