"""Parent and variation CSV rendering.

Turns finalized product records (see
:func:`product_scraper.scraper.normalizer.finalize_records`) into two CSV
documents with fixed column orders.  Every row has the full column set;
absent values are empty cells.  Lists are joined with ``" | "`` so each row
stays a single line, and attributes are written as ``name: value`` pairs.

When a job produced no variations, ``variation_csv`` is ``None`` rather than
a header-only document, so the download endpoint can answer 404 ("never
produced") instead of serving an empty file that looks like success.

The generator does not touch storage.  The scheduler hands the result to
the orchestrator, which persists it.
"""

from __future__ import annotations

import csv
import enum
import io
import itertools
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

from product_scraper.scraper.config import LIST_SEPARATOR
from product_scraper.scraper.normalizer import ProductRecord, VariationRecord, format_price

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Column definitions
# ---------------------------------------------------------------------------

#: Ordered parent columns (record attribute -> header label).
PARENT_COLUMNS: dict[str, str] = {
    "sku": "SKU",
    "slug": "Slug",
    "title": "Title",
    "price": "Price",
    "stock_status": "Stock Status",
    "images": "Images",
    "description": "Description",
    "attributes": "Attributes",
    "product_type": "Type",
    "source_url": "Source URL",
}

#: Ordered variation columns (record attribute -> header label).
VARIATION_COLUMNS: dict[str, str] = {
    "parent_sku": "Parent SKU",
    "sku": "SKU",
    "title": "Title",
    "price": "Price",
    "stock_status": "Stock Status",
    "image": "Image",
    "attributes": "Attributes",
}

#: Rows buffered per ``writerows`` call.
CHUNK_SIZE: int = 500

#: UTF-8 byte order mark prepended to downloads so Excel detects the encoding.
UTF8_BOM: str = "\ufeff"


@dataclass(frozen=True)
class CsvArtifacts:
    """The CSV output of one job.

    Attributes:
        parent_csv: Parent product document (header row always present).
        variation_csv: Variation document, or ``None`` when there were no
            variations.
        total_products: Parent rows written.
        total_variations: Variation rows written.
    """

    parent_csv: str
    variation_csv: str | None
    total_products: int
    total_variations: int


def _cell(value: object) -> str:
    """Coerce a record value to a CSV cell."""
    if value is None:
        return ""
    if isinstance(value, enum.Enum):
        return str(value.value)
    if isinstance(value, tuple):
        if value and isinstance(value[0], tuple):
            return LIST_SEPARATOR.join(f"{name}: {val}" for name, val in value)
        return LIST_SEPARATOR.join(str(v) for v in value)
    return str(value)


def _row(record: object, columns: Iterable[str]) -> list[str]:
    row: list[str] = []
    for column in columns:
        value = getattr(record, column)
        row.append(format_price(value) if column == "price" else _cell(value))
    return row


class CsvGenerator:
    """Render parent and variation records into CSV documents.

    Typical usage in the scheduler::

        generator = CsvGenerator()
        artifacts = generator.generate(parents, variations)
    """

    def iter_parent_rows(self, parents: Iterable[ProductRecord]) -> Iterator[list[str]]:
        """Yield the header row, then one row per parent record."""
        yield list(PARENT_COLUMNS.values())
        for record in parents:
            yield _row(record, PARENT_COLUMNS)

    def iter_variation_rows(self, variations: Iterable[VariationRecord]) -> Iterator[list[str]]:
        """Yield the header row, then one row per variation record."""
        yield list(VARIATION_COLUMNS.values())
        for record in variations:
            yield _row(record, VARIATION_COLUMNS)

    @staticmethod
    def _render(rows: Iterator[list[str]]) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\r\n")
        while True:
            chunk = list(itertools.islice(rows, CHUNK_SIZE))
            if not chunk:
                break
            writer.writerows(chunk)
        return buf.getvalue()

    def generate(
        self,
        parents: Sequence[ProductRecord],
        variations: Sequence[VariationRecord],
    ) -> CsvArtifacts:
        """Render both documents.

        Args:
            parents: Parent records, already unique by SKU.
            variations: Variation records, already unique by SKU.

        Returns:
            A :class:`CsvArtifacts`; ``variation_csv`` is ``None`` when
            *variations* is empty.
        """
        parent_csv = self._render(self.iter_parent_rows(parents))
        variation_csv = self._render(self.iter_variation_rows(variations)) if variations else None
        logger.info(
            "csv: rendered %d parent row(s), %d variation row(s)",
            len(parents),
            len(variations),
        )
        return CsvArtifacts(
            parent_csv=parent_csv,
            variation_csv=variation_csv,
            total_products=len(parents),
            total_variations=len(variations),
        )


def to_download_bytes(document: str) -> bytes:
    """Encode a stored CSV document for download, with the UTF-8 BOM."""
    return (UTF8_BOM + document).encode("utf-8")
