"""Normalization: raw extracted strings -> canonical product records.

Every function here is total and pure.  Malformed input degrades to an
empty or "unknown" value instead of raising, and inputs are never mutated;
records are frozen dataclasses and changes go through
:func:`dataclasses.replace`.

Pipeline for one product page (:func:`normalize_product`):

1. apply the recipe's per-field transform steps to the raw strings,
2. canonical cleaning: entities, percent-encoding, whitespace, placeholders,
3. price parsing to :class:`~decimal.Decimal` (``None`` means unknown),
4. stock mapping to :class:`StockStatus`,
5. image filtering, attribute keying, variation SKUs,
6. SKU: explicit SKUs are canonicalised, missing ones generated from
   title, site and discovery position.

Job-level uniqueness is settled afterwards by :func:`finalize_records`:
duplicate explicit SKUs collapse to the first record, colliding generated
SKUs get a numeric suffix from :class:`SkuAllocator`.

Example::

    from product_scraper.scraper.normalizer import parse_price

    parse_price("$1,299.00")       # Decimal("1299.00")
    parse_price("Call for price")  # None
"""

from __future__ import annotations

import dataclasses
import enum
import hashlib
import html
import logging
import re
import unicodedata
import urllib.parse
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Sequence

from bs4 import BeautifulSoup

from product_scraper.core.schemas.recipes import Recipe
from product_scraper.scraper.extractor import RawProduct, RawVariation

logger = logging.getLogger(__name__)


class StockStatus(str, enum.Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VariationRecord:
    """A normalized variation row.  ``parent_sku`` always names its parent."""

    parent_sku: str
    sku: str
    title: str
    price: Decimal | None
    stock_status: StockStatus
    image: str = ""
    attributes: tuple[tuple[str, str], ...] = ()
    sku_generated: bool = False


@dataclass(frozen=True)
class ProductRecord:
    """A normalized parent product row.

    Attributes:
        sku: Unique within the job after :func:`finalize_records`.
        slug: URL-safe identifier derived from the title.
        title: Cleaned title.
        price: Parsed price, ``None`` when unknown.
        stock_status: Canonical stock status.
        images: Absolute, deduplicated image URLs, capped in length.
        description: Cleaned description (empty in fast mode).
        attributes: ``(name, value)`` pairs with consistent keys.
        source_url: Page the record was extracted from.
        position: Discovery index of the page within the job.
        sku_generated: ``True`` when the SKU was derived, not scraped.
        variations: The product's variations.
    """

    sku: str
    slug: str
    title: str
    price: Decimal | None
    stock_status: StockStatus
    images: tuple[str, ...] = ()
    description: str = ""
    attributes: tuple[tuple[str, str], ...] = ()
    source_url: str = ""
    position: int = 0
    sku_generated: bool = False
    variations: tuple[VariationRecord, ...] = ()

    @property
    def product_type(self) -> str:
        return "variable" if self.variations else "simple"


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

_WHITESPACE = re.compile(r"\s+")
_PERCENT_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")

#: Values that mean "nothing here".
PLACEHOLDER_TOKENS: frozenset[str] = frozenset(
    {"n/a", "na", "n.a.", "none", "null", "undefined", "nan", "-", "--", "tbd", "image", "no image"}
)


def clean_text(value: Any) -> str:
    """Trim, collapse whitespace, decode entities and percent-escapes.

    Placeholder tokens (``"N/A"``, ``"null"`` ...) become ``""``.
    """
    if value is None:
        return ""
    text = html.unescape(str(value))
    if _PERCENT_ESCAPE.search(text):
        text = urllib.parse.unquote(text)
    text = _WHITESPACE.sub(" ", text.replace("\u00a0", " ")).strip()
    if text.lower() in PLACEHOLDER_TOKENS:
        return ""
    return text


def slugify(value: Any, max_length: int = 80) -> str:
    """Lowercase ASCII slug with single ``-`` separators."""
    text = unicodedata.normalize("NFKD", clean_text(value))
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    slug = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return slug[:max_length].rstrip("-")


# ---------------------------------------------------------------------------
# Recipe transforms
# ---------------------------------------------------------------------------

_CURRENCY_CODES = re.compile(
    r"\b(?:USD|EUR|GBP|DKK|SEK|NOK|CHF|CAD|AUD|NZD|JPY|PLN|CZK|kr|Kr|KR)\b\.?"
)


def _remove_currency(value: str) -> str:
    text = "".join(ch for ch in value if unicodedata.category(ch) != "Sc")
    return _CURRENCY_CODES.sub("", text)


def _apply_step(value: str, step: Any) -> str:
    kind = step.type
    if kind == "trim":
        return value.strip()
    if kind == "lowercase":
        return value.lower()
    if kind == "uppercase":
        return value.upper()
    if kind == "collapse_whitespace":
        return _WHITESPACE.sub(" ", value).strip()
    if kind == "strip_html":
        return BeautifulSoup(value, "html.parser").get_text(" ")
    if kind == "remove_currency":
        return _remove_currency(value)
    if kind == "replace":
        return re.sub(step.pattern, step.replacement, value)
    if kind == "regex_extract":
        match = re.search(step.pattern, value)
        if match is None:
            return ""
        group = step.group if step.group is not None else (1 if match.re.groups else 0)
        return match.group(group) or ""
    return value


def apply_transforms(value: str | None, steps: Sequence[Any]) -> str | None:
    """Run *value* through a recipe's transform steps in order.

    A step that cannot be applied (bad group reference, out-of-range
    group) leaves the value as it was.
    """
    if value is None:
        return None
    for step in steps:
        try:
            value = _apply_step(value, step)
        except (re.error, IndexError) as exc:
            logger.debug("normalizer: transform %s skipped: %s", step.type, exc)
    return value


# ---------------------------------------------------------------------------
# Price
# ---------------------------------------------------------------------------

_GROUPED_NUMBER = re.compile(r"\d{1,3}(?:[ \u00a0\u202f']\d{3})+(?:[.,]\d+)?")
_PLAIN_NUMBER = re.compile(r"\d[\d.,]*")
_CENT = Decimal("0.01")


def parse_price(value: Any) -> Decimal | None:
    """Parse a displayed price into a :class:`~decimal.Decimal`.

    Handles currency symbols and codes, ``1,299.00`` and ``1.299,00``
    grouping, space and apostrophe grouping.  The first number in the text
    wins (``"From $10"`` -> ``10.00``).  Returns ``None`` when the text
    holds no number (``"Call for price"``).
    """
    text = clean_text(value)
    matches = [m for m in (_GROUPED_NUMBER.search(text), _PLAIN_NUMBER.search(text)) if m]
    if not matches:
        return None
    match = min(matches, key=lambda m: (m.start(), -len(m.group())))
    token = re.sub(r"[ \u00a0\u202f']", "", match.group()).rstrip(".,")

    if "," in token and "." in token:
        if token.rfind(",") > token.rfind("."):
            token = token.replace(".", "").replace(",", ".")
        else:
            token = token.replace(",", "")
    elif "," in token:
        head, _, tail = token.rpartition(",")
        if token.count(",") == 1 and len(tail) != 3:
            token = f"{head}.{tail}"
        else:
            token = token.replace(",", "")
    elif token.count(".") > 1:
        head, _, tail = token.rpartition(".")
        if len(tail) == 3:
            token = token.replace(".", "")
        else:
            token = f"{head.replace('.', '')}.{tail}"

    try:
        return Decimal(token).quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def format_price(price: Decimal | None) -> str:
    """Render a price for CSV output; unknown prices are an empty cell."""
    return "" if price is None else f"{price:.2f}"


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------

_STOCK_COUNT = re.compile(
    r"(?:only\s+)?(\d+)\s*(?:left|in stock|available|pcs|units|items?)\b"
)
_OUT_OF_STOCK = re.compile(
    r"out[\s_-]*of[\s_-]*stock|not[\s_-]+in[\s_-]*stock|no[\s_-]+stock|"
    r"sold[\s_-]*out|unavailable|not available|"
    r"no longer available|discontinued|none left|udsolgt|ausverkauft"
)
_IN_STOCK = re.compile(
    r"in[\s_-]*stock|available|add to (?:cart|basket|bag)|buy now|"
    r"ready to ship|ships today|limited stock|low stock|few left|"
    r"limitedavailability|på lager|auf lager"
)


def map_stock_status(value: Any) -> StockStatus:
    """Map availability text to :class:`StockStatus`.

    Counts win over wording (``"0 left"`` is out of stock), then
    out-of-stock phrases are checked before in-stock ones because
    ``"unavailable"`` contains ``"available"``.
    """
    text = clean_text(value).lower()
    if not text:
        return StockStatus.UNKNOWN
    count = _STOCK_COUNT.search(text)
    if count is not None:
        return StockStatus.IN_STOCK if int(count.group(1)) > 0 else StockStatus.OUT_OF_STOCK
    if _OUT_OF_STOCK.search(text):
        return StockStatus.OUT_OF_STOCK
    if _IN_STOCK.search(text):
        return StockStatus.IN_STOCK
    return StockStatus.UNKNOWN


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

_PLACEHOLDER_IMAGE = re.compile(r"placeholder|spacer\.gif|blank\.gif|pixel\.gif|1x1\.", re.I)


def normalize_images(urls: Iterable[Any], max_images: int = 10) -> tuple[str, ...]:
    """Keep absolute http(s) image URLs, deduplicated in order, capped."""
    images: list[str] = []
    seen: set[str] = set()
    for raw in urls:
        url = clean_text(raw).replace(" ", "%20")
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        if _PLACEHOLDER_IMAGE.search(parsed.path):
            continue
        if url in seen:
            continue
        seen.add(url)
        images.append(url)
        if len(images) >= max_images:
            break
    return tuple(images)


# ---------------------------------------------------------------------------
# Attributes
# ---------------------------------------------------------------------------


def attribute_name(value: Any) -> str:
    """Canonical attribute key: ``"attribute_pa_color"`` -> ``"Color"``."""
    text = clean_text(value).rstrip(":").strip()
    lowered = text.lower()
    for prefix in ("attribute_", "attribute-", "pa_"):
        if lowered.startswith(prefix):
            text = text[len(prefix):]
            lowered = text.lower()
    text = _WHITESPACE.sub(" ", text.replace("_", " ").replace("-", " ")).strip()
    if text and text == text.lower():
        text = text[0].upper() + text[1:]
    return text


def normalize_attributes(
    pairs: Iterable[tuple[Any, Any]],
    value_steps: Sequence[Any] = (),
) -> tuple[tuple[str, str], ...]:
    """Clean ``(name, value)`` pairs; the first value for a name wins."""
    result: list[tuple[str, str]] = []
    seen: set[str] = set()
    for raw_name, raw_value in pairs:
        name = attribute_name(raw_name)
        value = clean_text(apply_transforms(str(raw_value) if raw_value is not None else None, value_steps))
        if not name or not value or name.lower() in seen:
            continue
        seen.add(name.lower())
        result.append((name, value))
    return tuple(result)


# ---------------------------------------------------------------------------
# SKU
# ---------------------------------------------------------------------------


def canonical_sku(value: Any) -> str:
    """Trim, join inner whitespace with ``-`` and upper-case."""
    text = clean_text(value)
    return _WHITESPACE.sub("-", text).upper()


def generate_sku(title: str, site_url: str, position: int) -> str:
    """Derive a stable SKU from title, site host and discovery position."""
    host = (urllib.parse.urlparse(site_url).hostname or site_url).lower()
    prefix = slugify(title, max_length=24).upper() or "PRODUCT"
    digest = hashlib.sha1(f"{host}|{title}|{position}".encode("utf-8")).hexdigest()[:6].upper()
    return f"{prefix}-{digest}"


class SkuAllocator:
    """Hands out SKUs unique within one job, suffixing ``-2``, ``-3`` ... on collision."""

    def __init__(self) -> None:
        self._taken: set[str] = set()

    def reserve(self, sku: str) -> bool:
        """Claim *sku* as-is; ``False`` if it was already taken."""
        if sku in self._taken:
            return False
        self._taken.add(sku)
        return True

    def allocate(self, base: str) -> str:
        candidate = base
        suffix = 2
        while candidate in self._taken:
            candidate = f"{base}-{suffix}"
            suffix += 1
        self._taken.add(candidate)
        return candidate

    def __contains__(self, sku: object) -> bool:
        return sku in self._taken


# ---------------------------------------------------------------------------
# Variations
# ---------------------------------------------------------------------------


def normalize_variations(
    raw_variations: Sequence[RawVariation],
    *,
    parent_sku: str,
    parent_title: str,
    parent_price: Decimal | None,
    parent_stock: StockStatus,
    recipe: Recipe,
) -> tuple[VariationRecord, ...]:
    """Normalize a parent's variations.

    Missing, duplicate or parent-equal SKUs are replaced by
    ``<parent>-<attribute-slug>``, or ``<parent>-<n>`` when there are no
    attributes.  Unknown price and stock inherit the parent's.
    """
    records: list[VariationRecord] = []
    used: set[str] = {parent_sku}
    for index, raw in enumerate(raw_variations, start=1):
        attributes = normalize_attributes(raw.attributes, recipe.transforms_for("attributes"))
        sku = canonical_sku(apply_transforms(raw.sku, recipe.transforms_for("sku")))
        generated = False
        if not sku or sku in used:
            values_slug = slugify("-".join(value for _, value in attributes), max_length=40).upper()
            sku = f"{parent_sku}-{values_slug}" if values_slug else f"{parent_sku}-{index}"
            suffix = index
            while sku in used:
                sku = f"{parent_sku}-{suffix}"
                suffix += 1
            generated = True
        used.add(sku)

        title = clean_text(raw.title)
        if not title:
            label = ", ".join(value for _, value in attributes)
            title = f"{parent_title} - {label}" if label else parent_title

        price = parse_price(apply_transforms(raw.price, recipe.transforms_for("price")))
        stock = map_stock_status(apply_transforms(raw.stock, recipe.transforms_for("stock")))
        images = normalize_images([raw.image] if raw.image else [], max_images=1)
        records.append(
            VariationRecord(
                parent_sku=parent_sku,
                sku=sku,
                title=title,
                price=price if price is not None else parent_price,
                stock_status=stock if stock is not StockStatus.UNKNOWN else parent_stock,
                image=images[0] if images else "",
                attributes=attributes,
                sku_generated=generated,
            )
        )
    return tuple(records)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def normalize_product(
    raw: RawProduct,
    recipe: Recipe,
    *,
    site_url: str,
    position: int,
    max_images: int = 10,
) -> ProductRecord:
    """Normalize one extracted product.  Pure: same input, same record."""

    def transformed(name: str, value: str | None) -> str | None:
        return apply_transforms(value, recipe.transforms_for(name))

    title = clean_text(transformed("title", raw.title))
    explicit_sku = canonical_sku(transformed("sku", raw.sku))
    sku = explicit_sku or generate_sku(title, site_url, position)
    price = parse_price(transformed("price", raw.price))
    stock = map_stock_status(transformed("stock", raw.stock))
    images = normalize_images((transformed("images", url) for url in raw.images), max_images)

    return ProductRecord(
        sku=sku,
        slug=slugify(title) or slugify(sku) or "product",
        title=title,
        price=price,
        stock_status=stock,
        images=images,
        description=clean_text(transformed("description", raw.description)),
        attributes=normalize_attributes(raw.attributes, recipe.transforms_for("attributes")),
        source_url=raw.url,
        position=position,
        sku_generated=not explicit_sku,
        variations=normalize_variations(
            raw.variations,
            parent_sku=sku,
            parent_title=title,
            parent_price=price,
            parent_stock=stock,
            recipe=recipe,
        ),
    )


# ---------------------------------------------------------------------------
# Job-level SKU uniqueness
# ---------------------------------------------------------------------------


def _rebase(record: ProductRecord, new_sku: str) -> ProductRecord:
    """Give *record* a new SKU and carry it into its variations."""
    old = record.sku
    variations = tuple(
        dataclasses.replace(
            variation,
            parent_sku=new_sku,
            sku=new_sku + variation.sku[len(old):]
            if variation.sku_generated and variation.sku.startswith(old)
            else variation.sku,
        )
        for variation in record.variations
    )
    return dataclasses.replace(record, sku=new_sku, variations=variations)


def dedupe_by_sku(
    records: Iterable[ProductRecord],
    allocator: SkuAllocator | None = None,
) -> list[ProductRecord]:
    """Return records with unique SKUs, preserving order.

    Explicit SKUs are claimed first, so a generated SKU can never push out
    a scraped one.  A repeated explicit SKU is a duplicate listing of the
    same product and is dropped.  A colliding generated SKU is suffixed.
    """
    allocator = allocator or SkuAllocator()
    items = list(records)
    keep: list[bool] = []
    for record in items:
        keep.append(record.sku_generated or allocator.reserve(record.sku))

    result: list[ProductRecord] = []
    for record, kept in zip(items, keep):
        if not kept:
            logger.debug("normalizer: dropping duplicate SKU %s (%s)", record.sku, record.source_url)
            continue
        if record.sku_generated:
            new_sku = allocator.allocate(record.sku)
            if new_sku != record.sku:
                record = _rebase(record, new_sku)
        result.append(record)
    return result


def finalize_records(
    records: Iterable[ProductRecord],
) -> tuple[list[ProductRecord], list[VariationRecord]]:
    """Order records by discovery position and make every SKU unique.

    Returns:
        ``(parents, variations)`` ready for the CSV generator; each list has
        exactly one entry per SKU.
    """
    parents = dedupe_by_sku(sorted(records, key=lambda r: r.position))
    variations: list[VariationRecord] = []
    seen: set[str] = set()
    for parent in parents:
        for variation in parent.variations:
            if variation.sku in seen:
                continue
            seen.add(variation.sku)
            variations.append(variation)
    return parents, variations
