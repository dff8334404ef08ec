"""Selector-chain extraction of raw product data from HTML.

Two entry points:

- :func:`parse_listing` reads a category/listing page and returns the
  product URLs and the next-page URL it links to.
- :func:`extract_product` reads a product page and returns a
  :class:`RawProduct` of uncleaned strings for the normalizer.

Each field is looked up through its recipe chain (primary selector, then
fallbacks).  The first selector that yields a non-empty value wins.  A
selector is a CSS selector evaluated with BeautifulSoup's ``select``; an
``@attr`` suffix reads that attribute instead of the element text.

Variations are read either from a JSON attribute (WooCommerce's
``data-product_variations``) or from the ``data-*`` attributes of each
matched element.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Iterable

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from product_scraper.core.exceptions import ParseError
from product_scraper.core.schemas.recipes import Recipe

logger = logging.getLogger(__name__)

_ATTR_SUFFIX = re.compile(r"^[A-Za-z_:][\w:.-]*$")

#: ``data-*`` keys of a variation element that carry known fields rather than
#: attributes.
_VARIATION_FIELD_KEYS: dict[str, str] = {
    "data-sku": "sku",
    "data-price": "price",
    "data-stock": "stock",
    "data-availability": "stock",
    "data-image": "image",
    "data-title": "title",
}

_VARIATION_ATTRIBUTE_PREFIXES: tuple[str, ...] = (
    "data-attribute_",
    "data-attribute-",
    "data-option-",
    "data-option_",
)


# ---------------------------------------------------------------------------
# Output dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawVariation:
    """One purchasable variant as found on the page."""

    sku: str | None = None
    title: str | None = None
    price: str | None = None
    stock: str | None = None
    image: str | None = None
    attributes: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class RawProduct:
    """Uncleaned product fields extracted from one product page.

    Attributes:
        url: Final URL of the page.
        title: Title text.
        price: Price text as displayed (currency symbols included).
        images: Absolute image URLs in page order.
        stock: Availability text.
        description: Description text (``None`` in fast mode).
        sku: SKU text, when the recipe has a SKU selector and it matched.
        attributes: ``(name, value)`` pairs in page order (empty in fast mode).
        variations: Variants found on the page.
    """

    url: str
    title: str | None
    price: str | None = None
    images: tuple[str, ...] = ()
    stock: str | None = None
    description: str | None = None
    sku: str | None = None
    attributes: tuple[tuple[str, str], ...] = ()
    variations: tuple[RawVariation, ...] = ()


@dataclass
class ListingPage:
    """Links discovered on a listing page."""

    product_urls: list[str] = field(default_factory=list)
    next_page_url: str | None = None


# ---------------------------------------------------------------------------
# Selector helpers
# ---------------------------------------------------------------------------


def split_selector(selector: str) -> tuple[str, str | None]:
    """Split ``"css@attr"`` into ``("css", "attr")``.

    An ``@`` inside an attribute selector (``a[href*='@']``) is left alone
    because the suffix must be a bare attribute name.
    """
    css, sep, attr = selector.rpartition("@")
    if not sep or not css.strip() or not _ATTR_SUFFIX.match(attr):
        return selector.strip(), None
    return css.strip(), attr


def _select(root: BeautifulSoup | Tag, css: str) -> list[Tag]:
    try:
        return root.select(css)
    except (SelectorSyntaxError, ValueError) as exc:
        logger.debug("extractor: bad selector %r: %s", css, exc)
        return []


def _element_value(element: Tag, attr: str | None) -> str | None:
    if attr is None:
        text = element.get_text(" ", strip=True)
        return text or None
    value = element.get(attr)
    if isinstance(value, list):
        value = " ".join(value)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _image_value(element: Tag, attr: str | None) -> str | None:
    if attr is not None:
        value = _element_value(element, attr)
        if value and attr.endswith("srcset"):
            value = value.split(",")[0].strip().split(" ")[0]
        return value
    for candidate in ("src", "data-src", "data-lazy-src", "href"):
        value = _element_value(element, candidate)
        if value:
            return value
    return None


def first_value(root: BeautifulSoup | Tag, chain: Iterable[str]) -> str | None:
    """Return the first non-empty value produced by *chain*."""
    for selector in chain:
        css, attr = split_selector(selector)
        for element in _select(root, css):
            value = _element_value(element, attr)
            if value:
                return value
    return None


def all_values(
    root: BeautifulSoup | Tag,
    chain: Iterable[str],
    *,
    images: bool = False,
) -> list[str]:
    """Return every value of the first selector in *chain* that yields any."""
    for selector in chain:
        css, attr = split_selector(selector)
        values: list[str] = []
        for element in _select(root, css):
            value = _image_value(element, attr) if images else _element_value(element, attr)
            if value:
                values.append(value)
        if values:
            return values
    return []


def _absolute(base_url: str, href: str) -> str | None:
    href = href.strip()
    if not href or href.startswith(("javascript:", "mailto:", "tel:", "data:", "#")):
        return None
    url, _ = urllib.parse.urldefrag(urllib.parse.urljoin(base_url, href))
    if urllib.parse.urlparse(url).scheme not in ("http", "https"):
        return None
    return url


# ---------------------------------------------------------------------------
# Listing pages
# ---------------------------------------------------------------------------


def parse_listing(html: str, base_url: str, recipe: Recipe) -> ListingPage:
    """Return the product links and next-page link on a listing page.

    URLs are made absolute, stripped of fragments and deduplicated in page
    order.  A next-page link pointing back at *base_url* is ignored.
    """
    soup = BeautifulSoup(html, "html.parser")
    page = ListingPage()

    seen: set[str] = set()
    for href in all_values(soup, recipe.chain("product_links")):
        url = _absolute(base_url, href)
        if url and url not in seen and url != base_url:
            seen.add(url)
            page.product_urls.append(url)

    next_href = first_value(soup, recipe.chain("next_page"))
    if next_href:
        next_url = _absolute(base_url, next_href)
        if next_url and next_url != base_url:
            page.next_page_url = next_url

    logger.debug(
        "extractor: listing %s has %d product link(s), next=%s",
        base_url,
        len(page.product_urls),
        page.next_page_url,
    )
    return page


# ---------------------------------------------------------------------------
# Attributes
# ---------------------------------------------------------------------------


def _attribute_pairs(element: Tag) -> list[tuple[str, str]]:
    """Read ``(name, value)`` pairs from a table, a definition list or text."""
    pairs: list[tuple[str, str]] = []
    rows = element.select("tr") if element.name in ("table", "tbody") else []
    if rows:
        for row in rows:
            header = row.find("th")
            cells = row.find_all("td")
            if header is not None and cells:
                pairs.append((header.get_text(" ", strip=True), cells[0].get_text(" ", strip=True)))
            elif len(cells) >= 2:
                pairs.append((cells[0].get_text(" ", strip=True), cells[1].get_text(" ", strip=True)))
        return pairs

    if element.name == "dl":
        for term, definition in zip(element.find_all("dt"), element.find_all("dd")):
            pairs.append((term.get_text(" ", strip=True), definition.get_text(" ", strip=True)))
        return pairs

    text = element.get_text(" ", strip=True)
    name, sep, value = text.partition(":")
    if sep and name.strip() and value.strip():
        pairs.append((name.strip(), value.strip()))
    return pairs


def _extract_attributes(soup: BeautifulSoup, chain: Iterable[str]) -> tuple[tuple[str, str], ...]:
    for selector in chain:
        css, _attr = split_selector(selector)
        pairs: list[tuple[str, str]] = []
        for element in _select(soup, css):
            pairs.extend(_attribute_pairs(element))
        if pairs:
            return tuple(pairs)
    return ()


# ---------------------------------------------------------------------------
# Variations
# ---------------------------------------------------------------------------


def _variation_from_json(item: dict[str, Any], base_url: str) -> RawVariation:
    """Map one WooCommerce ``data-product_variations`` entry."""
    attributes = item.get("attributes")
    if not isinstance(attributes, dict):
        attributes = {}
    image = item.get("image") or {}
    if isinstance(image, dict):
        image_url = image.get("full_src") or image.get("src") or image.get("url")
    elif isinstance(image, str):
        image_url = image
    else:
        image_url = None
    price = item.get("display_price", item.get("price"))
    in_stock = item.get("is_in_stock")
    if in_stock is None:
        stock = item.get("availability_html") or item.get("stock_status")
    else:
        stock = "in stock" if in_stock else "out of stock"
    return RawVariation(
        sku=str(item["sku"]) if item.get("sku") not in (None, "") else None,
        title=item.get("variation_description") or None,
        price=str(price) if price not in (None, "") else None,
        stock=str(stock) if stock is not None else None,
        image=_absolute(base_url, str(image_url)) if image_url else None,
        attributes=tuple(
            (str(name), str(value)) for name, value in attributes.items() if value not in (None, "")
        ),
    )


def _variation_from_element(element: Tag, base_url: str) -> RawVariation:
    """Map the ``data-*`` attributes of a variation element."""
    fields: dict[str, str] = {}
    attributes: list[tuple[str, str]] = []
    for key, raw_value in element.attrs.items():
        value = " ".join(raw_value) if isinstance(raw_value, list) else str(raw_value)
        if key in _VARIATION_FIELD_KEYS:
            fields.setdefault(_VARIATION_FIELD_KEYS[key], value)
            continue
        for prefix in _VARIATION_ATTRIBUTE_PREFIXES:
            if key.startswith(prefix):
                attributes.append((key[len(prefix):], value))
                break

    text = element.get_text(" ", strip=True)
    if not attributes:
        variant = element.get("data-variant")
        label = str(variant) if variant not in (None, "") else text
        if label:
            attributes.append(("Option", label))

    image = fields.get("image")
    return RawVariation(
        sku=fields.get("sku"),
        title=fields.get("title") or text or None,
        price=fields.get("price"),
        stock=fields.get("stock"),
        image=_absolute(base_url, image) if image else None,
        attributes=tuple(attributes),
    )


def _extract_variations(
    soup: BeautifulSoup,
    chain: Iterable[str],
    base_url: str,
) -> tuple[RawVariation, ...]:
    for selector in chain:
        css, attr = split_selector(selector)
        variations: list[RawVariation] = []
        for element in _select(soup, css):
            if attr is not None:
                raw = element.get(attr)
                if not raw:
                    continue
                try:
                    items = json.loads(str(raw))
                except json.JSONDecodeError:
                    logger.debug("extractor: %s on %s is not JSON", attr, base_url)
                    continue
                if isinstance(items, list):
                    variations.extend(
                        _variation_from_json(item, base_url) for item in items if isinstance(item, dict)
                    )
            else:
                variations.append(_variation_from_element(element, base_url))
        if variations:
            return tuple(variations)
    return ()


# ---------------------------------------------------------------------------
# Product pages
# ---------------------------------------------------------------------------


def extract_product(
    html: str,
    url: str,
    recipe: Recipe,
    *,
    fast_mode: bool | None = None,
) -> RawProduct:
    """Extract raw product fields from a product page.

    Args:
        html: Page source.
        url: Final URL of the page, used to resolve relative links.
        recipe: The job's recipe.
        fast_mode: Skip attributes and description.  Defaults to the
            recipe's ``behavior.fastMode``.

    Returns:
        A :class:`RawProduct`.

    Raises:
        ParseError: If no title can be found; the page is not a product page
            or the recipe does not fit the site.
    """
    if fast_mode is None:
        fast_mode = recipe.behavior.fast_mode

    soup = BeautifulSoup(html, "html.parser")
    title = first_value(soup, recipe.chain("title"))
    if not title:
        raise ParseError(f"No product title found on {url}", url=url)

    images = tuple(
        absolute
        for absolute in (
            _absolute(url, src) for src in all_values(soup, recipe.chain("images"), images=True)
        )
        if absolute
    )

    return RawProduct(
        url=url,
        title=title,
        price=first_value(soup, recipe.chain("price")),
        images=images,
        stock=first_value(soup, recipe.chain("stock")),
        description=None if fast_mode else first_value(soup, recipe.chain("description")),
        sku=first_value(soup, recipe.chain("sku")),
        attributes=() if fast_mode else _extract_attributes(soup, recipe.chain("attributes")),
        variations=_extract_variations(soup, recipe.chain("variations"), url),
    )
