"""HTML builders for a fake storefront.

Pages use the markup the ``test-shop`` recipe (see
:mod:`tests.factories.recipes`) selects.  Every page carries filler text so
its body is long enough not to be mistaken for a JavaScript-only shell.

Usage::

    from tests.factories.pages import listing_page, product_page

    html = listing_page(["/products/mug", "/products/cup"], next_path="/catalog?page=2")
"""

from __future__ import annotations

from typing import Sequence

FILLER: str = "<p class='filler'>" + "Hand-made goods shipped from our workshop. " * 15 + "</p>"


def listing_page(product_paths: Sequence[str], next_path: str | None = None) -> str:
    """Return a category page linking to *product_paths*."""
    links = "\n".join(
        f'<li><a class="product-link" href="{path}">Product {index}</a></li>'
        for index, path in enumerate(product_paths, start=1)
    )
    pagination = f'<a rel="next" href="{next_path}">Next</a>' if next_path else ""
    return f"""<html><head><title>Catalog</title></head><body>
<ul class="products">
{links}
</ul>
<nav class="pagination">{pagination}</nav>
{FILLER}
</body></html>"""


def product_page(
    title: str | None = "Ceramic Mug",
    *,
    price: str = "$19.99",
    sku: str | None = None,
    stock: str = "In stock",
    images: Sequence[str] = ("/img/mug-front.jpg", "/img/mug-side.jpg"),
    description: str = "A sturdy mug for coffee and tea.",
    attributes: Sequence[tuple[str, str]] = (),
    variations: Sequence[dict[str, str]] = (),
) -> str:
    """Return a product page.

    ``title=None`` leaves out the heading, which makes the page unparseable.
    Each variation dict maps ``data-*`` attribute names (without the
    ``data-`` prefix) to values, e.g. ``{"sku": "MUG-RED",
    "attribute_color": "Red"}``.
    """
    heading = f'<h1 class="product-title">{title}</h1>' if title is not None else ""
    sku_html = f'<span class="sku">{sku}</span>' if sku else ""
    gallery = "".join(f'<img src="{src}">' for src in images)
    rows = "".join(f"<tr><th>{name}</th><td>{value}</td></tr>" for name, value in attributes)
    table = f'<table class="attributes">{rows}</table>' if rows else ""
    options = "".join(
        "<li "
        + " ".join(f'data-{key}="{value}"' for key, value in variation.items())
        + f">{variation.get('attribute_color') or variation.get('sku', '')}</li>"
        for variation in variations
    )
    variation_list = f'<ul class="variations">{options}</ul>' if options else ""
    return f"""<html><head><title>{title or 'Product'}</title></head><body>
<div class="product">
{heading}
{sku_html}
<span class="price">{price}</span>
<p class="stock">{stock}</p>
<div class="gallery">{gallery}</div>
<div class="description">{description}</div>
{table}
{variation_list}
</div>
{FILLER}
</body></html>"""
