"""Turn intercepted API payloads or rendered product tiles into RawProducts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urljoin

from loguru import logger

from matpris.products import (
    PRICE_NUMBER,
    RawProduct,
    canonical_product_url,
    parse_package_size,
    parse_price,
    slugify,
)


# Logical field -> accepted payload keys, tried in order. First present key wins.
FIELD_ALIASES: Dict[str, tuple] = {
    "id": ("id", "product_id", "sku", "code"),
    "title": ("name", "title", "product_name"),
    "brand": ("brand", "manufacturer", "vendor"),
    "price": ("price", "gross_price", "sale_price", "current_price"),
    "unit_price": ("unit_price", "price_per_unit", "comparison_price"),
    "package_size": ("weight", "size", "volume", "net_weight"),
    "image_url": ("image_url", "image", "thumbnail"),
    "badges": ("badges", "labels", "tags"),
    "url": ("url", "product_url", "absolute_url"),
}

PRODUCT_LIST_PATHS = (
    ("products",),
    ("data", "products"),
    ("results",),
)


class ExtractionFailure(Exception):
    """Raised when a store page could not be read for a query."""


def _is_present(value: Any) -> bool:
    return value is not None and value != "" and value != []


def pick_field(item: Dict[str, Any], field: str) -> Any:
    """Return the value of the first alias of `field` present in `item`."""
    for key in FIELD_ALIASES[field]:
        value = item.get(key)
        if _is_present(value):
            return value
    return None


def _badge_label(badge: Any) -> Optional[str]:
    if isinstance(badge, dict):
        label = badge.get("name") or badge.get("label") or badge.get("text")
        return str(label) if label else None
    return str(badge) if _is_present(badge) else None


def parse_api_item(item: Any) -> Optional[RawProduct]:
    """Parse one item of a store API response with tolerant field aliasing."""
    if not isinstance(item, dict):
        return None

    title = pick_field(item, "title")
    if not title:
        return None
    title = str(title).strip()

    price = parse_price(pick_field(item, "price"))
    if price is None:
        return None

    brand = pick_field(item, "brand")
    brand = str(brand) if brand else None
    package_size = pick_field(item, "package_size")
    package_size = str(package_size) if package_size is not None else None

    product_id = pick_field(item, "id")
    if product_id is None:
        product_id = f"{brand or 'unknown'}-{slugify(title)}-{package_size or 'std'}"[:100]

    image_url = pick_field(item, "image_url")
    if image_url is None:
        images = item.get("images")
        if isinstance(images, list) and images and isinstance(images[0], dict):
            image_url = images[0].get("url")

    badges: List[str] = []
    raw_badges = pick_field(item, "badges")
    if isinstance(raw_badges, list):
        badges = [label for label in (_badge_label(b) for b in raw_badges) if label]

    unit_price = pick_field(item, "unit_price")
    url = pick_field(item, "url")

    return RawProduct(
        id=str(product_id),
        title=title,
        brand=brand,
        price=price,
        unit_price=str(unit_price) if unit_price is not None else None,
        package_size=package_size,
        image_url=str(image_url) if image_url else None,
        badges=badges,
        url=str(url) if url else None,
    )


def _items_from_payload(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return [
            item
            for item in payload
            if isinstance(item, dict) and (item.get("id") or item.get("name") or item.get("title"))
        ]
    if not isinstance(payload, dict):
        return []

    for path in PRODUCT_LIST_PATHS:
        node: Any = payload
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, list):
            return node
    return []


def extract_products_from_payloads(payloads: Iterable[Any]) -> List[RawProduct]:
    """Parse every product item found in a sequence of JSON payloads."""
    products: List[RawProduct] = []
    for payload in payloads:
        for item in _items_from_payload(payload):
            product = parse_api_item(item)
            if product:
                products.append(product)
    return products


class ResponseCollector:
    """Collects JSON API responses seen while one search page loads.

    A collector is owned by a single store query: create it, attach it to the
    page before navigating, read `payloads()` after the page settles, drop it.
    """

    def __init__(self, url_fragments: Sequence[str]):
        self.url_fragments = [f for f in url_fragments if f]
        self._responses: List[Any] = []

    @property
    def enabled(self) -> bool:
        return bool(self.url_fragments)

    def matches(self, url: str, content_type: str) -> bool:
        if not self.enabled:
            return False
        if "application/json" not in (content_type or "").lower():
            return False
        return all(fragment in url for fragment in self.url_fragments)

    def on_response(self, response) -> None:
        try:
            content_type = response.headers.get("content-type", "")
        except Exception:
            content_type = ""
        if self.matches(response.url, content_type):
            self._responses.append(response)

    def attach(self, page) -> None:
        if self.enabled:
            page.on("response", self.on_response)

    def payloads(self) -> List[Any]:
        collected = []
        for response in self._responses:
            try:
                collected.append(response.json())
            except Exception as e:
                logger.debug(f"Ignoring unreadable API response {response.url}: {e}")
        return collected

    def __len__(self) -> int:
        return len(self._responses)


@dataclass
class ProductTile:
    """Text and attributes read from one product tile of a rendered search page."""

    text: str
    label: str = ""
    title: str = ""
    href: str = ""
    image_url: Optional[str] = None


ODA_PRICE = re.compile(rf"kr\s*({PRICE_NUMBER})|({PRICE_NUMBER})\s*kr(?!\s*/)")
ODA_UNIT_PRICE = re.compile(rf"({PRICE_NUMBER})\s*kr?\s*/\s*([lkgml]+)", re.IGNORECASE)
ODA_PRODUCT_ID = re.compile(r"/products/(\d+)-")

MENY_PRICE = re.compile(rf"({PRICE_NUMBER})\s*kr(?!/)")
MENY_PRICE_PREFIXED = re.compile(rf"kr\s*({PRICE_NUMBER})")
MENY_UNIT_PRICE = re.compile(rf"({PRICE_NUMBER})\s*kr\s*/\s*(kg|l|stk)", re.IGNORECASE)
MENY_PRODUCT_ID = re.compile(r"/varer/[^/]+/[^/]+/[^/]+/([^/]+)")


def _clean_text(text: Optional[str]) -> str:
    return (text or "").replace("\u00a0", " ")


def parse_oda_tile(tile: ProductTile, position: int = 0) -> Optional[RawProduct]:
    label = tile.label or ""
    if not label:
        return None
    title = label.split(" - ")[0].strip()
    if not title:
        return None

    text = _clean_text(tile.text)
    price_match = ODA_PRICE.search(text)
    price = parse_price(price_match.group(1) or price_match.group(2)) if price_match else None
    if price is None:
        return None

    unit_match = ODA_UNIT_PRICE.search(text)
    unit_price = f"{unit_match.group(1)} kr/{unit_match.group(2)}" if unit_match else None

    id_match = ODA_PRODUCT_ID.search(tile.href or "")
    return RawProduct(
        id=id_match.group(1) if id_match else f"product-{position}",
        title=title,
        price=price,
        unit_price=unit_price,
        package_size=parse_package_size(label),
        image_url=tile.image_url or None,
    )


def parse_meny_tile(tile: ProductTile, position: int = 0) -> Optional[RawProduct]:
    text = _clean_text(tile.text)
    if len(text) < 20:
        return None
    title = (tile.title or "").strip()
    if len(title) < 3:
        return None

    flat = re.sub(r"\s+", " ", text)
    price_match = MENY_PRICE.search(flat) or MENY_PRICE_PREFIXED.search(flat)
    price = parse_price(price_match.group(1)) if price_match else None
    if price is None:
        return None

    unit_match = MENY_UNIT_PRICE.search(flat)
    unit_price = f"{unit_match.group(1)} kr/{unit_match.group(2)}" if unit_match else None

    href = tile.href or ""
    id_match = MENY_PRODUCT_ID.search(href)
    product_id = id_match.group(1) if id_match else (href.rstrip("/").split("/")[-1] or f"meny-{position}")

    return RawProduct(
        id=product_id,
        title=title,
        price=price,
        unit_price=unit_price,
        package_size=parse_package_size(text),
        image_url=tile.image_url or None,
    )


TILE_PARSERS: Dict[str, Callable[[ProductTile, int], Optional[RawProduct]]] = {
    "oda": parse_oda_tile,
    "meny": parse_meny_tile,
}


def extract_products_from_tiles(
    store: str,
    tiles: Sequence[ProductTile],
    base_url: str = "",
) -> List[RawProduct]:
    """Parse rendered tiles for `store`, counting each product link once."""
    parser = TILE_PARSERS.get(store)
    if parser is None:
        raise ValueError(f"No tile parser registered for store '{store}'")

    results: List[RawProduct] = []
    seen = set()
    for tile in tiles:
        link = canonical_product_url(urljoin(base_url, tile.href)) if tile.href else ""
        if link and link in seen:
            continue
        try:
            product = parser(tile, len(results))
        except Exception as e:
            logger.debug(f"Skipping unparsable {store} tile: {e}")
            continue
        if product is None:
            continue
        if link:
            seen.add(link)
            product.url = link
        results.append(product)
    return results


def extract_products(
    store: str,
    payloads: Sequence[Any],
    load_tiles: Callable[[], Sequence[ProductTile]],
    limit: int,
    base_url: str = "",
) -> List[RawProduct]:
    """Prefer products parsed from API payloads; read page tiles only when there are none.

    Args:
        store: Store key ("oda", "meny")
        payloads: JSON bodies intercepted while the search page loaded
        load_tiles: Reads the rendered product tiles; called lazily
        limit: Maximum number of products to return
        base_url: Store origin used to absolutize tile links

    Returns:
        At most `limit` products, all with a positive price.
    """
    if payloads:
        api_products = extract_products_from_payloads(payloads)
        if api_products:
            logger.info(f"[{store}] Extracted {len(api_products)} products from API responses")
            return api_products[:limit]
        logger.debug(f"[{store}] {len(payloads)} API payloads held no products")

    dom_products = extract_products_from_tiles(store, load_tiles(), base_url=base_url)
    logger.info(f"[{store}] Extracted {len(dom_products)} products from page tiles")
    return dom_products[:limit]
