"""Raw product type and the text parsing shared by all extractors."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit


NUMBER = r"\d+[.,]?\d*"
# Kroner amount with decimals, optionally grouped in thousands: "79,90", "1 299,00"
PRICE_NUMBER = r"\d{1,3}(?:[ \u00a0]\d{3})+[.,]\d+|\d+[.,]\d+"

MULTI_PACK_PATTERNS = [
    re.compile(rf"(\d+)\s*[x×]\s*({NUMBER})\s*(g|kg|l|ml)\b", re.IGNORECASE),
    re.compile(rf"(\d+)\s*pk\s*[aà]?\s*({NUMBER})\s*(g|kg|l|ml)\b", re.IGNORECASE),
]
SINGLE_SIZE_PATTERN = re.compile(rf"({NUMBER})\s*(g|kg|l|ml|stk)\b", re.IGNORECASE)


@dataclass
class RawProduct:
    """A product as scraped from one store page, before normalization."""

    id: str
    title: str
    price: Decimal
    brand: Optional[str] = None
    unit_price: Optional[str] = None
    package_size: Optional[str] = None
    image_url: Optional[str] = None
    badges: List[str] = field(default_factory=list)
    url: Optional[str] = None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a number written with either `.` or `,` as decimal separator."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    cleaned = str(value).replace("\u00a0", " ").strip()
    # Thousands grouping: "1 299,00" -> "1299,00"
    cleaned = re.sub(r"(?<=\d)\s+(?=\d{3}\b)", "", cleaned).replace(",", ".")
    match = re.search(r"-?\d+(?:\.\d+)?", cleaned)
    if not match:
        return None
    try:
        return Decimal(match.group())
    except InvalidOperation:
        return None


def parse_price(value: Any) -> Optional[Decimal]:
    """Return a strictly positive price, or None for unusable input."""
    price = to_decimal(value)
    if price is None or not price.is_finite() or price <= 0:
        return None
    return price


def _format_quantity(value: Decimal) -> str:
    normalized = value.normalize()
    # normalize() turns 150 into 1.5E+2
    return format(normalized, "f")


def parse_package_size(text: Optional[str]) -> Optional[str]:
    """Find the package size in a product label.

    Multi-packs are folded into their total: ``"2×75g"`` becomes ``"150 g"`` and
    ``"3 pk à 100g"`` becomes ``"300 g"``. Otherwise the first plain size
    (``"500 g"``, ``"1,5 l"``, ``"4 stk"``) is returned as written.
    """
    if not text:
        return None

    for pattern in MULTI_PACK_PATTERNS:
        match = pattern.search(text)
        if match:
            multiplier = int(match.group(1))
            base_value = to_decimal(match.group(2))
            if base_value is None:
                continue
            unit = match.group(3).lower()
            return f"{_format_quantity(base_value * multiplier)} {unit}"

    match = SINGLE_SIZE_PATTERN.search(text)
    return match.group(0) if match else None


def split_package_size(package_size: Optional[str]) -> Tuple[Optional[Decimal], Optional[str]]:
    """Split ``"150 g"`` into ``(Decimal("150"), "g")``."""
    if not package_size:
        return None, None
    match = SINGLE_SIZE_PATTERN.search(package_size)
    if not match:
        return None, package_size.strip() or None
    return to_decimal(match.group(1)), match.group(2).lower()


def canonical_product_url(url: Optional[str]) -> str:
    """Canonicalize product URL by dropping query params and fragments."""
    if not url:
        return ""

    parsed = urlsplit(url)
    return urlunsplit((parsed.scheme, parsed.netloc, parsed.path, "", ""))


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
