"""Price-per-kilogram derivation and declared/computed reconciliation."""

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from loguru import logger

from matpris.products import RawProduct, to_decimal


UNIT_PRICE_PER_KG = re.compile(
    r"(\d{1,3}(?:[ \u00a0]\d{3})+(?:[.,]\d+)?|\d+[.,]?\d*)\s*kr\s*/\s*kg", re.IGNORECASE
)
PACKAGE_WEIGHT = re.compile(r"(\d+[.,]?\d*)\s*(g|kg|ml|l)\b", re.IGNORECASE)

# Grams per unit; liquids are priced as if 1 l weighed 1 kg.
GRAMS_PER_UNIT = {
    "g": Decimal("1"),
    "ml": Decimal("1"),
    "kg": Decimal("1000"),
    "l": Decimal("1000"),
}

MISMATCH_THRESHOLD_PCT = Decimal("10")
MULTI_PACK_THRESHOLD_PCT = Decimal("50")

CENTS = Decimal("0.01")


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def extract_price_per_kg(unit_price: Optional[str]) -> Optional[Decimal]:
    """Parse a store-declared unit price such as ``"159,80 kr/kg"``; zero counts as absent."""
    if not unit_price:
        return None
    match = UNIT_PRICE_PER_KG.search(unit_price)
    if not match:
        return None
    value = to_decimal(match.group(1))
    if value is None:
        return None
    value = _round(value)
    return value if value > 0 else None


def package_grams(package_size: Optional[str]) -> Optional[Decimal]:
    if not package_size:
        return None
    match = PACKAGE_WEIGHT.search(package_size)
    if not match:
        return None
    value = to_decimal(match.group(1))
    if value is None:
        return None
    return value * GRAMS_PER_UNIT[match.group(2).lower()]


def calculate_price_per_kg(price, package_size: Optional[str]) -> Optional[Decimal]:
    """Compute ``price / grams * 1000`` from a package size like ``"500 g"``."""
    grams = package_grams(package_size)
    amount = to_decimal(price)
    if grams is None or grams <= 0 or amount is None:
        return None
    return _round(amount / grams * 1000)


@dataclass
class PricePerKgCheck:
    """Declared and computed price/kg for one product, and which one wins."""

    declared: Optional[Decimal]
    calculated: Optional[Decimal]
    difference_pct: Optional[Decimal] = None

    @property
    def price_per_kg(self) -> Optional[Decimal]:
        return self.declared if self.declared is not None else self.calculated

    @property
    def mismatch(self) -> bool:
        return self.difference_pct is not None and self.difference_pct > MISMATCH_THRESHOLD_PCT


def check_price_per_kg(product: RawProduct) -> PricePerKgCheck:
    declared = extract_price_per_kg(product.unit_price)
    calculated = calculate_price_per_kg(product.price, product.package_size)
    check = PricePerKgCheck(declared=declared, calculated=calculated)

    if declared is None and calculated is not None:
        logger.debug(
            f"Calculated price/kg: {calculated} NOK/kg from {product.price} NOK / {product.package_size}"
        )
    elif declared is not None and calculated is not None:
        check.difference_pct = abs((calculated - declared) / declared) * 100
        if check.mismatch:
            hint = "likely multi-pack" if check.difference_pct > MULTI_PACK_THRESHOLD_PCT else "check packaging"
            logger.warning(
                f"Price mismatch for \"{product.title}\": store says {declared} NOK/kg, "
                f"calculated {calculated} NOK/kg from {product.price} NOK / {product.package_size} "
                f"({check.difference_pct:.1f}% difference, {hint})"
            )
    return check


def normalize_price_per_kg(product: RawProduct) -> Optional[Decimal]:
    """Canonical price/kg: the declared unit price when present, else the computed one."""
    return check_price_per_kg(product).price_per_kg
