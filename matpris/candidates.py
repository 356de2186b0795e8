"""Merge per-store products into one ordered, persisted candidate list."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from matpris.models import Ingredient
from matpris.pricing import normalize_price_per_kg
from matpris.products import RawProduct, split_package_size
from matpris.repositories import IngredientRepository


@dataclass
class CandidateEntry:
    """One candidate in oracle order, with its source product and DB row values."""

    store: str
    product: RawProduct
    row: Dict[str, Any]

    @property
    def price_nok(self) -> Decimal:
        return self.row["price_nok"]

    @property
    def price_per_kg_nok(self) -> Optional[Decimal]:
        return self.row["price_per_kg_nok"]


@dataclass
class CandidateBatch:
    """All candidates of one ingredient cycle, in store-partitioned order."""

    entries: List[CandidateEntry] = field(default_factory=list)
    saved_ids: List[int] = field(default_factory=list)
    store_counts: List[tuple] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def store_for_position(self, position: int) -> str:
        """Store that contributed the candidate at 0-based `position`."""
        if position < 0:
            raise IndexError(position)
        boundary = 0
        for store, count in self.store_counts:
            boundary += count
            if position < boundary:
                return store
        raise IndexError(position)


def product_to_candidate(product: RawProduct, ingredient_id: int, store: str) -> Dict[str, Any]:
    """Row values for `price_observation_candidates` built from a scraped product."""
    size_value, size_unit = split_package_size(product.package_size)
    return {
        "canonical_ingredient_id": ingredient_id,
        "store": store,
        "product_name": product.title,
        "product_url": product.url or product.id,
        "package_size_value": size_value,
        "package_size_unit": size_unit,
        "price_nok": product.price,
        "price_per_kg_nok": normalize_price_per_kg(product),
    }


def aggregate(
    repository: IngredientRepository,
    ingredient: Ingredient,
    per_store_products: Mapping[str, Sequence[RawProduct]],
    run_id: Optional[int] = None,
) -> CandidateBatch:
    """Convert and persist every product, preserving store order.

    The insert happens before any selection so the audit trail survives an
    oracle failure. An empty batch is returned (and nothing written) when no
    store produced products.
    """
    batch = CandidateBatch()
    for store, products in per_store_products.items():
        batch.store_counts.append((store, len(products)))
        for product in products:
            row = product_to_candidate(product, ingredient.id, store)
            row["run_id"] = run_id
            batch.entries.append(CandidateEntry(store=store, product=product, row=row))

    if not batch.entries:
        return batch

    batch.saved_ids = repository.save_candidates([entry.row for entry in batch.entries])
    if len(batch.saved_ids) != len(batch.entries):
        raise RuntimeError(
            f"Candidate insert returned {len(batch.saved_ids)} ids for {len(batch.entries)} rows"
        )
    logger.info(f"Saved {len(batch.saved_ids)} candidates for \"{ingredient.name}\"")
    return batch
