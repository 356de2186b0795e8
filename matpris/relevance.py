"""Cheap species-conflict pre-filter applied before the selection oracle."""

from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from loguru import logger

from matpris.products import RawProduct


# Word fragment -> coarse category stem. Checked in order; first hit wins.
STEM_SYNONYMS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("rein", ("reinsdyr", "rein", "reindeer")),
    ("lam", ("lam", "lamb")),
    ("storfe", ("storfe", "okse", "beef")),
    ("svin", ("svin", "pork")),
    ("kylling", ("kylling", "chicken")),
)

ANIMAL_STEMS = frozenset(stem for stem, _ in STEM_SYNONYMS)

# Primary stem -> stems that veto a product title.
CONFLICTING_STEMS: Dict[str, FrozenSet[str]] = {
    stem: ANIMAL_STEMS - {stem} for stem in ANIMAL_STEMS
}


def stem_keyword(word: str) -> str:
    """Map a word to its category stem, or return it unchanged."""
    for stem, fragments in STEM_SYNONYMS:
        if any(fragment in word for fragment in fragments):
            return stem
    return word


def ingredient_keywords(ingredient_name: str) -> List[str]:
    return [word for word in ingredient_name.lower().split() if len(word) > 2]


def primary_stem(ingredient_name: str) -> Optional[str]:
    """Category stem of the first meaningful word of the ingredient name."""
    keywords = ingredient_keywords(ingredient_name)
    return stem_keyword(keywords[0]) if keywords else None


def find_conflict(title: str, stem: str) -> Optional[str]:
    """Return the conflicting stem found in `title`, if any."""
    conflicts = CONFLICTING_STEMS.get(stem)
    if not conflicts:
        return None
    title_stems = {stem_keyword(word) for word in title.lower().split()}
    for conflict in sorted(conflicts):
        if conflict in title_stems:
            return conflict
    return None


def filter_relevant_products(products: Sequence[RawProduct], ingredient_name: str) -> List[RawProduct]:
    """Drop products of a different animal species than the ingredient.

    Only unambiguous mismatches are removed and order is preserved. When every
    product would be dropped the original list is returned, so the oracle
    always sees something when the stores returned anything.
    """
    products = list(products)
    stem = primary_stem(ingredient_name)
    if stem is None or not products:
        return products

    filtered = []
    for product in products:
        conflict = find_conflict(product.title, stem)
        if conflict:
            logger.info(f"Rejected \"{product.title}\" - wrong species \"{conflict}\" (expected \"{stem}\")")
            continue
        logger.debug(f"Accepted \"{product.title}\"")
        filtered.append(product)

    if not filtered:
        logger.warning(
            f"All products filtered out for \"{ingredient_name}\". Keeping original results for the oracle."
        )
        return products

    return filtered
