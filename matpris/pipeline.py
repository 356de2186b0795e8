"""Batch orchestrator: one search-filter-select-persist cycle per pending ingredient."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from matpris import __version__
from matpris.candidates import aggregate
from matpris.config_loader import get_batch_config, get_oracle_config, load_config
from matpris.models import (
    SCRAPE_RESULT_MATCHED,
    SCRAPE_RESULT_NO_MATCH,
    Ingredient,
    get_engine,
    get_session_factory,
    init_db,
    utcnow_naive,
)
from matpris.oracle import SelectionOracle
from matpris.relevance import filter_relevant_products
from matpris.repositories import CooldownPolicy, IngredientRepository
from matpris.scraper import StoreScraper


OUTCOME_MATCHED = "matched"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_ERROR = "error"


@dataclass
class IngredientResult:
    """Outcome of one ingredient cycle."""

    ingredient_id: int
    ingredient_name: str
    outcome: str
    error: Optional[str] = None
    observation_id: Optional[int] = None
    candidates: int = 0


def _finish(
    repository: IngredientRepository,
    ingredient_id: int,
    scrape_result: Optional[str],
) -> None:
    repository.mark_scrape_result(ingredient_id, scrape_result)
    repository.session.commit()


def process_ingredient(
    scraper: StoreScraper,
    repository: IngredientRepository,
    oracle: SelectionOracle,
    ingredient: Ingredient,
    settings: Dict[str, Any],
    run_id: Optional[int] = None,
) -> IngredientResult:
    """Search every store, persist candidates, let the oracle pick one, record the outcome.

    Failures of any stage are contained here: the session is rolled back, the
    error is logged and recorded, and the ingredient is stamped with a NULL
    result so it becomes eligible for retry.
    """
    ingredient_id = ingredient.id
    ingredient_name = ingredient.name
    session = repository.session
    stage = "scraping"
    candidate_count = 0

    try:
        found = {}
        for store in scraper.store_names:
            products = scraper.search(store, ingredient_name, settings["candidates_per_store"])
            logger.info(f"[{store}] {len(products)} products found for \"{ingredient_name}\"")
            found[store] = products

        # Filter across stores so fail-open only triggers when every store is off-target
        merged = [product for products in found.values() for product in products]
        kept = {id(product) for product in filter_relevant_products(merged, ingredient_name)}
        per_store = {
            store: [product for product in products if id(product) in kept]
            for store, products in found.items()
        }
        if len(kept) != len(merged):
            logger.info(f"{len(kept)}/{len(merged)} products kept after relevance filter")

        stage = "persisting"
        batch = aggregate(repository, ingredient, per_store, run_id=run_id)
        candidate_count = len(batch)
        if not batch:
            logger.warning(f"No products found for \"{ingredient_name}\" in any store")
            _finish(repository, ingredient_id, SCRAPE_RESULT_NO_MATCH)
            return IngredientResult(ingredient_id, ingredient_name, OUTCOME_NO_MATCH)
        session.commit()

        stage = "selection"
        verdict = oracle.select(ingredient_name, batch.entries)
        if not verdict.is_match:
            logger.info(f"Oracle found no valid match for \"{ingredient_name}\": {verdict.rationale}")
            _finish(repository, ingredient_id, SCRAPE_RESULT_NO_MATCH)
            return IngredientResult(
                ingredient_id, ingredient_name, OUTCOME_NO_MATCH, candidates=candidate_count
            )

        stage = "persisting"
        index = verdict.selected_index
        entry = batch.entries[index]
        store = batch.store_for_position(index)
        logger.info(
            f"Oracle selected #{index + 1} [{store}] \"{entry.product.title}\" "
            f"({entry.price_nok} NOK): {verdict.rationale}"
        )
        observation_id = repository.save_observation(
            canonical_ingredient_id=ingredient_id,
            selected_candidate_id=batch.saved_ids[index],
            run_id=run_id,
            store=store,
            product_name=entry.row["product_name"],
            product_url=entry.row["product_url"],
            package_size_value=entry.row["package_size_value"],
            package_size_unit=entry.row["package_size_unit"],
            price_nok=entry.price_nok,
            price_per_kg_nok=entry.price_per_kg_nok,
            source_version=f"{settings['source_version_tag']}: {verdict.rationale}",
        )
        _finish(repository, ingredient_id, SCRAPE_RESULT_MATCHED)
        return IngredientResult(
            ingredient_id,
            ingredient_name,
            OUTCOME_MATCHED,
            observation_id=observation_id,
            candidates=candidate_count,
        )

    except Exception as e:
        logger.error(f"Error processing ingredient {ingredient_id} \"{ingredient_name}\" at {stage}: {e}")
        session.rollback()
        try:
            if run_id is not None:
                repository.record_error(run_id, ingredient, stage, e)
            _finish(repository, ingredient_id, None)
        except Exception as stamp_error:
            logger.error(f"Could not record failure for ingredient {ingredient_id}: {stamp_error}")
            session.rollback()
        return IngredientResult(
            ingredient_id,
            ingredient_name,
            OUTCOME_ERROR,
            error=f"{type(e).__name__}: {e}",
            candidates=candidate_count,
        )


def _summarize(summary: Dict[str, Any], results: List[IngredientResult]) -> None:
    summary["results"] = results
    summary["matched"] = sum(1 for r in results if r.outcome == OUTCOME_MATCHED)
    summary["no_match"] = sum(1 for r in results if r.outcome == OUTCOME_NO_MATCH)
    summary["errors"] = sum(1 for r in results if r.outcome == OUTCOME_ERROR)
    summary["exit_code"] = 1 if summary["errors"] > 0 else 0


def run_batch(
    config_path: Optional[str] = None,
    batch_size: Optional[int] = None,
    candidates_per_store: Optional[int] = None,
    cooldown_days: Optional[int] = None,
    headless: Optional[bool] = None,
    backend: Optional[str] = None,
    oracle: Optional[SelectionOracle] = None,
) -> Dict[str, Any]:
    """Process one batch of pending ingredients.

    Args:
        config_path: Path to config file
        batch_size: Override for `batch.batch_size`
        candidates_per_store: Override for `batch.candidates_per_store`
        cooldown_days: Override for `batch.rescrape_cooldown_days`
        headless: Override browser headless mode
        backend: Database backend ('sqlite', 'postgresql')
        oracle: Selection oracle to use instead of one built from config

    Returns:
        Summary dictionary with counts, status and the process exit code
    """
    config = load_config(config_path)
    settings = get_batch_config(config)
    if batch_size is not None:
        settings["batch_size"] = max(1, int(batch_size))
    if candidates_per_store is not None:
        settings["candidates_per_store"] = max(1, int(candidates_per_store))
    if cooldown_days is not None:
        settings["rescrape_cooldown_days"] = max(0, int(cooldown_days))
    policy = CooldownPolicy.from_batch_config(settings)

    engine = get_engine(config, backend)
    init_db(engine)
    Session = get_session_factory(engine)
    session = Session()
    repository = IngredientRepository(session)

    summary: Dict[str, Any] = {
        "run_uuid": None,
        "total": 0,
        "matched": 0,
        "no_match": 0,
        "errors": 0,
        "status": "running",
        "exit_code": 0,
        "results": [],
        "started_at": utcnow_naive().isoformat(),
    }
    scrape_run = None

    try:
        ingredients = repository.get_pending_ingredients(settings["batch_size"], policy)
        summary["total"] = len(ingredients)
        if not ingredients:
            logger.info("No ingredients due for scraping")
            summary["status"] = "completed"
            summary["completed_at"] = utcnow_naive().isoformat()
            return summary

        logger.info(
            "Processing {} ingredients (batch_size={}, candidates_per_store={}, cooldown_days={})",
            len(ingredients),
            settings["batch_size"],
            settings["candidates_per_store"],
            settings["rescrape_cooldown_days"],
        )

        scrape_run = repository.start_run(
            batch_size=settings["batch_size"],
            planned=len(ingredients),
            scraper_version=f"{settings['source_version_tag']}/{__version__}",
        )
        session.commit()
        run_id = scrape_run.id
        summary["run_uuid"] = scrape_run.run_uuid

        if oracle is None:
            oracle = SelectionOracle(get_oracle_config(config))

        results: List[IngredientResult] = []
        with StoreScraper(config, headless=headless) as scraper:
            for position, ingredient in enumerate(ingredients, start=1):
                logger.info(f"[{position}/{len(ingredients)}] \"{ingredient.name}\" (id={ingredient.id})")
                results.append(
                    process_ingredient(scraper, repository, oracle, ingredient, settings, run_id=run_id)
                )

        _summarize(summary, results)

        scrape_run.status = "completed" if summary["errors"] == 0 else "partial"
        scrape_run.ingredients_matched = summary["matched"]
        scrape_run.ingredients_no_match = summary["no_match"]
        scrape_run.ingredients_failed = summary["errors"]
        scrape_run.completed_at = utcnow_naive()
        if scrape_run.started_at:
            scrape_run.duration_seconds = int(
                (scrape_run.completed_at - scrape_run.started_at).total_seconds()
            )
        session.commit()

        summary["status"] = scrape_run.status
        summary["completed_at"] = scrape_run.completed_at.isoformat()
        logger.info(
            "Batch complete: {} matched, {} no match, {} errors (of {})",
            summary["matched"],
            summary["no_match"],
            summary["errors"],
            summary["total"],
        )

    except Exception as e:
        logger.error(f"Batch run failed: {e}")
        session.rollback()
        if scrape_run is not None:
            try:
                scrape_run.status = "failed"
                scrape_run.completed_at = utcnow_naive()
                session.commit()
            except Exception as mark_error:
                logger.error(f"Could not mark run as failed: {mark_error}")
                session.rollback()
        raise

    finally:
        session.close()
        engine.dispose()

    return summary
