"""Command-line interface for the matpris ingredient price scraper."""

import sys
from pathlib import Path
from typing import List, Optional

import click
from loguru import logger

from matpris.config_loader import ensure_directories, get_batch_config, load_config
from matpris.models import get_engine, get_session_factory, init_db, utcnow_naive
from matpris.pipeline import OUTCOME_ERROR, run_batch
from matpris.repositories import CooldownPolicy, IngredientRepository


def setup_logging(config: dict, verbose: bool = False):
    """Setup logging configuration."""
    log_config = config.get("logging", {})
    level = "DEBUG" if verbose else log_config.get("level", "INFO")
    log_file = log_config.get("file", "data/logs/matpris.log")

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stdout,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}",
    )
    logger.add(
        log_file,
        level=level,
        rotation=log_config.get("rotation", "1 week"),
        retention=log_config.get("retention", "1 month"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}",
    )


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """matpris - grocery price scraper for canonical recipe ingredients."""
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        ctx.obj["config_path"] = config
        ensure_directories(cfg)
        setup_logging(cfg, verbose=verbose)
    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--batch-size", "-n", type=int, default=None, help="Ingredients to process in this run")
@click.option("--candidates-per-store", type=int, default=None, help="Products kept per store search")
@click.option("--cooldown-days", type=int, default=None, help="Days before a matched ingredient is refreshed")
@click.option("--headless/--no-headless", default=None, help="Run browser in headless mode")
@click.option("--backend", type=click.Choice(["sqlite", "postgresql"]), default=None, help="Database backend")
@click.pass_context
def run(
    ctx,
    batch_size: Optional[int],
    candidates_per_store: Optional[int],
    cooldown_days: Optional[int],
    headless: Optional[bool],
    backend: Optional[str],
):
    """Scrape prices for the next batch of pending ingredients."""
    config_path = ctx.obj["config_path"]

    logger.info(
        "Starting batch: batch_size={}, candidates_per_store={}, cooldown_days={}, headless={}, backend={}",
        batch_size,
        candidates_per_store,
        cooldown_days,
        headless,
        backend,
    )

    try:
        summary = run_batch(
            config_path=config_path,
            batch_size=batch_size,
            candidates_per_store=candidates_per_store,
            cooldown_days=cooldown_days,
            headless=headless,
            backend=backend,
        )
    except Exception as e:
        logger.exception(f"Batch run crashed: {e}")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"\n{'='*70}")
    click.echo("BATCH RESULTS")
    click.echo(f"{'='*70}")
    click.echo(f"Status: {summary.get('status', 'unknown')}")
    if summary.get("run_uuid"):
        click.echo(f"Run UUID: {summary['run_uuid']}")
    click.echo(f"Ingredients processed: {summary['total']}")
    click.echo(f"Matched: {summary['matched']}")
    click.echo(f"No match: {summary['no_match']}")
    click.echo(f"Errors: {summary['errors']}")

    failed = [r for r in summary.get("results", []) if r.outcome == OUTCOME_ERROR]
    if failed:
        click.echo("\nFailed ingredients:")
        for result in failed:
            click.echo(f"  - {result.ingredient_name} (id={result.ingredient_id}): {result.error}")
    click.echo(f"{'='*70}\n")

    sys.exit(summary["exit_code"])


def _open_repository(ctx, backend: Optional[str]):
    config = ctx.obj["config"]
    engine = get_engine(config, backend)
    init_db(engine)
    session = get_session_factory(engine)()
    return engine, session, IngredientRepository(session)


@cli.command()
@click.option("--limit", "-n", type=int, default=None, help="How many pending ingredients to list")
@click.option("--backend", type=click.Choice(["sqlite", "postgresql"]), default=None, help="Database backend")
@click.pass_context
def pending(ctx, limit: Optional[int], backend: Optional[str]):
    """List the ingredients the next run would process."""
    settings = get_batch_config(ctx.obj["config"])
    policy = CooldownPolicy.from_batch_config(settings)
    engine, session, repository = _open_repository(ctx, backend)
    try:
        ingredients = repository.get_pending_ingredients(limit or settings["batch_size"], policy)
        if not ingredients:
            click.echo("No ingredients are due for scraping.")
            return
        click.echo(f"{len(ingredients)} pending ingredient(s):")
        for ingredient in ingredients:
            last = ingredient.last_scraped_at.isoformat(sep=" ") if ingredient.last_scraped_at else "never"
            result = ingredient.scrape_result or ("-" if not ingredient.last_scraped_at else "error")
            click.echo(f"  {ingredient.id:>6}  {ingredient.name:<40} last={last} result={result}")
    finally:
        session.close()
        engine.dispose()


def _gate_failures(counts: dict, require_catalog: bool, max_age_hours: Optional[int]) -> List[str]:
    """Messages for every health gate the current counts fail."""
    failures = []
    if require_catalog and counts["ingredients"] <= 0:
        failures.append("ingredient catalog is empty; nothing to scrape")

    if max_age_hours is not None:
        latest = counts.get("latest_observation_at")
        if latest is None:
            failures.append("no price observation has been recorded yet")
        else:
            age_hours = max(0.0, (utcnow_naive() - latest).total_seconds() / 3600.0)
            if age_hours > max_age_hours:
                failures.append(
                    f"latest observation is {age_hours:.1f} hours old (limit {max_age_hours} hours)"
                )
    return failures


@cli.command()
@click.option("--backend", type=click.Choice(["sqlite", "postgresql"]), default=None, help="Database backend")
@click.option("--require-catalog", is_flag=True, help="Exit 1 when no ingredients are in the catalog")
@click.option(
    "--require-fresh-max-age-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Exit 1 when the latest observation is older than this many hours",
)
@click.pass_context
def status(ctx, backend: Optional[str], require_catalog: bool, require_fresh_max_age_hours: Optional[int]):
    """Show scrape coverage of the ingredient catalog."""
    settings = get_batch_config(ctx.obj["config"])
    policy = CooldownPolicy.from_batch_config(settings)
    engine, session, repository = _open_repository(ctx, backend)
    try:
        counts = repository.get_status_counts(policy)
    finally:
        session.close()
        engine.dispose()

    click.echo(f"\n{'='*50}")
    click.echo("INGREDIENT PRICE STATUS")
    click.echo(f"{'='*50}")
    click.echo(f"Ingredients:     {counts['ingredients']}")
    click.echo(f"Never scraped:   {counts['never_scraped']}")
    click.echo(f"Matched:         {counts['matched']}")
    click.echo(f"No match:        {counts['no_match']}")
    click.echo(f"Errored:         {counts['errored']}")
    click.echo(f"Pending now:     {counts['pending']}")
    click.echo(f"Candidates:      {counts['candidates']}")
    click.echo(f"Observations:    {counts['observations']}")
    latest = counts.get("latest_observation_at")
    click.echo(f"Latest observation: {latest.isoformat(sep=' ') if latest else 'N/A'}")
    click.echo(f"{'='*50}\n")

    failures = _gate_failures(counts, require_catalog, require_fresh_max_age_hours)
    for failure in failures:
        click.echo(f"ERROR: {failure}", err=True)
    if failures:
        sys.exit(1)


if __name__ == "__main__":
    cli()
