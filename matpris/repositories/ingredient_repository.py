"""Repository layer for ingredient scrape state, candidates and observations."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, insert, or_
from sqlalchemy.orm import Session

from matpris.models import (
    SCRAPE_RESULT_MATCHED,
    SCRAPE_RESULT_NO_MATCH,
    Ingredient,
    PriceCandidate,
    PriceObservation,
    ScrapeError,
    ScrapeRun,
    utcnow_naive,
)


@dataclass
class CooldownPolicy:
    """How long each outcome keeps an ingredient out of the pending batch."""

    rescrape_cooldown_days: int = 60
    no_match_recheck_days: int = 365
    error_retry_hours: int = 0

    @classmethod
    def from_batch_config(cls, batch_cfg: Dict[str, Any]) -> "CooldownPolicy":
        return cls(
            rescrape_cooldown_days=int(batch_cfg["rescrape_cooldown_days"]),
            no_match_recheck_days=int(batch_cfg["no_match_recheck_days"]),
            error_retry_hours=int(batch_cfg["error_retry_hours"]),
        )


class IngredientRepository:
    """SQLAlchemy queries used by the batch orchestrator and the CLI."""

    def __init__(self, session: Session):
        self.session = session

    def get_pending_ingredients(
        self,
        limit: int,
        policy: Optional[CooldownPolicy] = None,
        now: Optional[datetime] = None,
    ) -> List[Ingredient]:
        """Ingredients due for processing, never-processed first, then oldest first."""
        policy = policy or CooldownPolicy()
        now = now or utcnow_naive()

        refresh_before = now - timedelta(days=policy.rescrape_cooldown_days)
        recheck_before = now - timedelta(days=policy.no_match_recheck_days)
        retry_before = now - timedelta(hours=policy.error_retry_hours)
        scraped_at = Ingredient.last_scraped_at

        pending = or_(
            scraped_at.is_(None),
            and_(Ingredient.scrape_result == SCRAPE_RESULT_MATCHED, scraped_at <= refresh_before),
            and_(Ingredient.scrape_result.is_(None), scraped_at <= retry_before),
            and_(Ingredient.scrape_result == SCRAPE_RESULT_NO_MATCH, scraped_at <= recheck_before),
        )
        never_first = case((scraped_at.is_(None), 0), else_=1)

        return (
            self.session.query(Ingredient)
            .filter(pending)
            .order_by(never_first, scraped_at.asc(), Ingredient.created_at.asc(), Ingredient.id.asc())
            .limit(max(0, int(limit)))
            .all()
        )

    def save_candidates(self, rows: List[Dict[str, Any]]) -> List[int]:
        """Insert all candidates of one cycle in a single statement; ids follow `rows` order."""
        if not rows:
            return []
        stmt = insert(PriceCandidate).returning(PriceCandidate.id, sort_by_parameter_order=True)
        return list(self.session.scalars(stmt, rows).all())

    def save_observation(self, **fields: Any) -> int:
        observation = PriceObservation(**fields)
        self.session.add(observation)
        self.session.flush([observation])
        return observation.id

    def mark_scrape_result(
        self,
        ingredient_id: int,
        result: Optional[str],
        scraped_at: Optional[datetime] = None,
    ) -> None:
        """Stamp `last_scraped_at`; `result=None` records an error outcome."""
        self.session.query(Ingredient).filter(Ingredient.id == ingredient_id).update(
            {
                Ingredient.last_scraped_at: scraped_at or utcnow_naive(),
                Ingredient.scrape_result: result,
            },
            synchronize_session=False,
        )

    def start_run(self, batch_size: int, planned: int, scraper_version: str) -> ScrapeRun:
        run = ScrapeRun(
            run_uuid=str(uuid.uuid4()),
            status="running",
            batch_size=batch_size,
            ingredients_planned=planned,
            scraper_version=scraper_version,
            started_at=utcnow_naive(),
        )
        self.session.add(run)
        self.session.flush([run])
        return run

    def record_error(
        self,
        run_id: int,
        ingredient: Ingredient,
        stage: str,
        error: BaseException,
    ) -> None:
        self.session.add(
            ScrapeError(
                run_id=run_id,
                ingredient_id=ingredient.id,
                ingredient_name=ingredient.name,
                stage=stage,
                error_type=type(error).__name__,
                error_message=str(error) or repr(error),
                occurred_at=utcnow_naive(),
            )
        )

    def get_status_counts(self, policy: Optional[CooldownPolicy] = None) -> Dict[str, Any]:
        total = int(self.session.query(func.count(Ingredient.id)).scalar() or 0)
        by_result = dict(
            self.session.query(Ingredient.scrape_result, func.count(Ingredient.id))
            .filter(Ingredient.last_scraped_at.isnot(None))
            .group_by(Ingredient.scrape_result)
            .all()
        )
        never = int(
            self.session.query(func.count(Ingredient.id))
            .filter(Ingredient.last_scraped_at.is_(None))
            .scalar()
            or 0
        )
        return {
            "ingredients": total,
            "never_scraped": never,
            "matched": int(by_result.get(SCRAPE_RESULT_MATCHED, 0)),
            "no_match": int(by_result.get(SCRAPE_RESULT_NO_MATCH, 0)),
            "errored": int(by_result.get(None, 0)),
            "pending": len(self.get_pending_ingredients(limit=total, policy=policy)) if total else 0,
            "candidates": int(self.session.query(func.count(PriceCandidate.id)).scalar() or 0),
            "observations": int(self.session.query(func.count(PriceObservation.id)).scalar() or 0),
            "latest_observation_at": self.session.query(func.max(PriceObservation.created_at)).scalar(),
        }
