"""Database models for the matpris ingredient price scraper."""

from datetime import datetime, timezone
import os
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    event,
    inspect,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker


def utcnow_naive() -> datetime:
    """Return UTC datetime without tzinfo for DB compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


SCRAPE_RESULT_MATCHED = "matched"
SCRAPE_RESULT_NO_MATCH = "no_match"

Base = declarative_base()


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key support for SQLite (no-op for other backends)."""
    pool = getattr(connection_record, "pool", None)
    engine = getattr(pool, "engine", None) if pool else None
    if engine is not None and engine.dialect.name == "sqlite":
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Ingredient(Base):
    """Canonical ingredient catalog (owned by the recipe side)."""

    __tablename__ = "canonical_ingredients"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow_naive)

    # Scrape state, written back by the batch scraper
    last_scraped_at = Column(DateTime, nullable=True, index=True)
    scrape_result = Column(String(20), nullable=True)  # matched | no_match | NULL (never/error)

    candidates = relationship("PriceCandidate", back_populates="ingredient")
    observations = relationship("PriceObservation", back_populates="ingredient")

    def __repr__(self):
        return f"<Ingredient(id={self.id}, name='{self.name}', result={self.scrape_result})>"


class PriceCandidate(Base):
    """Every scraped product that survived filtering (append-only audit trail)."""

    __tablename__ = "price_observation_candidates"
    __table_args__ = (
        Index("ix_candidates_ingredient_created_at", "canonical_ingredient_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    canonical_ingredient_id = Column(
        Integer, ForeignKey("canonical_ingredients.id"), nullable=False, index=True
    )
    run_id = Column(Integer, ForeignKey("scrape_runs.id"), nullable=True, index=True)

    store = Column(String(20), nullable=False)
    product_name = Column(String(255), nullable=False)
    product_url = Column(Text, nullable=True)
    package_size_value = Column(Numeric(10, 3), nullable=True)
    package_size_unit = Column(String(20), nullable=True)

    price_nok = Column(Numeric(12, 2), nullable=False)
    price_per_kg_nok = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)

    ingredient = relationship("Ingredient", back_populates="candidates")

    def __repr__(self):
        return f"<PriceCandidate(store='{self.store}', product='{self.product_name}', price={self.price_nok})>"


class PriceObservation(Base):
    """The candidate the oracle picked for an ingredient in one cycle."""

    __tablename__ = "price_observations"

    id = Column(Integer, primary_key=True)
    canonical_ingredient_id = Column(
        Integer, ForeignKey("canonical_ingredients.id"), nullable=False, index=True
    )
    selected_candidate_id = Column(
        Integer, ForeignKey("price_observation_candidates.id"), nullable=False, index=True
    )
    run_id = Column(Integer, ForeignKey("scrape_runs.id"), nullable=True, index=True)

    store = Column(String(20), nullable=False)
    product_name = Column(String(255), nullable=False)
    product_url = Column(Text, nullable=True)
    package_size_value = Column(Numeric(10, 3), nullable=True)
    package_size_unit = Column(String(20), nullable=True)

    price_nok = Column(Numeric(12, 2), nullable=False)
    price_per_kg_nok = Column(Numeric(12, 2), nullable=True)

    # Pipeline tag plus the oracle's rationale
    source_version = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utcnow_naive)

    ingredient = relationship("Ingredient", back_populates="observations")
    selected_candidate = relationship("PriceCandidate")

    def __repr__(self):
        return f"<PriceObservation(store='{self.store}', product='{self.product_name}', price={self.price_nok})>"


class ScrapeRun(Base):
    """Batch execution log table."""

    __tablename__ = "scrape_runs"

    id = Column(Integer, primary_key=True)
    run_uuid = Column(String(36), unique=True, nullable=False, index=True)

    started_at = Column(DateTime, default=utcnow_naive)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    status = Column(String(20), default="running")  # running | completed | partial | failed

    batch_size = Column(Integer, default=0)
    ingredients_planned = Column(Integer, default=0)
    ingredients_matched = Column(Integer, default=0)
    ingredients_no_match = Column(Integer, default=0)
    ingredients_failed = Column(Integer, default=0)

    scraper_version = Column(String(40), nullable=True)

    errors = relationship("ScrapeError", back_populates="run", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ScrapeRun(id={self.id}, status='{self.status}', started='{self.started_at}')>"


class ScrapeError(Base):
    """Per-ingredient errors raised during a batch."""

    __tablename__ = "scrape_errors"

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey("scrape_runs.id"), nullable=False, index=True)

    ingredient_id = Column(Integer, nullable=True)
    ingredient_name = Column(String(255), nullable=True)
    stage = Column(String(50), nullable=False)

    error_type = Column(String(100), nullable=False)
    error_message = Column(Text, nullable=False)

    occurred_at = Column(DateTime, default=utcnow_naive)

    run = relationship("ScrapeRun", back_populates="errors")

    def __repr__(self):
        return f"<ScrapeError(stage='{self.stage}', type='{self.error_type}')>"


# Database initialization functions

def get_engine(config: dict, backend: Optional[str] = None):
    """Create database engine based on configuration."""
    backend = backend or config.get("storage", {}).get("default_backend", "sqlite")

    if backend == "sqlite":
        db_path = config.get("storage", {}).get("sqlite", {}).get("database_path", "data/matpris.db")
        return create_engine(f"sqlite:///{db_path}")
    elif backend == "postgresql":
        pg_config = config.get("storage", {}).get("postgresql", {})
        db_url = str(pg_config.get("url") or os.getenv("DATABASE_URL") or "").strip()
        if db_url:
            return create_engine(db_url)
        host = pg_config.get("host", "localhost")
        port = pg_config.get("port", "5432")
        database = pg_config.get("database", "matpris")
        user = pg_config.get("user", "matpris")
        password = pg_config.get("password", "")

        return create_engine(
            f"postgresql://{user}:{password}@{host}:{port}/{database}"
        )
    else:
        raise ValueError(f"Unsupported database backend: {backend}")


def init_db(engine):
    """Initialize database tables."""
    Base.metadata.create_all(engine)
    _ensure_scrape_state_columns(engine)


def get_session_factory(engine):
    """Get session factory for database operations."""
    return sessionmaker(bind=engine)


def _ensure_scrape_state_columns(engine):
    """Best-effort backfill of scrape-state columns on an existing ingredient catalog."""
    inspector = inspect(engine)
    existing = {c["name"] for c in inspector.get_columns("canonical_ingredients")}
    wanted = {
        "last_scraped_at": "TIMESTAMP",
        "scrape_result": "VARCHAR(20)",
    }

    with engine.begin() as conn:
        for column, ddl_type in wanted.items():
            if column in existing:
                continue
            try:
                conn.execute(text(f"ALTER TABLE canonical_ingredients ADD COLUMN {column} {ddl_type}"))
            except Exception as exc:
                if "duplicate column" not in str(exc).lower():
                    raise
