"""End-to-end batch tests with fake stores and a fake oracle (no browser, no network)."""

import sys
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from matpris.models import (
    Ingredient,
    PriceCandidate,
    PriceObservation,
    ScrapeError,
    ScrapeRun,
    get_engine,
    get_session_factory,
    init_db,
)
from matpris.oracle import Verdict
from matpris.pipeline import run_batch
from matpris.products import RawProduct
from matpris.repositories import IngredientRepository


ODA_CHICKEN = RawProduct(
    id="12345",
    title="Kyllingfilet 500g",
    price=Decimal("79.90"),
    package_size="500g",
    url="https://oda.com/no/products/12345-kyllingfilet/",
)
MENY_LAMB = RawProduct(
    id="7037203",
    title="Lammefilet 400g",
    price=Decimal("249.00"),
    package_size="400g",
    url="https://meny.no/varer/kjott/lam/lammefilet/7037203",
)


class FakeScraper:
    """In-memory stand-in for StoreScraper."""

    results = {}
    instances = []

    def __init__(self, _config, headless=None):
        self.headless = headless
        self.queries = []
        FakeScraper.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    @property
    def store_names(self):
        return ["oda", "meny"]

    def search(self, store, query, limit):
        self.queries.append((store, query, limit))
        return list(self.results.get(query, {}).get(store, []))[:limit]


class FakeOracle:
    def __init__(self, verdicts):
        self.verdicts = verdicts
        self.calls = []

    def select(self, ingredient_name, candidates):
        self.calls.append((ingredient_name, [c.product.title for c in candidates]))
        verdict = self.verdicts[ingredient_name]
        if isinstance(verdict, Exception):
            raise verdict
        return verdict


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config = {
            "batch": {"batch_size": 10, "candidates_per_store": 5, "source_version_tag": "scraper_v2"},
            "storage": {
                "default_backend": "sqlite",
                "sqlite": {"database_path": str(Path(self.tmpdir.name) / "matpris.db")},
            },
        }
        FakeScraper.results = {}
        FakeScraper.instances = []

        load_patcher = patch("matpris.pipeline.load_config", return_value=self.config)
        scraper_patcher = patch("matpris.pipeline.StoreScraper", FakeScraper)
        load_patcher.start()
        scraper_patcher.start()
        self.addCleanup(load_patcher.stop)
        self.addCleanup(scraper_patcher.stop)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _seed(self, *names):
        engine = get_engine(self.config)
        init_db(engine)
        session = get_session_factory(engine)()
        try:
            for name in names:
                session.add(Ingredient(name=name))
            session.commit()
        finally:
            session.close()
            engine.dispose()

    def _query(self, fn):
        engine = get_engine(self.config)
        session = get_session_factory(engine)()
        try:
            return fn(session)
        finally:
            session.close()
            engine.dispose()


class TestRunBatch(PipelineTestCase):
    def test_conflicting_species_is_filtered_and_oda_product_observed(self):
        self._seed("kyllingfilet")
        FakeScraper.results = {"kyllingfilet": {"oda": [ODA_CHICKEN], "meny": [MENY_LAMB]}}
        oracle = FakeOracle({"kyllingfilet": Verdict(selected_index=0, rationale="Standard pakke")})

        summary = run_batch(oracle=oracle)

        self.assertEqual(summary["matched"], 1)
        self.assertEqual(summary["errors"], 0)
        self.assertEqual(summary["exit_code"], 0)
        self.assertEqual(summary["status"], "completed")
        self.assertEqual(oracle.calls, [("kyllingfilet", ["Kyllingfilet 500g"])])

        def check(session):
            observation = session.query(PriceObservation).one()
            self.assertEqual(observation.store, "oda")
            self.assertEqual(observation.price_nok, Decimal("79.90"))
            self.assertEqual(observation.price_per_kg_nok, Decimal("159.80"))
            self.assertEqual(observation.product_url, ODA_CHICKEN.url)
            self.assertEqual(observation.source_version, "scraper_v2: Standard pakke")
            candidate = session.query(PriceCandidate).one()
            self.assertEqual(observation.selected_candidate_id, candidate.id)
            self.assertEqual(candidate.package_size_value, Decimal("500"))
            self.assertEqual(candidate.package_size_unit, "g")
            ingredient = session.query(Ingredient).one()
            self.assertEqual(ingredient.scrape_result, "matched")
            self.assertIsNotNone(ingredient.last_scraped_at)
            run = session.query(ScrapeRun).one()
            self.assertEqual(run.status, "completed")
            self.assertEqual(run.ingredients_matched, 1)

        self._query(check)

    def test_no_products_anywhere_is_no_match_without_oracle_call(self):
        self._seed("safranpistill")
        oracle = FakeOracle({})

        summary = run_batch(oracle=oracle)

        self.assertEqual(summary["no_match"], 1)
        self.assertEqual(summary["exit_code"], 0)
        self.assertEqual(oracle.calls, [])

        def check(session):
            self.assertEqual(session.query(PriceObservation).count(), 0)
            self.assertEqual(session.query(PriceCandidate).count(), 0)
            ingredient = session.query(Ingredient).one()
            self.assertEqual(ingredient.scrape_result, "no_match")
            self.assertIsNotNone(ingredient.last_scraped_at)

        self._query(check)

    def test_oracle_declining_is_no_match_but_keeps_candidates(self):
        self._seed("kyllingfilet")
        FakeScraper.results = {"kyllingfilet": {"oda": [ODA_CHICKEN]}}
        oracle = FakeOracle({"kyllingfilet": Verdict(selected_index=None, rationale="No valid matches found")})

        summary = run_batch(oracle=oracle)

        self.assertEqual(summary["no_match"], 1)
        self.assertEqual(self._query(lambda s: s.query(PriceCandidate).count()), 1)
        self.assertEqual(self._query(lambda s: s.query(PriceObservation).count()), 0)

    def test_oracle_timeout_is_an_error_and_retried_next_run(self):
        self._seed("kyllingfilet")
        FakeScraper.results = {"kyllingfilet": {"oda": [ODA_CHICKEN]}}
        oracle = FakeOracle({"kyllingfilet": requests.Timeout("read timed out")})

        summary = run_batch(oracle=oracle)

        self.assertEqual(summary["errors"], 1)
        self.assertEqual(summary["exit_code"], 1)
        self.assertEqual(summary["status"], "partial")
        self.assertEqual(summary["results"][0].outcome, "error")

        def check(session):
            ingredient = session.query(Ingredient).one()
            self.assertIsNone(ingredient.scrape_result)
            self.assertIsNotNone(ingredient.last_scraped_at)
            self.assertEqual(session.query(PriceCandidate).count(), 1)
            self.assertEqual(session.query(PriceObservation).count(), 0)
            error = session.query(ScrapeError).one()
            self.assertEqual(error.stage, "selection")
            self.assertEqual(error.error_type, "Timeout")
            pending = IngredientRepository(session).get_pending_ingredients(limit=10)
            self.assertEqual([i.name for i in pending], ["kyllingfilet"])

        self._query(check)

    def test_one_failing_ingredient_does_not_stop_the_batch(self):
        self._seed("laks", "kyllingfilet")
        FakeScraper.results = {
            "laks": {"meny": [RawProduct(id="1", title="Laksefilet", price=Decimal("129.00"))]},
            "kyllingfilet": {"oda": [ODA_CHICKEN]},
        }
        oracle = FakeOracle(
            {
                "laks": requests.HTTPError("500 Server Error"),
                "kyllingfilet": Verdict(selected_index=0, rationale="ok"),
            }
        )

        summary = run_batch(oracle=oracle)

        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["matched"], 1)
        self.assertEqual(summary["errors"], 1)
        self.assertEqual(summary["exit_code"], 1)

    def test_cli_overrides_reach_the_scraper(self):
        self._seed("a-vare", "b-vare", "c-vare")
        oracle = FakeOracle({})

        summary = run_batch(batch_size=2, candidates_per_store=3, oracle=oracle)

        self.assertEqual(summary["total"], 2)
        queries = FakeScraper.instances[0].queries
        self.assertEqual({limit for _, _, limit in queries}, {3})

    def test_empty_batch_launches_no_browser(self):
        self._seed()
        with patch("matpris.pipeline.StoreScraper") as mock_scraper:
            summary = run_batch(oracle=FakeOracle({}))

        mock_scraper.assert_not_called()
        self.assertEqual(summary["total"], 0)
        self.assertEqual(summary["exit_code"], 0)
        self.assertEqual(summary["status"], "completed")

    def test_browser_launch_failure_marks_run_failed(self):
        self._seed("kyllingfilet")
        broken = MagicMock()
        broken.return_value.__enter__.side_effect = RuntimeError("browser launch failed")

        with patch("matpris.pipeline.StoreScraper", broken):
            with self.assertRaises(RuntimeError):
                run_batch(oracle=FakeOracle({}))

        run = self._query(lambda s: s.query(ScrapeRun).one())
        self.assertEqual(run.status, "failed")


if __name__ == "__main__":
    unittest.main()
