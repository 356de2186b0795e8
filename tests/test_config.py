"""Tests for YAML loading, env substitution and batch setting coercion."""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent))

from matpris.config_loader import ensure_directories, get_batch_config, load_config
from matpris.repositories import CooldownPolicy


CONFIG_YAML = """
batch:
  batch_size: ${BATCH_SIZE:10}
  candidates_per_store: ${CANDIDATES_PER_STORE:5}
  rescrape_cooldown_days: ${RESCRAPE_COOLDOWN_DAYS:60}
  no_match_recheck_days: ${NO_MATCH_RECHECK_DAYS:365}
  error_retry_hours: ${ERROR_RETRY_HOURS:0}
oracle:
  api_key: ${OPENAI_API_KEY:}
  model: gpt-4o-mini
"""

ENV_KEYS = (
    "BATCH_SIZE",
    "CANDIDATES_PER_STORE",
    "RESCRAPE_COOLDOWN_DAYS",
    "NO_MATCH_RECHECK_DAYS",
    "ERROR_RETRY_HOURS",
    "OPENAI_API_KEY",
)


class TestConfigLoader(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.tmpdir.name) / "config.yaml"
        self.config_path.write_text(CONFIG_YAML, encoding="utf-8")
        self.clean_env = {k: v for k, v in os.environ.items() if k not in ENV_KEYS}

    def tearDown(self):
        self.tmpdir.cleanup()

    def _load(self, **env):
        with patch.dict(os.environ, {**self.clean_env, **env}, clear=True), patch(
            "matpris.config_loader.load_dotenv"
        ):
            return load_config(str(self.config_path))

    def test_defaults_apply_without_env(self):
        config = self._load()
        batch = get_batch_config(config)

        self.assertEqual(batch["batch_size"], 10)
        self.assertEqual(batch["candidates_per_store"], 5)
        self.assertEqual(batch["rescrape_cooldown_days"], 60)
        self.assertEqual(batch["no_match_recheck_days"], 365)
        self.assertEqual(batch["error_retry_hours"], 0)
        self.assertEqual(batch["source_version_tag"], "scraper_v2")
        self.assertEqual(config["oracle"]["api_key"], "")

    def test_env_overrides(self):
        config = self._load(BATCH_SIZE="3", RESCRAPE_COOLDOWN_DAYS="14", OPENAI_API_KEY="sk-abc")
        batch = get_batch_config(config)

        self.assertEqual(batch["batch_size"], 3)
        self.assertEqual(batch["rescrape_cooldown_days"], 14)
        self.assertEqual(config["oracle"]["api_key"], "sk-abc")

    def test_malformed_or_empty_values_fall_back(self):
        config = self._load(BATCH_SIZE="lots", CANDIDATES_PER_STORE="", RESCRAPE_COOLDOWN_DAYS="-4")
        batch = get_batch_config(config)

        self.assertEqual(batch["batch_size"], 10)
        self.assertEqual(batch["candidates_per_store"], 5)
        self.assertEqual(batch["rescrape_cooldown_days"], 60)

    def test_cooldown_policy_from_batch_config(self):
        policy = CooldownPolicy.from_batch_config(get_batch_config({"batch": {"no_match_recheck_days": "30"}}))

        self.assertEqual(policy.rescrape_cooldown_days, 60)
        self.assertEqual(policy.no_match_recheck_days, 30)
        self.assertEqual(policy.error_retry_hours, 0)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_config(str(Path(self.tmpdir.name) / "missing.yaml"))

    def test_ensure_directories(self):
        base = Path(self.tmpdir.name)
        ensure_directories(
            {
                "storage": {"sqlite": {"database_path": str(base / "db" / "matpris.db")}},
                "logging": {"file": str(base / "logs" / "matpris.log")},
            }
        )
        self.assertTrue((base / "db").is_dir())
        self.assertTrue((base / "logs").is_dir())


if __name__ == "__main__":
    unittest.main()
