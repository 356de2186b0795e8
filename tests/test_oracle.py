"""Tests for the selection oracle prompt, HTTP call and verdict validation."""

import json
import sys
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from matpris.candidates import CandidateEntry
from matpris.oracle import (
    OracleError,
    SelectionOracle,
    build_prompt,
    format_candidate_brief,
    parse_verdict,
)
from matpris.products import RawProduct


def _entry(store, title, price, ppk):
    product = RawProduct(id=title, title=title, price=Decimal(price))
    row = {
        "price_nok": Decimal(price),
        "price_per_kg_nok": Decimal(ppk) if ppk is not None else None,
    }
    return CandidateEntry(store=store, product=product, row=row)


def _candidates():
    return [
        _entry("oda", "Kyllingfilet 500 g", "79.90", "159.80"),
        _entry("oda", "Kyllingfilet 1 kg", "149.00", "149.00"),
        _entry("meny", "Kyllingfilet strimlet", "89.90", None),
    ]


def _chat_response(content, usage=None):
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {
        "choices": [{"message": {"content": content}}],
        "usage": usage or {"prompt_tokens": 420, "completion_tokens": 35, "total_tokens": 455},
    }
    return response


class TestPrompt(unittest.TestCase):
    def test_brief_lines(self):
        brief = format_candidate_brief(_candidates())
        lines = brief.splitlines()
        self.assertEqual(lines[0], '1. [ODA] "Kyllingfilet 500 g" - 79.90 NOK (159.80 NOK/kg)')
        self.assertEqual(lines[2], '3. [MENY] "Kyllingfilet strimlet" - 89.90 NOK (N/A)')

    def test_prompt_mentions_ingredient_and_range(self):
        prompt = build_prompt("kyllingfilet", _candidates())
        self.assertIn('"kyllingfilet"', prompt)
        self.assertIn("Meny and Oda", prompt)
        self.assertIn("single number 1-3", prompt)
        self.assertIn("NEVER substitute different animals", prompt)


class TestParseVerdict(unittest.TestCase):
    def test_single_selection_is_zero_based(self):
        verdict = parse_verdict(json.dumps({"selectedIndices": [2], "reasoning": "Vanlig pakke"}), 3)
        self.assertEqual(verdict.selected_index, 1)
        self.assertEqual(verdict.rationale, "Vanlig pakke")
        self.assertTrue(verdict.is_match)

    def test_empty_selection_is_no_match(self):
        verdict = parse_verdict(json.dumps({"selectedIndices": [], "reasoning": "No valid matches found"}), 3)
        self.assertIsNone(verdict.selected_index)
        self.assertFalse(verdict.is_match)

    def test_out_of_range_position(self):
        with self.assertRaises(OracleError):
            parse_verdict(json.dumps({"selectedIndices": [4]}), 3)
        with self.assertRaises(OracleError):
            parse_verdict(json.dumps({"selectedIndices": [0]}), 3)

    def test_non_integer_positions(self):
        for bad in (["første"], ["1.5"], [1.5], [True]):
            with self.assertRaises(OracleError):
                parse_verdict(json.dumps({"selectedIndices": bad}), 3)
        with self.assertRaises(OracleError):
            parse_verdict(json.dumps({"selectedIndices": 1}), 3)

    def test_numeric_string_positions_are_accepted(self):
        verdict = parse_verdict(json.dumps({"selectedIndices": ["2"], "reasoning": "Vanlig pakke"}), 3)
        self.assertEqual(verdict.selected_index, 1)
        with self.assertRaises(OracleError):
            parse_verdict(json.dumps({"selectedIndices": ["4"]}), 3)

    def test_invalid_json(self):
        with self.assertRaises(OracleError):
            parse_verdict("not json at all", 3)

    def test_multiple_positions_use_first(self):
        verdict = parse_verdict(json.dumps({"selectedIndices": [3, 1], "reasoning": "x"}), 3)
        self.assertEqual(verdict.selected_index, 2)

    def test_every_position_is_validated(self):
        with self.assertRaises(OracleError):
            parse_verdict(json.dumps({"selectedIndices": [1, 9]}), 3)


class TestSelectionOracle(unittest.TestCase):
    def _oracle(self, http):
        return SelectionOracle(
            {"api_key": "sk-test", "model": "gpt-4o-mini", "timeout_seconds": 5, "retry_attempts": 1},
            session=http,
        )

    def test_select_posts_json_request(self):
        http = MagicMock()
        http.post.return_value = _chat_response(json.dumps({"selectedIndices": [1], "reasoning": "Standard"}))

        verdict = self._oracle(http).select("kyllingfilet", _candidates())

        self.assertEqual(verdict.selected_index, 0)
        self.assertEqual(verdict.usage["total_tokens"], 455)
        kwargs = http.post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(kwargs["json"]["response_format"], {"type": "json_object"})
        self.assertEqual(kwargs["json"]["messages"][0]["role"], "system")
        self.assertEqual(kwargs["timeout"], 5.0)

    def test_missing_choices_raises(self):
        http = MagicMock()
        response = MagicMock()
        response.json.return_value = {"usage": {}}
        http.post.return_value = response

        with self.assertRaises(OracleError):
            self._oracle(http).select("kyllingfilet", _candidates())

    def test_timeout_propagates(self):
        http = MagicMock()
        http.post.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(requests.Timeout):
            self._oracle(http).select("kyllingfilet", _candidates())
        self.assertEqual(http.post.call_count, 1)

    def test_connection_errors_are_retried(self):
        http = MagicMock()
        http.post.side_effect = [
            requests.ConnectionError("reset"),
            _chat_response(json.dumps({"selectedIndices": [], "reasoning": "No valid matches found"})),
        ]
        oracle = SelectionOracle({"api_key": "sk-test", "retry_attempts": 2}, session=http)
        with patch("matpris.oracle.wait_exponential", return_value=lambda *_a, **_k: 0):
            verdict = oracle.select("kyllingfilet", _candidates())

        self.assertIsNone(verdict.selected_index)
        self.assertEqual(http.post.call_count, 2)

    def test_http_error_propagates(self):
        http = MagicMock()
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("429 Too Many Requests")
        http.post.return_value = response

        with self.assertRaises(requests.HTTPError):
            self._oracle(http).select("kyllingfilet", _candidates())

    def test_missing_api_key(self):
        http = MagicMock()
        with patch.dict("os.environ", {"OPENAI_API_KEY": ""}):
            oracle = SelectionOracle({"api_key": ""}, session=http)
        with self.assertRaises(OracleError):
            oracle.select("kyllingfilet", _candidates())
        http.post.assert_not_called()


if __name__ == "__main__":
    unittest.main()
