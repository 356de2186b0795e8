"""Language-model judge that picks the representative product for an ingredient."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import requests
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from matpris.candidates import CandidateEntry


DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_RETRY_ATTEMPTS = 3

SYSTEM_PROMPT = (
    "You evaluate grocery products to find the best match for ingredient queries. "
    "Return only valid JSON."
)

SELECTION_POLICY = """SELECTION CRITERIA (in priority order):
1. **Ingredient match** - Prefer exact match, but close alternatives are OK for rare ingredients
   - Example: If searching "reinsdyr ytrefilet" (reindeer tenderloin) but only "reinsdyr indrefilet" (reindeer sirloin) exists, that's acceptable
   - NEVER substitute different animals (e.g., lamb for reindeer)
2. **Raw ingredient** - NOT heavily processed or mixed products
3. **Standard package** - Typical consumer sizes
4. **Representative quality** - Select typical consumer choice for realistic price estimates
   - Avoid extreme outliers (both cheapest and most expensive options)
   - Choose products that represent common consumer purchases
   - NOT always the lowest price, but realistic everyday choice

IMPORTANT: Price estimation should reflect REALISTIC shopping behavior, not bargain hunting or luxury purchases.

If NO exact match exists:
- Select the CLOSEST alternative from the same ingredient category
- In reasoning, note: "Close match: [explain what's different]"

If products are WRONG ingredient entirely:
- Do NOT select any product
- Return empty selectedIndices: []
- In reasoning, explain: "No valid matches found\""""


class OracleError(Exception):
    """Raised when the oracle response cannot be turned into a valid verdict."""


@dataclass
class Verdict:
    """Oracle decision: a 0-based candidate position, or None for no match."""

    selected_index: Optional[int]
    rationale: str
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_match(self) -> bool:
        return self.selected_index is not None


def format_candidate_brief(candidates: Sequence[CandidateEntry]) -> str:
    lines = []
    for position, entry in enumerate(candidates, start=1):
        ppk = entry.price_per_kg_nok
        price_per_kg = f"{ppk:.2f} NOK/kg" if ppk is not None else "N/A"
        lines.append(
            f"{position}. [{entry.store.upper()}] \"{entry.product.title}\" - "
            f"{entry.price_nok} NOK ({price_per_kg})"
        )
    return "\n".join(lines)


def build_prompt(ingredient_name: str, candidates: Sequence[CandidateEntry]) -> str:
    stores = sorted({entry.store.capitalize() for entry in candidates})
    return (
        f"You are selecting the BEST MATCHING product for the ingredient \"{ingredient_name}\" "
        f"for accurate recipe price estimation.\n\n"
        f"Product candidates from {' and '.join(stores)} stores:\n"
        f"{format_candidate_brief(candidates)}\n\n"
        f"{SELECTION_POLICY}\n\n"
        "Return JSON:\n"
        "{\n"
        f"  \"selectedIndices\": [single number 1-{len(candidates)} OR empty array []],\n"
        "  \"reasoning\": \"Explain match quality and selection criteria\"\n"
        "}"
    )


def parse_verdict(content: str, candidate_count: int) -> Verdict:
    """Validate the oracle's JSON verdict against the number of candidates."""
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError) as e:
        raise OracleError(f"Oracle returned invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise OracleError("Oracle verdict is not a JSON object")

    rationale = str(parsed.get("reasoning") or "AI selected product").strip()
    positions = parsed.get("selectedIndices", [])
    if positions is None:
        positions = []
    if not isinstance(positions, list):
        raise OracleError(f"selectedIndices must be a list, got {type(positions).__name__}")
    if not positions:
        return Verdict(selected_index=None, rationale=rationale)

    selected = []
    for position in positions:
        if isinstance(position, str) and position.strip().isdecimal():
            position = int(position.strip())
        if isinstance(position, bool) or not isinstance(position, int):
            raise OracleError(f"selectedIndices holds a non-integer position: {position!r}")
        if position < 1 or position > candidate_count:
            raise OracleError(f"Selected position {position} outside 1..{candidate_count}")
        selected.append(position)

    if len(selected) > 1:
        logger.warning(f"Oracle selected {len(selected)} positions {selected}; using the first")
    return Verdict(selected_index=selected[0] - 1, rationale=rationale)


class SelectionOracle:
    """Client for an OpenAI-compatible chat-completions endpoint."""

    def __init__(self, oracle_config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None):
        oracle_config = oracle_config or {}
        self.api_url = oracle_config.get("api_url") or DEFAULT_API_URL
        self.model = oracle_config.get("model") or DEFAULT_MODEL
        self.api_key = oracle_config.get("api_key") or os.getenv("OPENAI_API_KEY", "")
        self.timeout = float(oracle_config.get("timeout_seconds") or DEFAULT_TIMEOUT_SECONDS)
        self.retry_attempts = max(1, int(oracle_config.get("retry_attempts") or DEFAULT_RETRY_ATTEMPTS))
        self.http = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type(requests.ConnectionError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                response = self.http.post(
                    self.api_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                    timeout=self.timeout,
                )
        response.raise_for_status()
        return response.json()

    def select(self, ingredient_name: str, candidates: Sequence[CandidateEntry]) -> Verdict:
        """Ask the oracle for the best candidate; empty selection means no match."""
        if not candidates:
            raise ValueError("select() needs at least one candidate")
        if not self.api_key:
            raise OracleError("OPENAI_API_KEY is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(ingredient_name, candidates)},
            ],
            "response_format": {"type": "json_object"},
        }
        data = self._post(payload)

        usage = (data.get("usage") or {}) if isinstance(data, dict) else {}
        if usage:
            logger.info(
                "AI token usage: prompt={} completion={} total={}",
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise OracleError(f"Oracle response has no message content: {e}") from e

        verdict = parse_verdict(content, len(candidates))
        verdict.usage = dict(usage)
        return verdict
