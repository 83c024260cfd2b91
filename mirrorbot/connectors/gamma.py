"""Polymarket Gamma (REST) market catalog.

Market metadata (question, outcomes, prices) is immutable for the life
of a market, so lookups are cached for the session. The cache belongs to
the ``MarketCatalog`` instance and is append-only.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Literal

from pydantic import BaseModel, Field

from mirrorbot.connectors.proxy_fetch import ProxyFetch, encode_component
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

GAMMA_BASE = "https://gamma-api.polymarket.com"
BATCH_SIZE = 10

KeyKind = Literal["id", "condition_id"]


# ── Data Models ──────────────────────────────────────────────────────

class Market(BaseModel):
    """Display metadata for a market."""
    id: str = ""
    question: str = ""
    outcomes: list[str] = Field(default_factory=lambda: ["YES", "NO"])
    slug: str = ""
    outcome_prices: list[float] = Field(default_factory=list)
    volume: float = 0.0
    active: bool = True
    group_item_title: str = ""
    condition_id: str = ""


# ── Parsing helpers ──────────────────────────────────────────────────

def _parse_json_str(val: Any) -> list[Any] | None:
    """Parse a JSON-encoded list, or return the value if already a list."""
    if isinstance(val, list):
        return val
    if isinstance(val, str) and val:
        try:
            parsed = json.loads(val)
        except (json.JSONDecodeError, TypeError):
            return None
        if isinstance(parsed, list):
            return parsed
    return None


def parse_outcomes(val: Any) -> list[str]:
    """Outcome labels from either '["Yes","No"]' or ["Yes", "No"]."""
    parsed = _parse_json_str(val)
    if not parsed:
        return ["YES", "NO"]
    return [str(o) for o in parsed]


def parse_prices(val: Any) -> list[float]:
    prices: list[float] = []
    for p in _parse_json_str(val) or []:
        try:
            prices.append(float(p))
        except (TypeError, ValueError):
            prices.append(0.0)
    return prices


def _float(val: Any) -> float:
    try:
        return float(val or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_market(raw: dict[str, Any], *, title_key: str = "question") -> Market:
    """Convert a raw Gamma market (or event) blob into a Market."""
    return Market(
        id=str(raw.get("id", "")),
        question=str(raw.get(title_key) or raw.get("question") or raw.get("title") or ""),
        outcomes=parse_outcomes(raw.get("outcomes")),
        slug=str(raw.get("slug", "")),
        outcome_prices=parse_prices(raw.get("outcomePrices")),
        volume=_float(raw.get("volume")),
        active=bool(raw.get("active", True)),
        group_item_title=str(raw.get("groupItemTitle") or ""),
        condition_id=str(raw.get("conditionId") or ""),
    )


def chunked(items: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ── Catalog ──────────────────────────────────────────────────────────

class MarketCatalog:
    """Cached market metadata lookups by token, market or condition id."""

    def __init__(self, fetcher: ProxyFetch, base_url: str = GAMMA_BASE):
        self._fetcher = fetcher
        self._base = base_url.rstrip("/")
        self._cache: dict[str, Market] = {}

    def cached(self, key: str) -> Market | None:
        return self._cache.get(key)

    def __len__(self) -> int:
        return len(self._cache)

    async def get_one(self, token_id: str) -> Market | None:
        """Look up a single market; None when unknown or unreachable."""
        if token_id in self._cache:
            return self._cache[token_id]

        url = f"{self._base}/events?id={encode_component(token_id)}"
        resp = await self._fetcher.fetch(url)
        if not resp.ok:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return None

        market = parse_market(data[0], title_key="title")
        self._cache[token_id] = market
        return market

    async def get_batch(
        self, identifiers: Iterable[str], key_kind: KeyKind = "condition_id",
    ) -> dict[str, Market]:
        """Look up many markets, chunked to respect query-length limits.

        A failed chunk is logged and skipped; remaining chunks still run.
        Results are indexed by both market id and condition id.
        """
        unique = list(dict.fromkeys(i for i in identifiers if i))
        result: dict[str, Market] = {}
        missing: list[str] = []
        for ident in unique:
            hit = self._cache.get(ident)
            if hit is not None:
                result[ident] = hit
            else:
                missing.append(ident)

        for batch in chunked(missing, BATCH_SIZE):
            query = "&".join(f"{key_kind}={encode_component(i)}" for i in batch)
            url = f"{self._base}/markets?{query}"
            resp = await self._fetcher.fetch(url)
            if not resp.ok:
                log.warning("gamma.batch_failed", status=resp.status, size=len(batch))
                continue
            try:
                data = resp.json()
            except ValueError:
                log.warning("gamma.batch_unparseable", size=len(batch))
                continue
            if not isinstance(data, list):
                continue
            for raw in data:
                if not isinstance(raw, dict):
                    continue
                market = parse_market(raw)
                for key in (market.condition_id, market.id):
                    if key:
                        self._cache.setdefault(key, market)
                        result[key] = market

        log.debug("gamma.batch", requested=len(unique), resolved=len(result))
        return result
