"""Position, open-order and trade-history aggregation for a target wallet.

Positions come from two independent backends per candidate address:

  - Gamma REST ``/positions`` (prices and market metadata)
  - The Polymarket subgraph (keeps working through REST outages)

``fetch_positions`` returns None only when no backend could be reached
for any candidate address. An empty list means at least one backend
answered and the wallet holds nothing; callers render these two cases
differently.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from mirrorbot.connectors.clob import ClobReader
from mirrorbot.connectors.gamma import GAMMA_BASE, MarketCatalog, parse_outcomes, parse_prices
from mirrorbot.connectors.proxy_fetch import ProxyFetch
from mirrorbot.connectors.subgraph import SubgraphClient
from mirrorbot.engine.wallet_resolver import WalletResolver, clean_identifier, is_address
from mirrorbot.models import HistoryEntry, OpenOrder, Outcome, Position
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

MIN_POSITION_SIZE = 1e-6
SUBGRAPH_DEFAULT_PRICE = 50.0

POSITIONS_QUERY = """
query GetUserPositions($user: String!) {
  user(id: $user) {
    positionBalances(first: 25, where: { amount_gt: "0" }) {
      amount
      id
      position {
        condition {
          id
          question { title outcomes }
        }
        indexSet
      }
    }
  }
}
"""


class BackendUnavailable(Exception):
    """A position backend could not be reached or answered with an error."""


def _float(val: Any) -> float:
    try:
        return float(val or 0)
    except (TypeError, ValueError):
        return 0.0


def _outcome(label: Any) -> Outcome:
    return Outcome.NO if str(label).strip().upper() == "NO" else Outcome.YES


# ── Row parsers ──────────────────────────────────────────────────────

def parse_rest_position(raw: dict[str, Any]) -> Position | None:
    """One Gamma ``/positions`` row. None for dust-sized rows."""
    size = _float(raw.get("size"))
    if size < MIN_POSITION_SIZE:
        return None

    market = raw.get("market") if isinstance(raw.get("market"), dict) else {}
    outcomes = parse_outcomes(market.get("outcomes"))
    try:
        idx = int(raw.get("outcomeIndex") or 0)
    except (TypeError, ValueError):
        idx = 0
    label = outcomes[idx] if 0 <= idx < len(outcomes) else "YES"

    price = 0.0
    prices = parse_prices(market.get("outcomePrices"))
    if 0 <= idx < len(prices) and prices[idx]:
        price = prices[idx] * 100
    if price == 0 and size > 0:
        price = _float(raw.get("currentValue")) / size * 100
    price = max(0.0, min(price, 100.0))

    asset = str(raw.get("asset_id") or raw.get("asset") or "")
    return Position(
        id=asset or f"pos-{raw.get('conditionId', '')}",
        market_label=market.get("question") or f"Unknown Market ({asset[:6]})",
        outcome=_outcome(label),
        entry_price=_float(raw.get("avgPrice")) * 100,
        current_price=round(price, 1),
        size_shares=size,
        pnl=_float(raw.get("pnl")),
        condition_id=market.get("conditionId") or raw.get("conditionId") or None,
    )


def parse_subgraph_balance(raw: dict[str, Any]) -> Position | None:
    position = raw.get("position") or {}
    condition = position.get("condition") or {}
    condition_id = str(condition.get("id") or "")
    question = condition.get("question") or {}
    size = _float(raw.get("amount"))
    if not condition_id or size < MIN_POSITION_SIZE:
        return None
    return Position(
        id=str(raw.get("id") or condition_id),
        market_label=question.get("title") or f"Condition {condition_id[:6]}...",
        outcome=Outcome.NO if str(position.get("indexSet")) == "1" else Outcome.YES,
        current_price=SUBGRAPH_DEFAULT_PRICE,
        size_shares=size,
        condition_id=condition_id,
    )


def _unwrap_rows(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("data", "results"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


# ── Aggregator ───────────────────────────────────────────────────────

class PositionAggregator:
    """Fan out over candidate addresses and backends, then merge."""

    def __init__(
        self,
        fetcher: ProxyFetch,
        resolver: WalletResolver,
        catalog: MarketCatalog,
        subgraph: SubgraphClient,
        clob: ClobReader,
        gamma_url: str = GAMMA_BASE,
    ):
        self._fetcher = fetcher
        self._resolver = resolver
        self._catalog = catalog
        self._subgraph = subgraph
        self._clob = clob
        self._gamma = gamma_url.rstrip("/")

    async def _candidates(self, address: str, original_input: str | None) -> list[str]:
        candidates = [address]
        if original_input:
            raw = clean_identifier(original_input)
            if is_address(raw):
                candidates.append(raw)
        proxy = await self._resolver.lookup_proxy(address)
        if proxy:
            candidates.append(proxy)
        # Case-insensitive dedup, first spelling wins
        seen: set[str] = set()
        unique = []
        for c in candidates:
            if c.lower() not in seen:
                seen.add(c.lower())
                unique.append(c)
        return unique

    async def _rest_positions(self, address: str) -> list[Position]:
        url = f"{self._gamma}/positions?user={address.lower()}&limit=100"
        resp = await self._fetcher.fetch(url)
        if resp.status == 404:
            return []
        if not resp.ok:
            raise BackendUnavailable(f"Gamma fetch failed with status {resp.status}")
        try:
            data = resp.json()
        except ValueError:
            return []
        rows = (parse_rest_position(r) for r in _unwrap_rows(data) if isinstance(r, dict))
        return [p for p in rows if p is not None]

    async def _subgraph_positions(self, address: str) -> list[Position]:
        data = await self._subgraph.query(POSITIONS_QUERY, {"user": address.lower()})
        if data is None:
            raise BackendUnavailable("subgraph unreachable")
        user = data.get("user") if isinstance(data, dict) else None
        if not user or not user.get("positionBalances"):
            return []
        rows = (parse_subgraph_balance(b) for b in user["positionBalances"] if isinstance(b, dict))
        return [p for p in rows if p is not None]

    async def fetch_positions(
        self, address: str, original_input: str | None = None,
    ) -> list[Position] | None:
        """All open positions for ``address``; None when every backend failed."""
        if not address:
            return []

        positions: list[Position] = []
        connected = False
        for addr in await self._candidates(address, original_input):
            try:
                positions.extend(await self._rest_positions(addr))
                connected = True
            except Exception as e:
                log.warning("positions.rest_failed", address=addr, error=str(e))

            try:
                graph = await self._subgraph_positions(addr)
                connected = True
            except Exception as e:
                log.warning("positions.subgraph_failed", address=addr, error=str(e))
                continue
            known = {p.identity for p in positions}
            positions.extend(p for p in graph if p.identity not in known)

        if not connected:
            log.error("positions.no_backend", address=address)
            return None

        unique: dict[str, Position] = {}
        for p in positions:
            unique.setdefault(p.id, p)
        result = sorted(unique.values(), key=lambda p: p.notional, reverse=True)
        log.info("positions.fetched", address=address, count=len(result))
        return result

    async def fetch_open_orders(
        self, address: str, original_input: str | None = None,
    ) -> list[OpenOrder]:
        """Resting orders across candidate addresses, newest first."""
        if not address:
            return []
        orders: dict[str, OpenOrder] = {}
        for addr in await self._candidates(address, original_input):
            try:
                rows = await self._clob.open_orders(addr)
            except Exception as e:
                log.warning("orders.fetch_failed", address=addr, error=str(e))
                continue
            for order in rows:
                orders.setdefault(order.id, order)
        return sorted(orders.values(), key=lambda o: o.timestamp, reverse=True)

    async def fetch_trade_history(self, address: str) -> list[HistoryEntry]:
        """The target's recent settled trades with market names resolved."""
        trades = await self._clob.trades(address) if address else []
        if not trades:
            return []
        markets = await self._catalog.get_batch([t.asset_id for t in trades], "id")
        history = []
        for t in trades:
            market = markets.get(t.asset_id)
            history.append(HistoryEntry(
                id=t.trade_id,
                market_label=market.question if market else f"Market {t.asset_id[:6]}...",
                outcome=t.side.implied_outcome if t.side else Outcome.NO,
                amount=t.notional,
                date=datetime.fromtimestamp(t.timestamp).strftime("%Y-%m-%d") if t.timestamp else "",
            ))
        return history
