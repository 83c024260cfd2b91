"""Polymarket CLOB read endpoints (open orders, settled trades).

Reads are unauthenticated and routed through ``ProxyFetch``. Both
endpoints are keyed by maker address; failures read as "no rows".
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from mirrorbot.connectors.proxy_fetch import ProxyFetch
from mirrorbot.models import OpenOrder, Side, parse_side
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

CLOB_BASE = "https://clob.polymarket.com"


@dataclass
class RawTrade:
    """A settled fill from ``/data/trades``."""
    trade_id: str
    asset_id: str
    side: Side | None
    price: float
    size: float
    timestamp: int

    @property
    def notional(self) -> float:
        return self.size * self.price


def _float(val: Any) -> float:
    try:
        return float(val or 0)
    except (TypeError, ValueError):
        return 0.0


def _int(val: Any, default: int = 0) -> int:
    try:
        return int(float(val))
    except (TypeError, ValueError):
        return default


def parse_trade(raw: dict[str, Any]) -> RawTrade:
    ts = _int(raw.get("timestamp") or raw.get("match_time"))
    return RawTrade(
        trade_id=str(raw.get("match_id") or f"tx-{ts}"),
        asset_id=str(raw.get("asset_id") or ""),
        side=parse_side(raw.get("side")),
        price=_float(raw.get("price")),
        size=_float(raw.get("size")),
        timestamp=ts,
    )


def parse_open_order(raw: dict[str, Any]) -> OpenOrder:
    side = parse_side(raw.get("side")) or Side.BUY
    return OpenOrder(
        id=str(raw.get("order_id") or raw.get("id") or ""),
        market_ref=str(raw.get("asset_id") or ""),
        outcome=side.implied_outcome,
        side=side,
        price=_float(raw.get("price")),
        size=_float(raw.get("size") or raw.get("original_size")),
        filled=_float(raw.get("filled_size")),
        status="OPEN",
        timestamp=_int(raw.get("timestamp"), default=int(time.time() * 1000)),
    )


class ClobReader:
    """Open orders and trade history for a maker address."""

    def __init__(self, fetcher: ProxyFetch, base_url: str = CLOB_BASE):
        self._fetcher = fetcher
        self._base = base_url.rstrip("/")

    async def open_orders(self, maker: str) -> list[OpenOrder]:
        if not maker:
            return []
        url = f"{self._base}/orders?maker_address={maker.lower()}&limit=100"
        resp = await self._fetcher.fetch(url)
        if resp.status in (401, 403) or not resp.ok:
            return []
        try:
            data = resp.json()
        except ValueError:
            return []
        rows = data if isinstance(data, list) else (data.get("orders") or [] if isinstance(data, dict) else [])
        return [parse_open_order(o) for o in rows if isinstance(o, dict)]

    async def trades(self, maker: str, limit: int = 50) -> list[RawTrade] | None:
        """Recent fills for a maker. None when the endpoint could not be read."""
        if not maker:
            return []
        url = f"{self._base}/data/trades?maker_address={maker.lower()}&limit={limit}"
        resp = await self._fetcher.fetch(url)
        if resp.status == 404:
            return []
        if not resp.ok:
            log.debug("clob.trades_unavailable", status=resp.status)
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, list):
            return []
        return [parse_trade(t) for t in data if isinstance(t, dict)]
