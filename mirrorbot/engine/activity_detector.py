"""Detect trades by the target wallet.

Two channels, both producing ``TradeSignal``:

  - Mempool: pending-block transactions from the target to the CTF
    exchange, decoded from calldata. Fastest, but only sees the EOA.
  - Polling: settled fills from the CLOB trade history of the resolved
    (proxy) address, windowed by ``last_poll_timestamp``.

Both channels share one ``SeenSignalSet`` so a trade seen pending is not
copied again once it settles under the same key.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from mirrorbot.chain.contracts import CTF_EXCHANGE_ADDR, USDC_DECIMALS
from mirrorbot.chain.decoder import decode_fill_input
from mirrorbot.connectors.clob import ClobReader
from mirrorbot.connectors.gamma import MarketCatalog
from mirrorbot.connectors.rpc import RpcClient
from mirrorbot.models import MonitoringMode, Outcome, SignalSource, TradeSignal
from mirrorbot.observability.event_log import EngineEvent, EventKind
from mirrorbot.observability.logger import get_logger
from mirrorbot.observability.metrics import metrics

log = get_logger(__name__)

MEMPOOL_HEARTBEAT = "Mempool: Scanning active block candidates..."
POLLING_HEARTBEAT = "Polling: Verifying recent on-chain events..."
UNDECODED_MESSAGE = "Mempool: Undecoded Polymarket Interaction"
POLL_TRADE_LIMIT = 10


class ChannelUnavailable(Exception):
    """A detection channel could not read its upstream this tick."""


class SeenSignalSet:
    """Bounded set of processed keys; the oldest key is evicted first."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._keys: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> bool:
        """Record ``key``. Returns False if it was already present."""
        if key in self._keys:
            return False
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)
        return True

    def clear(self) -> None:
        self._keys.clear()


@dataclass
class ChannelResult:
    signals: list[TradeSignal] = field(default_factory=list)
    events: list[EngineEvent] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    def extend(self, other: "ChannelResult") -> None:
        self.signals.extend(other.signals)
        self.events.extend(other.events)
        self.errors.extend(other.errors)


# ── Mempool channel ──────────────────────────────────────────────────

class MempoolChannel:
    """Scan the node's pending block for the target's exchange calls."""

    def __init__(
        self,
        rpc: RpcClient,
        catalog: MarketCatalog,
        seen: SeenSignalSet,
        exchange: str = CTF_EXCHANGE_ADDR,
    ):
        self._rpc = rpc
        self._catalog = catalog
        self._seen = seen
        self._exchange = exchange.lower()

    async def _market_name(self, token_id: str) -> str:
        try:
            market = await self._catalog.get_one(token_id)
        except Exception as e:
            log.debug("mempool.market_lookup_failed", token_id=token_id[:16], error=str(e))
            return "Unknown Market"
        return market.question if market and market.question else "Unknown Market"

    async def scan(self, sender: str) -> ChannelResult:
        """One pass over the pending block. RPC failures propagate."""
        result = ChannelResult()
        block = await self._rpc.get_pending_block()
        if not block or not block.get("transactions"):
            return result

        target = sender.lower()
        for tx in block["transactions"]:
            if not isinstance(tx, dict):
                continue
            tx_from, tx_to, tx_hash = tx.get("from"), tx.get("to"), tx.get("hash")
            if not tx_from or not tx_to or not tx_hash:
                continue
            # Cheap address filter before any decoding; pending blocks are large
            if tx_from.lower() != target or tx_to.lower() != self._exchange:
                continue
            if not self._seen.add(tx_hash):
                continue

            decoded = decode_fill_input(tx.get("input"))
            if decoded is None:
                metrics.incr("detector.mempool_undecoded")
                result.events.append(EngineEvent(
                    kind=EventKind.INFO, message=UNDECODED_MESSAGE, tx_hash=tx_hash,
                ))
                continue

            name = await self._market_name(decoded.token_id)
            outcome = decoded.side.implied_outcome
            amount = decoded.taker_amount / 10 ** USDC_DECIMALS
            message = f'Signal: {decoded.side.value} {outcome.value} on "{name[:30]}..."'
            result.events.append(EngineEvent(
                kind=EventKind.PENDING,
                message=message,
                tx_hash=tx_hash,
                amount=amount if amount > 0 else None,
                outcome=outcome,
                token_id=decoded.token_id,
                side=decoded.side,
            ))
            result.signals.append(TradeSignal(
                source=SignalSource.MEMPOOL,
                market_label=message,
                token_id=decoded.token_id,
                outcome=outcome,
                side=decoded.side,
                size_usd=amount,
                dedup_key=tx_hash,
                tx_hash=tx_hash,
            ))
            metrics.incr("detector.mempool_signals")
            log.info("mempool.signal", tx_hash=tx_hash, side=decoded.side.value, amount=amount)
        return result


# ── Polling channel ──────────────────────────────────────────────────

class PollingChannel:
    """Poll settled fills newer than ``last_poll_timestamp``.

    The timestamp advances to "now" after every poll, not to the newest
    fill seen. Trades settled during a long pause between polls are
    therefore skipped rather than replayed.
    """

    def __init__(
        self,
        clob: ClobReader,
        catalog: MarketCatalog,
        seen: SeenSignalSet,
        grace_secs: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self._clob = clob
        self._catalog = catalog
        self._seen = seen
        self._grace = grace_secs
        self._clock = clock
        self.last_poll_timestamp = 0
        self.reset_baseline()

    def reset_baseline(self) -> None:
        self.last_poll_timestamp = int(self._clock()) - self._grace

    async def poll(self, address: str) -> ChannelResult:
        result = ChannelResult()
        trades = await self._clob.trades(address, limit=POLL_TRADE_LIMIT)
        since = self.last_poll_timestamp
        self.last_poll_timestamp = int(self._clock())
        if trades is None:
            raise ChannelUnavailable("Trade history unreachable")

        fresh = [t for t in trades if t.timestamp > since]
        if not fresh:
            return result

        markets = await self._catalog.get_batch([t.asset_id for t in fresh], "id")
        for trade in fresh:
            # Upstream ids sometimes carry a suffix variant of the same fill
            simple = trade.trade_id.split("-")[0]
            if simple in self._seen or trade.trade_id in self._seen:
                continue
            self._seen.add(trade.trade_id)
            self._seen.add(simple)

            market = markets.get(trade.asset_id)
            label = market.question if market else f"Market {trade.asset_id[:6]}..."
            outcome = trade.side.implied_outcome if trade.side else Outcome.NO
            amount = trade.notional if trade.price > 0 else trade.size
            message = f'Polling: Found confirmed trade on "{label[:20]}..."'
            result.events.append(EngineEvent(kind=EventKind.PENDING, message=message))
            result.signals.append(TradeSignal(
                source=SignalSource.POLLING,
                market_label=message,
                token_id=trade.asset_id,
                outcome=outcome,
                side=trade.side,
                size_usd=amount,
                dedup_key=trade.trade_id,
            ))
            metrics.incr("detector.poll_signals")
        return result


# ── Heartbeat ────────────────────────────────────────────────────────

class Heartbeat:
    """Throttle for the idle-but-healthy log line."""

    def __init__(self, interval_secs: float = 4.0, clock: Callable[[], float] = time.monotonic):
        self._interval = interval_secs
        self._clock = clock
        self._last: float | None = None

    def due(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last <= self._interval:
            return False
        self._last = now
        return True

    def reset(self) -> None:
        self._last = None


def heartbeat_message(mode: MonitoringMode) -> str:
    return MEMPOOL_HEARTBEAT if mode is MonitoringMode.MEMPOOL else POLLING_HEARTBEAT


# ── Detector ─────────────────────────────────────────────────────────

class ActivityDetector:
    """Run the channels enabled by the monitoring mode, mempool first."""

    def __init__(
        self,
        mempool: MempoolChannel,
        polling: PollingChannel,
        seen: SeenSignalSet,
        heartbeat: Heartbeat | None = None,
    ):
        self.mempool = mempool
        self.polling = polling
        self.seen = seen
        self.heartbeat = heartbeat or Heartbeat()

    def reset(self) -> None:
        """Drop run-scoped state: dedup keys and the poll window."""
        self.seen.clear()
        self.polling.reset_baseline()
        self.heartbeat.reset()

    async def detect(self, mode: MonitoringMode, sender: str, address: str) -> ChannelResult:
        """``sender`` is the EOA watched in the mempool; ``address`` is polled."""
        result = ChannelResult()
        if self.heartbeat.due():
            result.events.append(EngineEvent(kind=EventKind.INFO, message=heartbeat_message(mode)))
        if mode.watches_mempool:
            await self._run_channel(result, "mempool", self.mempool.scan(sender))
        if mode.polls:
            await self._run_channel(result, "polling", self.polling.poll(address))
        return result

    async def _run_channel(
        self, result: ChannelResult, name: str, pending: Awaitable[ChannelResult],
    ) -> None:
        # Signals already marked seen by one channel survive a failure in the other
        try:
            result.extend(await pending)
        except Exception as e:
            metrics.incr("detector.channel_errors", channel=name)
            log.warning("detector.channel_failed", channel=name, error=str(e) or type(e).__name__)
            result.errors.append(e)
