"""Core data model for the mirroring pipeline.

Signals are immutable once detected; positions and open orders are
read-side projections of exchange state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SignalSource(str, Enum):
    MEMPOOL = "MEMPOOL"
    POLLING = "POLLING"

    @property
    def label(self) -> str:
        return "Mempool" if self is SignalSource.MEMPOOL else "Polling"


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def implied_outcome(self) -> Outcome:
        """BUY leans YES, SELL leans NO (shared by detection and execution)."""
        return Outcome.YES if self is Side.BUY else Outcome.NO


class MonitoringMode(str, Enum):
    MEMPOOL = "MEMPOOL"
    POLLING = "POLLING"
    HYBRID = "HYBRID"

    @property
    def watches_mempool(self) -> bool:
        return self in (MonitoringMode.MEMPOOL, MonitoringMode.HYBRID)

    @property
    def polls(self) -> bool:
        return self in (MonitoringMode.POLLING, MonitoringMode.HYBRID)


class ConnectionState(str, Enum):
    STOPPED = "STOPPED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    SIMULATING = "SIMULATING"


def parse_side(raw: Any) -> Side | None:
    """Map an upstream side value (``"BUY"``, ``"sell"``, 0, 1) to a Side."""
    if raw is None:
        return None
    if isinstance(raw, Side):
        return raw
    if isinstance(raw, int):
        return Side.BUY if raw == 0 else Side.SELL
    text = str(raw).strip().upper()
    if text == "BUY":
        return Side.BUY
    if text == "SELL":
        return Side.SELL
    return None


@dataclass(frozen=True)
class TradeSignal:
    """A normalized trade by the target wallet, before filtering and sizing."""
    source: SignalSource
    market_label: str
    token_id: str
    outcome: Outcome
    side: Side | None
    size_usd: float
    dedup_key: str
    detected_at: float = field(default_factory=time.time)
    tx_hash: str = ""


@dataclass
class Position:
    """An open position; prices are on a 0-100 cents scale."""
    id: str
    market_label: str
    outcome: Outcome
    entry_price: float = 0.0
    current_price: float = 0.0
    size_shares: float = 0.0
    pnl: float = 0.0
    condition_id: str | None = None

    @property
    def notional(self) -> float:
        return self.size_shares * self.current_price

    @property
    def identity(self) -> str:
        return self.condition_id or self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "market": self.market_label,
            "outcome": self.outcome.value,
            "entry_price": round(self.entry_price, 2),
            "current_price": round(self.current_price, 2),
            "size": round(self.size_shares, 4),
            "pnl": round(self.pnl, 2),
            "condition_id": self.condition_id,
        }


@dataclass
class OpenOrder:
    """Read-only projection of a resting exchange order."""
    id: str
    market_ref: str
    outcome: Outcome
    side: Side
    price: float
    size: float
    filled: float = 0.0
    status: str = "OPEN"
    timestamp: int = 0


@dataclass
class HistoryEntry:
    """A settled trade from the target's history."""
    id: str
    market_label: str
    outcome: Outcome
    amount: float
    pnl: float = 0.0
    date: str = ""
    roi: float = 0.0
