"""Minimum-size gate applied to every detected signal before execution."""

from __future__ import annotations

from mirrorbot.config import TradeConfig
from mirrorbot.models import TradeSignal
from mirrorbot.observability.event_log import EventKind, EventLog
from mirrorbot.observability.logger import get_logger
from mirrorbot.observability.metrics import metrics

log = get_logger(__name__)


def _fmt_threshold(value: float) -> str:
    return f"{value:g}"


def accept(signal: TradeSignal, config: TradeConfig, events: EventLog | None = None) -> bool:
    """True when the signal is large enough to copy.

    Sizing (the copy multiplier) happens at execution; this only rejects
    signals below ``min_order_amount``.
    """
    if signal.size_usd >= config.min_order_amount:
        return True

    metrics.incr("filter.rejected", source=signal.source.value)
    log.info(
        "filter.rejected",
        source=signal.source.value,
        size_usd=round(signal.size_usd, 2),
        min_order_amount=config.min_order_amount,
    )
    if events is not None:
        events.append(
            EventKind.INFO,
            f"FILTER: {signal.source.label} signal amount ${signal.size_usd:.2f} "
            f"below min (${_fmt_threshold(config.min_order_amount)})",
        )
    return False
