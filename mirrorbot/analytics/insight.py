"""LLM read of the target's trading style.

Optional and advisory: ``analyze`` never raises and never blocks the
engine. Empty history, a missing API key, transport errors and
unparseable responses all degrade to a static insight.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from mirrorbot.config import InsightConfig
from mirrorbot.models import HistoryEntry
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

RISK_LEVELS = ("LOW", "MEDIUM", "HIGH")


@dataclass(frozen=True)
class StrategyInsight:
    summary: str
    risk_level: str
    strategy_guess: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "risk_level": self.risk_level,
            "strategy_guess": self.strategy_guess,
        }


PENDING_INSIGHT = StrategyInsight(
    summary="Insufficient data to analyze strategy. Waiting for trade history...",
    risk_level="LOW",
    strategy_guess="Data Pending",
)
PARSE_FAILED_INSIGHT = StrategyInsight(
    summary="Analysis failed to parse response.",
    risk_level="MEDIUM",
    strategy_guess="Parsing Error",
)
UNAVAILABLE_INSIGHT = StrategyInsight(
    summary="AI Analysis unavailable. Please check your API Key configuration.",
    risk_level="LOW",
    strategy_guess="Connection Error",
)

_INSIGHT_PROMPT = """\
You are an algorithmic trading analyst for Polymarket prediction markets.

Target Wallet: {target}

Recent Trade History (last {count} trades):
{trades}

Based strictly on the data above, analyze the trader's behavior:
1. Market focus: politics, crypto, sports or pop culture?
2. Risk profile: small safe bets or large speculative ones?
3. Performance: are they profitable recently?

Return valid JSON:
{{
  "summary": "one-sentence executive summary of their performance",
  "riskLevel": "LOW" | "MEDIUM" | "HIGH",
  "strategyGuess": "short label for their style, e.g. Whale Hedger"
}}

Return ONLY valid JSON, no markdown fences.
"""


def format_trade_line(entry: HistoryEntry) -> str:
    sign = "+" if entry.pnl > 0 else ""
    return (
        f'- [{entry.date}] Market: "{entry.market_label}" | Side: {entry.outcome.value} '
        f"| Amt: ${entry.amount:.0f} | PnL: {sign}${entry.pnl:.2f}"
    )


def strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_insight(raw_text: str) -> StrategyInsight:
    try:
        parsed = json.loads(strip_fences(raw_text))
    except ValueError:
        return PARSE_FAILED_INSIGHT
    if not isinstance(parsed, dict) or not parsed.get("summary"):
        return PARSE_FAILED_INSIGHT
    risk = str(parsed.get("riskLevel", "MEDIUM")).upper()
    return StrategyInsight(
        summary=str(parsed["summary"]),
        risk_level=risk if risk in RISK_LEVELS else "MEDIUM",
        strategy_guess=str(parsed.get("strategyGuess") or "Unknown"),
    )


class InsightClient:
    """Summarize a wallet's recent trades with a chat model."""

    def __init__(self, config: InsightConfig, llm: AsyncOpenAI | None = None):
        self._config = config
        self._llm = llm

    def _client(self) -> AsyncOpenAI:
        if self._llm is None:
            self._llm = AsyncOpenAI()
        return self._llm

    async def analyze(self, history: list[HistoryEntry], target: str) -> StrategyInsight:
        if not history:
            return PENDING_INSIGHT
        if not self._config.enabled:
            return UNAVAILABLE_INSIGHT

        recent = history[: self._config.max_trades]
        prompt = _INSIGHT_PROMPT.format(
            target=target,
            count=len(recent),
            trades="\n".join(format_trade_line(h) for h in recent),
        )
        try:
            resp = await self._client().chat.completions.create(
                model=self._config.llm_model,
                temperature=self._config.llm_temperature,
                max_tokens=self._config.llm_max_tokens,
                messages=[
                    {"role": "system", "content": "You analyze trader behavior. Return only valid JSON."},
                    {"role": "user", "content": prompt},
                ],
            )
            raw_text = resp.choices[0].message.content or ""
        except Exception as e:
            log.error("insight.failed", target=target, error=str(e))
            return UNAVAILABLE_INSIGHT

        insight = parse_insight(raw_text)
        log.info("insight.result", target=target, risk=insight.risk_level, style=insight.strategy_guess)
        return insight
