"""Turn an accepted signal into a copy order (live or simulated).

Sizing is an exact copy scaled by one multiplier and rounded down:

    amount = floor(signal.size_usd * copy_multiplier)

The live and simulated paths share everything up to the network call,
so switching modes never changes observed sizing or side selection.
The executor does not retry; a failure is reported once and the engine
moves on.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Awaitable, Callable, Union

from mirrorbot.config import TradeConfig
from mirrorbot.execution.order_signer import (
    ApiCredentials,
    ClobOrderClient,
    CredentialsMissing,
    InvalidPrivateKey,
    OrderRejected,
    OrderSigner,
)
from mirrorbot.models import Outcome, Position, Side, TradeSignal
from mirrorbot.observability.event_log import EngineEvent, EventKind
from mirrorbot.observability.logger import get_logger
from mirrorbot.observability.metrics import metrics

log = get_logger(__name__)

# Used when a signal carries no token id. Orders with it are expected
# to be rejected by the exchange.
PLACEHOLDER_TOKEN_ID = "4839204121234123412341234"


@dataclass(frozen=True)
class ExecutionSuccess:
    order_id: str
    tx_hash: str
    amount: int
    market: str
    outcome: Outcome
    token_id: str
    side: Side
    simulated: bool = False

    @property
    def message(self) -> str:
        prefix = "SIMULATION COPY" if self.simulated else "COPY EXECUTED"
        return f'{prefix}: {self.side.value} ${self.amount} on "{self.market}"'

    def to_event(self) -> EngineEvent:
        return EngineEvent(
            kind=EventKind.SUCCESS,
            message=self.message,
            id=self.order_id,
            tx_hash=self.tx_hash,
            amount=float(self.amount),
            outcome=self.outcome,
            token_id=self.token_id,
            side=self.side,
        )


@dataclass(frozen=True)
class ExecutionFailure:
    reason: str

    def to_event(self) -> EngineEvent:
        return EngineEvent(kind=EventKind.ERROR, message=f"COPY FAILED: {self.reason}")


ExecutionResult = Union[ExecutionSuccess, ExecutionFailure]


@dataclass(frozen=True)
class OrderPlan:
    """What will be sent, identical for live and simulated execution."""
    amount: int
    token_id: str
    side: Side
    outcome: Outcome
    market: str


def copy_amount(size_usd: float, multiplier: float) -> int:
    # Decimal of the repr avoids binary noise such as 237.9 * 1.5 = 356.84999...
    product = Decimal(str(size_usd)) * Decimal(str(multiplier))
    return int(product.to_integral_value(rounding=ROUND_FLOOR))


def plan_order(config: TradeConfig, signal: TradeSignal) -> OrderPlan:
    side = signal.side or (Side.BUY if signal.outcome is Outcome.YES else Side.SELL)
    return OrderPlan(
        amount=copy_amount(signal.size_usd, config.copy_multiplier),
        token_id=signal.token_id or PLACEHOLDER_TOKEN_ID,
        side=side,
        outcome=signal.outcome,
        market=signal.market_label or "Unknown Market",
    )


def _fake_hash() -> str:
    return "0x" + secrets.token_hex(20)


def position_from_result(result: ExecutionSuccess) -> Position:
    """A new open position for a successful copy."""
    return Position(
        id=f"pos-{result.order_id}",
        market_label=result.token_id,
        outcome=result.outcome,
        entry_price=0.0,
        current_price=0.0,
        size_shares=float(result.amount),
    )


ClientFactory = Callable[[str, ApiCredentials | None], ClobOrderClient]
Sleep = Callable[[float], Awaitable[None]]


class OrderExecutor:
    """Execute copy orders for one trade configuration."""

    def __init__(
        self,
        config: TradeConfig,
        *,
        simulation_delay: float = 0.8,
        client_factory: ClientFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._config = config
        self._simulation_delay = simulation_delay
        self._client_factory = client_factory or (lambda addr, creds: ClobOrderClient(addr, creds))
        self._sleep = sleep
        self._signer: OrderSigner | None = None

    def _creds(self) -> ApiCredentials | None:
        if not self._config.has_api_credentials:
            return None
        return ApiCredentials(
            key=self._config.api_key,
            secret=self._config.api_secret,
            passphrase=self._config.api_passphrase,
        )

    def _ensure_signer(self) -> OrderSigner:
        if self._signer is None:
            self._signer = OrderSigner(self._config.private_key)
        return self._signer

    async def _submit(self, plan: OrderPlan) -> ExecutionSuccess:
        signer = self._ensure_signer()
        order = signer.sign_order(plan.token_id, plan.side, plan.amount, self._config.limit_price)
        client = self._client_factory(signer.address, self._creds())
        try:
            response = await client.post_order(order)
        finally:
            await client.close()
        return ExecutionSuccess(
            order_id=str(response.get("orderID") or f"tx-{int(time.time() * 1000)}"),
            tx_hash=str(response.get("transactionHash") or _fake_hash()),
            amount=plan.amount,
            market=plan.market,
            outcome=plan.outcome,
            token_id=plan.token_id,
            side=plan.side,
        )

    async def _simulate(self, plan: OrderPlan) -> ExecutionSuccess:
        await self._sleep(self._simulation_delay)
        return ExecutionSuccess(
            order_id=f"sim-{int(time.time() * 1000)}",
            tx_hash=_fake_hash(),
            amount=plan.amount,
            market=plan.market,
            outcome=plan.outcome,
            token_id=plan.token_id,
            side=plan.side,
            simulated=True,
        )

    async def execute(self, signal: TradeSignal) -> ExecutionResult:
        """Place (or simulate) the copy order for ``signal``. Never raises."""
        plan = plan_order(self._config, signal)
        log.info(
            "executor.plan",
            amount=plan.amount,
            side=plan.side.value,
            token_id=plan.token_id[:16],
            simulated=self._config.simulation_mode,
        )
        try:
            if self._config.simulation_mode:
                result = await self._simulate(plan)
            else:
                result = await self._submit(plan)
        except InvalidPrivateKey:
            return self._fail("Private Key required for real execution.")
        except (CredentialsMissing, OrderRejected) as e:
            return self._fail(str(e) or type(e).__name__)
        except Exception as e:
            log.exception("executor.error", error=str(e))
            return self._fail(str(e) or type(e).__name__)

        metrics.incr("orders.simulated" if result.simulated else "orders.executed")
        log.info("executor.success", order_id=result.order_id, amount=result.amount)
        return result

    def _fail(self, reason: str) -> ExecutionFailure:
        metrics.incr("orders.failed")
        log.warning("executor.failed", reason=reason)
        return ExecutionFailure(reason=reason)
