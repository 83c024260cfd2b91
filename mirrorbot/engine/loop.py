"""Mirroring engine: detect, filter and copy the target's trades.

Each tick (default 2 s):
  1. Run the detection channels enabled by ``monitoring_mode``
     (mempool first, then polling)
  2. Publish detection events to the event log
  3. For each signal, in detection order: filter, then execute

Edits to the sizing fields in config.yaml are picked up at the start of
a tick when the loop was built with a ``ConfigWatcher``.

Connection state machine (live mode):

    STOPPED -> CONNECTING -> CONNECTED <-> ERROR -> ... -> STOPPED

A failing tick logs ``Connection Failed`` only on the transition into
ERROR; the next good tick logs ``Network Connection Established`` once.
Simulation mode runs the same pipeline with the simulated executor and
stays in SIMULATING regardless of upstream errors.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

from mirrorbot.config import BotConfig, ConfigWatcher, load_config
from mirrorbot.connectors.clob import ClobReader
from mirrorbot.connectors.gamma import MarketCatalog
from mirrorbot.connectors.proxy_fetch import DEFAULT_PROVIDERS, ProxyFetch
from mirrorbot.connectors.rpc import RpcClient
from mirrorbot.connectors.subgraph import SubgraphClient
from mirrorbot.engine.activity_detector import (
    ActivityDetector,
    Heartbeat,
    MempoolChannel,
    PollingChannel,
    SeenSignalSet,
)
from mirrorbot.engine.position_aggregator import PositionAggregator
from mirrorbot.engine.scheduler import CancellationToken, Ticker
from mirrorbot.engine.signal_filter import accept
from mirrorbot.engine.wallet_resolver import WalletResolver, clean_identifier, is_address
from mirrorbot.execution.order_executor import ExecutionSuccess, OrderExecutor, position_from_result
from mirrorbot.execution.order_signer import is_valid_private_key
from mirrorbot.models import ConnectionState, Position, TradeSignal
from mirrorbot.observability.event_log import EventKind, EventLog
from mirrorbot.observability.logger import bind_run_context, clear_run_context, get_logger
from mirrorbot.observability.metrics import metrics

log = get_logger(__name__)


class EngineConfigError(Exception):
    """The engine cannot start with the current configuration."""


class Services:
    """Network clients shared by the engine and the CLI read commands."""

    def __init__(self, config: BotConfig):
        net = config.network
        self.fetcher = ProxyFetch(
            DEFAULT_PROVIDERS,
            direct_timeout=net.direct_timeout_secs,
            proxy_timeout=net.proxy_timeout_secs,
            use_proxies=net.use_proxies,
        )
        self.rpc = RpcClient(config.trade.rpc_url)
        self.catalog = MarketCatalog(self.fetcher, net.gamma_api_url)
        self.resolver = WalletResolver(self.fetcher, net.gamma_api_url)
        self.subgraph = SubgraphClient(self.fetcher, net.subgraph_urls, net.subgraph_get_url)
        self.clob = ClobReader(self.fetcher, net.clob_api_url)
        self.aggregator = PositionAggregator(
            self.fetcher, self.resolver, self.catalog, self.subgraph, self.clob,
            gamma_url=net.gamma_api_url,
        )

    async def close(self) -> None:
        await self.fetcher.close()
        await self.rpc.close()


class EngineLoop:
    """Owns one mirroring run: state, events, positions and the ticker."""

    def __init__(
        self,
        config: BotConfig | None = None,
        *,
        services: Services | None = None,
        detector: ActivityDetector | None = None,
        executor: OrderExecutor | None = None,
        events: EventLog | None = None,
        watcher: ConfigWatcher | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or load_config()
        self.services = services or Services(self.config)
        eng = self.config.engine

        if detector is None:
            seen = SeenSignalSet(eng.seen_capacity)
            detector = ActivityDetector(
                MempoolChannel(self.services.rpc, self.services.catalog, seen),
                PollingChannel(
                    self.services.clob, self.services.catalog, seen,
                    grace_secs=eng.poll_grace_secs, clock=clock,
                ),
                seen,
                Heartbeat(eng.heartbeat_interval_secs),
            )
        self.detector = detector
        self.executor = executor or OrderExecutor(
            self.config.trade, simulation_delay=eng.simulation_delay_secs,
        )
        self.events = events or EventLog(max_events=eng.max_events)
        self.watcher = watcher

        self.state = ConnectionState.STOPPED
        self.positions: list[Position] = []
        self.error_count = 0
        self._tick_in_flight = False
        self._resolved_address: str | None = None
        self._token: CancellationToken | None = None
        self._task: asyncio.Task | None = None

    # ── Properties ───────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self.state is not ConnectionState.STOPPED

    @property
    def simulating(self) -> bool:
        return self.config.trade.simulation_mode

    @property
    def watch_address(self) -> str:
        """Address polled for settled trades (the resolved proxy when known)."""
        return self._resolved_address or clean_identifier(self.config.trade.target_wallet)

    @property
    def sender_address(self) -> str:
        """Address whose pending transactions are watched (the literal EOA)."""
        literal = clean_identifier(self.config.trade.target_wallet)
        return literal if is_address(literal) else self.watch_address

    # ── Lifecycle ────────────────────────────────────────────────────

    def validate(self) -> None:
        trade = self.config.trade
        if not trade.target_wallet.strip():
            raise EngineConfigError("Please enter a target wallet address.")
        if not trade.simulation_mode and not is_valid_private_key(trade.private_key):
            raise EngineConfigError("Private Key required for live execution.")

    def set_target(self, identifier: str) -> None:
        """Switch target wallet; drops run-scoped state for the old one."""
        self.config.trade.target_wallet = identifier
        self.services.resolver.set_target(identifier)
        self.detector.reset()
        self._resolved_address = None

    async def start(self) -> None:
        """Validate, announce, and schedule the tick. No partial start."""
        if self.running:
            return
        self.validate()
        trade = self.config.trade

        if self.simulating:
            self.state = ConnectionState.SIMULATING
        else:
            self.events.clear()
            self.state = ConnectionState.CONNECTING
            self.error_count = 0
            self.detector.reset()

        self.events.append(EventKind.INFO, f"Initializing {trade.monitoring_mode.value} engine...")
        self.events.append(EventKind.INFO, f"Endpoint: {trade.rpc_url[:25]}...")
        if self.simulating:
            self.events.append(EventKind.INFO, "Simulation Mode Active: Generating traffic patterns...")
        else:
            self.events.append(EventKind.INFO, "LIVE MODE: Connecting to CLOB & Mempool...")

        await self.resolve_target()
        bind_run_context(
            target=trade.target_wallet[:42],
            mode=trade.monitoring_mode.value,
            simulation=self.simulating,
        )
        log.info(
            "engine.started",
            mode=trade.monitoring_mode.value,
            simulation=self.simulating,
            watch=self.watch_address,
        )

        self._token = CancellationToken()
        ticker = Ticker(self.config.engine.tick_interval_secs, self._token)
        self._task = asyncio.create_task(ticker.run(self.tick))

    async def resolve_target(self) -> str | None:
        """Resolve the configured target to the address that holds its trades."""
        target = self.config.trade.target_wallet
        self.services.resolver.set_target(target)
        self._resolved_address = await self.services.resolver.resolve(target)
        return self._resolved_address

    async def wait(self) -> None:
        """Block until the ticker exits."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Cancel the ticker; an in-flight tick is allowed to finish."""
        if not self.running:
            return
        if self._token is not None:
            self._token.cancel()
        if self._task is not None and self._task is not asyncio.current_task():
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._token = None
        self._tick_in_flight = False
        self.state = ConnectionState.STOPPED
        self.detector.reset()
        self.events.append(EventKind.INFO, "Bot engine stopped.")
        log.info("engine.stopped", positions=len(self.positions), events=len(self.events))
        clear_run_context()

    async def aclose(self) -> None:
        await self.stop()
        await self.services.close()

    # ── Tick ─────────────────────────────────────────────────────────

    async def tick(self) -> bool:
        """One detect -> filter -> execute pass. False if skipped."""
        if self._tick_in_flight:
            return False
        self._tick_in_flight = True
        metrics.incr("engine.ticks")
        try:
            with metrics.timer("engine.tick_secs"):
                await self._run_tick()
            return True
        finally:
            self._tick_in_flight = False

    async def _run_tick(self) -> None:
        self._reload_sizing()
        try:
            detected = await self.detector.detect(
                self.config.trade.monitoring_mode,
                self.sender_address,
                self.watch_address,
            )
        except Exception as e:
            self._on_tick_error(e)
            return

        for event in detected.events:
            self.events.add(event)
        if detected.errors:
            self._on_tick_error(detected.errors[0])
        else:
            self._on_tick_ok()

        for signal in detected.signals:
            await self._process(signal)

    def _reload_sizing(self) -> None:
        if self.watcher is None:
            return
        changed = self.watcher.poll()
        if changed:
            summary = ", ".join(f"{k}={v}" for k, v in changed.items())
            self.events.append(EventKind.INFO, f"Config reloaded: {summary}")

    def _on_tick_error(self, exc: Exception) -> None:
        self.error_count += 1
        metrics.incr("engine.tick_errors")
        message = str(exc) or type(exc).__name__
        if self.state is ConnectionState.SIMULATING:
            log.warning("engine.simulated_tick_error", error=message)
            return
        if self.state is not ConnectionState.ERROR:
            self.events.append(EventKind.ERROR, f"Connection Failed: {message}")
            self.state = ConnectionState.ERROR
            log.warning("engine.connection_failed", error=message)

    def _on_tick_ok(self) -> None:
        if self.state in (ConnectionState.SIMULATING, ConnectionState.CONNECTED):
            return
        self.events.append(EventKind.SUCCESS, "Network Connection Established")
        self.state = ConnectionState.CONNECTED
        self.error_count = 0

    async def _process(self, signal: TradeSignal) -> None:
        if not accept(signal, self.config.trade, self.events):
            return
        self.events.append(EventKind.FRONTRUN, f"{signal.source.label}: Copying Trade...")
        result = await self.executor.execute(signal)
        self.events.add(result.to_event())
        if isinstance(result, ExecutionSuccess):
            self.positions.insert(0, position_from_result(result))
            metrics.gauge("engine.positions", len(self.positions))
