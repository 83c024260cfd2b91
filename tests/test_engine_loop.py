"""Tests for the mirroring engine: lifecycle, state machine, full tick.

Covers:
  - Start validation (target, live key) with no partial start
  - Connection state transitions: one log line per transition
  - Simulation mode is never moved out of SIMULATING by errors
  - Re-entrancy guard: overlapping ticks are skipped
  - Ticker / CancellationToken behavior
  - Stop: ticker drained, state reset, final event
  - Detect -> filter -> execute end to end, including a failing channel
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import EXHAUSTED, FakeFetcher, json_response

EOA = "0xabc0000000000000000000000000000000000abc"
PROXY = "0xdef0000000000000000000000000000000000def"
TEST_KEY = "0x" + "ab" * 32


def _config(**trade):
    from mirrorbot.config import BotConfig, TradeConfig
    defaults = {"target_wallet": EOA, "private_key": TEST_KEY}
    defaults.update(trade)
    return BotConfig(trade=TradeConfig(**defaults))


def _services(resolved=PROXY):
    services = MagicMock()
    services.resolver.resolve = AsyncMock(return_value=resolved)
    services.close = AsyncMock()
    return services


def _detector(**kwargs):
    from mirrorbot.engine.activity_detector import ChannelResult
    detector = MagicMock()
    detector.detect = AsyncMock(**(kwargs or {"return_value": ChannelResult()}))
    return detector


def _engine(config=None, detector=None, executor=None, services=None, watcher=None):
    from mirrorbot.engine.loop import EngineLoop
    from mirrorbot.observability.event_log import EventLog
    return EngineLoop(
        config or _config(),
        services=services or _services(),
        detector=detector or _detector(),
        executor=executor or MagicMock(),
        events=EventLog(),
        watcher=watcher,
    )


# ═══════════════════════════════════════════════════════════════════
#  VALIDATION / START
# ═══════════════════════════════════════════════════════════════════

class TestStart:

    def test_empty_target_rejected(self):
        from mirrorbot.engine.loop import EngineConfigError
        from mirrorbot.models import ConnectionState
        engine = _engine(_config(target_wallet="  "))
        with pytest.raises(EngineConfigError, match="Please enter a target wallet address."):
            asyncio.run(engine.start())
        assert engine.state is ConnectionState.STOPPED
        assert len(engine.events) == 0

    def test_live_requires_private_key(self):
        from mirrorbot.engine.loop import EngineConfigError
        engine = _engine(_config(private_key="not-a-key"))
        with pytest.raises(EngineConfigError, match="Private Key required for live execution."):
            engine.validate()

    def test_live_requires_key_for_api_method_too(self):
        from mirrorbot.engine.loop import EngineConfigError
        engine = _engine(_config(private_key="", execution_method="POLYMARKET_API", api_key="k"))
        with pytest.raises(EngineConfigError):
            engine.validate()

    def test_simulation_needs_no_key(self):
        _engine(_config(private_key="", simulation_mode=True)).validate()

    def test_live_start_announces_and_resolves(self):
        from mirrorbot.models import ConnectionState
        from mirrorbot.observability.event_log import EventKind

        services = _services()
        engine = _engine(services=services)
        engine.events.append(EventKind.INFO, "stale entry from a previous run")

        async def flow():
            await engine.start()
            state = engine.state
            await engine.stop()
            return state

        assert asyncio.run(flow()) in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)
        messages = [e.message for e in engine.events.events]
        assert "stale entry from a previous run" not in messages
        assert messages[:3] == [
            "Initializing POLLING engine...",
            "Endpoint: https://polygon-rpc.com...",
            "LIVE MODE: Connecting to CLOB & Mempool...",
        ]
        services.resolver.set_target.assert_called_with(EOA)
        assert engine.watch_address == PROXY
        assert engine.sender_address == EOA

    def test_simulation_start_state(self):
        from mirrorbot.models import ConnectionState

        engine = _engine(_config(simulation_mode=True, private_key=""))

        async def flow():
            await engine.start()
            state = engine.state
            await engine.stop()
            return state

        assert asyncio.run(flow()) is ConnectionState.SIMULATING
        assert "Simulation Mode Active: Generating traffic patterns..." in [
            e.message for e in engine.events.events
        ]


# ═══════════════════════════════════════════════════════════════════
#  STATE MACHINE
# ═══════════════════════════════════════════════════════════════════

class TestConnectionState:

    def test_three_failures_then_success_logs_two_entries(self):
        from mirrorbot.connectors.rpc import RpcError
        from mirrorbot.engine.activity_detector import ChannelResult
        from mirrorbot.models import ConnectionState
        from mirrorbot.observability.event_log import EventKind

        detector = _detector(side_effect=[
            RpcError("HTTP Error: 503"),
            RpcError("HTTP Error: 503"),
            RpcError("HTTP Error: 503"),
            ChannelResult(),
        ])
        engine = _engine(detector=detector)
        engine.state = ConnectionState.CONNECTING

        async def flow():
            for _ in range(3):
                await engine.tick()
            errors = engine.error_count
            await engine.tick()
            return errors

        assert asyncio.run(flow()) == 3
        assert [(e.kind, e.message) for e in engine.events.events] == [
            (EventKind.ERROR, "Connection Failed: HTTP Error: 503"),
            (EventKind.SUCCESS, "Network Connection Established"),
        ]
        assert engine.state is ConnectionState.CONNECTED
        assert engine.error_count == 0

    def test_connected_stays_quiet(self):
        from mirrorbot.models import ConnectionState
        engine = _engine()
        engine.state = ConnectionState.CONNECTED
        asyncio.run(engine.tick())
        assert len(engine.events) == 0

    def test_simulation_ignores_errors(self):
        from mirrorbot.engine.activity_detector import ChannelUnavailable
        from mirrorbot.models import ConnectionState
        from mirrorbot.observability.metrics import metrics

        engine = _engine(
            _config(simulation_mode=True),
            detector=_detector(side_effect=ChannelUnavailable("Trade history unreachable")),
        )
        engine.state = ConnectionState.SIMULATING
        asyncio.run(engine.tick())
        assert engine.state is ConnectionState.SIMULATING
        assert len(engine.events) == 0
        assert metrics.counter("engine.tick_errors") == 1


# ═══════════════════════════════════════════════════════════════════
#  TICK / SCHEDULER
# ═══════════════════════════════════════════════════════════════════

class TestTick:

    def test_overlapping_tick_skipped(self):
        from mirrorbot.engine.activity_detector import ChannelResult

        gate = asyncio.Event()

        async def slow_detect(*args):
            await gate.wait()
            return ChannelResult()

        detector = MagicMock()
        detector.detect = slow_detect
        engine = _engine(detector=detector)

        async def flow():
            first = asyncio.create_task(engine.tick())
            await asyncio.sleep(0)
            second = await engine.tick()
            gate.set()
            return await first, second

        assert asyncio.run(flow()) == (True, False)

    def test_detector_called_with_sender_and_watch(self):
        from mirrorbot.models import MonitoringMode
        detector = _detector()
        engine = _engine(_config(monitoring_mode="HYBRID"), detector=detector)

        async def flow():
            await engine.resolve_target()
            await engine.tick()

        asyncio.run(flow())
        detector.detect.assert_awaited_once_with(MonitoringMode.HYBRID, EOA, PROXY)

    def test_sizing_reloaded_before_detect(self, tmp_path):
        import os

        from mirrorbot.config import ConfigWatcher
        from mirrorbot.observability.event_log import EventKind
        from mirrorbot.observability.metrics import metrics

        path = tmp_path / "config.yaml"
        path.write_text("trade:\n  copy_multiplier: 1.0\n")
        config = _config()
        engine = _engine(config, watcher=ConfigWatcher(path, config.trade))

        path.write_text("trade:\n  copy_multiplier: 2.0\n")
        mtime = path.stat().st_mtime + 10
        os.utime(path, (mtime, mtime))
        asyncio.run(engine.tick())

        assert engine.config.trade.copy_multiplier == 2.0
        assert [(e.kind, e.message) for e in engine.events.events][0] == (
            EventKind.INFO, "Config reloaded: copy_multiplier=2.0",
        )
        assert metrics.snapshot()["timings"]["engine.tick_secs"]["count"] == 1


class TestTicker:

    def test_runs_until_cancelled(self):
        from mirrorbot.engine.scheduler import CancellationToken, Ticker

        async def flow():
            token = CancellationToken()
            sleep = AsyncMock()
            ticker = Ticker(2.0, token, sleep=sleep)
            calls = []

            async def callback():
                calls.append(1)
                if len(calls) == 3:
                    token.cancel()

            await ticker.run(callback)
            return ticker.ticks, sleep.await_count

        assert asyncio.run(flow()) == (3, 2)

    def test_token_wait(self):
        from mirrorbot.engine.scheduler import CancellationToken

        async def flow():
            token = CancellationToken()
            timed_out = await token.wait(0.01)
            token.cancel()
            return timed_out, await token.wait(5), token.cancelled

        assert asyncio.run(flow()) == (False, True, True)


class TestStop:

    def test_stop_resets_state(self):
        from mirrorbot.models import ConnectionState
        detector = _detector()
        engine = _engine(detector=detector)

        async def flow():
            await engine.start()
            await asyncio.sleep(0)
            await engine.stop()

        asyncio.run(flow())
        assert engine.state is ConnectionState.STOPPED
        assert not engine.running
        assert engine.events.events[-1].message == "Bot engine stopped."
        assert detector.reset.call_count >= 2

    def test_stop_when_idle_is_noop(self):
        engine = _engine()
        asyncio.run(engine.stop())
        assert len(engine.events) == 0

    def test_aclose_closes_services(self):
        services = _services()
        asyncio.run(_engine(services=services).aclose())
        services.close.assert_awaited_once()


# ═══════════════════════════════════════════════════════════════════
#  END TO END
# ═══════════════════════════════════════════════════════════════════

def _pipeline(trade_kwargs, transactions, client_factory=None, trades=None):
    from mirrorbot.chain.decoder import encode_fill_input
    from mirrorbot.connectors.clob import ClobReader
    from mirrorbot.connectors.gamma import MarketCatalog
    from mirrorbot.engine.activity_detector import (
        ActivityDetector, Heartbeat, MempoolChannel, PollingChannel, SeenSignalSet,
    )
    from mirrorbot.execution.order_executor import OrderExecutor
    from mirrorbot.models import Side

    config = _config(**trade_kwargs)
    fetcher = FakeFetcher({
        "/events?id=101": json_response([{"title": "Rate cut in December"}]),
        "/data/trades": trades or json_response([]),
    })
    catalog = MarketCatalog(fetcher)
    rpc = MagicMock()
    rpc.get_pending_block = AsyncMock(return_value={"transactions": [
        {"hash": h, "from": EOA, "to": "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E",
         "input": encode_fill_input(101, 1, taker, Side.BUY)}
        for h, taker in transactions
    ]})
    seen = SeenSignalSet()
    detector = ActivityDetector(
        MempoolChannel(rpc, catalog, seen),
        PollingChannel(ClobReader(fetcher), catalog, seen),
        seen,
        Heartbeat(4.0),
    )
    executor = OrderExecutor(config.trade, sleep=AsyncMock(), client_factory=client_factory)
    return _engine(config, detector=detector, executor=executor), fetcher


class TestEndToEnd:

    def test_mempool_signal_copied_in_simulation(self):
        from mirrorbot.models import ConnectionState, Outcome
        from mirrorbot.observability.event_log import EventKind

        engine, fetcher = _pipeline(
            {"simulation_mode": True, "monitoring_mode": "HYBRID",
             "min_order_amount": 25, "copy_multiplier": 2.0},
            [("0xaaa", 50_000_000), ("0xbbb", 10_000_000)],
        )
        engine.state = ConnectionState.SIMULATING

        async def flow():
            await engine.resolve_target()
            await engine.tick()

        asyncio.run(flow())

        assert len(engine.positions) == 1
        pos = engine.positions[0]
        assert pos.size_shares == 100.0
        assert pos.market_label == "101"
        assert pos.outcome is Outcome.YES

        kinds = [e.kind for e in engine.events.events]
        assert kinds == [
            EventKind.INFO,       # heartbeat
            EventKind.PENDING,    # 0xaaa
            EventKind.PENDING,    # 0xbbb
            EventKind.FRONTRUN,
            EventKind.SUCCESS,
            EventKind.INFO,       # filtered
        ]
        messages = [e.message for e in engine.events.events]
        assert messages[3] == "Mempool: Copying Trade..."
        assert messages[4].startswith("SIMULATION COPY: BUY $100 on ")
        assert messages[5] == "FILTER: Mempool signal amount $10.00 below min ($25)"
        # polling ran against the resolved proxy, not the EOA
        assert f"maker_address={PROXY}" in fetcher.urls("/data/trades")[0]

    def test_second_tick_does_not_recopy(self):
        from mirrorbot.models import ConnectionState
        engine, _ = _pipeline(
            {"simulation_mode": True, "monitoring_mode": "MEMPOOL"},
            [("0xaaa", 50_000_000)],
        )
        engine.state = ConnectionState.SIMULATING

        async def flow():
            await engine.tick()
            await engine.tick()

        asyncio.run(flow())
        assert len(engine.positions) == 1

    def test_live_submission_creates_position(self):
        from mirrorbot.models import ConnectionState, Outcome

        client = MagicMock()
        client.post_order = AsyncMock(return_value={"orderID": "ord-1", "transactionHash": "0xfeed"})
        client.close = AsyncMock()
        engine, _ = _pipeline(
            {"monitoring_mode": "MEMPOOL", "min_order_amount": 25, "copy_multiplier": 2.0},
            [("0xaaa", 50_000_000)],
            client_factory=lambda address, creds: client,
        )
        engine.state = ConnectionState.CONNECTED

        asyncio.run(engine.tick())

        order = client.post_order.await_args.args[0]
        assert order.maker_amount == 100_000_000
        assert order.token_id == "101"
        assert engine.positions[0].id == "pos-ord-1"
        assert engine.positions[0].market_label == "101"
        assert engine.positions[0].outcome is Outcome.YES
        assert engine.events.events[-1].message.startswith("COPY EXECUTED: BUY $100 on ")

    def test_history_outage_does_not_drop_mempool_copy(self):
        from mirrorbot.models import ConnectionState

        replies = iter([EXHAUSTED, json_response([])])
        engine, fetcher = _pipeline(
            {"simulation_mode": True, "monitoring_mode": "HYBRID"},
            [("0xaaa", 50_000_000)],
            trades=lambda url, body: next(replies),
        )
        engine.state = ConnectionState.SIMULATING

        async def flow():
            await engine.tick()
            await engine.tick()

        asyncio.run(flow())
        assert len(engine.positions) == 1
        assert engine.error_count == 1
        assert len(fetcher.urls("/data/trades")) == 2

    def test_live_channel_failure_still_copies_and_flags_error(self):
        from mirrorbot.models import ConnectionState
        from mirrorbot.observability.event_log import EventKind

        client = MagicMock()
        client.post_order = AsyncMock(return_value={"orderID": "ord-2"})
        client.close = AsyncMock()
        engine, _ = _pipeline(
            {"monitoring_mode": "HYBRID"},
            [("0xaaa", 50_000_000)],
            client_factory=lambda address, creds: client,
            trades=EXHAUSTED,
        )
        engine.state = ConnectionState.CONNECTED

        asyncio.run(engine.tick())

        assert engine.state is ConnectionState.ERROR
        assert engine.positions[0].id == "pos-ord-2"
        errors = [e.message for e in engine.events.events if e.kind is EventKind.ERROR]
        assert errors == ["Connection Failed: Trade history unreachable"]
