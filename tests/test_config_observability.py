"""Tests for configuration loading, the engine event log, metrics and logging."""

from __future__ import annotations

import os

import pytest


# ═══════════════════════════════════════════════════════════════════
#  CONFIG
# ═══════════════════════════════════════════════════════════════════

class TestConfig:

    def test_defaults(self):
        from mirrorbot.config import BotConfig
        from mirrorbot.models import MonitoringMode
        cfg = BotConfig()
        assert cfg.trade.monitoring_mode is MonitoringMode.POLLING
        assert cfg.trade.copy_multiplier == 1.0
        assert cfg.trade.min_order_amount == 5.0
        assert cfg.trade.simulation_mode is False
        assert cfg.engine.tick_interval_secs == 2.0
        assert cfg.engine.poll_grace_secs == 30

    def test_missing_file_uses_defaults(self, tmp_path):
        from mirrorbot.config import load_config
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg.trade.target_wallet == ""

    def test_yaml_and_env_overrides(self, tmp_path, monkeypatch):
        from mirrorbot.config import load_config
        from mirrorbot.models import MonitoringMode

        path = tmp_path / "config.yaml"
        path.write_text(
            "trade:\n"
            "  target_wallet: '@whale'\n"
            "  monitoring_mode: HYBRID\n"
            "  copy_multiplier: 2.5\n"
            "engine:\n"
            "  tick_interval_secs: 1.0\n"
        )
        monkeypatch.setenv("MIRROR_PRIVATE_KEY", "0x" + "11" * 32)
        monkeypatch.setenv("POLYMARKET_API_KEY", "key-from-env")

        cfg = load_config(path)
        assert cfg.trade.target_wallet == "@whale"
        assert cfg.trade.monitoring_mode is MonitoringMode.HYBRID
        assert cfg.trade.copy_multiplier == 2.5
        assert cfg.engine.tick_interval_secs == 1.0
        assert cfg.trade.private_key == "0x" + "11" * 32
        assert cfg.trade.has_api_credentials

    def test_invalid_mode_rejected(self, tmp_path):
        from pydantic import ValidationError

        from mirrorbot.config import load_config
        path = tmp_path / "config.yaml"
        path.write_text("trade:\n  monitoring_mode: TELEPATHY\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def _touch(self, path, text):
        path.write_text(text)
        mtime = path.stat().st_mtime + 10
        os.utime(path, (mtime, mtime))

    def test_watcher_applies_sizing_fields(self, tmp_path):
        from mirrorbot.config import ConfigWatcher, load_config
        path = tmp_path / "config.yaml"
        path.write_text("trade:\n  target_wallet: '@whale'\n  min_order_amount: 5\n")
        trade = load_config(path).trade
        watcher = ConfigWatcher(path, trade)

        assert watcher.poll() == {}

        self._touch(path, "trade:\n  target_wallet: '@other'\n  min_order_amount: 25\n  copy_multiplier: 2.0\n")
        assert watcher.poll() == {"min_order_amount": 25.0, "copy_multiplier": 2.0}
        assert trade.min_order_amount == 25
        assert trade.copy_multiplier == 2.0
        assert trade.target_wallet == "@whale"
        assert watcher.poll() == {}

    def test_watcher_keeps_settings_on_bad_edit(self, tmp_path):
        from mirrorbot.config import ConfigWatcher, TradeConfig
        path = tmp_path / "config.yaml"
        path.write_text("trade:\n  copy_multiplier: 1.5\n")
        trade = TradeConfig(copy_multiplier=1.5)
        watcher = ConfigWatcher(path, trade)

        self._touch(path, "trade:\n  copy_multiplier: [not, a, number\n")
        assert watcher.poll() == {}
        assert trade.copy_multiplier == 1.5

    def test_watcher_missing_file(self, tmp_path):
        from mirrorbot.config import ConfigWatcher, TradeConfig
        watcher = ConfigWatcher(tmp_path / "absent.yaml", TradeConfig())
        assert watcher.poll() == {}


# ═══════════════════════════════════════════════════════════════════
#  EVENT LOG
# ═══════════════════════════════════════════════════════════════════

class TestEventLog:

    def test_append_and_filter(self):
        from mirrorbot.observability.event_log import EventKind, EventLog
        events = EventLog()
        events.append(EventKind.INFO, "a")
        events.append(EventKind.ERROR, "b", tx_hash="0x1")
        assert [e.message for e in events.events] == ["a", "b"]
        assert events.of_kind(EventKind.ERROR)[0].tx_hash == "0x1"

    def test_bounded(self):
        from mirrorbot.observability.event_log import EventKind, EventLog
        events = EventLog(max_events=3)
        for i in range(5):
            events.append(EventKind.INFO, str(i))
        assert [e.message for e in events.events] == ["2", "3", "4"]

    def test_subscribers_and_ids(self):
        from mirrorbot.observability.event_log import EventKind, EventLog
        events = EventLog()
        received = []
        events.subscribe(received.append)
        first = events.append(EventKind.SUCCESS, "x")
        second = events.append(EventKind.SUCCESS, "y")
        assert received == [first, second]
        assert first.id != second.id

    def test_clear(self):
        from mirrorbot.observability.event_log import EventKind, EventLog
        events = EventLog()
        events.append(EventKind.INFO, "a")
        events.clear()
        assert len(events) == 0


# ═══════════════════════════════════════════════════════════════════
#  METRICS / LOGGING
# ═══════════════════════════════════════════════════════════════════

class TestMetrics:

    def test_snapshot(self):
        from mirrorbot.observability.metrics import MetricsCollector
        m = MetricsCollector()
        m.incr("orders.executed")
        m.incr("orders.executed", source="MEMPOOL")
        m.gauge("engine.positions", 4)
        for v in (1.0, 2.0, 3.0):
            m.histogram("engine.tick_secs", v)

        snap = m.snapshot()
        assert snap["counters"]["orders.executed"] == 2
        assert snap["counters"]["orders.executed{source=MEMPOOL}"] == 1
        assert snap["gauges"]["engine.positions"] == 4
        timing = snap["timings"]["engine.tick_secs"]
        assert (timing["count"], timing["last"], timing["max"], timing["avg"]) == (3, 3.0, 3.0, 2.0)

    def test_tagged_counter_lookup(self):
        from mirrorbot.observability.metrics import MetricsCollector
        m = MetricsCollector()
        m.incr("detector.channel_errors", channel="polling")
        m.incr("detector.channel_errors", channel="polling")
        m.incr("detector.channel_errors", channel="mempool")
        assert m.counter("detector.channel_errors") == 3
        assert m.counter("detector.channel_errors", channel="polling") == 2

    def test_timing_window_bounded(self):
        from mirrorbot.observability.metrics import MetricsCollector
        m = MetricsCollector(window=10)
        for v in range(100):
            m.histogram("engine.tick_secs", float(v))
        timing = m.snapshot()["timings"]["engine.tick_secs"]
        assert timing["count"] == 100
        assert timing["max"] == 99.0
        assert timing["p95"] == 99.0
        assert timing["avg"] == 94.5

    def test_timer_records_on_error(self):
        from mirrorbot.observability.metrics import MetricsCollector
        m = MetricsCollector()
        with pytest.raises(RuntimeError):
            with m.timer("engine.tick_secs"):
                raise RuntimeError("boom")
        assert m.snapshot()["timings"]["engine.tick_secs"]["count"] == 1

    def test_reset(self):
        from mirrorbot.observability.metrics import MetricsCollector
        m = MetricsCollector()
        m.incr("x")
        m.reset()
        assert m.counter("x") == 0


class TestLogging:

    def test_secret_fields_redacted(self):
        from mirrorbot.observability.logger import _redact_processor
        event = _redact_processor(None, "info", {
            "event": "executor.plan",
            "private_key": "0xdead",
            "API_SECRET": "s",
            "passphrase": "p",
            "amount": 100,
        })
        assert event["private_key"] == "***REDACTED***"
        assert event["API_SECRET"] == "***REDACTED***"
        assert event["passphrase"] == "***REDACTED***"
        assert event["amount"] == 100

    def test_long_upstream_text_clipped(self):
        from mirrorbot.observability.logger import MAX_VALUE_CHARS, _clip_processor
        page = "<html>" + "x" * 1000
        event = _clip_processor(None, "warning", {"event": "proxy_fetch.relay_failed", "body": page, "status": 502})
        assert event["body"].startswith("<html>")
        assert event["body"].endswith(f"...(+{len(page) - MAX_VALUE_CHARS} chars)")
        assert event["status"] == 502

    def test_reconfigure_replaces_handlers(self, tmp_path):
        import logging

        from mirrorbot.observability.logger import _OWNED, configure_logging

        def owned():
            return [h for h in logging.getLogger().handlers if getattr(h, _OWNED, False)]

        configure_logging("DEBUG", "console", str(tmp_path / "logs" / "bot.log"))
        assert len(owned()) == 2
        assert (tmp_path / "logs").is_dir()
        configure_logging("WARNING", "json")
        assert len(owned()) == 1
        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_run_context_bound_and_cleared(self):
        import structlog

        from mirrorbot.observability.logger import bind_run_context, clear_run_context
        clear_run_context()
        bind_run_context(target="@whale", mode="HYBRID")
        assert structlog.contextvars.get_contextvars() == {"target": "@whale", "mode": "HYBRID"}
        clear_run_context()
        assert structlog.contextvars.get_contextvars() == {}
