"""Structured logging with structlog.

Keys, API secrets and passphrases never reach a handler. Upstream error
bodies (relay HTML pages, CLOB rejections) are clipped so one bad proxy
cannot flood the log at a 2 s tick.

``configure_logging`` may be called more than once: module-level loggers
are created at import with env defaults, and the CLI reconfigures them
from config.yaml once it has loaded.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import structlog

MAX_VALUE_CHARS = 300
REDACTED = "***REDACTED***"

_configured = False
_OWNED = "_mirrorbot_handler"

_SECRET_KEYS = frozenset({
    "private_key", "mirror_private_key", "mnemonic",
    "secret", "api_secret", "polymarket_api_secret",
    "passphrase", "api_passphrase", "polymarket_api_passphrase",
    "password", "signature", "poly_signature",
})


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key in event_dict:
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def _clip_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_VALUE_CHARS:
            event_dict[key] = f"{value[:MAX_VALUE_CHARS]}...(+{len(value) - MAX_VALUE_CHARS} chars)"
    return event_dict


def _handlers(log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(path)))
    return handlers


def configure_logging(level: str = "INFO", fmt: str = "json", log_file: str | None = None) -> None:
    """Install (or replace) the mirrorbot handlers on the root logger."""
    global _configured
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    for old in [h for h in root.handlers if getattr(h, _OWNED, False)]:
        root.removeHandler(old)
        old.close()
    root.setLevel(log_level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        _clip_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)
    for handler in _handlers(log_file):
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        setattr(handler, _OWNED, True)
        root.addHandler(handler)
    _configured = True


def bind_run_context(**values: object) -> None:
    """Tag every log line of the current run (target, mode, simulation)."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _configured:
        configure_logging(
            level=os.environ.get("MIRROR_LOG_LEVEL", "INFO"),
            fmt=os.environ.get("MIRROR_LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
