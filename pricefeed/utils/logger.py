"""Structured logging configuration using structlog.

JSON output in production, colored console in development.
The masking processor keeps the aggregator API key and RPC credentials out of
logs; websocket handshake errors quote the full endpoint URL.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

# Keys whose values are always secrets. Not "token", which names an asset here.
_SECRET_KEYS = re.compile(r"(password|secret|api[-_]?key|authorization)", re.IGNORECASE)
# user:password@host inside connection strings (postgres DSNs, RPC URLs with basic auth)
_DSN_PASSWORD = re.compile(r"(://[^:/@\s]+:)([^@\s]+)(@)")
# Provider keys carried in the RPC path, e.g. wss://base-mainnet.g.alchemy.com/v2/<key>
_RPC_PATH_KEY = re.compile(r"(://\S+?/v\d+/)([A-Za-z0-9_-]{16,})")
_MASK = "***REDACTED***"


def _mask_url(value: str) -> str:
    value = _DSN_PASSWORD.sub(rf"\1{_MASK}\3", value)
    return _RPC_PATH_KEY.sub(rf"\1{_MASK}", value)


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mask secret-named keys and credentials embedded in URLs."""
    for key, value in list(event_dict.items()):
        if _SECRET_KEYS.search(key):
            event_dict[key] = _MASK
        elif isinstance(value, str) and "://" in value:
            event_dict[key] = _mask_url(value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Configure structlog and stdlib logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Force JSON output. If None, JSON unless MODE=dev.
    """
    if json_output is None:
        json_output = os.getenv("MODE", "prod") != "dev"

    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _mask_secrets,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Silence noisy third-party loggers
    for noisy in ("aiohttp", "asyncio", "sqlalchemy.engine", "web3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger with module context.

    Args:
        module: Module name for context binding.

    Returns:
        A structlog bound logger instance.
    """
    return structlog.get_logger(module=module)
