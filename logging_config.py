"""
structlog setup for the referral service.

events are snake_case names with key/value context (wallet, code, reference,
tx_hash). wallet addresses can be shortened to 0x1234...abcd before render.
"""

import logging
import re
import sys
from typing import Any, Dict, List

import structlog

from settings import Settings, settings as default_settings

WALLET_VALUE_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# chatty per-request loggers of the transfer client and the server
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def mask_wallets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and WALLET_VALUE_RE.match(value):
            event_dict[key] = f"{value[:6]}...{value[-4:]}"
        elif isinstance(value, list) and value and all(isinstance(v, str) and WALLET_VALUE_RE.match(v) for v in value):
            event_dict[key] = [f"{v[:6]}...{v[-4:]}" for v in value]
    return event_dict


def _processors(config: Settings) -> List[Any]:
    shared: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if config.log_mask_wallets:
        shared.append(mask_wallets)

    if config.log_format == "json":
        return shared + [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    # ConsoleRenderer prints exc_info itself
    return shared + [
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.dev.ConsoleRenderer(),
    ]


def setup_logging(config: Settings = default_settings) -> None:
    level = logging.getLevelName(config.log_level)

    structlog.configure(
        processors=_processors(config),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and psycopg log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
