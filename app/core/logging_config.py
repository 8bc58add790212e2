"""
Application-wide logging configuration helpers.

All modules log through ``logging.getLogger(__name__)``; this module installs a
single console handler so pipeline stages, background import jobs and the API
share one line format.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional


_is_configured = False

# Chatty at INFO while the mapping model is called.
_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic")

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def build_logging_config(log_level: str) -> Dict[str, Any]:
    """dictConfig payload for the console handler and per-logger levels."""
    loggers: Dict[str, Dict[str, Any]] = {"app": {"level": log_level}}
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "pipeline": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "pipeline",
                "level": log_level,
            },
        },
        "loggers": loggers,
        "root": {"handlers": ["console"], "level": log_level},
    }


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root and application loggers once per process.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
    """
    global _is_configured

    if _is_configured:
        return

    dictConfig(build_logging_config((level or "INFO").upper()))
    logging.getLogger(__name__).debug("Logging configured")
    _is_configured = True
