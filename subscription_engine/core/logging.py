"""Logging configuration helpers."""
from __future__ import annotations

import logging
import logging.config
from typing import Optional

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
_DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the API, CLI and scheduler."""

    global _configured
    if _configured:
        return

    from subscription_engine.core.config import settings

    resolved = (level or settings.LOG_LEVEL).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": _DEFAULT_FORMAT,
                    "datefmt": _DEFAULT_DATE_FORMAT,
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": resolved, "handlers": ["console"]},
            "loggers": {
                "sqlalchemy.engine": {"level": "WARNING"},
                "apscheduler": {"level": "WARNING"},
            },
        }
    )
    _configured = True
