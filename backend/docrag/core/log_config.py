"""
Process-wide logging setup.

Every module logs through ``logging.getLogger(__name__)`` with pipe-delimited
``%s`` messages ("Embedder | batch=%d/%d"). This module only decides where
those records go and at what level; call it once from the process entry
point (worker boot, script, notebook).
"""

from __future__ import annotations

import logging

from docrag.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "sqlalchemy.engine")


def configure_logging(level: str | None = None) -> None:
    resolved = "DEBUG" if settings.debug else (level or settings.log_level).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def apply_format(logger: logging.Logger) -> None:
    """Re-format handlers Celery has already attached to ``logger``."""
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in logger.handlers:
        handler.setFormatter(formatter)
