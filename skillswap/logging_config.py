"""Process-wide logging setup for SkillSwap clients."""
from __future__ import annotations

import logging

from skillswap.config import Settings, settings as _default_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: Settings | None = None) -> None:
    """Install the root handler and quieten chatty HTTP transport loggers.

    ``debug=True`` forces DEBUG regardless of ``log_level``.
    """
    cfg = config or _default_settings
    level = logging.DEBUG if cfg.debug else getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs one INFO line per request; the gateway already logs what matters.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
