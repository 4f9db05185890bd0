"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> logging.Logger:
    """Configure root logging handlers and return the agent's logger.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a file handler. When absent, only console
        logging is configured.
    log_network:
        When true, keep verbose third-party network libraries at the agent's
        level to aid diagnostics.

    The returned logger is handed to components at construction time.
    """

    logging.captureWarnings(True)

    for handler in list(logging.getLogger().handlers):
        logging.getLogger().removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "File logging disabled, cannot open %s: %s", log_path, exc
            )
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logging.getLogger().addHandler(file_handler)

    if not log_network:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("paho").setLevel(logging.WARNING)

    return logging.getLogger("ember_agent")
