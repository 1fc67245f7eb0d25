from __future__ import annotations

import logging
import os
from typing import Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_QUIET_LIBRARIES: Final[tuple[str, ...]] = ("httpx", "urllib3", "google.auth")


def _resolve_level() -> int:
    level_name = os.getenv("NOTIFYQ_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the root stream handler is attached once per process."""
    global _HANDLER_ATTACHED

    level = _resolve_level()
    root = logging.getLogger()

    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
        # Client libraries log every request at INFO
        for library in _QUIET_LIBRARIES:
            logging.getLogger(library).setLevel(max(level, logging.WARNING))
        _HANDLER_ATTACHED = True

    root.setLevel(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
