"""Logger factory shared by the sync engine."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.settings import LOGGING


_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _file_handler(path: Path) -> Optional[logging.Handler]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            path,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
    except OSError:
        # read-only data dir: fall back to whatever the root logger does
        return None
    handler.setFormatter(logging.Formatter(_FORMAT))
    return handler


def ensure_logger(name: str) -> logging.Logger:
    """Return the ``chronify.<name>`` logger, attaching the rotating file once."""

    root = logging.getLogger("chronify")
    if not root.handlers:
        handler = _file_handler(LOGGING.path)
        if handler is not None:
            root.addHandler(handler)
        root.setLevel(LOGGING.level)
    return root.getChild(name)


__all__ = ["ensure_logger"]
