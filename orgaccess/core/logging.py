from __future__ import annotations

import logging

from orgaccess.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install a single stream handler so repeated app construction does not duplicate lines.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(handler, "_orgaccess", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._orgaccess = True  # type: ignore[attr-defined]
        root.addHandler(handler)
