"""Logging configuration shared by the API and the sync CLI."""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from .config import Settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(settings: Settings) -> Path | None:
    """Configure root logging and return the log file path, if any."""

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = logging.Formatter(_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "_stocktake_console", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._stocktake_console = True  # type: ignore[attr-defined]
        root.addHandler(console)

    if not settings.log_file:
        return None

    log_path = Path(settings.log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = None
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler) and getattr(
            handler, "baseFilename", ""
        ) == str(log_path.resolve()):
            file_handler = handler
            break
    if file_handler is None:
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # uvicorn configures its own loggers; route them to the same file
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        named = logging.getLogger(name)
        if file_handler not in named.handlers:
            named.addHandler(file_handler)

    return log_path


__all__ = ["setup_logging"]
