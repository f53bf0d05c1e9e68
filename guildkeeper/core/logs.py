from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | int | None = None, log_dir: str | None = None) -> logging.Logger:
    """Console logging plus daily-rotated combined and error files under log_dir."""
    level = level or os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        combined = TimedRotatingFileHandler(
            os.path.join(log_dir, "combined.log"), when="midnight", backupCount=7, encoding="utf-8"
        )
        combined.setFormatter(formatter)
        errors = TimedRotatingFileHandler(
            os.path.join(log_dir, "error.log"), when="midnight", backupCount=14, encoding="utf-8"
        )
        errors.setLevel(logging.ERROR)
        errors.setFormatter(formatter)
        root.addHandler(combined)
        root.addHandler(errors)

    # discord.py is chatty at DEBUG
    logging.getLogger("discord").setLevel(max(level, logging.INFO))
    return root
