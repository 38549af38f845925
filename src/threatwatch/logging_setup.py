from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from threatwatch.config import LoggingConfig

_HANDLER_TAG = "_threatwatch_handler"


def setup_logging(cfg: LoggingConfig) -> None:
    level = cfg.level.upper()
    logfile = cfg.file

    log_dir = os.path.dirname(logfile)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(level)
    # repeated runs in one process (tests, lookup after run) must not stack handlers
    for h in [h for h in logger.handlers if getattr(h, _HANDLER_TAG, False)]:
        logger.removeHandler(h)
        h.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    setattr(ch, _HANDLER_TAG, True)
    logger.addHandler(ch)

    # Rotating file handler
    fh = RotatingFileHandler(logfile, maxBytes=2_000_000, backupCount=3)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    setattr(fh, _HANDLER_TAG, True)
    logger.addHandler(fh)

    # provider request lines are noise at INFO
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logger.level))
