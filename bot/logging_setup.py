from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
import os


LOG_FORMAT = "[%(asctime)s] %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "qutie.log"
LOG_RETENTION_DAYS = 14
NOISY_LOGGERS = ("discord", "sqlalchemy.engine")


def setup_logging(level: str, log_dir: str = "", *, db_echo: bool = False) -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                os.path.join(log_dir, LOG_FILE_NAME),
                when="midnight",
                backupCount=LOG_RETENTION_DAYS,
                encoding="utf-8",
                utc=True,
            )
        )

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        if name == "sqlalchemy.engine" and db_echo:
            continue
        logging.getLogger(name).setLevel(logging.WARNING)
