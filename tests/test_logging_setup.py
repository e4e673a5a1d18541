from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler

import pytest

from bot.logging_setup import LOG_RETENTION_DAYS, setup_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name in ("discord", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_setup_logging_writes_rotating_file_with_two_week_retention(tmp_path):
    setup_logging("debug", str(tmp_path / "logs"))

    root = logging.getLogger()
    file_handlers = [handler for handler in root.handlers if isinstance(handler, TimedRotatingFileHandler)]
    assert root.level == logging.DEBUG
    assert len(file_handlers) == 1
    assert file_handlers[0].backupCount == LOG_RETENTION_DAYS == 14

    logging.getLogger("qutie.test").info("hello")
    file_handlers[0].flush()
    assert "[qutie.test] hello" in (tmp_path / "logs" / "qutie.log").read_text(encoding="utf-8")


def test_setup_logging_quiets_library_loggers_unless_db_echo():
    setup_logging("INFO")
    assert logging.getLogger("discord").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert not any(isinstance(handler, TimedRotatingFileHandler) for handler in logging.getLogger().handlers)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.NOTSET)
    setup_logging("INFO", db_echo=True)
    assert logging.getLogger("sqlalchemy.engine").level == logging.NOTSET
