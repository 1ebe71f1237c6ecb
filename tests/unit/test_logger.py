"""
Unit tests for the application logger.
"""

import logging
from logging.handlers import RotatingFileHandler

from smsledger.utils.logger import logger, set_level, setup_logger


def test_logger_writes_file_and_stderr():
    handler_types = {type(h) for h in logger.handlers}
    assert RotatingFileHandler in handler_types
    assert logging.StreamHandler in handler_types


def test_setup_is_idempotent():
    before = len(logger.handlers)
    assert setup_logger() is logger
    assert len(logger.handlers) == before


def test_log_dir_override(tmp_path, monkeypatch):
    monkeypatch.setenv("SMSLEDGER_LOG_DIR", str(tmp_path))
    test_logger = setup_logger("smsledger-test-dir")
    try:
        test_logger.info("hello")
        assert (tmp_path / "smsledger.log").exists()
    finally:
        for handler in list(test_logger.handlers):
            handler.close()
            test_logger.removeHandler(handler)


def test_no_stdout_handler():
    import sys
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, RotatingFileHandler):
            assert handler.stream is not sys.stdout


def test_core_loggers_propagate_to_app_logger():
    child = logging.getLogger("smsledger.core.pattern_matcher")
    assert child.parent is logger or child.parent.name.startswith("smsledger")


def test_set_level():
    original = logger.level
    try:
        set_level("debug")
        assert logger.level == logging.DEBUG
        set_level("not-a-level")
        assert logger.level == logging.DEBUG
    finally:
        logger.setLevel(original)
