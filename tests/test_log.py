import logging

import pytest

from appbridge.log import configure_logging


@pytest.fixture(autouse=True)
def restore_logger():
    logger = logging.getLogger("appbridge")
    handlers, level = list(logger.handlers), logger.level
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)


def test_handler_added_once(restore_logger):
    configure_logging("info")
    configure_logging("DEBUG")
    handlers = [h for h in restore_logger.handlers if getattr(h, "_appbridge", False)]
    assert len(handlers) == 1
    assert restore_logger.level == logging.DEBUG


def test_unknown_level_falls_back_to_warning(restore_logger):
    configure_logging("chatty")
    assert restore_logger.level == logging.WARNING
