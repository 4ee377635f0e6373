"""Tests for eximpilot.log module."""

import logging

from eximpilot.config import Config
from eximpilot.log import LOG_FORMAT, init_logger


class TestInitLogger:
    """Tests for init_logger."""

    def test_installs_one_handler(self):
        logger = logging.getLogger("eximpilot")
        logger.handlers.clear()

        init_logger(Config(log_level="DEBUG"))
        init_logger(Config(log_level="ERROR"))

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert logger.handlers[0].formatter._fmt == LOG_FORMAT

    def test_quiets_sqlalchemy(self):
        logging.getLogger("eximpilot").handlers.clear()
        init_logger(Config(log_level="INFO"))
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
