import logging

from eximpilot.config import Config

logger = logging.getLogger("eximpilot")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def init_logger(config: Config) -> None:
    """Attach a stream handler to the eximpilot logger.

    Safe to call more than once; only the first call installs a handler.
    """
    if logger.handlers:
        return
    logger.propagate = False
    log_level = config.log_level
    logger.setLevel(log_level)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    # SQLAlchemy echoes every statement at INFO; keep it out of the way
    sqlalchemy_logger = logging.getLogger("sqlalchemy.engine")
    sqlalchemy_logger.propagate = False
    sqlalchemy_logger.setLevel(
        logging.DEBUG if log_level == "DEBUG" else logging.WARNING
    )
    if not sqlalchemy_logger.hasHandlers():
        sqlalchemy_stream_handler = logging.StreamHandler()
        sqlalchemy_stream_handler.setFormatter(formatter)
        sqlalchemy_logger.addHandler(sqlalchemy_stream_handler)
