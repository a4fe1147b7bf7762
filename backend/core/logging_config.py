import logging

from backend.core import config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str | None = None) -> None:
    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger('backend').setLevel(log_level)
    # SQL echo stays off unless explicitly debugging.
    logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO if config.DEBUG_MODE else logging.WARNING)
