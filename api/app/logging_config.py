import logging
import sys


def setup_logging(level: str | int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("app")
    if logger.handlers:
        return logger  # already configured
    logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    handler.setFormatter(fmt)
    logger.addHandler(handler)
    # sql echo only when debugging
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    return logger
