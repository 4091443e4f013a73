"""Logger lookup shared by the migration components."""

import logging

from prefect import get_run_logger
from prefect.exceptions import MissingContextError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str):
    """
    Get the Prefect run logger, falling back to standard logging.

    Inside a flow or task run the Prefect logger is returned so messages
    reach the run's log stream. Outside of a run a stdlib logger with a
    stream handler is configured once and returned.

    Args:
        name: Logger name used for the stdlib fallback

    Returns:
        Logger-compatible object
    """
    try:
        return get_run_logger()
    except (MissingContextError, RuntimeError):
        logger = logging.getLogger(name)
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger
