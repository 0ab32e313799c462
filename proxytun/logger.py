"""Logging setup for the proxytun engine."""

import logging

LOGGER_NAME = "proxytun"
LOG_FORMAT = "[%(levelname)s] %(name)s (%(threadName)s): %(message)s"


def setup_logging(
    level: int = logging.INFO, scapy_level: int = logging.ERROR
) -> logging.Logger:
    """Configure and return the proxytun logger.

    scapy reports interface warnings through its own "scapy" logger; those
    are capped at ``scapy_level`` so they don't drown the flow log.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    logging.getLogger("scapy").setLevel(scapy_level)
    return logger
