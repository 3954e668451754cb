"""Logging setup for phenoflow."""
import logging

from rich.logging import RichHandler

from phenoflow.config import config


def configure_logging(level=None, console=None):
    """
    Attach a rich handler to the package logger.

    Args:
        level: Log level name or number (default from config)
        console: Optional rich Console to render into

    Returns:
        The configured ``phenoflow`` logger
    """
    logger = logging.getLogger("phenoflow")
    logger.setLevel(level or config.log_level)

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter(config.log_format))
    logger.addHandler(handler)
    logger.propagate = False

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logger
