import logging
import os

from rich.logging import RichHandler

def get_logger(name=None) -> logging.Logger:
    """
    Returns a logger that renders through RichHandler.

    DEBUG in the environment lowers the level to logging.DEBUG.
    """
    if name is None:
        name = "ktra"
    logger = logging.getLogger(name)
    log_level = logging.DEBUG if os.getenv("DEBUG") else logging.INFO
    logger.setLevel(log_level)

    if not logger.handlers:
        handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        handler.setFormatter(logging.Formatter("[%(name)s]  %(message)s"))
        handler.setLevel(log_level)
        logger.addHandler(handler)
        logger.debug(f"Logger for '{name}' initialized with RichHandler.")

    return logger
