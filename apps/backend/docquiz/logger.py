import logging
import sys

from .config import settings


class CustomFormatter(logging.Formatter):
    """Colour log lines by level."""

    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    format_str = (
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)"
    )

    FORMATS = {
        logging.DEBUG: grey + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno)
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def get_logger(name: str) -> logging.Logger:
    """Return a logger that writes coloured lines to stdout.

    The handler is attached once per logger name so repeated imports do not
    duplicate output.
    """
    logger = logging.getLogger(name)

    if not logger.hasHandlers():
        logger.setLevel(settings.log_level.upper())

        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(settings.log_level.upper())
        ch.setFormatter(CustomFormatter())
        logger.addHandler(ch)

    return logger
