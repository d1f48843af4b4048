import logging
import os
import sys
from typing import Optional, TextIO


class ColorFormatter(logging.Formatter):
    """
    Formatter that wraps each record in an ANSI color chosen by its level.

    Debug output from the backward engine (graph sizes, skipped calls) is
    cyan, so it stands apart from warnings raised by callers.

    Examples:
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(ColorFormatter())
        >>> logging.getLogger("ndgrad").addHandler(handler)
    """

    grey = "\x1b[38;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    cyan = "\x1b[36;20m"
    green = "\x1b[32;20m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Render ``record`` as ``time - level - logger - message`` in color.

        Args:
            record (logging.LogRecord): The record to format.

        Returns:
            str: The colored log line.
        """
        color = self.FORMATS.get(record.levelno, self.grey)
        formatter = logging.Formatter(
            f"{color}%(asctime)s - %(levelname)s - %(name)s - %(message)s{self.reset}"
        )
        return formatter.format(record)


def setup_logger(
    name: Optional[str] = "ndgrad", stream: Optional[TextIO] = None
) -> logging.Logger:
    """
    Configure a logger with colored console output.

    The level is DEBUG when the ``DEBUG`` environment variable is set and INFO
    otherwise. Calling this twice for the same logger does not attach a second
    handler.

    Args:
        name (str, optional): Logger name. Defaults to the package logger, which
            every ``ndgrad.*`` module logger propagates to.
        stream (TextIO, optional): Output stream. Defaults to ``sys.stdout``.

    Returns:
        logging.Logger: The configured logger.

    Examples:
        >>> os.environ["DEBUG"] = "1"
        >>> logger = setup_logger()
        >>> logger.debug("backward visited 12 variables")
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if os.getenv("DEBUG") else logging.INFO
    logger.setLevel(level)

    for handler in logger.handlers:
        if isinstance(handler.formatter, ColorFormatter):
            return logger

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(ColorFormatter())
    logger.addHandler(console_handler)
    return logger
