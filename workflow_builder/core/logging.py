import logging
import sys
from typing import Optional, TextIO

from workflow_builder.core.config import settings

LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"

# Libraries whose INFO output drowns out request logs
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "asyncio")


class ColoredFormatter(logging.Formatter):
    """Colors the level name for terminal output"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Color a copy so other handlers see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def _build_formatter(stream: TextIO) -> logging.Formatter:
    if stream.isatty():
        return ColoredFormatter(LOG_FORMAT)
    return logging.Formatter(LOG_FORMAT)


def setup_logging(level: Optional[str] = None, stream: TextIO = sys.stdout):
    """Configure root logging for the service. Calling it again replaces the handler."""
    level_name = (level or settings.LOG_LEVEL).upper()

    handler = logging.StreamHandler(stream)
    handler.setFormatter(_build_formatter(stream))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        handlers=[handler],
        force=True
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if settings.DEBUG:
        # Statement echo is what DEBUG is for
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance"""
    return logging.getLogger(name)
