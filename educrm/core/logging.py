"""Logging configuration for the EduCRM backend."""

import json
import logging
import sys

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, module, message (and exc_info if any)."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """
    Configure the ``educrm`` package logger.

    Args:
        level: Log level name (DEBUG, INFO, ...)
        fmt: ``text`` or ``json``
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))

    logger = logging.getLogger("educrm")
    logger.setLevel(level.upper())

    # Close and remove existing handlers so repeated app creation does not duplicate output
    for old_handler in logger.handlers[:]:
        old_handler.close()
        logger.removeHandler(old_handler)

    logger.addHandler(handler)
    logger.propagate = True
