"""
Logging
=======

Console output goes to stderr, coloured by level when attached to a terminal.
Every record is also appended to the activity log. The log file is
best-effort: if it cannot be opened the run carries on with console output only.
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path

LOG_FORMAT  = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_LEVEL_COLOURS = {
    logging.DEBUG:    "\033[0;36m",
    logging.INFO:     "\033[0;34m",
    logging.WARNING:  "\033[1;33m",
    logging.ERROR:    "\033[0;31m",
    logging.CRITICAL: "\033[0;31m",
}
_RESET = "\033[0m"


class ColourFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        text   = super().format(record)
        colour = _LEVEL_COLOURS.get(record.levelno)
        if not colour:
            return text
        return text.replace(record.levelname, f"{colour}{record.levelname}{_RESET}", 1)


class ActivityLogHandler(logging.FileHandler):
    """Append-only activity log. Write failures after opening are dropped."""

    def handleError(self, record: logging.LogRecord) -> None:
        pass


def configure_logging(log_file: Path, verbose: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    if sys.stderr.isatty():
        console.setFormatter(ColourFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    else:
        console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(console)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = ActivityLogHandler(log_file, mode="a", encoding="utf-8")
    except OSError as e:
        logging.getLogger(__name__).debug(f"Activity log {log_file} unavailable: {e}")
        return

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(file_handler)
