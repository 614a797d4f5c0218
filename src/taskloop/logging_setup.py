"""Console logging configuration for the CLI."""

from __future__ import annotations

import logging
import sys


class _ConsoleNoiseFilter(logging.Filter):
    """Keep taskloop logs; only let third-party loggers through at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("taskloop"):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(*, verbose: bool = False) -> None:
    """Install a single stderr handler on the root logger.

    Safe to call more than once: previously installed handlers are replaced.
    """

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    handler.addFilter(_ConsoleNoiseFilter())
    root.addHandler(handler)
    logging.captureWarnings(True)
