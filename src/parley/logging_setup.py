"""Process logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_HANDLER_MARK = "_parley_handler"


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Attach stream (and optional file) handlers to the ``parley`` logger.

    Calling this again replaces previously installed handlers.
    """
    root = logging.getLogger("parley")
    root.setLevel(config.level)

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)

    return root
