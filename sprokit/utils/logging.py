"""Logger access for the sprokit package.

Decoding warnings (missing ``<header>`` tag, missing line break) and converter
progress are emitted on loggers under ``sprokit``. The package attaches only a
``NullHandler``; applications choose handlers and levels.
"""

import logging

PACKAGE_LOGGER = "sprokit"

logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Return the logger for a module, nested under the package logger."""
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
