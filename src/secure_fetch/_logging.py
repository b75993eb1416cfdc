"""Internal logging helpers.

The library never configures logging on import beyond a NullHandler on the
package logger. ``enable_debug_logging`` backs the ``debug_logging`` config
toggle.
"""

import logging

_PACKAGE_LOGGER = "secure_fetch"
_DEBUG_FORMAT = "[%(name)s] %(levelname)s %(message)s"

logging.getLogger(_PACKAGE_LOGGER).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace."""
    return logging.getLogger(name)


def enable_debug_logging() -> None:
    """Raise the package logger to DEBUG and attach one stream handler."""
    logger = logging.getLogger(_PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG)
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_DEBUG_FORMAT))
        logger.addHandler(handler)
