"""
Logging setup shared by the API, the flows and the CLI.

All loggers live under the ``cloak`` namespace. Call ``get_logger("flows")``
to get ``cloak.flows``; the first call installs a single stream handler on the
root ``cloak`` logger with the level taken from ``LOG_LEVEL``.
"""
import logging
import os
import sys

ROOT_LOGGER = "cloak"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a namespaced logger

    Args:
        name: Component name, e.g. "flows" or "database.store"

    Returns:
        logging.Logger for cloak.<name>
    """
    if not _configured:
        configure_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def short(hex_value: str | None, n: int = 16) -> str:
    """Truncate a commitment/nullifier for log lines."""
    if not hex_value:
        return "-"
    return hex_value[:n] + "..." if len(hex_value) > n else hex_value
