"""
Logging setup.

Every module logs through ``logging.getLogger(__name__)``. The level of a
single subsystem can be raised or lowered with a ``LOG_SCOPE_<SCOPE>``
environment variable, where the scope is the last component of the module
name, e.g. ``LOG_SCOPE_INDEX_MANAGER=DEBUG`` or ``LOG_SCOPE_UPDATE_HANDLER=WARNING``.
"""

import logging
import os
from typing import Mapping, Optional


LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

SCOPES = (
    "app",
    "config",
    "delta_handler",
    "document_builder",
    "elastic",
    "index_builder",
    "index_manager",
    "search",
    "sparql",
    "tika",
    "update_handler",
)


def configure_logging(level: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> None:
    """
    Configure the package logger.

    Args:
        level: Default level name (falls back to the LOG_LEVEL variable, then INFO)
        environ: Environment variables (default: os.environ)
    """
    env = os.environ if environ is None else environ
    root = logging.getLogger("triplesearch")
    root.setLevel(_level((level or env.get("LOG_LEVEL") or "INFO"), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    for scope in SCOPES:
        value = env.get(f"LOG_SCOPE_{scope.upper()}")
        if value:
            logging.getLogger(f"triplesearch.{scope}").setLevel(_level(value, root.level))


def _level(name: str, default: int) -> int:
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else default
