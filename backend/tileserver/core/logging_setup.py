"""Logging configuration for the tile server."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once.

    Unknown level names fall back to INFO. Calling this again only adjusts
    the level, so building several applications in one process (tests) does
    not stack handlers.

    Args:
        level: Level name such as ``"DEBUG"`` or ``"warning"``.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(resolved)
