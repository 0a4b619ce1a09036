"""Logging setup for the server and CLI."""

import logging
import sys


def setup_logging(level: str | int = logging.INFO) -> None:
    """Configure root logging to stdout.

    Args:
        level: Level name ("INFO", "debug") or logging constant.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Every Green API poll is an HTTP request
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
