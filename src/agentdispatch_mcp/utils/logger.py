from __future__ import annotations

import logging
import sys
from pathlib import Path

PACKAGE_LOGGER = "agentdispatch_mcp"

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> logging.Logger:
    """Configure the ``agentdispatch_mcp`` logger tree.

    Logs go to stderr (stdout belongs to the MCP stdio transport) and, when
    ``log_file`` is given, to that file as well. Calling this again replaces
    the handlers it installed earlier instead of stacking new ones.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(numeric_level)
    for existing in [h for h in package_logger.handlers if getattr(h, "_agentdispatch", False)]:
        package_logger.removeHandler(existing)
        existing.close()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._agentdispatch = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return package_logger
