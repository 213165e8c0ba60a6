from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(
    level: int = logging.INFO,
    log_path: Optional[str] = None,
    also_console: bool = True,
) -> Optional[str]:
    """Attach handlers to the `agentplane` logger once per process.

    Returns the log file path in use, if any. Repeated calls only adjust the level.
    """

    logger = logging.getLogger("agentplane")
    logger.setLevel(level)

    if getattr(logger, "_agentplane_configured", False):
        return getattr(logger, "_agentplane_log_path", None)

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    handlers: list[logging.Handler] = []

    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_agentplane_configured", True)
    setattr(logger, "_agentplane_log_path", log_path)

    logger.debug("Logging initialized (level=%s, file=%s)", logging.getLevelName(level), log_path)
    return log_path
