"""
Shared rich console and logging setup.

Every interactive surface prints through :data:`console`.  :func:`setup_logging`
routes the standard ``logging`` tree to a :class:`rich.logging.RichHandler` on
screen and to the per-session run log on disk.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_PREFIX = "MDE-Readiness-Log"
FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

console = Console()


def setup_logging(
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
    output: Optional[Console] = None,
) -> Optional[Path]:
    """
    Configure the root logger.

    Console records go through rich at ``level``; when ``log_dir`` is given a
    timestamped run log captures everything at DEBUG.  Returns the log path.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    rich_handler = RichHandler(console=output or console, show_path=False, rich_tracebacks=True)
    rich_handler.setLevel(level)
    root.addHandler(rich_handler)

    if log_dir is None:
        return None

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{LOG_PREFIX}_{datetime.now():%Y%m%d_%H%M%S}.log"
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return log_path
